"""Application configuration loaded from environment variables."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "pulsemap"
    debug: bool = False
    log_level: str = "INFO"

    # Lifecycle
    pulse_ttl_minutes: int = 24 * 60
    ghost_ttl_minutes: int = 120
    quick_report_ttl_minutes: int = 45

    # Voting
    deny_quorum: int = 5

    # Sync
    refresh_interval_seconds: float = 60.0
    reconnect_delay_seconds: float = 5.0
    tombstone_retention_seconds: int = 600

    # Clustering
    cluster_radius_px: float = 60.0
    cluster_tile_size: int = 256
    cluster_max_zoom: float = 16.0

    # Submission / ghost fallback (Tirana)
    ghost_center_lat: float = 41.3275
    ghost_center_lng: float = 19.8187
    ghost_jitter_degrees: float = 0.02
    geolocation_timeout_seconds: float = 10.0

    # Device state
    device_state_path: Optional[str] = "~/.pulsemap/device.json"

    # Remote backend
    backend: Literal["memory", "supabase"] = "memory"
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_table: str = "pulses"
    supabase_bucket: str = "audio_pulses"
    supabase_increment_rpc: str = "increment_pulse_counter"
    http_timeout_seconds: float = 10.0

    # Reverse geocoding
    geocoder_url: str = "https://nominatim.openstreetmap.org/reverse"
    geocoder_user_agent: str = "pulsemap/0.1"

    model_config = {"env_prefix": "PULSEMAP_"}


settings = Settings()
