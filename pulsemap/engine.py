"""Engine wiring — builds every component from settings and adapters.

The presentation layers (HTTP API, WebSocket feed, tests) receive one
PulseEngine and reach the components through it.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from pulsemap.adapters.base import BlobStore, Geolocator, PulseBackend, ReverseGeocoder
from pulsemap.adapters.memory import (
    InMemoryBlobStore,
    InMemoryPulseBackend,
    StaticGeocoder,
    StaticGeolocator,
)
from pulsemap.config import Settings
from pulsemap.core.clusters import ClusterEngine
from pulsemap.core.playback import PlaybackQueueController
from pulsemap.core.submission import GhostPolicy, PulseSubmitter
from pulsemap.core.votes import ReportLedger, VoteLedger
from pulsemap.domain.lifecycle import LifecyclePolicy
from pulsemap.domain.pulse import GeoPoint
from pulsemap.realtime.reconciler import RealtimeReconciler
from pulsemap.realtime.sync import SyncService
from pulsemap.store.device_state import DeviceState
from pulsemap.store.pulse_store import PulseStore

logger = logging.getLogger(__name__)


class PulseEngine:
    """All engine components for one client session."""

    def __init__(
        self,
        settings: Settings,
        backend: PulseBackend,
        blobs: BlobStore,
        geolocator: Geolocator,
        geocoder: ReverseGeocoder,
        device: DeviceState,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.blobs = blobs
        self.device = device

        self.policy = LifecyclePolicy(
            default_ttl=timedelta(minutes=settings.pulse_ttl_minutes),
            ghost_ttl=timedelta(minutes=settings.ghost_ttl_minutes),
            quick_report_ttl=timedelta(minutes=settings.quick_report_ttl_minutes),
        )
        self.store = PulseStore(self.policy)
        self.reconciler = RealtimeReconciler(
            self.store,
            tombstone_retention=timedelta(seconds=settings.tombstone_retention_seconds),
        )
        self.sync = SyncService(
            backend,
            self.reconciler,
            self.policy,
            refresh_interval=settings.refresh_interval_seconds,
            reconnect_delay=settings.reconnect_delay_seconds,
        )
        self.votes = VoteLedger(self.reconciler, backend)
        self.reports = ReportLedger(self.reconciler, backend, self.votes, quorum=settings.deny_quorum)
        self.clusters = ClusterEngine(
            radius_px=settings.cluster_radius_px,
            tile_size=settings.cluster_tile_size,
            max_zoom=settings.cluster_max_zoom,
        )
        self.playback = PlaybackQueueController()
        self.submitter = PulseSubmitter(
            backend,
            blobs,
            geolocator,
            geocoder,
            self.reconciler,
            device,
            GhostPolicy(
                GeoPoint(lat=settings.ghost_center_lat, lng=settings.ghost_center_lng),
                settings.ghost_jitter_degrees,
            ),
            geolocation_timeout=settings.geolocation_timeout_seconds,
        )

    async def start(self) -> None:
        await self.sync.start()

    async def stop(self) -> None:
        await self.sync.stop()
        await self.backend.close()
        await self.blobs.close()


def build_engine(
    settings: Settings,
    backend: PulseBackend | None = None,
    blobs: BlobStore | None = None,
    geolocator: Geolocator | None = None,
    geocoder: ReverseGeocoder | None = None,
    device: DeviceState | None = None,
) -> PulseEngine:
    """Build an engine, filling unspecified adapters from *settings*."""
    if backend is None or blobs is None:
        if settings.backend == "supabase":
            from pulsemap.adapters.supabase import SupabaseBlobStore, SupabasePulseBackend

            backend = backend or SupabasePulseBackend(
                settings.supabase_url,
                settings.supabase_key,
                table=settings.supabase_table,
                increment_rpc=settings.supabase_increment_rpc,
                timeout=settings.http_timeout_seconds,
            )
            blobs = blobs or SupabaseBlobStore(
                settings.supabase_url, settings.supabase_key, bucket=settings.supabase_bucket,
            )
        else:
            backend = backend or InMemoryPulseBackend()
            blobs = blobs or InMemoryBlobStore()
        logger.info("Using %s backend", settings.backend)

    if geocoder is None:
        if settings.backend == "supabase":
            from pulsemap.adapters.nominatim import NominatimGeocoder

            geocoder = NominatimGeocoder(
                settings.geocoder_url,
                user_agent=settings.geocoder_user_agent,
                timeout=settings.http_timeout_seconds,
            )
        else:
            geocoder = StaticGeocoder()

    return PulseEngine(
        settings,
        backend,
        blobs,
        geolocator or StaticGeolocator(),
        geocoder,
        device or DeviceState(settings.device_state_path),
    )
