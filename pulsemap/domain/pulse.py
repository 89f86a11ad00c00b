"""Canonical Pulse model — one ephemeral geotagged event on the map.

A Pulse is usually a voice clip; quick reports are the audio-less variant
with their own lifetime and confirm/deny voting.  Instances are frozen:
counter changes produce a new value via ``model_copy`` so readers of the
store never observe a half-applied update.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from pulsemap.domain.enums import ChangeOp, PulseCategory
from pulsemap.foundation.clock import ensure_utc


# ── Location ─────────────────────────────────────────────────────────────────

class GeoPoint(BaseModel):
    """A latitude/longitude pair in degrees."""

    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)

    model_config = {"frozen": True}


# ── Draft (pre-insert) ───────────────────────────────────────────────────────

class PulseDraft(BaseModel):
    """Fields a client supplies on insert.  The remote store assigns the id."""

    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    energy_value: float = Field(..., ge=0.0, le=1.0)
    audio_url: str = ""
    category: PulseCategory = PulseCategory.CHAT
    parent_id: Optional[str] = None
    is_quick_report: bool = False
    created_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def quick_reports_carry_no_audio(self) -> "PulseDraft":
        if self.is_quick_report != self.category.is_quick:
            raise ValueError(
                f"category {self.category.value!r} does not match is_quick_report={self.is_quick_report}"
            )
        if self.is_quick_report and self.audio_url:
            raise ValueError("quick reports carry no audio")
        return self

    def to_row(self) -> dict[str, Any]:
        """Remote row representation (columns of the ``pulses`` collection)."""
        return self.model_dump(mode="json", exclude_none=True)


# ── Pulse ────────────────────────────────────────────────────────────────────

class Pulse(BaseModel):
    """A pulse as known to the remote store.

    Everything except ``respect_count`` and ``deny_count`` is immutable
    after creation.  Rows written by older clients may lack ``category``
    or ``is_quick_report``; both are derived when absent.
    """

    id: str = Field(..., min_length=1, description="Opaque id assigned by the remote store")
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    energy_value: float = Field(..., ge=0.0, le=1.0, description="Normalised peak loudness")
    audio_url: str = Field(default="", description="Public URL of the stored clip, empty for quick reports")
    created_at: datetime
    category: PulseCategory = PulseCategory.CHAT
    respect_count: int = Field(default=0, ge=0)
    deny_count: int = Field(default=0, ge=0)
    parent_id: Optional[str] = Field(default=None, description="Reply target, lookup only")
    is_quick_report: bool = False

    model_config = {"frozen": True}

    # ── Validators ───────────────────────────────────────────────────────

    @model_validator(mode="before")
    @classmethod
    def fill_legacy_columns(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("category") is None:
            data["category"] = PulseCategory.CHAT.value
        if data.get("is_quick_report") is None:
            data["is_quick_report"] = PulseCategory(data["category"]).is_quick
        for key in ("audio_url",):
            if data.get(key) is None:
                data[key] = ""
        for key in ("respect_count", "deny_count"):
            if data.get(key) is None:
                data[key] = 0
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        if data.get("parent_id") is not None:
            data["parent_id"] = str(data["parent_id"])
        return data

    @field_validator("created_at")
    @classmethod
    def created_at_must_be_aware(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def quick_flag_matches_category(self) -> "Pulse":
        if self.is_quick_report != self.category.is_quick:
            raise ValueError(
                f"category {self.category.value!r} does not match is_quick_report={self.is_quick_report}"
            )
        return self

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_url) and not self.is_quick_report

    def with_counter(self, field: str, value: int) -> "Pulse":
        """Return a copy with one counter replaced."""
        return self.model_copy(update={field: value})

    def summary(self) -> dict:
        """JSON-friendly representation used by the HTTP and WebSocket layers."""
        return self.model_dump(mode="json")


# ── Change feed ──────────────────────────────────────────────────────────────

class ChangeEvent(BaseModel):
    """One entry of the realtime change feed: ``{op, pulse}``.

    Delete events from the remote feed often carry only the primary key,
    so ``pulse`` is optional for them and ``pulse_id`` is always set.
    """

    op: ChangeOp
    pulse_id: str = Field(..., min_length=1)
    pulse: Optional[Pulse] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def writes_carry_a_pulse(self) -> "ChangeEvent":
        if self.op != ChangeOp.DELETE and self.pulse is None:
            raise ValueError(f"{self.op.value} event requires a pulse")
        if self.pulse is not None and self.pulse.id != self.pulse_id:
            raise ValueError("pulse_id does not match pulse.id")
        return self

    @classmethod
    def insert(cls, pulse: Pulse) -> "ChangeEvent":
        return cls(op=ChangeOp.INSERT, pulse_id=pulse.id, pulse=pulse)

    @classmethod
    def update(cls, pulse: Pulse) -> "ChangeEvent":
        return cls(op=ChangeOp.UPDATE, pulse_id=pulse.id, pulse=pulse)

    @classmethod
    def delete(cls, pulse_id: str) -> "ChangeEvent":
        return cls(op=ChangeOp.DELETE, pulse_id=pulse_id)
