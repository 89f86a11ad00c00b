"""Lifecycle policy — which pulses are still visible at a given instant.

Pure functions only.  Expiry is a read-time predicate: nothing is
scheduled, nothing is mutated.  Every consumer of the PulseStore applies
this filter before further processing.

Lifetimes:
    - quick reports:   45 minutes
    - ghost pulses:     2 hours
    - everything else: 24 hours

A pulse whose age equals its TTL exactly is still visible; strictly
older pulses are not.  Pulses stamped slightly in the future (clock skew
between devices) are visible.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel

from pulsemap.domain.enums import PulseCategory
from pulsemap.domain.pulse import Pulse

DEFAULT_TTL = timedelta(hours=24)
GHOST_TTL = timedelta(hours=2)
QUICK_REPORT_TTL = timedelta(minutes=45)


class LifecyclePolicy(BaseModel):
    """Per-category time-to-live table."""

    default_ttl: timedelta = DEFAULT_TTL
    ghost_ttl: timedelta = GHOST_TTL
    quick_report_ttl: timedelta = QUICK_REPORT_TTL

    model_config = {"frozen": True}

    def ttl_for(self, category: PulseCategory, is_quick_report: bool = False) -> timedelta:
        """TTL for a category.  Quick-report categories imply the quick TTL."""
        if is_quick_report or category.is_quick:
            return self.quick_report_ttl
        if category == PulseCategory.GHOST:
            return self.ghost_ttl
        return self.default_ttl

    @property
    def longest_ttl(self) -> timedelta:
        return max(self.default_ttl, self.ghost_ttl, self.quick_report_ttl)

    def ttl_of(self, pulse: Pulse) -> timedelta:
        return self.ttl_for(pulse.category, pulse.is_quick_report)

    def expires_at(self, pulse: Pulse) -> datetime:
        return pulse.created_at + self.ttl_of(pulse)

    def is_visible(self, pulse: Pulse, now: datetime) -> bool:
        return (now - pulse.created_at) <= self.ttl_of(pulse)

    def life_remaining(self, pulse: Pulse, now: datetime) -> float:
        """Fraction of the lifetime left, 1.0 when fresh and 0.0 once expired.

        Drives the marker fade on the map.
        """
        ttl = self.ttl_of(pulse).total_seconds()
        age = (now - pulse.created_at).total_seconds()
        return max(0.0, min(1.0, 1.0 - age / ttl))

    def visible(self, pulses, now: datetime) -> list[Pulse]:
        """Filter an iterable of pulses down to the visible ones, order preserved."""
        return [p for p in pulses if self.is_visible(p, now)]


DEFAULT_POLICY = LifecyclePolicy()


def ttl_for(category: PulseCategory, is_quick_report: bool = False) -> timedelta:
    return DEFAULT_POLICY.ttl_for(category, is_quick_report)


def is_visible(pulse: Pulse, now: datetime) -> bool:
    return DEFAULT_POLICY.is_visible(pulse, now)


def life_remaining(pulse: Pulse, now: datetime) -> float:
    return DEFAULT_POLICY.life_remaining(pulse, now)
