"""Controlled enumerations for the pulsemap domain.

Every categorical field in the domain MUST reference an enum defined here.
Free-form strings are not acceptable for classification fields.
"""

from __future__ import annotations

from enum import Enum


class PulseCategory(str, Enum):
    """Fixed tag set a pulse is filed under.  Immutable after creation."""

    CHAT = "chat"
    MUSIC = "music"
    ALERT = "alert"
    GHOST = "ghost"
    QUICK_POLICE = "quick-police"
    QUICK_TRAFFIC = "quick-traffic"

    @property
    def is_quick(self) -> bool:
        return self in (PulseCategory.QUICK_POLICE, PulseCategory.QUICK_TRAFFIC)


class ChangeOp(str, Enum):
    """Operations carried by the realtime change feed."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class CounterField(str, Enum):
    """Counters that may be incremented remotely."""

    RESPECT = "respect_count"
    DENY = "deny_count"


class DeviceSetKey(str, Enum):
    """Names of the device-scoped persisted id sets."""

    MY_PULSES = "myPulses"
    RESPECTED = "respectedPulses"
    DENIED = "deniedReports"


class VoteOutcome(str, Enum):
    """Result of a respect / deny action."""

    ACCEPTED = "accepted"
    ALREADY_VOTED = "already_voted"
    QUORUM_REACHED = "quorum_reached"
    UNKNOWN_PULSE = "unknown_pulse"


class PlaybackState(str, Enum):
    """States of the radio-mode playback queue."""

    IDLE = "idle"
    PLAYING = "playing"


class PlaybackMode(str, Enum):
    """Whether the current track belongs to a radio queue or a one-off pick."""

    RADIO = "radio"
    ONE_OFF = "one_off"
