"""Error taxonomy for the pulse engine.

``AlreadyVoted`` and ``QuorumReached`` are not exceptions: they are
reported as :class:`~pulsemap.domain.enums.VoteOutcome` values because
callers surface them as notifications, not failures.
"""

from __future__ import annotations


class PulseError(Exception):
    """Base class for pulse engine errors."""


class PermissionDenied(PulseError):
    """Microphone or location access is unavailable."""


class NetworkFailure(PulseError):
    """A remote call (upload, insert, RPC, subscription) failed."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} failed: {reason}")


class OwnershipError(PulseError):
    """The device tried to delete a pulse it did not create."""


class SubmissionInProgress(PulseError):
    """A submission was started while another one is still uploading."""
