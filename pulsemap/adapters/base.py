"""Abstract collaborators the engine talks to.

Adapters wrap the outside world: the remote pulse table with its change
feed, the blob store holding audio clips, device geolocation and reverse
geocoding.

Architectural rules:
    1. Adapters must NOT touch the PulseStore.  They return values and the
       engine decides what to do with them.
    2. Transport failures are raised as NetworkFailure, never as the
       underlying client library's exception types.
    3. Every method is a suspension point; none may block the event loop.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator

from pulsemap.domain.enums import CounterField
from pulsemap.domain.pulse import ChangeEvent, GeoPoint, Pulse, PulseDraft


class PulseBackend(ABC):
    """The remote ``pulses`` collection."""

    @abstractmethod
    async def insert(self, draft: PulseDraft) -> Pulse:
        """Insert a new row and return it with its assigned id."""
        ...

    @abstractmethod
    async def select_since(self, threshold: datetime) -> list[Pulse]:
        """All rows with ``created_at >= threshold``."""
        ...

    @abstractmethod
    async def update(self, pulse_id: str, fields: dict[str, Any]) -> None:
        """Patch some columns of one row."""
        ...

    @abstractmethod
    async def delete(self, pulse_id: str) -> None:
        ...

    @abstractmethod
    async def increment_counter(self, pulse_id: str, field: CounterField) -> int:
        """Atomic server-side increment.  Returns the new value."""
        ...

    @abstractmethod
    def subscribe(self) -> AsyncIterator[ChangeEvent]:
        """Push feed of insert/update/delete events for the collection.

        The iterator ends or raises NetworkFailure when the connection drops.
        """
        ...

    async def close(self) -> None:
        """Release network resources.  Default: nothing to release."""


class BlobStore(ABC):
    """Object storage for audio clips."""

    @abstractmethod
    async def upload(self, name: str, data: bytes, content_type: str) -> None:
        ...

    @abstractmethod
    def public_url(self, name: str) -> str:
        ...

    @abstractmethod
    async def delete(self, name: str) -> None:
        ...

    def name_from_url(self, url: str) -> str:
        """Recover the object name from a public URL (last path segment)."""
        return url.rstrip("/").rsplit("/", 1)[-1]

    async def close(self) -> None:
        """Release network resources.  Default: nothing to release."""


class Geolocator(ABC):
    """Device position provider."""

    @abstractmethod
    async def current_position(self, timeout: float, high_accuracy: bool = True) -> GeoPoint:
        """Return a position fix.

        Raises:
            PermissionDenied: location access is unavailable.
            TimeoutError: no fix within *timeout* seconds.
        """
        ...


class ReverseGeocoder(ABC):
    """Coordinates to a human-readable street name."""

    @abstractmethod
    async def lookup(self, lat: float, lng: float) -> str:
        """Return a street name.

        Raises:
            NetworkFailure: the lookup service could not be reached.
            LookupError: no street is known at this position.
        """
        ...
