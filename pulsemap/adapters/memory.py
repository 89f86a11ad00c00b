"""In-process implementations of the remote collaborators.

Used as the default backend for local runs and throughout the tests.
Each fake can be told to fail specific operations so error paths can be
exercised without a network.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator

from pulsemap.adapters.base import BlobStore, Geolocator, PulseBackend, ReverseGeocoder
from pulsemap.domain.enums import CounterField
from pulsemap.domain.errors import NetworkFailure, PermissionDenied
from pulsemap.domain.pulse import ChangeEvent, GeoPoint, Pulse, PulseDraft
from pulsemap.foundation.clock import utc_now
from pulsemap.foundation.identifiers import new_id

logger = logging.getLogger(__name__)

_DISCONNECT = object()


class _FailureSwitch:
    """Set of operation names that currently raise NetworkFailure."""

    def __init__(self) -> None:
        self.failing: set[str] = set()

    def fail(self, *operations: str) -> None:
        self.failing.update(operations)

    def recover(self, *operations: str) -> None:
        if operations:
            self.failing.difference_update(operations)
        else:
            self.failing.clear()

    def check(self, operation: str) -> None:
        if operation in self.failing:
            raise NetworkFailure(operation, "simulated outage")


class InMemoryPulseBackend(PulseBackend, _FailureSwitch):
    """A dict-backed pulses table with a fan-out change feed."""

    def __init__(self) -> None:
        _FailureSwitch.__init__(self)
        self._rows: dict[str, Pulse] = {}
        self._subscribers: list[asyncio.Queue] = []
        self._lock = asyncio.Lock()

    # ── Table operations ─────────────────────────────────────────────────

    async def insert(self, draft: PulseDraft) -> Pulse:
        self.check("insert")
        row = draft.model_dump()
        row["id"] = new_id()
        row["created_at"] = draft.created_at or utc_now()
        pulse = Pulse.model_validate(row)
        async with self._lock:
            self._rows[pulse.id] = pulse
        self._publish(ChangeEvent.insert(pulse))
        return pulse

    async def select_since(self, threshold: datetime) -> list[Pulse]:
        self.check("select")
        async with self._lock:
            return [p for p in self._rows.values() if p.created_at >= threshold]

    async def update(self, pulse_id: str, fields: dict[str, Any]) -> None:
        self.check("update")
        async with self._lock:
            current = self._rows.get(pulse_id)
            if current is None:
                return
            updated = Pulse.model_validate({**current.model_dump(), **fields})
            self._rows[pulse_id] = updated
        self._publish(ChangeEvent.update(updated))

    async def delete(self, pulse_id: str) -> None:
        self.check("delete")
        async with self._lock:
            existed = self._rows.pop(pulse_id, None) is not None
        if existed:
            self._publish(ChangeEvent.delete(pulse_id))

    async def increment_counter(self, pulse_id: str, field: CounterField) -> int:
        self.check("increment")
        async with self._lock:
            current = self._rows.get(pulse_id)
            if current is None:
                raise NetworkFailure("increment", f"pulse {pulse_id} not found")
            value = getattr(current, field.value) + 1
            updated = current.with_counter(field.value, value)
            self._rows[pulse_id] = updated
        self._publish(ChangeEvent.update(updated))
        return value

    def row(self, pulse_id: str) -> Pulse | None:
        """Direct row access for assertions."""
        return self._rows.get(pulse_id)

    # ── Change feed ──────────────────────────────────────────────────────

    async def subscribe(self) -> AsyncIterator[ChangeEvent]:
        self.check("subscribe")
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _DISCONNECT:
                    raise NetworkFailure("subscribe", "connection dropped")
                yield item
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def drop_subscribers(self) -> None:
        """Simulate a realtime disconnect for every open subscription."""
        for queue in list(self._subscribers):
            queue.put_nowait(_DISCONNECT)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _publish(self, event: ChangeEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)


class InMemoryBlobStore(BlobStore, _FailureSwitch):
    """Keeps uploaded clips in a dict, serving them from a fake public base URL."""

    def __init__(self, base_url: str = "memory://audio_pulses") -> None:
        _FailureSwitch.__init__(self)
        self._base_url = base_url.rstrip("/")
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def upload(self, name: str, data: bytes, content_type: str) -> None:
        self.check("upload")
        self.objects[name] = (data, content_type)

    def public_url(self, name: str) -> str:
        return f"{self._base_url}/{name}"

    async def delete(self, name: str) -> None:
        self.check("blob_delete")
        self.objects.pop(name, None)


class StaticGeolocator(Geolocator):
    """Returns a fixed position, or raises when constructed without one."""

    def __init__(self, position: GeoPoint | None = None, *, timeout: bool = False) -> None:
        self._position = position
        self._timeout = timeout

    async def current_position(self, timeout: float, high_accuracy: bool = True) -> GeoPoint:
        if self._timeout:
            raise TimeoutError(f"no position fix within {timeout}s")
        if self._position is None:
            raise PermissionDenied("location access denied")
        return self._position


class StaticGeocoder(ReverseGeocoder):
    """Answers every lookup with the same street name."""

    def __init__(self, street: str | None = None) -> None:
        self._street = street
        self.calls = 0

    async def lookup(self, lat: float, lng: float) -> str:
        self.calls += 1
        if self._street is None:
            raise LookupError(f"no street at {lat:.5f},{lng:.5f}")
        return self._street
