"""In-memory Pulse store with async-safe access and read-time expiry.

Design notes:
    - An asyncio.Lock guards all mutations so the realtime consumer, the
      periodic refresher and local votes never corrupt state.
    - Stored pulses are frozen models.  An update replaces the whole value
      under the lock, so a reader holding an earlier snapshot never sees a
      partially applied change.
    - The store may hold expired entries between refreshes.  Every read
      path filters through the LifecyclePolicy; replace_all() filters at
      ingestion so expired quick reports never accumulate.
    - Listeners registered with subscribe() are notified after the lock is
      released, with the kind of change and the affected ids.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from pulsemap.domain.enums import CounterField
from pulsemap.domain.lifecycle import DEFAULT_POLICY, LifecyclePolicy
from pulsemap.domain.pulse import Pulse
from pulsemap.foundation.clock import utc_now

logger = logging.getLogger(__name__)


class StoreChange:
    """Notification handed to store listeners."""

    __slots__ = ("kind", "pulse_ids")

    def __init__(self, kind: str, pulse_ids: tuple[str, ...]) -> None:
        self.kind = kind
        self.pulse_ids = pulse_ids

    def to_dict(self) -> dict:
        return {"kind": self.kind, "pulse_ids": list(self.pulse_ids)}

    def __repr__(self) -> str:
        return f"StoreChange(kind={self.kind!r}, pulse_ids={self.pulse_ids!r})"


StoreListener = Callable[[StoreChange], None]


class PulseStore:
    """Async-safe, in-memory view of the pulses currently known to this client.

    Args:
        policy: Lifecycle policy applied on every read path.
    """

    def __init__(self, policy: LifecyclePolicy | None = None) -> None:
        self._policy = policy or DEFAULT_POLICY
        self._lock = asyncio.Lock()
        self._pulses: dict[str, Pulse] = {}
        self._listeners: list[StoreListener] = []

    @property
    def policy(self) -> LifecyclePolicy:
        return self._policy

    # ── Mutation ─────────────────────────────────────────────────────────

    async def upsert(self, pulse: Pulse) -> None:
        """Insert or overwrite by id.  Last writer wins."""
        async with self._lock:
            self._pulses[pulse.id] = pulse
        self._notify("upsert", (pulse.id,))

    async def insert_if_absent(self, pulse: Pulse) -> bool:
        """Insert only when the id is unknown.  Returns True if inserted."""
        async with self._lock:
            if pulse.id in self._pulses:
                return False
            self._pulses[pulse.id] = pulse
        self._notify("insert", (pulse.id,))
        return True

    async def remove(self, pulse_id: str) -> bool:
        """Remove by id.  Removing an absent id is a no-op."""
        async with self._lock:
            removed = self._pulses.pop(pulse_id, None) is not None
        if removed:
            self._notify("remove", (pulse_id,))
        return removed

    async def replace_all(self, pulses: Iterable[Pulse], now: datetime | None = None) -> int:
        """Swap in a full refresh, dropping anything already expired.

        Returns the number of pulses retained.
        """
        now = now or utc_now()
        fresh = {p.id: p for p in pulses if self._policy.is_visible(p, now)}
        async with self._lock:
            self._pulses = fresh
        logger.debug("Full refresh retained %d pulse(s)", len(fresh))
        self._notify("refresh", tuple(fresh))
        return len(fresh)

    async def increment(self, pulse_id: str, field: CounterField) -> Optional[Pulse]:
        """Optimistically bump a counter on the local copy.

        Returns the updated pulse, or None if the id is not held.
        """
        async with self._lock:
            current = self._pulses.get(pulse_id)
            if current is None:
                return None
            updated = current.with_counter(field.value, getattr(current, field.value) + 1)
            self._pulses[pulse_id] = updated
        self._notify("counter", (pulse_id,))
        return updated

    # ── Queries ──────────────────────────────────────────────────────────

    async def get(self, pulse_id: str) -> Pulse | None:
        """Raw lookup by id.  The result may already be expired."""
        async with self._lock:
            return self._pulses.get(pulse_id)

    async def get_visible(self, pulse_id: str, now: datetime | None = None) -> Pulse | None:
        """Lookup by id, returning None for unknown or expired pulses."""
        now = now or utc_now()
        pulse = await self.get(pulse_id)
        if pulse is None or not self._policy.is_visible(pulse, now):
            return None
        return pulse

    async def has(self, pulse_id: str) -> bool:
        async with self._lock:
            return pulse_id in self._pulses

    async def snapshot(self, now: datetime | None = None) -> list[Pulse]:
        """Currently visible pulses, newest first by ``created_at``."""
        now = now or utc_now()
        async with self._lock:
            held = list(self._pulses.values())
        visible = self._policy.visible(held, now)
        visible.sort(key=lambda p: p.created_at, reverse=True)
        return visible

    async def count(self) -> int:
        """Number of held entries, expired ones included."""
        async with self._lock:
            return len(self._pulses)

    # ── Change subscription ──────────────────────────────────────────────

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register *listener* for change notifications.  Returns an unsubscriber."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: str, pulse_ids: tuple[str, ...]) -> None:
        change = StoreChange(kind, pulse_ids)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as exc:
                logger.error("Store listener failed: %s", exc, exc_info=True)
