"""Realtime reconciler — the single serialized write channel into the PulseStore.

Three producers race to change what this client believes:
    - the realtime push feed (insert / update / delete events),
    - the periodic full refresh,
    - this device's own optimistic writes (new pulse, quorum or owner delete).

All of them go through apply() / apply_refresh(), which share one lock, so
ordering and tombstone logic live here and nowhere else.

Rules:
    insert  → upsert only if the id is not already held (the uploading
              client inserts optimistically and then sees its own row on
              the feed).
    update  → upsert unconditionally; remote counters win.
    delete  → remove and record a tombstone.
    refresh → replace the held set, except entries written after the
              batch was selected.

A tombstoned id is never resurrected by a later insert, update or refresh
while the tombstone is retained.  Updates that arrive out of order without
a delete in between are applied last-writer-wins.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Iterable

from pulsemap.domain.enums import ChangeOp
from pulsemap.domain.pulse import ChangeEvent, Pulse
from pulsemap.foundation.clock import utc_now
from pulsemap.store.pulse_store import PulseStore

logger = logging.getLogger(__name__)


class ReconcilerStats:
    """Counters for observability endpoints."""

    __slots__ = ("inserted", "duplicates", "updated", "deleted", "suppressed", "refreshes", "preserved")

    def __init__(self) -> None:
        self.inserted = 0
        self.duplicates = 0
        self.updated = 0
        self.deleted = 0
        self.suppressed = 0
        self.refreshes = 0
        self.preserved = 0

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in self.__slots__}


class RealtimeReconciler:
    """Applies change events and refresh batches to a PulseStore.

    Args:
        store: The store to write into.
        tombstone_retention: How long a deleted id stays blocked.  Should
             exceed the longest plausible delivery delay of the feed and
             the refresh interval.
    """

    def __init__(
        self,
        store: PulseStore,
        tombstone_retention: timedelta = timedelta(minutes=10),
    ) -> None:
        self._store = store
        self._retention = tombstone_retention
        self._lock = asyncio.Lock()
        self._tombstones: dict[str, datetime] = {}
        self._sequence = 0
        self._writes: dict[str, int] = {}
        self.stats = ReconcilerStats()

    @property
    def store(self) -> PulseStore:
        return self._store

    # ── Public API ───────────────────────────────────────────────────────

    async def apply(self, event: ChangeEvent, now: datetime | None = None) -> bool:
        """Apply one change event.  Returns True if the store changed."""
        now = now or utc_now()
        async with self._lock:
            self._prune(now)

            if event.op == ChangeOp.DELETE:
                self._tombstones[event.pulse_id] = now
                self._writes.pop(event.pulse_id, None)
                removed = await self._store.remove(event.pulse_id)
                self.stats.deleted += 1
                logger.debug("Delete %s (held=%s)", event.pulse_id, removed)
                return removed

            if event.pulse_id in self._tombstones:
                self.stats.suppressed += 1
                logger.debug("Suppressed %s for tombstoned %s", event.op.value, event.pulse_id)
                return False

            assert event.pulse is not None
            if event.op == ChangeOp.INSERT:
                inserted = await self._store.insert_if_absent(event.pulse)
                if inserted:
                    self.stats.inserted += 1
                    self._mark(event.pulse_id)
                else:
                    self.stats.duplicates += 1
                return inserted

            await self._store.upsert(event.pulse)
            self._mark(event.pulse_id)
            self.stats.updated += 1
            return True

    async def apply_many(self, events: Iterable[ChangeEvent]) -> int:
        """Apply events in order.  Returns how many changed the store."""
        changed = 0
        for event in events:
            if await self.apply(event):
                changed += 1
        return changed

    def write_mark(self) -> int:
        """Current position in the write sequence.

        Take it before selecting a refresh batch and hand it back to
        apply_refresh() as ``since``.
        """
        return self._sequence

    async def apply_refresh(
        self,
        pulses: Iterable[Pulse],
        now: datetime | None = None,
        since: int | None = None,
    ) -> int:
        """Replace the store contents with a full refresh result.

        Rows for tombstoned ids are skipped: a refresh that was in flight
        when a delete arrived must not bring the row back.  Entries written
        through apply() after *since* are newer than the batch, so the held
        value wins over the batch row or its absence.
        """
        now = now or utc_now()
        async with self._lock:
            self._prune(now)
            kept = {p.id: p for p in pulses if p.id not in self._tombstones}
            if since is not None:
                for pulse_id, mark in list(self._writes.items()):
                    if mark <= since:
                        continue
                    held = await self._store.get(pulse_id)
                    if held is not None:
                        kept[pulse_id] = held
                        self.stats.preserved += 1
                self._writes = {pid: m for pid, m in self._writes.items() if m > since}
            else:
                self._writes.clear()
            retained = await self._store.replace_all(kept.values(), now)
            self.stats.refreshes += 1
            logger.debug("Refresh applied: %d retained", retained)
            return retained

    def is_tombstoned(self, pulse_id: str) -> bool:
        return pulse_id in self._tombstones

    @property
    def tombstone_count(self) -> int:
        return len(self._tombstones)

    # ── Internals ────────────────────────────────────────────────────────

    def _mark(self, pulse_id: str) -> None:
        self._sequence += 1
        self._writes[pulse_id] = self._sequence

    def _prune(self, now: datetime) -> None:
        """Must be called while holding self._lock."""
        cutoff = now - self._retention
        stale = [pid for pid, deleted_at in self._tombstones.items() if deleted_at < cutoff]
        for pid in stale:
            del self._tombstones[pid]
