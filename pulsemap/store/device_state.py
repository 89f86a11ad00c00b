"""Device-scoped persisted id sets: own pulses, respected pulses, denied reports.

The sets are owned by this device only; nothing backs them server-side.
Every mutation is a read-modify-write under one asyncio.Lock so rapid
double taps cannot both pass the "not yet voted" check.

When a path is given, the three sets are persisted as one JSON document,
written through a temporary file and ``os.replace`` on a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

from pulsemap.domain.enums import DeviceSetKey

logger = logging.getLogger(__name__)


class DeviceState:
    """Three persisted string sets keyed by :class:`DeviceSetKey`.

    Args:
        path: JSON file to load from and persist to.  ``None`` keeps the
              sets in memory only (tests, ephemeral sessions).
    """

    def __init__(self, path: str | os.PathLike | None = None) -> None:
        self._path = Path(path).expanduser() if path else None
        self._lock = asyncio.Lock()
        self._sets: dict[DeviceSetKey, set[str]] = {key: set() for key in DeviceSetKey}
        if self._path is not None and self._path.exists():
            self._load()

    # ── Public API ───────────────────────────────────────────────────────

    async def add_if_absent(self, key: DeviceSetKey, value: str) -> bool:
        """Atomically add *value*; return False if it was already present."""
        async with self._lock:
            bucket = self._sets[key]
            if value in bucket:
                return False
            bucket.add(value)
            await self._persist()
            return True

    async def discard(self, key: DeviceSetKey, value: str) -> bool:
        """Remove *value* if present.  Returns True if something was removed."""
        async with self._lock:
            bucket = self._sets[key]
            if value not in bucket:
                return False
            bucket.discard(value)
            await self._persist()
            return True

    async def contains(self, key: DeviceSetKey, value: str) -> bool:
        async with self._lock:
            return value in self._sets[key]

    async def members(self, key: DeviceSetKey) -> frozenset[str]:
        async with self._lock:
            return frozenset(self._sets[key])

    # ── Persistence ──────────────────────────────────────────────────────

    def _load(self) -> None:
        assert self._path is not None
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable device state %s: %s", self._path, exc)
            return
        for key in DeviceSetKey:
            values = raw.get(key.value, [])
            if isinstance(values, list):
                self._sets[key] = {str(v) for v in values}
        logger.info("Loaded device state from %s", self._path)

    async def _persist(self) -> None:
        """Must be called while holding self._lock."""
        if self._path is None:
            return
        document = {key.value: sorted(values) for key, values in self._sets.items()}
        try:
            await asyncio.to_thread(_write_atomically, self._path, document)
        except OSError as exc:
            logger.warning("Could not persist device state to %s: %s", self._path, exc)


def _write_atomically(path: Path, document: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
    os.replace(tmp, path)
