"""Vote and report ledgers — one respect and one deny per device per pulse.

The device's persisted id sets are the source of truth for "may this
device vote again".  A vote is recorded locally before the remote call and
is never rolled back, even when the call fails: idempotence is preferred
over counter accuracy, and the next full refresh corrects the counter.

Deny votes on quick reports carry a quorum.  The vote that brings the
count to the quorum deletes the report (remote delete + local removal)
instead of incrementing the counter.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel

from pulsemap.adapters.base import PulseBackend
from pulsemap.domain.enums import CounterField, DeviceSetKey, VoteOutcome
from pulsemap.domain.errors import NetworkFailure
from pulsemap.domain.pulse import ChangeEvent
from pulsemap.realtime.reconciler import RealtimeReconciler
from pulsemap.store.device_state import DeviceState

logger = logging.getLogger(__name__)

DENY_QUORUM = 5


class VoteResult(BaseModel):
    """What happened to one vote action."""

    pulse_id: str
    outcome: VoteOutcome
    count: Optional[int] = None
    remote_synced: bool = False

    model_config = {"frozen": True}

    @property
    def accepted(self) -> bool:
        return self.outcome in (VoteOutcome.ACCEPTED, VoteOutcome.QUORUM_REACHED)


class VoteLedger:
    """Respect votes.  Quick reports use the same path as "confirm"."""

    def __init__(self, reconciler: RealtimeReconciler, backend: PulseBackend) -> None:
        self._store = reconciler.store
        self._backend = backend

    async def give_respect(self, pulse_id: str, votes: DeviceState) -> VoteResult:
        if await self._store.get_visible(pulse_id) is None:
            return VoteResult(pulse_id=pulse_id, outcome=VoteOutcome.UNKNOWN_PULSE)

        if not await votes.add_if_absent(DeviceSetKey.RESPECTED, pulse_id):
            logger.info("Respect for %s ignored: already voted", pulse_id)
            return VoteResult(pulse_id=pulse_id, outcome=VoteOutcome.ALREADY_VOTED)

        local = await self._store.increment(pulse_id, CounterField.RESPECT)
        count = local.respect_count if local else None

        try:
            await self._backend.increment_counter(pulse_id, CounterField.RESPECT)
        except NetworkFailure as exc:
            logger.warning("Respect RPC for %s failed, keeping local vote: %s", pulse_id, exc)
            return VoteResult(pulse_id=pulse_id, outcome=VoteOutcome.ACCEPTED, count=count)

        return VoteResult(
            pulse_id=pulse_id, outcome=VoteOutcome.ACCEPTED, count=count, remote_synced=True,
        )


class ReportLedger:
    """Confirm / deny voting for quick reports, with deletion on deny quorum."""

    def __init__(
        self,
        reconciler: RealtimeReconciler,
        backend: PulseBackend,
        respect: VoteLedger,
        quorum: int = DENY_QUORUM,
    ) -> None:
        if quorum < 1:
            raise ValueError("quorum must be at least 1")
        self._reconciler = reconciler
        self._store = reconciler.store
        self._backend = backend
        self._respect = respect
        self._quorum = quorum

    @property
    def quorum(self) -> int:
        return self._quorum

    async def confirm_report(self, pulse_id: str, votes: DeviceState) -> VoteResult:
        """A confirm is a respect vote on a quick report."""
        return await self._respect.give_respect(pulse_id, votes)

    async def deny_report(self, pulse_id: str, votes: DeviceState) -> VoteResult:
        pulse = await self._store.get_visible(pulse_id)
        if pulse is None:
            return VoteResult(pulse_id=pulse_id, outcome=VoteOutcome.UNKNOWN_PULSE)
        if not pulse.is_quick_report:
            raise ValueError(f"pulse {pulse_id} is not a quick report")

        if not await votes.add_if_absent(DeviceSetKey.DENIED, pulse_id):
            logger.info("Deny for %s ignored: already voted", pulse_id)
            return VoteResult(pulse_id=pulse_id, outcome=VoteOutcome.ALREADY_VOTED)

        if pulse.deny_count + 1 >= self._quorum:
            return await self._delete_on_quorum(pulse_id, pulse.deny_count + 1)

        local = await self._store.increment(pulse_id, CounterField.DENY)
        count = local.deny_count if local else pulse.deny_count + 1
        try:
            remote = await self._backend.increment_counter(pulse_id, CounterField.DENY)
        except NetworkFailure as exc:
            logger.warning("Deny RPC for %s failed, keeping local vote: %s", pulse_id, exc)
            return VoteResult(pulse_id=pulse_id, outcome=VoteOutcome.ACCEPTED, count=count)

        # Other devices may have denied in the meantime.
        if remote >= self._quorum:
            return await self._delete_on_quorum(pulse_id, remote)
        return VoteResult(
            pulse_id=pulse_id, outcome=VoteOutcome.ACCEPTED, count=max(count, remote), remote_synced=True,
        )

    async def _delete_on_quorum(self, pulse_id: str, count: int) -> VoteResult:
        logger.info("Deny quorum reached for %s (%d/%d), deleting", pulse_id, count, self._quorum)
        synced = True
        try:
            await self._backend.delete(pulse_id)
        except NetworkFailure as exc:
            synced = False
            logger.warning("Remote delete of %s failed: %s", pulse_id, exc)
        await self._reconciler.apply(ChangeEvent.delete(pulse_id))
        return VoteResult(
            pulse_id=pulse_id, outcome=VoteOutcome.QUORUM_REACHED, count=count, remote_synced=synced,
        )
