"""Tests for the persisted device id sets."""

import asyncio
import json
from unittest.mock import patch

import pytest

from pulsemap.domain.enums import DeviceSetKey
from pulsemap.store.device_state import DeviceState


class TestDeviceState:
    @pytest.mark.asyncio
    async def test_add_if_absent_is_test_and_set(self) -> None:
        state = DeviceState()
        assert await state.add_if_absent(DeviceSetKey.RESPECTED, "p1")
        assert not await state.add_if_absent(DeviceSetKey.RESPECTED, "p1")
        assert await state.contains(DeviceSetKey.RESPECTED, "p1")

    @pytest.mark.asyncio
    async def test_sets_are_independent(self) -> None:
        state = DeviceState()
        await state.add_if_absent(DeviceSetKey.RESPECTED, "p1")
        assert not await state.contains(DeviceSetKey.DENIED, "p1")
        assert await state.add_if_absent(DeviceSetKey.DENIED, "p1")

    @pytest.mark.asyncio
    async def test_concurrent_double_tap_records_once(self) -> None:
        state = DeviceState()
        results = await asyncio.gather(
            *(state.add_if_absent(DeviceSetKey.RESPECTED, "p1") for _ in range(10))
        )
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_discard(self) -> None:
        state = DeviceState()
        await state.add_if_absent(DeviceSetKey.MY_PULSES, "mine")
        assert await state.discard(DeviceSetKey.MY_PULSES, "mine")
        assert not await state.discard(DeviceSetKey.MY_PULSES, "mine")
        assert await state.members(DeviceSetKey.MY_PULSES) == frozenset()

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path) -> None:
        path = tmp_path / "device.json"
        first = DeviceState(path)
        await first.add_if_absent(DeviceSetKey.RESPECTED, "p1")
        await first.add_if_absent(DeviceSetKey.MY_PULSES, "mine")

        document = json.loads(path.read_text())
        assert document["respectedPulses"] == ["p1"]
        assert document["deniedReports"] == []

        second = DeviceState(path)
        assert await second.contains(DeviceSetKey.RESPECTED, "p1")
        assert not await second.add_if_absent(DeviceSetKey.RESPECTED, "p1")
        assert await second.members(DeviceSetKey.MY_PULSES) == frozenset({"mine"})

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, tmp_path) -> None:
        path = tmp_path / "device.json"
        path.write_text("{not json")
        state = DeviceState(path)
        assert await state.members(DeviceSetKey.RESPECTED) == frozenset()

    @pytest.mark.asyncio
    async def test_write_failure_keeps_vote_in_memory(self, tmp_path) -> None:
        state = DeviceState(tmp_path / "device.json")
        with patch("pulsemap.store.device_state._write_atomically", side_effect=OSError("disk full")):
            assert await state.add_if_absent(DeviceSetKey.RESPECTED, "p1")
            assert await state.discard(DeviceSetKey.RESPECTED, "p1")
            assert await state.add_if_absent(DeviceSetKey.RESPECTED, "p1")
        assert await state.contains(DeviceSetKey.RESPECTED, "p1")
        assert not (tmp_path / "device.json").exists()
