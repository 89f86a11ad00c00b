"""Tests for the radio-mode state machine and its audio driver."""

import asyncio

import pytest

from pulsemap.core.playback import (
    AudioPlayer,
    PlaybackQueueController,
    RadioDriver,
    stereo_pan,
)
from pulsemap.domain.enums import PlaybackMode, PlaybackState
from pulsemap.domain.pulse import Pulse

from tests.test_pulse import _pulse, _quick_report


def _voice(n: int) -> list[Pulse]:
    return [_pulse() for _ in range(n)]


@pytest.fixture
def controller() -> PlaybackQueueController:
    return PlaybackQueueController()


class TestController:
    def test_starts_idle(self, controller: PlaybackQueueController) -> None:
        assert controller.state == PlaybackState.IDLE
        assert repr(controller.snapshot()) == "Idle"

    def test_walks_queue_then_idles(self, controller: PlaybackQueueController) -> None:
        a, b, c = _voice(3)
        seen = []
        controller.subscribe(lambda snap: seen.append((snap.state, snap.index)))

        controller.start([a, b, c])
        controller.complete()
        controller.complete()
        controller.complete()

        assert seen == [
            (PlaybackState.PLAYING, 0),
            (PlaybackState.PLAYING, 1),
            (PlaybackState.PLAYING, 2),
            (PlaybackState.IDLE, None),
        ]

    def test_current_follows_queue(self, controller: PlaybackQueueController) -> None:
        a, b = _voice(2)
        controller.start([a, b])
        assert controller.current.id == a.id
        controller.complete()
        assert controller.current.id == b.id
        assert controller.mode == PlaybackMode.RADIO

    def test_stop_goes_idle_from_any_index(self, controller: PlaybackQueueController) -> None:
        controller.start(_voice(3))
        controller.complete()
        snap = controller.stop()
        assert snap.state == PlaybackState.IDLE
        assert controller.queue == []
        assert controller.current is None

    def test_quick_reports_never_enter_queue(self, controller: PlaybackQueueController) -> None:
        report = Pulse.model_validate(_quick_report())
        a = _pulse()
        controller.start([report, a])
        assert [p.id for p in controller.queue] == [a.id]
        assert controller.index == 0

    def test_nothing_playable_raises(self, controller: PlaybackQueueController) -> None:
        with pytest.raises(ValueError):
            controller.start([Pulse.model_validate(_quick_report())])
        assert controller.state == PlaybackState.IDLE

    def test_select_is_one_off(self, controller: PlaybackQueueController) -> None:
        a, b, c = _voice(3)
        controller.start([a, b])
        snap = controller.select(c)
        assert snap.mode == PlaybackMode.ONE_OFF
        assert snap.pulse.id == c.id
        assert controller.complete().state == PlaybackState.IDLE

    def test_select_without_audio_raises(self, controller: PlaybackQueueController) -> None:
        with pytest.raises(ValueError):
            controller.select(Pulse.model_validate(_quick_report()))

    def test_stale_completion_is_ignored(self, controller: PlaybackQueueController) -> None:
        a, b, c = _voice(3)
        stale = controller.start([a, b]).generation
        controller.select(c)
        snap = controller.complete(stale)
        assert snap.pulse.id == c.id
        assert snap.mode == PlaybackMode.ONE_OFF

    def test_completion_after_stop_is_noop(self, controller: PlaybackQueueController) -> None:
        gen = controller.start(_voice(2)).generation
        controller.stop()
        assert controller.complete(gen).state == PlaybackState.IDLE

    def test_unsubscribe(self, controller: PlaybackQueueController) -> None:
        seen = []
        unsubscribe = controller.subscribe(seen.append)
        unsubscribe()
        controller.start(_voice(1))
        assert seen == []


class TestStereoPan:
    def test_centre_is_zero(self) -> None:
        assert stereo_pan(19.8, 19.8) == 0.0

    def test_offset_doubles(self) -> None:
        assert stereo_pan(20.0, 19.8) == pytest.approx(0.4)

    def test_clamped(self) -> None:
        assert stereo_pan(25.0, 19.8) == 1.0
        assert stereo_pan(10.0, 19.8) == -1.0


class _FakePlayer(AudioPlayer):
    """Plays instantly unless told to hang; records pans."""

    def __init__(self, hang: bool = False, fail_on: set[str] | None = None) -> None:
        self.hang = hang
        self.fail_on = fail_on or set()
        self.played: list[tuple[str, float]] = []
        self.cancelled: list[str] = []

    async def play(self, pulse: Pulse, pan: float) -> None:
        self.played.append((pulse.id, pan))
        if pulse.id in self.fail_on:
            raise RuntimeError("decode error")
        if self.hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.append(pulse.id)
                raise
        await asyncio.sleep(0)


async def _until_idle(controller: PlaybackQueueController) -> None:
    for _ in range(200):
        if controller.state == PlaybackState.IDLE:
            return
        await asyncio.sleep(0.005)
    raise AssertionError("playback never went idle")


class TestRadioDriver:
    @pytest.mark.asyncio
    async def test_plays_whole_queue(self) -> None:
        controller = PlaybackQueueController()
        player = _FakePlayer()
        driver = RadioDriver(controller, player)
        a, b, c = _voice(3)

        controller.start([a, b, c])
        await _until_idle(controller)

        assert [pid for pid, _ in player.played] == [a.id, b.id, c.id]
        driver.close()

    @pytest.mark.asyncio
    async def test_failed_clip_is_skipped(self) -> None:
        controller = PlaybackQueueController()
        a, b = _voice(2)
        player = _FakePlayer(fail_on={a.id})
        driver = RadioDriver(controller, player)

        controller.start([a, b])
        await _until_idle(controller)

        assert [pid for pid, _ in player.played] == [a.id, b.id]
        driver.close()

    @pytest.mark.asyncio
    async def test_stop_cancels_current_clip(self) -> None:
        controller = PlaybackQueueController()
        player = _FakePlayer(hang=True)
        driver = RadioDriver(controller, player)
        a, b = _voice(2)

        controller.start([a, b])
        await asyncio.sleep(0.01)
        pending = driver.pending
        controller.stop()
        await asyncio.sleep(0.01)

        assert pending is not None and pending.cancelled()
        assert player.cancelled == [a.id]
        assert [pid for pid, _ in player.played] == [a.id]
        assert driver.pending is None
        driver.close()

    @pytest.mark.asyncio
    async def test_pan_uses_map_centre(self) -> None:
        controller = PlaybackQueueController()
        player = _FakePlayer()
        pulse = _pulse(lng=20.0)
        driver = RadioDriver(controller, player, centre_lng=lambda: 19.8)

        controller.select(pulse)
        await _until_idle(controller)

        assert player.played[0][1] == pytest.approx(0.4)
        driver.close()
