"""Radio mode — sequential unattended playback of a ranked pulse list.

Two layers:
    PlaybackQueueController  a synchronous state machine (Idle / Playing)
                             driven by explicit events: start, completion,
                             stop, manual selection.
    RadioDriver              binds the controller to an AudioPlayer, turning
                             each Playing state into a playback task whose
                             completion feeds back into the controller.

Every transition into Playing bumps a generation number.  Completions
carry the generation they were started under, so a completion that
arrives after stop() or a manual pick is ignored.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

from pulsemap.domain.enums import PlaybackMode, PlaybackState
from pulsemap.domain.pulse import Pulse

logger = logging.getLogger(__name__)


def stereo_pan(pulse_lng: float, centre_lng: float) -> float:
    """Pan a clip left/right by its longitude offset from the map centre."""
    return max(-1.0, min(1.0, (pulse_lng - centre_lng) * 2.0))


class PlaybackSnapshot:
    """Immutable view of the controller after a transition."""

    __slots__ = ("state", "mode", "index", "pulse", "generation")

    def __init__(
        self,
        state: PlaybackState,
        mode: Optional[PlaybackMode],
        index: Optional[int],
        pulse: Optional[Pulse],
        generation: int,
    ) -> None:
        self.state = state
        self.mode = mode
        self.index = index
        self.pulse = pulse
        self.generation = generation

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "mode": self.mode.value if self.mode else None,
            "index": self.index,
            "pulse_id": self.pulse.id if self.pulse else None,
        }

    def __repr__(self) -> str:
        if self.state == PlaybackState.IDLE:
            return "Idle"
        return f"Playing({self.pulse.id if self.pulse else None}, {self.index})"


PlaybackListener = Callable[[PlaybackSnapshot], None]


class PlaybackQueueController:
    """State machine for radio mode and one-off playback."""

    def __init__(self) -> None:
        self._queue: list[Pulse] = []
        self._state = PlaybackState.IDLE
        self._mode: PlaybackMode | None = None
        self._index: int | None = None
        self._current: Pulse | None = None
        self._generation = 0
        self._listeners: list[PlaybackListener] = []

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def index(self) -> int | None:
        return self._index

    @property
    def current(self) -> Pulse | None:
        return self._current

    @property
    def mode(self) -> PlaybackMode | None:
        return self._mode

    @property
    def queue(self) -> list[Pulse]:
        return list(self._queue)

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> PlaybackSnapshot:
        return PlaybackSnapshot(self._state, self._mode, self._index, self._current, self._generation)

    def subscribe(self, listener: PlaybackListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Events ───────────────────────────────────────────────────────────

    def start(self, ordered: Sequence[Pulse]) -> PlaybackSnapshot:
        """Begin radio mode at the first playable entry.

        Quick reports and pulses without audio never enter the playlist.

        Raises:
            ValueError: nothing playable was supplied.
        """
        playable = [p for p in ordered if p.has_audio]
        if not playable:
            raise ValueError("radio mode needs at least one pulse with audio")
        self._queue = playable
        return self._enter_playing(PlaybackMode.RADIO, 0, playable[0])

    def complete(self, generation: int | None = None) -> PlaybackSnapshot:
        """The current clip finished on its own.  Advance or go idle."""
        if self._state != PlaybackState.PLAYING:
            return self.snapshot()
        if generation is not None and generation != self._generation:
            logger.debug("Ignoring stale completion (gen %d, now %d)", generation, self._generation)
            return self.snapshot()

        if self._mode == PlaybackMode.RADIO and self._index is not None:
            nxt = self._index + 1
            if nxt < len(self._queue):
                return self._enter_playing(PlaybackMode.RADIO, nxt, self._queue[nxt])
        return self._enter_idle()

    def stop(self) -> PlaybackSnapshot:
        """Cancel playback immediately, whatever the current index."""
        return self._enter_idle()

    def select(self, pulse: Pulse) -> PlaybackSnapshot:
        """Play one pulse on demand.  Leaves radio mode if it was active.

        Raises:
            ValueError: the pulse has no audio (e.g. a quick report).
        """
        if not pulse.has_audio:
            raise ValueError(f"pulse {pulse.id} has no audio")
        self._queue = []
        return self._enter_playing(PlaybackMode.ONE_OFF, None, pulse)

    # ── Transitions ──────────────────────────────────────────────────────

    def _enter_playing(self, mode: PlaybackMode, index: int | None, pulse: Pulse) -> PlaybackSnapshot:
        self._generation += 1
        self._state = PlaybackState.PLAYING
        self._mode = mode
        self._index = index
        self._current = pulse
        return self._emit()

    def _enter_idle(self) -> PlaybackSnapshot:
        was_playing = self._state == PlaybackState.PLAYING
        self._generation += 1
        self._state = PlaybackState.IDLE
        self._mode = None
        self._index = None
        self._current = None
        self._queue = []
        if was_playing:
            return self._emit()
        return self.snapshot()

    def _emit(self) -> PlaybackSnapshot:
        snap = self.snapshot()
        logger.debug("Playback → %r", snap)
        for listener in list(self._listeners):
            listener(snap)
        return snap


# ── Audio binding ────────────────────────────────────────────────────────────

class AudioPlayer(ABC):
    """Plays one clip; the coroutine returns when playback ends naturally."""

    @abstractmethod
    async def play(self, pulse: Pulse, pan: float) -> None:
        ...


class RadioDriver:
    """Runs the controller against a real player.

    Args:
        controller: The state machine to drive.
        player: Plays individual clips.
        centre_lng: Returns the current map-centre longitude for panning.
    """

    def __init__(
        self,
        controller: PlaybackQueueController,
        player: AudioPlayer,
        centre_lng: Callable[[], float] | None = None,
    ) -> None:
        self._controller = controller
        self._player = player
        self._centre_lng = centre_lng
        self._task: asyncio.Task | None = None
        self._unsubscribe = controller.subscribe(self._on_transition)

    @property
    def controller(self) -> PlaybackQueueController:
        return self._controller

    @property
    def pending(self) -> asyncio.Task | None:
        return self._task

    def close(self) -> None:
        self._cancel()
        self._unsubscribe()

    def _on_transition(self, snap: PlaybackSnapshot) -> None:
        self._cancel()
        if snap.state == PlaybackState.PLAYING and snap.pulse is not None:
            self._task = asyncio.create_task(self._play(snap.pulse, snap.generation))

    async def _play(self, pulse: Pulse, generation: int) -> None:
        pan = stereo_pan(pulse.lng, self._centre_lng()) if self._centre_lng else 0.0
        try:
            await self._player.play(pulse, pan)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Playback of %s failed, skipping: %s", pulse.id, exc)
        # Clear our own handle before advancing so the next transition
        # does not cancel the task that is triggering it.
        if self._task is asyncio.current_task():
            self._task = None
        self._controller.complete(generation)

    def _cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
