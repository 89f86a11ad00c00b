"""Capture session — exclusive ownership of one recording from open to release.

A CaptureSession owns an AudioInput for exactly its own lifetime.  While
recording, an analysis task reads frequency frames and tracks two scalars:

    live energy  mean bin magnitude / 255 of the latest frame
    peak energy  highest live energy seen so far

Leaving the ``async with`` block always cancels the analysis task and
closes the input, whether the block finished, raised or was cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "audio/webm"


class CapturedClip(BaseModel):
    """A finished recording, ready to upload."""

    audio: bytes
    content_type: str = DEFAULT_CONTENT_TYPE
    peak_energy: float = Field(..., ge=0.0, le=1.0)

    model_config = {"frozen": True}


class AudioInput(ABC):
    """A microphone-like source.

    ``open`` raises PermissionDenied when the device refuses access.
    """

    @abstractmethod
    async def open(self) -> None:
        ...

    @abstractmethod
    async def read_frame(self) -> Optional[bytes]:
        """Next frame of frequency-bin magnitudes (0-255), None when exhausted."""
        ...

    @abstractmethod
    async def finish(self) -> bytes:
        """Stop recording and return the encoded clip."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the device (stop tracks, close contexts).  Must be idempotent."""
        ...

    @property
    def content_type(self) -> str:
        return DEFAULT_CONTENT_TYPE


def frame_energy(frame: bytes) -> float:
    """Normalised energy of one frequency frame."""
    if not frame:
        return 0.0
    return sum(frame) / len(frame) / 255.0


class CaptureSession:
    """Async context manager around one recording."""

    def __init__(self, source: AudioInput) -> None:
        self._source = source
        self._task: asyncio.Task | None = None
        self._recording = False
        self.live_energy = 0.0
        self.peak_energy = 0.0

    @property
    def recording(self) -> bool:
        return self._recording

    async def __aenter__(self) -> "CaptureSession":
        await self._source.open()
        try:
            self._recording = True
            self._task = asyncio.create_task(self._analyse(), name="capture-analysis")
        except BaseException:
            await self._release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self._release()

    async def finish(self) -> CapturedClip:
        """Stop recording and hand back the clip with its peak energy."""
        if not self._recording:
            raise RuntimeError("capture session is not recording")
        await self._stop_analysis()
        audio = await self._source.finish()
        self._recording = False
        return CapturedClip(
            audio=audio,
            content_type=self._source.content_type,
            peak_energy=min(1.0, self.peak_energy),
        )

    async def _analyse(self) -> None:
        while True:
            frame = await self._source.read_frame()
            if frame is None:
                return
            energy = frame_energy(frame)
            self.live_energy = energy
            if energy > self.peak_energy:
                self.peak_energy = energy

    async def _stop_analysis(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _release(self) -> None:
        self._recording = False
        try:
            await self._stop_analysis()
        finally:
            await self._source.close()
            logger.debug("Capture session released")
