"""Pulse submission — position fix, blob upload, row insert, optimistic local add.

Pipeline for a voice pulse:

    1. position   geolocation fix; on PermissionDenied or timeout fall back
                  to a ghost pulse jittered around the default centre
    2. upload     audio blob to the blob store (abort on failure, nothing
                  is inserted)
    3. insert     row into the remote collection (on failure the uploaded
                  blob is deleted again)
    4. record     id into the device's own-pulses set and the row into the
                  local store through the reconciler

Quick reports skip the upload and require a real position: a checkpoint
report placed at a random spot is worse than no report.
"""

from __future__ import annotations

import logging
import random
from contextlib import contextmanager
from typing import Iterator, Optional

from pulsemap.adapters.base import BlobStore, Geolocator, PulseBackend, ReverseGeocoder
from pulsemap.capture.session import CapturedClip
from pulsemap.domain.enums import DeviceSetKey, PulseCategory
from pulsemap.domain.errors import (
    NetworkFailure,
    OwnershipError,
    PermissionDenied,
    SubmissionInProgress,
)
from pulsemap.domain.pulse import ChangeEvent, GeoPoint, Pulse, PulseDraft
from pulsemap.foundation.clock import utc_now
from pulsemap.foundation.identifiers import audio_object_name
from pulsemap.realtime.reconciler import RealtimeReconciler
from pulsemap.store.device_state import DeviceState

logger = logging.getLogger(__name__)

UNKNOWN_STREET = "Unknown street"


class GhostPolicy:
    """Where to place a pulse when the device cannot say where it is."""

    __slots__ = ("centre", "jitter_degrees")

    def __init__(self, centre: GeoPoint, jitter_degrees: float = 0.02) -> None:
        self.centre = centre
        self.jitter_degrees = jitter_degrees

    def place(self, rng: random.Random | None = None) -> GeoPoint:
        rng = rng or random
        j = self.jitter_degrees
        return GeoPoint(
            lat=max(-90.0, min(90.0, self.centre.lat + rng.uniform(-j, j))),
            lng=max(-180.0, min(180.0, self.centre.lng + rng.uniform(-j, j))),
        )


class PulseSubmitter:
    """Creates and deletes this device's pulses.

    Args:
        backend: Remote pulses collection.
        blobs: Audio object storage.
        geolocator: Device position provider.
        geocoder: Street-name lookup for display labels.
        reconciler: Write channel into the local store.
        device: Persisted device sets (own pulses are tracked here).
        ghost: Fallback placement policy.
        geolocation_timeout: Seconds to wait for a position fix.
    """

    def __init__(
        self,
        backend: PulseBackend,
        blobs: BlobStore,
        geolocator: Geolocator,
        geocoder: ReverseGeocoder,
        reconciler: RealtimeReconciler,
        device: DeviceState,
        ghost: GhostPolicy,
        geolocation_timeout: float = 10.0,
    ) -> None:
        self._backend = backend
        self._blobs = blobs
        self._geolocator = geolocator
        self._geocoder = geocoder
        self._reconciler = reconciler
        self._device = device
        self._ghost = ghost
        self._timeout = geolocation_timeout
        self._uploading = False
        self._labels: dict[tuple[float, float], str] = {}

    @property
    def is_uploading(self) -> bool:
        return self._uploading

    # ── Voice pulses ─────────────────────────────────────────────────────

    async def submit_voice(
        self,
        clip: CapturedClip,
        category: PulseCategory = PulseCategory.CHAT,
        parent_id: Optional[str] = None,
        position: Optional[GeoPoint] = None,
    ) -> Pulse:
        """Upload a recorded clip and drop it on the map.

        *position* is a fix the caller already holds; without one the
        geolocator is asked.

        Raises:
            ValueError: silent clip or a quick-report category.
            SubmissionInProgress: another submission is still running.
            NetworkFailure: upload or insert failed; nothing was persisted.
        """
        if clip.peak_energy <= 0.0:
            raise ValueError("clip has no audible energy")
        if category.is_quick or category == PulseCategory.GHOST:
            raise ValueError(f"category {category.value!r} cannot be chosen for a voice pulse")

        with self._busy():
            position, ghost = await self._locate_or_ghost(position)
            if ghost:
                category = PulseCategory.GHOST

            name = audio_object_name(utc_now())
            await self._blobs.upload(name, clip.audio, clip.content_type)
            url = self._blobs.public_url(name)

            draft = PulseDraft(
                lat=position.lat,
                lng=position.lng,
                energy_value=clip.peak_energy,
                audio_url=url,
                category=category,
                parent_id=parent_id,
            )
            try:
                pulse = await self._backend.insert(draft)
            except NetworkFailure:
                await self._discard_blob(name)
                raise

            await self._record_own(pulse)
            logger.info("Submitted %s pulse %s", pulse.category.value, pulse.id)
            return pulse

    # ── Quick reports ────────────────────────────────────────────────────

    async def submit_quick_report(
        self,
        category: PulseCategory,
        position: Optional[GeoPoint] = None,
    ) -> Pulse:
        """Drop an audio-less quick report at the device's position.

        Raises:
            ValueError: *category* is not a quick-report category.
            PermissionDenied: no position is available (no ghost fallback).
            NetworkFailure: the insert failed.
        """
        if not category.is_quick:
            raise ValueError(f"{category.value!r} is not a quick-report category")

        with self._busy():
            if position is None:
                try:
                    position = await self._geolocator.current_position(self._timeout, high_accuracy=True)
                except TimeoutError as exc:
                    raise PermissionDenied(f"no position fix: {exc}") from exc

            draft = PulseDraft(
                lat=position.lat,
                lng=position.lng,
                energy_value=1.0,
                category=category,
                is_quick_report=True,
            )
            pulse = await self._backend.insert(draft)
            await self._record_own(pulse)
            logger.info("Submitted quick report %s (%s)", pulse.id, category.value)
            return pulse

    # ── Owner deletion ───────────────────────────────────────────────────

    async def delete_own(self, pulse_id: str) -> None:
        """Delete a pulse this device created.

        Raises:
            OwnershipError: the id is not in this device's own-pulses set.
            NetworkFailure: the remote delete failed; local state is untouched.
        """
        if not await self._device.contains(DeviceSetKey.MY_PULSES, pulse_id):
            raise OwnershipError(f"pulse {pulse_id} was not created on this device")

        pulse = await self._reconciler.store.get(pulse_id)
        await self._backend.delete(pulse_id)
        if pulse is not None and pulse.audio_url:
            await self._discard_blob(self._blobs.name_from_url(pulse.audio_url))
        await self._reconciler.apply(ChangeEvent.delete(pulse_id))
        await self._device.discard(DeviceSetKey.MY_PULSES, pulse_id)
        logger.info("Deleted own pulse %s", pulse_id)

    async def owns(self, pulse_id: str) -> bool:
        return await self._device.contains(DeviceSetKey.MY_PULSES, pulse_id)

    # ── Labels ───────────────────────────────────────────────────────────

    async def describe_location(self, pulse: Pulse) -> str:
        """Street name near a pulse, cached per ~100 m cell."""
        cell = (round(pulse.lat, 3), round(pulse.lng, 3))
        cached = self._labels.get(cell)
        if cached is not None:
            return cached
        try:
            label = await self._geocoder.lookup(pulse.lat, pulse.lng)
        except (NetworkFailure, LookupError) as exc:
            logger.debug("Reverse geocode failed for %s: %s", pulse.id, exc)
            return UNKNOWN_STREET
        self._labels[cell] = label
        return label

    # ── Internals ────────────────────────────────────────────────────────

    async def _locate_or_ghost(self, position: Optional[GeoPoint]) -> tuple[GeoPoint, bool]:
        if position is not None:
            return position, False
        try:
            return await self._geolocator.current_position(self._timeout, high_accuracy=True), False
        except (PermissionDenied, TimeoutError) as exc:
            logger.info("No position fix (%s), submitting as ghost pulse", exc)
            return self._ghost.place(), True

    async def _record_own(self, pulse: Pulse) -> None:
        await self._device.add_if_absent(DeviceSetKey.MY_PULSES, pulse.id)
        await self._reconciler.apply(ChangeEvent.insert(pulse))

    async def _discard_blob(self, name: str) -> None:
        try:
            await self._blobs.delete(name)
        except NetworkFailure as exc:
            logger.warning("Could not delete blob %s: %s", name, exc)

    @contextmanager
    def _busy(self) -> Iterator[None]:
        if self._uploading:
            raise SubmissionInProgress("a pulse is already being uploaded")
        self._uploading = True
        try:
            yield
        finally:
            self._uploading = False
