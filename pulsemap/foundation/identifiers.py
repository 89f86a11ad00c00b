"""Identifier generation for pulses and stored audio objects."""

from __future__ import annotations

import random
import string
from datetime import datetime
from uuid import uuid4

_BASE36 = string.digits + string.ascii_lowercase


def new_id() -> str:
    """Generate a new random UUID v4 string (used by in-memory backends)."""
    return str(uuid4())


def audio_object_name(now: datetime, extension: str = "webm") -> str:
    """Blob name for an uploaded clip: ``<epoch-ms>-<7 base36 chars>.<ext>``."""
    epoch_ms = int(now.timestamp() * 1000)
    suffix = "".join(random.choices(_BASE36, k=7))
    return f"{epoch_ms}-{suffix}.{extension}"
