"""
Audio duration probe.

Reads the length of an audio input with moviepy (ffmpeg underneath). Works on
public URLs and on local asset references. Never raises: any failure,
including a slow probe hitting PROBE_TIMEOUT, degrades to None.
"""

import os
import asyncio
import logging
from typing import Optional

from .storage import is_public_url, resolve_local_path

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = float(os.getenv("AUDIO_PROBE_TIMEOUT", "20"))

# Provider limit on driving audio length
MAX_AUDIO_SECONDS = 35.0


def _read_duration(source: str) -> Optional[float]:
    # Lazy import to avoid crashing if ffmpeg is not installed
    from moviepy import AudioFileClip

    clip = AudioFileClip(source)
    try:
        return float(clip.duration) if clip.duration else None
    finally:
        clip.close()


async def probe_duration(audio_ref: str, timeout: float = PROBE_TIMEOUT) -> Optional[float]:
    """Best-effort audio length in seconds, or None when it cannot be determined."""
    source = audio_ref if is_public_url(audio_ref) else str(resolve_local_path(audio_ref))
    try:
        duration = await asyncio.wait_for(asyncio.to_thread(_read_duration, source), timeout)
    except Exception as e:
        logger.warning(f"Audio duration probe failed for {audio_ref}: {e}")
        return None

    if duration is not None:
        duration = round(duration, 2)
    logger.info(f"Audio duration for {audio_ref}: {duration}s")
    return duration


def is_duration_allowed(duration: Optional[float], limit: float = MAX_AUDIO_SECONDS) -> bool:
    """Unknown durations are let through; the provider has the final say."""
    return duration is None or duration <= limit
