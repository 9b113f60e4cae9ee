"""
Progress estimation and blending for multi-part downloads.

yt-dlp reports one percentage sequence per stream it fetches. When a job merges
several streams (video + audio, or extra audio renditions), the sequence restarts
for every part. The helpers here estimate how many parts a job will report and
blend the restarting sequence into a single overall percentage.

The part-boundary detection is a heuristic: a drop from >= 90% to <= 10% is taken
to mean the next part has started. A stall near 90% followed by a genuine retry
from near 0% is indistinguishable from a boundary, so the blended value is an
approximation for user feedback only.
"""

import math
import re
from typing import Optional

from .jobs import JobRequest, Rendition

PART_END_THRESHOLD = 90.0
PART_START_THRESHOLD = 10.0

_SIZE_PATTERN = re.compile(r'^([\d.,]+)\s*([KMGTP]?i?B)$', re.IGNORECASE)
_SIZE_MULTIPLIERS = {
    'B': 1,
    'KB': 1_000,
    'KIB': 1_024,
    'MB': 1_000_000,
    'MIB': 1_048_576,
    'GB': 1_000_000_000,
    'GIB': 1_073_741_824,
    'TB': 1_000_000_000_000,
    'TIB': 1_099_511_627_776,
}


def clamp_percent(value) -> float:
    """Coerces a reported percentage into [0, 100]; non-numeric and NaN become 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if math.isnan(value):
        return 0.0
    return min(100.0, max(0.0, float(value)))


def is_muxed_format(rendition: Optional[Rendition]) -> bool:
    """True when a single rendition already carries both video and audio."""
    if rendition is None:
        return False
    has_video = bool(rendition.vcodec) and rendition.vcodec != 'none'
    has_audio = bool(rendition.acodec) and rendition.acodec != 'none'
    return has_video and has_audio


def estimate_progress_parts(request: JobRequest) -> int:
    """
    Estimates how many independent progress streams yt-dlp will report for a job.

    Args:
        request: The job request.

    Returns:
        1 for audio jobs, 1 + the number of extra audio renditions when any are
        requested, otherwise the number of '+'-joined components in the first
        alternative of the format selector (2 when there is no usable selector).
    """
    if request.type == 'audio':
        return 1

    audio_format_count = len([fid for fid in request.audio_format_ids if fid.strip()])
    if audio_format_count > 0:
        return 1 + audio_format_count

    selector = (request.format or '').strip()
    if not selector:
        return 2

    primary = selector.split('/')[0].strip()
    if not primary:
        return 2

    parts = [part.strip() for part in primary.split('+') if part.strip()]
    if len(parts) <= 1:
        return 1
    if 'none' in parts:
        return 1
    return len(parts)


class ProgressBlender:
    """
    Folds a restarting per-part percentage sequence into one overall percentage.

    Attributes:
        total_parts: Number of parts the job is expected to report.
        completed_parts: Parts considered finished so far.
        last_percent: The previous (clamped) reported percentage.
    """
    def __init__(self, total_parts: int):
        self.total_parts = max(1, total_parts)
        self.completed_parts = 0
        self.last_percent = 0.0

    def update(self, percent) -> float:
        """
        Feeds one reported percentage and returns the blended overall percentage.

        Args:
            percent: The raw percentage from yt-dlp; clamped before use.

        Returns:
            The blended percentage in [0, 100].
        """
        normalized = clamp_percent(percent)
        if (
            self.total_parts > 1 and
            self.last_percent >= PART_END_THRESHOLD and
            normalized <= PART_START_THRESHOLD and
            self.completed_parts < self.total_parts - 1
        ):
            self.completed_parts += 1
        self.last_percent = normalized

        if self.total_parts > 1:
            blended = ((self.completed_parts + normalized / 100) / self.total_parts) * 100
        else:
            blended = normalized
        return min(100.0, blended)


def parse_size_to_bytes(value: Optional[str]) -> Optional[int]:
    """
    Parses a yt-dlp size string such as "~10.50MiB" or "1,024 KB" into bytes.

    Returns:
        The size in bytes, or None when the string is empty or unparsable ("N/A").
    """
    if not value:
        return None
    cleaned = re.sub(r'^~\s*', '', value.strip())
    if not cleaned:
        return None

    match = _SIZE_PATTERN.match(cleaned)
    if not match:
        return None

    try:
        amount = float(match.group(1).replace(',', ''))
    except ValueError:
        return None

    multiplier = _SIZE_MULTIPLIERS.get(match.group(2).upper())
    if not multiplier:
        return None
    return round(amount * multiplier)
