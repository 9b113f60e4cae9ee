"""
Locates the finished artifact of a download.

yt-dlp does not report its final output path in a structured way, so the path
is recovered in layers, each one a fallback for the previous:

1. paths announced in the log ("Destination:", "Merging formats into",
   "Moving file to"), most recently announced first, then the last known path,
   then a fallback built from the title and the expected extension;
2. a scan of the target directory, preferring files whose name matches the
   title, then files carrying the branding marker, then any file with the
   expected extension (most recently modified wins);
3. the largest byte count seen in progress events, as an estimate.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .constants import BRANDING_MARKER
from .jobs import MediaKind
from .paths import build_filename_key, sanitize_title_for_filename

logger = logging.getLogger(__name__)

_DESTINATION_PATTERN = re.compile(r'Destination:\s*(.+)$')
_MERGING_PATTERN = re.compile(r'Merging formats into\s+"(.+?)"')
_MOVING_PATTERN = re.compile(r'Moving file to\s+"(.+?)"')


@dataclass
class ResolvedOutput:
    """
    Result of output resolution.

    Attributes:
        path: The best known path of the artifact (may not exist if `located` is False).
        size: Size in bytes, exact when located, otherwise an estimate or None.
        located: Whether the file was actually found on disk.
    """
    path: Path
    size: Optional[int]
    located: bool


class OutputTracker:
    """Collects output path candidates from yt-dlp log lines while a job runs."""
    def __init__(self, download_dir: Path):
        self.download_dir = Path(download_dir)
        self.last_known_path: Optional[Path] = None
        self.candidates: List[Path] = []

    def capture_path(self, raw_path: Optional[str]):
        if not raw_path:
            return
        trimmed = raw_path.strip().strip('"')
        if not trimmed:
            return
        path = Path(trimmed)
        if not path.is_absolute():
            path = self.download_dir / path
        self.last_known_path = path
        if path not in self.candidates:
            self.candidates.append(path)

    def capture_from_log(self, message: str):
        """Records the path announced by `message`, if any. One pattern per line."""
        for pattern in (_DESTINATION_PATTERN, _MERGING_PATTERN, _MOVING_PATTERN):
            match = pattern.search(message)
            if match:
                self.capture_path(match.group(1))
                return

    def candidate_paths(self, fallback_path: Optional[Path] = None) -> List[Path]:
        """Most recently announced first, then the last known path, then the fallback."""
        ordered: List[Path] = list(reversed(self.candidates))
        for extra in (self.last_known_path, fallback_path):
            if extra is not None and extra not in ordered:
                ordered.append(extra)
        return ordered


def resolve_extension(kind: MediaKind, actual_ext: Optional[str], will_merge: bool) -> str:
    """Expected extension of the artifact: the reported one, else a per-kind default."""
    if kind == 'audio':
        return actual_ext or 'm4a'
    if will_merge:
        return actual_ext or 'mkv'
    return actual_ext or 'mp4'


def build_fallback_path(download_dir: Path, title: Optional[str], extension: str) -> Path:
    sanitized_title = sanitize_title_for_filename(title or 'Unknown')
    return Path(download_dir) / f"{sanitized_title}.{extension}"


def _stat_file(path: Path) -> Optional[os.stat_result]:
    try:
        stats = path.stat()
    except OSError:
        return None
    return stats


def _probe_candidates(candidates: List[Path]) -> Optional[ResolvedOutput]:
    for candidate in candidates:
        stats = _stat_file(candidate)
        if stats is not None:
            return ResolvedOutput(candidate, stats.st_size, True)
    return None


def _scan_directory(directory: Path, title_key: str, extension: str) -> Optional[ResolvedOutput]:
    try:
        names = os.listdir(directory)
    except OSError as e:
        logger.warning(f"Could not list {directory} while resolving output: {e}")
        return None

    normalized_ext = extension.lower()
    with_any_ext = [name for name in names if '.' in name and name.rsplit('.', 1)[1]]
    with_extension = [name for name in with_any_ext if name.rsplit('.', 1)[1].lower() == normalized_ext]

    def matches_title(name: str) -> bool:
        if not title_key:
            return False
        file_key = build_filename_key(name)
        if not file_key:
            return False
        return title_key in file_key or file_key in title_key

    title_matches = [name for name in with_extension if matches_title(name)]
    branded_matches = [name for name in with_extension if BRANDING_MARKER in name.lower()]
    pick_from = title_matches or branded_matches or with_extension or with_any_ext

    best: Optional[ResolvedOutput] = None
    best_mtime = float('-inf')
    for name in pick_from:
        path = directory / name
        stats = _stat_file(path)
        if stats is None or not path.is_file():
            continue
        if stats.st_mtime > best_mtime:
            best_mtime = stats.st_mtime
            best = ResolvedOutput(path, stats.st_size, True)
    return best


async def resolve_output(candidates: List[Path], fallback_path: Optional[Path], directory: Path,
                         title_key: str, extension: str, known_size: Optional[int] = None) -> ResolvedOutput:
    """
    Determines the artifact path and size after a successful download.

    Args:
        candidates: Paths in priority order (see `OutputTracker.candidate_paths`).
        fallback_path: Path reported when nothing is found on disk.
        directory: The job's target directory, scanned when no candidate exists.
        title_key: Normalized title (see `build_filename_key`) used to match files.
        extension: Expected extension of the artifact.
        known_size: Largest byte count observed in progress events.

    Returns:
        The resolved output. Never raises for filesystem problems.
    """
    ordered = list(candidates)
    if fallback_path is not None and fallback_path not in ordered:
        ordered.append(fallback_path)

    found = await asyncio.to_thread(_probe_candidates, ordered)
    if found is None:
        found = await asyncio.to_thread(_scan_directory, Path(directory), title_key, extension)
        if found is not None:
            logger.info(f"Found output file by directory scan: {found.path} ({found.size} bytes)")
    if found is not None:
        if not found.size and known_size is not None:
            logger.info(f"Output file {found.path} reports no size, using estimated size {known_size}")
            found.size = known_size
        return found

    reported_path = ordered[0] if ordered else Path(directory)
    if known_size is not None:
        logger.warning(f"Output file not found, using estimated size {known_size} for {reported_path}")
    else:
        logger.warning(f"Output file not found and no size estimate available: {reported_path}")
    return ResolvedOutput(reported_path, known_size, False)
