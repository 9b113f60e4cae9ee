"""
Provides methods to fetch media and playlist metadata from URLs using yt-dlp.
"""

import asyncio
import json
import sys
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .args_builder import build_media_info_args, build_playlist_info_args
from .config import Settings
from .constants import SUBPROCESS_CREATION_FLAGS
from .exceptions import DownloadCancelledError, InfoExtractionError
from .jobs import MediaInfo, PlaylistEntry, PlaylistInfo

MEDIA_INFO_TIMEOUT = 60
PLAYLIST_INFO_TIMEOUT = 120


def estimate_missing_filesizes(info: Dict[str, Any]):
    """Fills `filesize_approx` from bitrate and duration for formats that report no size."""
    duration = info.get('duration')
    formats = info.get('formats')
    if not isinstance(formats, list) or not isinstance(duration, (int, float)) or duration <= 0:
        return
    for fmt in formats:
        if not isinstance(fmt, dict) or fmt.get('filesize') or fmt.get('filesize_approx'):
            continue
        tbr = fmt.get('tbr')
        if isinstance(tbr, (int, float)) and not isinstance(tbr, bool) and tbr > 0:
            fmt['filesize_approx'] = round(tbr * 1000 / 8 * duration)


def resolve_playlist_entry_url(entry: Dict[str, Any]) -> str:
    """Finds a downloadable URL for a flat-playlist entry; bare YouTube ids become watch URLs."""
    url = entry.get('url')
    if isinstance(url, str) and url.startswith('http'):
        return url
    for key in ('webpage_url', 'original_url'):
        value = entry.get(key)
        if isinstance(value, str) and value:
            return value
    if isinstance(url, str) and url:
        ie_key = entry.get('ie_key')
        if isinstance(ie_key, str):
            extractor = ie_key.lower()
            if 'youtubemusic' in extractor:
                return f'https://music.youtube.com/watch?v={url}'
            if 'youtube' in extractor:
                return f'https://www.youtube.com/watch?v={url}'
    entry_id = entry.get('id')
    if isinstance(entry_id, str):
        return entry_id
    return ''


class InfoExtractor:
    """Runs yt-dlp in JSON mode to describe a URL without downloading it."""
    def __init__(self, yt_dlp_path: Optional[Path] = None):
        """
        Initializes the InfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable; may be set later, once located.
        """
        self.yt_dlp_path = yt_dlp_path
        self.logger = logging.getLogger(__name__)

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Args:
            stderr: The standard error string from the yt-dlp process.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    async def _run_command(self, args: List[str], timeout: int) -> Tuple[str, str]:
        """
        Runs yt-dlp with `args` and collects its output.

        Args:
            args: The yt-dlp arguments.
            timeout: The timeout in seconds for the command.

        Returns:
            A tuple of (stdout, stderr) on success.

        Raises:
            InfoExtractionError: On any failure (e.g., timeout, non-zero exit code).
            DownloadCancelledError: If the task is cancelled.
        """
        if self.yt_dlp_path is None:
            raise InfoExtractionError("yt-dlp executable not found.")

        kwargs = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                str(self.yt_dlp_path), *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
            stdout = stdout_bytes.decode('utf-8', 'replace')
            stderr = stderr_bytes.decode('utf-8', 'replace')
        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise InfoExtractionError("yt-dlp executable not found.")
        except asyncio.TimeoutError:
            if process: process.kill()
            self.logger.error(f"yt-dlp info command timed out for '{args[-1]}'")
            raise InfoExtractionError("Metadata command timed out.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise InfoExtractionError(f"OS error: {e}")
        except asyncio.CancelledError:
            if process: process.kill()
            raise DownloadCancelledError("Metadata fetch cancelled.")

        if process.returncode != 0 or not stdout.strip():
            error_msg = self._parse_yt_dlp_error(stderr)
            self.logger.error(f"yt-dlp command failed for '{args[-1]}'. Stderr: {stderr.strip()}")
            raise InfoExtractionError(error_msg)

        return stdout, stderr

    def _parse_json(self, stdout: str, url: str) -> Dict[str, Any]:
        try:
            document = json.loads(stdout)
        except json.JSONDecodeError as e:
            self.logger.error(f"Failed to parse yt-dlp JSON for {url}: {e}")
            raise InfoExtractionError(f"Failed to parse metadata: {e}") from e
        if not isinstance(document, dict):
            raise InfoExtractionError("Unexpected metadata document.")
        return document

    async def get_media_info(self, url: str, settings: Settings) -> MediaInfo:
        """
        Fetches the metadata document for a single media URL.

        Args:
            url: The media URL.
            settings: Current settings (proxy, cookies, config location).

        Returns:
            The parsed metadata, with approximate sizes filled in where missing.

        Raises:
            InfoExtractionError: If the command fails or its output cannot be parsed.
            DownloadCancelledError: If the task is cancelled.
        """
        stdout, _ = await self._run_command(build_media_info_args(url, settings), timeout=MEDIA_INFO_TIMEOUT)
        document = self._parse_json(stdout, url)
        estimate_missing_filesizes(document)
        try:
            info = MediaInfo.model_validate(document)
        except ValidationError as e:
            raise InfoExtractionError(f"Invalid metadata: {e.errors()[0]['msg']}") from e
        self.logger.info(f"Retrieved media info for: {url}")
        return info

    async def get_playlist_info(self, url: str, settings: Settings) -> PlaylistInfo:
        """
        Lists the entries of a playlist or channel URL without resolving each entry.

        Raises:
            InfoExtractionError: If the command fails or its output cannot be parsed.
            DownloadCancelledError: If the task is cancelled.
        """
        stdout, _ = await self._run_command(build_playlist_info_args(url, settings), timeout=PLAYLIST_INFO_TIMEOUT)
        document = self._parse_json(stdout, url)
        raw_entries = document.get('entries')
        if not isinstance(raw_entries, list):
            raw_entries = []

        entries: List[PlaylistEntry] = []
        for position, raw_entry in enumerate(raw_entries):
            if not isinstance(raw_entry, dict):
                continue
            entry_url = resolve_playlist_entry_url(raw_entry)
            if not entry_url:
                continue
            entries.append(PlaylistEntry(
                id=str(raw_entry.get('id') or position),
                title=raw_entry.get('title') or f"Entry {position + 1}",
                url=entry_url,
                index=position + 1
            ))

        self.logger.info(f"Retrieved playlist info for {url}: {len(entries)} entries")
        return PlaylistInfo(
            id=str(document.get('id') or url),
            title=document.get('title') or 'Playlist',
            entries=entries,
            entry_count=len(entries)
        )
