"""
Filesystem naming helpers: directory creation, name sanitation, and destination resolution.

Destinations are late-bound: when a job has no explicit directory, it is filed
under `<download_path>/Videos/<uploader>`, and playlists under
`<download_path>/Playlists/<title>` (or `Channels/<title>` for channel URLs).
"""

import re
import logging
import unicodedata
from pathlib import Path, PurePosixPath
from typing import Optional

from .constants import BRANDING_MARKER, DEFAULT_FILENAME_TEMPLATE
from .jobs import MediaInfo

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r'[\\/:*?"<>|]+')
_UNSAFE_TEMPLATE_CHARS = re.compile(r'[<>:"|?*]')
_TITLE_FALLBACK_CHARS = re.compile(r'[<>:"/\\|?*]')
_TEMPLATE_FIELD = re.compile(r'%\(([^)]+)\)s')
_CHANNEL_URL = re.compile(r'youtube\.com/(channel/|c/|user/|@)')
_FILENAME_KEY_STRIP = re.compile(r'[^a-z0-9\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af]+')
_BRANDING_PATTERN = re.compile(rf'via\s*{re.escape(BRANDING_MARKER)}', re.IGNORECASE)


def ensure_directory_exists(directory) -> None:
    """Creates `directory` (and parents); failures are logged, not raised."""
    if not directory:
        return
    try:
        Path(directory).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to ensure download directory {directory}: {e}")


def sanitize_folder_name(value: str, fallback: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        return fallback
    sanitized = _UNSAFE_NAME_CHARS.sub('-', trimmed)
    sanitized = re.sub(r'\s+', ' ', sanitized)
    sanitized = re.sub(r'[. ]+$', '', sanitized)
    return sanitized or fallback


def sanitize_template_value(value: str) -> str:
    sanitized = _UNSAFE_NAME_CHARS.sub('-', value)
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return re.sub(r'[. ]+$', '', sanitized)


def sanitize_title_for_filename(title: str, max_length: int = 50) -> str:
    """Replaces characters that are invalid in filenames and truncates the result."""
    return _TITLE_FALLBACK_CHARS.sub('_', title)[:max_length]


def sanitize_filename_template(template: str) -> str:
    """
    Normalizes a yt-dlp output template into a safe relative path.

    Empty, '.' and '..' segments are dropped, reserved characters replaced, and an
    empty result falls back to the default template.
    """
    trimmed = template.strip()
    if not trimmed:
        return DEFAULT_FILENAME_TEMPLATE
    safe_parts = []
    for part in trimmed.replace('\\', '/').split('/'):
        part = part.strip()
        if part in ('', '.', '..'):
            continue
        part = re.sub(r'[. ]+$', '', _UNSAFE_TEMPLATE_CHARS.sub('-', part))
        if part:
            safe_parts.append(part)
    return '/'.join(safe_parts) if safe_parts else DEFAULT_FILENAME_TEMPLATE


def is_likely_channel_url(url: str) -> bool:
    normalized = url.lower()
    if 'list=' in normalized:
        return False
    return bool(_CHANNEL_URL.search(normalized))


def resolve_auto_playlist_download_path(base_path, playlist_title: str, url: str) -> Path:
    kind_folder = 'Channels' if is_likely_channel_url(url) else 'Playlists'
    fallback = 'Channel' if kind_folder == 'Channels' else 'Playlist'
    title = sanitize_folder_name(playlist_title or fallback, fallback)
    return Path(base_path) / kind_folder / title


def resolve_auto_video_download_path(base_path, info: Optional[MediaInfo] = None) -> Path:
    """Files a single video under `Videos/<uploader or title>`."""
    root = Path(base_path) / 'Videos'
    if info is None:
        return root
    label = (info.uploader or '').strip() or (info.title or '').strip()
    if not label:
        return root
    return root / sanitize_folder_name(label, 'Video')


def _resolve_template_token(token: str, info: Optional[MediaInfo]) -> Optional[str]:
    if info is None:
        return None
    return {
        'uploader': info.uploader,
        'channel': info.uploader,
        'title': info.title,
        'id': info.id,
        'extractor': info.extractor_key,
    }.get(token)


def resolve_history_download_path(base_path, filename_template: Optional[str] = None,
                                  info: Optional[MediaInfo] = None) -> Path:
    """
    Resolves the directory a filename template will actually write into.

    Template fields are filled from `info` where possible. If the directory part
    still contains unresolved fields, the base path is returned.
    """
    base = Path(base_path)
    if not filename_template or not filename_template.strip():
        return base

    def substitute(match: re.Match) -> str:
        value = _resolve_template_token(match.group(1), info)
        return sanitize_template_value(value) if value else match.group(0)

    resolved = _TEMPLATE_FIELD.sub(substitute, sanitize_filename_template(filename_template))
    template_dir = str(PurePosixPath(resolved).parent)
    if template_dir in ('.', '/'):
        return base
    if _TEMPLATE_FIELD.search(template_dir):
        return base
    return base.joinpath(*PurePosixPath(template_dir).parts)


def build_filename_key(value: Optional[str]) -> str:
    """Normalizes a title or filename for fuzzy matching (NFKC, lowercase, branding removed)."""
    if not value:
        return ''
    normalized = unicodedata.normalize('NFKC', value).lower()
    normalized = _BRANDING_PATTERN.sub('', normalized)
    return _FILENAME_KEY_STRIP.sub('', normalized)
