"""
Builds yt-dlp command lines for downloads and metadata queries.

The engine treats `build_download_args` as opaque except for one contract: the
URL is always the final positional argument, so the engine can pop it, append
`--ffmpeg-location`, and push it back.
"""

import shlex
import sys
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from .config import Settings
from .constants import DEFAULT_FILENAME_TEMPLATE, YOUTUBE_HOST_SUFFIXES, YOUTUBE_SAFE_PLAYER_CLIENTS
from .jobs import JobRequest
from .paths import sanitize_filename_template


def _trim(value: Optional[str]) -> str:
    return value.strip() if value else ''


def _hostname(url: str) -> str:
    try:
        return (urlparse(url).hostname or '').lower()
    except ValueError:
        return ''


def is_youtube_url(url: str) -> bool:
    host = _hostname(url)
    return any(host == suffix or host.endswith(f'.{suffix}') for suffix in YOUTUBE_HOST_SUFFIXES)


def is_bilibili_url(url: str) -> bool:
    host = _hostname(url)
    return 'bilibili.com' in host or 'b23.tv' in host or 'bili.tv' in host


def resolve_path_with_home(raw_path: Optional[str]) -> Optional[str]:
    trimmed = _trim(raw_path)
    if not trimmed:
        return None
    if trimmed == '~' or trimmed.startswith('~/') or trimmed.startswith('~\\'):
        return str(Path(trimmed).expanduser())
    return trimmed


def append_youtube_safe_extractor_args(args: List[str], url: str):
    if is_youtube_url(url):
        args.extend(['--extractor-args', f'youtube:player_client={YOUTUBE_SAFE_PLAYER_CLIENTS}'])


def _append_network_args(args: List[str], url: str, settings: Settings):
    proxy = _trim(settings.proxy)
    if proxy:
        args.extend(['--proxy', proxy])
    browser = _trim(settings.browser_for_cookies)
    if browser and browser != 'none':
        args.extend(['--cookies-from-browser', browser])
    cookies_path = _trim(settings.cookies_path)
    if cookies_path:
        args.extend(['--cookies', cookies_path])
    config_path = resolve_path_with_home(settings.config_path)
    if config_path:
        args.extend(['--config-location', config_path])
    else:
        append_youtube_safe_extractor_args(args, url)


def resolve_video_format_selector(request: JobRequest) -> str:
    """
    Turns a request's format fields into a yt-dlp video selector.

    Complex selectors (containing '/', '+' or '[') are passed through; bare ids
    are combined with the audio selector or the extra audio rendition ids.
    """
    fmt = request.format
    audio_format = request.audio_format
    audio_format_ids = [fid for fid in request.audio_format_ids if fid.strip()]

    if fmt and audio_format == '':
        return fmt
    if fmt and any(token in fmt for token in ('/', '+', '[')):
        return fmt
    if audio_format_ids:
        base_video = fmt if fmt and fmt != 'best' else 'bestvideo*'
        return '+'.join([base_video] + audio_format_ids)

    if not fmt or fmt == 'best':
        if audio_format == 'none':
            return 'bestvideo+none'
        if not audio_format or audio_format == 'best':
            return 'bestvideo+bestaudio/best'
        return f'bestvideo+{audio_format}'

    if audio_format == 'none':
        return f'{fmt}+none'
    if not audio_format or audio_format == 'best':
        return f'{fmt}+bestaudio/best'
    return f'{fmt}+{audio_format}'


def resolve_audio_format_selector(request: JobRequest) -> str:
    return request.format or 'bestaudio'


def build_download_args(request: JobRequest, download_path: Path, settings: Settings,
                        runtime_args: Optional[List[str]] = None) -> List[str]:
    """
    Builds the argument list (without the executable) for downloading one job.

    Args:
        request: The job request.
        download_path: The resolved destination directory.
        settings: Current application settings.
        runtime_args: Extra arguments supplied by the runtime (e.g. JS runtime flags).

    Returns:
        The argument list, ending with the URL.
    """
    args: List[str] = ['--no-playlist', '--no-mtime', '--encoding', 'utf-8']

    if request.type == 'video':
        selector = resolve_video_format_selector(request)
        args.extend(['-f', selector])
        if request.audio_format_ids or 'mergeall' in selector:
            args.append('--audio-multistreams')
    else:
        args.extend(['-f', resolve_audio_format_selector(request)])

    if request.start_time or request.end_time:
        start = request.start_time or '0'
        end = request.end_time or ''
        args.extend(['--download-sections', f'*{start}-{end}'])

    has_subtitle_auth = (
        (_trim(settings.browser_for_cookies) not in ('', 'none')) or bool(_trim(settings.cookies_path))
    )
    if not is_bilibili_url(request.url) or has_subtitle_auth:
        if settings.embed_subs:
            args.extend(['--sub-langs', 'all'])
        else:
            args.append('--write-subs')
        args.append('--embed-subs' if settings.embed_subs else '--no-embed-subs')
    else:
        args.append('--no-embed-subs')

    args.append('--embed-thumbnail' if settings.embed_thumbnail else '--no-embed-thumbnail')
    args.append('--embed-metadata' if settings.embed_metadata else '--no-embed-metadata')
    args.append('--embed-chapters' if settings.embed_chapters else '--no-embed-chapters')

    base_path = _trim(request.custom_download_path) or str(download_path)
    template = sanitize_filename_template(
        request.custom_filename_template or settings.filename_template or DEFAULT_FILENAME_TEMPLATE
    )
    args.extend(['-o', str(Path(base_path) / template.lstrip('/\\'))])
    args.extend(['--continue', '--no-playlist-reverse'])
    if sys.platform == 'win32':
        args.append('--windows-filenames')

    _append_network_args(args, request.url, settings)
    if runtime_args:
        args.extend(runtime_args)

    args.append(request.url)
    return args


def build_media_info_args(url: str, settings: Settings) -> List[str]:
    args = ['-j', '--no-playlist', '--no-warnings', '--encoding', 'utf-8']
    _append_network_args(args, url, settings)
    args.append(url)
    return args


def build_playlist_info_args(url: str, settings: Settings) -> List[str]:
    args = ['-J', '--flat-playlist', '--no-warnings', '--encoding', 'utf-8']
    _append_network_args(args, url, settings)
    args.append(url)
    return args


def resolve_ffmpeg_location(ffmpeg_path: Path) -> str:
    """Directory passed to --ffmpeg-location so yt-dlp also finds ffprobe next to ffmpeg."""
    return str(Path(ffmpeg_path).parent)


def format_command(args: List[str], executable: str = 'yt-dlp') -> str:
    """Renders a copy-pasteable command string for diagnostics."""
    return shlex.join([executable] + list(args))
