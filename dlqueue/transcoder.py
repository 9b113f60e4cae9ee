"""
Post-download ffmpeg transforms.

Currently a single transform: the share watermark, a short caption (title,
author, branding) drawn in the bottom-right corner of a video. The result is
encoded to a temporary file and swapped into place, so a failed run never
damages the downloaded file.
"""

import asyncio
import os
import re
import sys
import time
import uuid
import logging
import tempfile
import unicodedata
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from .constants import BRANDING_MARKER, SUBPROCESS_CREATION_FLAGS
from .exceptions import TranscodeError

WATERMARK_TITLE_MAX = 28
WATERMARK_AUTHOR_MAX = 60
WATERMARK_CONTAINERS = ('mp4', 'm4v', 'mov', 'mkv')
FASTSTART_CONTAINERS = ('mp4', 'm4v', 'mov')

_INVISIBLE_CHARS = re.compile(r'[\u200b-\u200f\u2028-\u202f\u2060-\u206f\ufeff\ufffd\ufe00-\ufe0f]')
_CJK_CHARS = re.compile(r'[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af]')
_CYRILLIC_CHARS = re.compile(r'[\u0400-\u04ff]')

_FONT_CANDIDATES: Dict[str, Dict[str, List[str]]] = {
    'darwin': {
        'base': [
            '/System/Library/Fonts/Supplemental/Arial Unicode.ttf',
            '/System/Library/Fonts/Supplemental/Arial.ttf',
            '/System/Library/Fonts/Helvetica.ttc',
        ],
        'cjk': [
            '/System/Library/Fonts/Supplemental/Arial Unicode.ttf',
            '/System/Library/Fonts/PingFang.ttc',
            '/System/Library/Fonts/Hiragino Sans GB.ttc',
            '/System/Library/Fonts/AppleSDGothicNeo.ttc',
        ],
        'cyrillic': ['/System/Library/Fonts/Supplemental/Arial.ttf'],
    },
    'win32': {
        'base': ['C:\\Windows\\Fonts\\segoeui.ttf', 'C:\\Windows\\Fonts\\arial.ttf', 'C:\\Windows\\Fonts\\tahoma.ttf'],
        'cjk': [
            'C:\\Windows\\Fonts\\msyh.ttc',
            'C:\\Windows\\Fonts\\simhei.ttf',
            'C:\\Windows\\Fonts\\meiryo.ttc',
            'C:\\Windows\\Fonts\\malgun.ttf',
        ],
        'cyrillic': ['C:\\Windows\\Fonts\\arial.ttf', 'C:\\Windows\\Fonts\\segoeui.ttf'],
    },
    'linux': {
        'base': [
            '/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf',
            '/usr/share/fonts/truetype/noto/NotoSans-Regular.ttf',
            '/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf',
        ],
        'cjk': [
            '/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc',
            '/usr/share/fonts/truetype/noto/NotoSansCJK-Regular.ttc',
            '/usr/share/fonts/truetype/wqy/wqy-microhei.ttc',
        ],
        'cyrillic': ['/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf'],
    },
}


def normalize_watermark_line(value: Optional[str], fallback: str, max_length: int) -> str:
    """Strips control and invisible characters, collapses whitespace and truncates with '...'."""
    cleaned = ''.join(
        ch for ch in (value or '')
        if unicodedata.category(ch)[0] != 'C' and unicodedata.category(ch) != 'So'
    )
    cleaned = _INVISIBLE_CHARS.sub('', cleaned)
    resolved = ' '.join(cleaned.split()) or fallback
    if len(resolved) <= max_length:
        return resolved
    return f"{resolved[:max(0, max_length - 3)]}..."


def build_share_watermark_text(title: Optional[str], author: Optional[str]) -> str:
    title_line = normalize_watermark_line(title, 'Untitled video', WATERMARK_TITLE_MAX)
    author_line = normalize_watermark_line(f"by {author}" if author else None, 'Unknown author', WATERMARK_AUTHOR_MAX)
    return ' '.join([title_line, author_line, f'Downloaded with {BRANDING_MARKER}'])


def _font_candidates(text: str) -> List[str]:
    platform = sys.platform if sys.platform in _FONT_CANDIDATES else 'linux'
    fonts = _FONT_CANDIDATES[platform]
    if _CJK_CHARS.search(text):
        preferred = fonts['cjk']
    elif _CYRILLIC_CHARS.search(text):
        preferred = fonts['cyrillic']
    else:
        preferred = []
    return list(dict.fromkeys(preferred + fonts['base']))


def _escape_filter_value(value: str) -> str:
    return value.replace('\\', '\\\\').replace(':', '\\:').replace("'", "\\'")


def build_drawtext_filter(text_file: Path, font_file: Optional[str] = None) -> str:
    font_size = 'max(14\\, min(44\\, h*0.024))'
    edge_padding = 'max(8\\, h*0.018)'
    options = [f'textfile={_escape_filter_value(str(text_file))}']
    if font_file:
        options.append(f'fontfile={_escape_filter_value(font_file)}')
    options.extend([
        'fontcolor=white',
        'text_align=right',
        'shadowcolor=black@0.7',
        'shadowx=1',
        'shadowy=1',
        f'fontsize={font_size}',
        f'x=w-tw-{edge_padding}',
        f'y=h-th-{edge_padding}',
    ])
    return 'drawtext=' + ':'.join(options)


def resolve_watermark_output_paths(input_path: Path) -> Tuple[Path, Path]:
    """Returns (final output path, temporary output path) for watermarking `input_path`."""
    ext = input_path.suffix.lstrip('.').lower()
    output_ext = ext if ext in WATERMARK_CONTAINERS else 'mp4'
    output_path = input_path.with_name(f"{input_path.stem}.{output_ext}")
    temp_path = input_path.with_name(f"{input_path.stem}.{BRANDING_MARKER}-watermark.{int(time.time() * 1000)}.{output_ext}")
    return output_path, temp_path


class Transcoder:
    """Runs ffmpeg post-processing on finished downloads."""
    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _resolve_font(self, text: str) -> Optional[str]:
        for candidate in _font_candidates(text):
            if os.path.exists(candidate):
                self.logger.debug(f"Using watermark font: {candidate}")
                return candidate
        self.logger.warning("No suitable watermark font found; ffmpeg will use its default.")
        return None

    async def _run_ffmpeg(self, ffmpeg_path: Path, args: List[str]):
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS
        try:
            process = await asyncio.create_subprocess_exec(
                str(ffmpeg_path), *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
        except OSError as e:
            raise TranscodeError(f"Could not start ffmpeg: {e}") from e
        _, stderr_bytes = await process.communicate()
        if process.returncode != 0:
            stderr = stderr_bytes.decode('utf-8', 'replace').strip()
            raise TranscodeError(f"ffmpeg exited with code {process.returncode}: {stderr[-500:]}")

    @staticmethod
    def _replace_output(output_path: Path, temp_path: Path):
        backup_path: Optional[Path] = None
        if output_path.exists():
            backup_path = output_path.with_name(f"{output_path.name}.{BRANDING_MARKER}-backup-{int(time.time() * 1000)}")
            output_path.rename(backup_path)
        try:
            temp_path.replace(output_path)
        except OSError:
            if backup_path is not None:
                backup_path.replace(output_path)
            raise
        if backup_path is not None:
            backup_path.unlink(missing_ok=True)

    async def apply_share_watermark(self, input_path: Path, ffmpeg_path: Path,
                                    title: Optional[str], author: Optional[str]) -> Tuple[Path, int]:
        """
        Burns the share watermark into a downloaded video.

        Args:
            input_path: The downloaded file.
            ffmpeg_path: The ffmpeg executable.
            title: Video title for the caption.
            author: Uploader for the caption.

        Returns:
            A tuple of (final path, size in bytes). The final path differs from
            `input_path` when the container had to change to mp4.

        Raises:
            TranscodeError: If ffmpeg fails or the swap fails.
        """

        output_path, temp_path = resolve_watermark_output_paths(input_path)
        text = build_share_watermark_text(title, author)
        text_file = Path(tempfile.gettempdir()) / f"{BRANDING_MARKER}-watermark-{uuid.uuid4().hex}.txt"
        output_ready = False
        try:
            async with aiofiles.open(text_file, 'w', encoding='utf-8') as f_out:
                await f_out.write(text)
            font_file = await asyncio.to_thread(self._resolve_font, text)
            args = [
                '-y', '-hide_banner', '-i', str(input_path),
                '-vf', build_drawtext_filter(text_file, font_file),
                '-c:v', 'libx264', '-preset', 'veryfast', '-crf', '23',
                '-c:a', 'aac', '-b:a', '192k',
            ]
            if output_path.suffix.lstrip('.') in FASTSTART_CONTAINERS:
                args.extend(['-movflags', '+faststart'])
            args.append(str(temp_path))

            self.logger.info(f"Applying share watermark to {input_path}")
            await self._run_ffmpeg(ffmpeg_path, args)
            try:
                await asyncio.to_thread(self._replace_output, output_path, temp_path)
            except OSError as e:
                raise TranscodeError(f"Could not replace {output_path}: {e}") from e
            output_ready = True

            if output_path != input_path:
                input_path.unlink(missing_ok=True)
            size = output_path.stat().st_size
            return output_path, size
        finally:
            text_file.unlink(missing_ok=True)
            if not output_ready:
                temp_path.unlink(missing_ok=True)
