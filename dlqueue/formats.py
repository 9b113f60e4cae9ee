"""
Rendition selection: picks the format a job is expected to download from the metadata's format list.

The pick is best-effort and only drives display fields, the expected output
extension, and whether progress is blended over one or several parts; the
external process makes the authoritative choice.
"""

from typing import Dict, List, Optional

from .jobs import JobRequest, Rendition

QUALITY_PRESET_VIDEO_HEIGHT: Dict[str, Optional[int]] = {
    'auto': None,
    'best': None,
    'good': 1080,
    'normal': 720,
    'bad': 480,
    'worst': 360,
}

QUALITY_PRESET_AUDIO_ABR: Dict[str, Optional[int]] = {
    'auto': None,
    'best': 320,
    'good': 256,
    'normal': 192,
    'bad': 128,
    'worst': 96,
}


def find_format_by_selector(formats: List[Rendition], selector: Optional[str]) -> Optional[Rendition]:
    """Matches the first component of each '/'-separated alternative against format ids."""
    if not selector:
        return None
    candidate_ids = [option.split('+')[0].strip() for option in selector.split('/')]
    for candidate_id in candidate_ids:
        if not candidate_id:
            continue
        for rendition in formats:
            if rendition.format_id == candidate_id:
                return rendition
    return None


def find_format_by_id_candidates(formats: List[Rendition], raw_format_id: Optional[str]) -> Optional[Rendition]:
    """Matches any '+'-joined component of a reported format id (e.g. "137+140")."""
    if not raw_format_id:
        return None
    for part in raw_format_id.split('+'):
        part = part.strip()
        if not part:
            continue
        for rendition in formats:
            if rendition.format_id == part:
                return rendition
    return None


def select_video_format_for_preset(formats: List[Rendition], preset: str) -> Optional[Rendition]:
    if not formats:
        return None
    ordered = sorted(formats, key=lambda f: (f.height or 0, f.fps or 0, f.tbr or 0), reverse=True)
    if preset == 'worst':
        return ordered[-1]
    height_limit = QUALITY_PRESET_VIDEO_HEIGHT.get(preset)
    if not height_limit:
        return ordered[0]
    for rendition in ordered:
        height = rendition.height or 0
        if 0 < height <= height_limit:
            return rendition
    return ordered[0]


def select_audio_format_for_preset(formats: List[Rendition], preset: str) -> Optional[Rendition]:
    if not formats:
        return None
    ordered = sorted(
        formats,
        key=lambda f: (f.tbr or 0, f.filesize or f.filesize_approx or 0),
        reverse=True
    )
    if preset == 'worst':
        return ordered[-1]
    abr_limit = QUALITY_PRESET_AUDIO_ABR.get(preset)
    if not abr_limit:
        return ordered[0]
    for rendition in ordered:
        bitrate = rendition.tbr or 0
        if 0 < bitrate <= abr_limit:
            return rendition
    return ordered[0]


def resolve_selected_format(formats: List[Rendition], request: JobRequest,
                            preset: str = 'auto') -> Optional[Rendition]:
    """
    Picks the rendition a job will most likely download.

    Args:
        formats: Renditions from the metadata document.
        request: The job request; an explicit selector wins when it names a known id.
        preset: One-click quality preset used when the selector names no known id.

    Returns:
        The selected rendition, or None if nothing suitable is available.
    """
    direct_match = find_format_by_selector(formats, request.format)
    if direct_match:
        return direct_match

    if request.type == 'video':
        video_formats = [
            f for f in formats
            if f.video_ext != 'none' and f.vcodec and f.vcodec != 'none'
        ]
        return select_video_format_for_preset(video_formats, preset)

    audio_formats = [
        f for f in formats
        if f.acodec and f.acodec != 'none' and (not f.video_ext or f.video_ext == 'none')
    ]
    return select_audio_format_for_preset(audio_formats, preset)
