"""Builds normalized job signatures used to reject duplicate submissions."""

from typing import Iterable, List, Optional

from .jobs import JobRequest, QueueEntry

SIGNATURE_DELIMITER = '|'


def _normalize(value: Optional[str]) -> str:
    return value.strip() if value else ''


def _normalize_list(values: Optional[List[str]]) -> str:
    cleaned = sorted({value.strip() for value in (values or []) if value.strip()})
    return ','.join(cleaned)


def build_job_signature(request: JobRequest) -> str:
    """
    Produces a fingerprint of the fields that make two requests the same logical job.

    Args:
        request: The job request.

    Returns:
        The '|'-joined normalized key.
    """
    return SIGNATURE_DELIMITER.join([
        _normalize(request.url),
        request.type,
        _normalize(request.format),
        _normalize(request.audio_format),
        _normalize_list(request.audio_format_ids),
        _normalize(request.start_time),
        _normalize(request.end_time),
        _normalize(request.custom_download_path),
        _normalize(request.custom_filename_template),
        _normalize(request.origin or 'manual'),
        _normalize(request.subscription_id),
    ])


def has_duplicate(request: JobRequest, entries: Iterable[QueueEntry]) -> bool:
    """True when any of `entries` carries a request with the same signature."""
    signature = build_job_signature(request)
    return any(build_job_signature(entry.request) == signature for entry in entries)
