"""
Defines the data classes for download jobs, their metadata, and their persisted forms.

`JobRequest` is the immutable description of what to fetch; `JobRecord` is the
mutable, observable state of one submitted job. Both are Pydantic models so the
session snapshot and the history file can round-trip them through JSON.
Runtime-only structures (`QueueEntry`, `ProcessHandle`) are plain dataclasses.
"""

import time
import asyncio
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

MediaKind = Literal['video', 'audio']
JobOrigin = Literal['manual', 'subscription']


def now_ms() -> int:
    """Returns the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class JobStatus(str, Enum):
    """Lifecycle states of a job record."""
    PENDING = 'pending'
    DOWNLOADING = 'downloading'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    ERROR = 'error'
    CANCELLING = 'cancelling'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED})


class JobRequest(BaseModel):
    """
    Immutable description of a single download.

    Attributes:
        url: The source URL.
        type: Media kind, 'video' or 'audio'.
        format: Primary rendition selector (e.g. "137+140" or "bestvideo+bestaudio/best").
        audio_format: Secondary audio selector used when `format` is a bare id.
        audio_format_ids: Extra audio renditions to merge into the output.
        start_time: Optional trim start marker.
        end_time: Optional trim end marker.
        custom_download_path: Destination directory override.
        custom_filename_template: Filename template override.
        tags: Arbitrary user tags.
        origin: 'manual' or 'subscription'.
        subscription_id: Owning subscription, if any.
    """
    model_config = ConfigDict(frozen=True)

    url: str
    type: MediaKind = 'video'
    format: Optional[str] = None
    audio_format: Optional[str] = None
    audio_format_ids: List[str] = Field(default_factory=list)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    custom_download_path: Optional[str] = None
    custom_filename_template: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    origin: JobOrigin = 'manual'
    subscription_id: Optional[str] = None


class JobProgress(BaseModel):
    """Best-effort progress figures as reported by yt-dlp."""
    percent: float = 0.0
    current_speed: str = ''
    eta: str = ''
    downloaded: str = ''
    total: str = ''


class Rendition(BaseModel):
    """A single yt-dlp format entry. The string "none" marks an absent codec."""
    model_config = ConfigDict(extra='ignore')

    format_id: str
    ext: Optional[str] = None
    acodec: Optional[str] = None
    vcodec: Optional[str] = None
    video_ext: Optional[str] = None
    audio_ext: Optional[str] = None
    height: Optional[int] = None
    width: Optional[int] = None
    fps: Optional[float] = None
    tbr: Optional[float] = None
    abr: Optional[float] = None
    filesize: Optional[int] = None
    filesize_approx: Optional[int] = None
    format_note: Optional[str] = None


class MediaInfo(BaseModel):
    """Metadata document returned by the info provider for a single media URL."""
    model_config = ConfigDict(extra='ignore')

    id: Optional[str] = None
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: Optional[float] = None
    description: Optional[str] = None
    uploader: Optional[str] = None
    view_count: Optional[int] = None
    extractor_key: Optional[str] = None
    formats: List[Rendition] = Field(default_factory=list)


class PlaylistEntry(BaseModel):
    id: str
    title: str
    url: str
    index: int


class PlaylistInfo(BaseModel):
    id: str
    title: str
    entries: List[PlaylistEntry] = Field(default_factory=list)
    entry_count: int = 0


class PlaylistRequest(BaseModel):
    """Options for expanding a playlist URL into one job per entry."""
    model_config = ConfigDict(frozen=True)

    url: str
    type: MediaKind = 'video'
    format: Optional[str] = None
    start_index: Optional[int] = None
    end_index: Optional[int] = None
    custom_download_path: Optional[str] = None


class PlaylistJobRef(BaseModel):
    download_id: str
    entry_id: str
    title: str
    url: str
    index: int


class PlaylistDownloadResult(BaseModel):
    group_id: str
    playlist_id: str
    playlist_title: str
    type: MediaKind
    total_count: int
    start_index: int
    end_index: int
    entries: List[PlaylistJobRef] = Field(default_factory=list)


class JobRecord(BaseModel):
    """
    Mutable state of one submitted job.

    The engine mutates a record in place through the queue; observers receive
    copies. Display fields (title, thumbnail, ...) are filled lazily from metadata.
    """
    id: str
    url: str
    type: MediaKind = 'video'
    title: str = ''
    thumbnail: Optional[str] = None
    duration: Optional[float] = None
    uploader: Optional[str] = None
    description: Optional[str] = None
    view_count: Optional[int] = None
    status: JobStatus = JobStatus.PENDING
    progress: JobProgress = Field(default_factory=JobProgress)
    speed: str = ''
    created_at: int = Field(default_factory=now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    selected_format: Optional[Rendition] = None
    saved_file_name: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None
    command: Optional[str] = None
    log: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    origin: JobOrigin = 'manual'
    subscription_id: Optional[str] = None
    playlist_id: Optional[str] = None
    playlist_title: Optional[str] = None
    playlist_index: Optional[int] = None
    playlist_size: Optional[int] = None


class HistoryItem(BaseModel):
    """Denormalized, durable row describing a job, kept after it leaves the queue."""
    id: str
    url: str
    type: MediaKind = 'video'
    title: str = ''
    status: JobStatus = JobStatus.PENDING
    thumbnail: Optional[str] = None
    download_path: Optional[str] = None
    saved_file_name: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    downloaded_at: int = Field(default_factory=now_ms)
    completed_at: Optional[int] = None
    error: Optional[str] = None
    command: Optional[str] = None
    log: Optional[str] = None
    description: Optional[str] = None
    uploader: Optional[str] = None
    view_count: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    origin: Optional[JobOrigin] = None
    subscription_id: Optional[str] = None
    selected_format: Optional[Rendition] = None
    playlist_id: Optional[str] = None
    playlist_title: Optional[str] = None
    playlist_index: Optional[int] = None
    playlist_size: Optional[int] = None


class SessionItem(BaseModel):
    id: str
    request: JobRequest
    record: JobRecord


class SessionPayload(BaseModel):
    version: int
    updated_at: int
    items: List[SessionItem] = Field(default_factory=list)


@dataclass
class QueueEntry:
    """
    Pairs a request with its record while the job is owned by the queue.

    Attributes:
        request: The immutable request. Replaced (never mutated) when the engine
            late-binds the destination directory.
        record: The live record, shared by reference with the engine.
        state: 'queued' while waiting for a slot, 'active' once started.
    """
    request: JobRequest
    record: JobRecord
    state: Literal['queued', 'active'] = 'queued'

    @property
    def id(self) -> str:
        return self.record.id


@dataclass
class ProcessHandle:
    """Runtime-only link between an active job and its running process. Never persisted."""
    job_id: str
    cancel_token: asyncio.Event = field(default_factory=asyncio.Event)
    runner: Optional[Any] = None
