"""
Bounded-concurrency FIFO of download jobs.

The queue owns every `QueueEntry` for its lifetime and is the only component
that moves entries between the queued and active sets. It knows nothing about
processes: the engine subscribes to `on_start` to run a promoted entry and calls
`completed()` when the job's process has finished.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from .dedup import has_duplicate
from .jobs import JobRecord, JobRequest, JobStatus, QueueEntry

StartCallback = Callable[[QueueEntry], None]
ChangeCallback = Callable[['QueueStatus'], None]


class SubmitResult(Enum):
    ACCEPTED = 'accepted'
    ALREADY_QUEUED = 'already_queued'
    DUPLICATE = 'duplicate'

    def __bool__(self) -> bool:
        return self is SubmitResult.ACCEPTED


@dataclass
class QueueStatus:
    queued: int
    active: int
    max_concurrent: int
    active_ids: List[str] = field(default_factory=list)


class DownloadQueue:
    """Tracks queued and active download entries under a concurrency limit."""
    def __init__(self, max_concurrent: int = 4):
        """
        Initializes the DownloadQueue.

        Args:
            max_concurrent: Maximum number of entries allowed to be active at once.
        """
        self.logger = logging.getLogger(__name__)
        self.max_concurrent = max(1, max_concurrent)
        self._queued: Deque[QueueEntry] = deque()
        self._active: Dict[str, QueueEntry] = {}
        self._start_callbacks: List[StartCallback] = []
        self._change_callbacks: List[ChangeCallback] = []

    # --- Subscriptions ---

    def on_start(self, callback: StartCallback):
        """Registers a callback invoked synchronously whenever an entry becomes active."""
        self._start_callbacks.append(callback)

    def on_change(self, callback: ChangeCallback):
        """Registers a callback invoked after any membership or record change."""
        self._change_callbacks.append(callback)

    # --- Lifecycle ---

    def submit(self, request: JobRequest, record: JobRecord) -> SubmitResult:
        """
        Admits a new job.

        Returns:
            ACCEPTED if the job was queued (and possibly started right away),
            ALREADY_QUEUED if its id is known, DUPLICATE if a queued or active
            entry has the same signature.
        """
        if self.contains(record.id):
            return SubmitResult.ALREADY_QUEUED
        if has_duplicate(request, self._all_entries()):
            return SubmitResult.DUPLICATE

        self._queued.append(QueueEntry(request=request, record=record))
        self._notify_change()
        self._process_queue()
        return SubmitResult.ACCEPTED

    def remove(self, job_id: str) -> bool:
        """Removes an entry in any state. Returns whether anything was removed."""
        for entry in self._queued:
            if entry.id == job_id:
                self._queued.remove(entry)
                self._notify_change()
                return True

        if self._active.pop(job_id, None) is not None:
            self._notify_change()
            self._process_queue()
            return True
        return False

    def completed(self, job_id: str):
        """Releases the slot held by `job_id` and promotes waiting entries."""
        if self._active.pop(job_id, None) is None:
            self.logger.debug(f"completed() for {job_id}, which is no longer active.")
        self._notify_change()
        self._process_queue()

    def set_concurrency(self, max_concurrent: int):
        """Updates the limit; an increase promotes queued entries immediately, in FIFO order."""
        self.max_concurrent = max(1, max_concurrent)
        self.logger.info(f"Max concurrent downloads set to {self.max_concurrent}.")
        self._notify_change()
        self._process_queue()

    def update_record(self, job_id: str, updates: Dict[str, Any]) -> bool:
        """
        Merges `updates` into the record of `job_id` in place.

        Returns:
            False if the id is not queued or active.
        """
        entry = self.get_entry(job_id)
        if entry is None:
            return False
        for key, value in updates.items():
            setattr(entry.record, key, value)
        self._notify_change()
        return True

    # --- Accessors ---

    def contains(self, job_id: str) -> bool:
        return self.get_entry(job_id) is not None

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def get_entry(self, job_id: str) -> Optional[QueueEntry]:
        """Returns the live entry (not a copy) for `job_id`, or None."""
        entry = self._active.get(job_id)
        if entry is not None:
            return entry
        for queued in self._queued:
            if queued.id == job_id:
                return queued
        return None

    def get_active_entries(self) -> List[QueueEntry]:
        return [self._copy_entry(entry) for entry in self._active.values()]

    def get_queued_entries(self) -> List[QueueEntry]:
        return [self._copy_entry(entry) for entry in self._queued]

    def get_status(self) -> QueueStatus:
        return QueueStatus(
            queued=len(self._queued),
            active=len(self._active),
            max_concurrent=self.max_concurrent,
            active_ids=list(self._active.keys())
        )

    def status_counts(self) -> Dict[str, int]:
        """Counts queued and active records by their record status."""
        counts: Dict[str, int] = {}
        for entry in self._all_entries():
            status = JobStatus(entry.record.status).value
            counts[status] = counts.get(status, 0) + 1
        return counts

    # --- Internals ---

    def _all_entries(self) -> List[QueueEntry]:
        return list(self._active.values()) + list(self._queued)

    @staticmethod
    def _copy_entry(entry: QueueEntry) -> QueueEntry:
        return QueueEntry(request=entry.request, record=entry.record.model_copy(deep=True), state=entry.state)

    def _process_queue(self):
        while len(self._active) < self.max_concurrent and self._queued:
            entry = self._queued.popleft()
            entry.state = 'active'
            self._active[entry.id] = entry
            self.logger.debug(f"Promoted {entry.id} to active ({len(self._active)}/{self.max_concurrent}).")
            for callback in list(self._start_callbacks):
                try:
                    callback(entry)
                except Exception:
                    self.logger.exception(f"Start callback failed for {entry.id}")
            self._notify_change()

    def _notify_change(self):
        if not self._change_callbacks:
            return
        status = self.get_status()
        for callback in list(self._change_callbacks):
            try:
                callback(status)
            except Exception:
                self.logger.exception("Queue change callback failed")
