"""
Persists the queued and active jobs so unfinished work survives a restart.

The session file is a versioned JSON document:
`{"version": 1, "updated_at": <ms>, "items": [{"id", "request", "record"}, ...]}`.
A missing or unreadable file is treated as an empty session; write failures are
logged and never propagated.
"""

import json
import logging
from pathlib import Path
from typing import List

import aiofiles
from pydantic import ValidationError

from .constants import SESSION_PERSIST_DELAY, SESSION_VERSION
from .download_queue import DownloadQueue, QueueStatus
from .jobs import SessionItem, SessionPayload, now_ms
from .timers import CoalescingTimer


class SessionStore:
    """Reads and writes the session file."""
    def __init__(self, session_path: Path):
        """
        Initializes the SessionStore.

        Args:
            session_path: Location of the session JSON file.
        """
        self.session_path = session_path
        self.logger = logging.getLogger(__name__)

    def load(self) -> List[SessionItem]:
        """
        Loads the saved session.

        Returns:
            The valid session items; an empty list if there is no usable session.
        """
        if not self.session_path.exists():
            return []
        try:
            payload = json.loads(self.session_path.read_text(encoding='utf-8'))
        except (json.JSONDecodeError, OSError) as e:
            self.logger.warning(f"Failed to load download session from {self.session_path}: {e}")
            return []

        if not isinstance(payload, dict) or payload.get('version') != SESSION_VERSION:
            self.logger.warning("Ignoring download session with an unknown format or version.")
            return []
        raw_items = payload.get('items')
        if not isinstance(raw_items, list):
            return []

        items: List[SessionItem] = []
        for raw_item in raw_items:
            try:
                items.append(SessionItem.model_validate(raw_item))
            except ValidationError as e:
                self.logger.warning(f"Skipping invalid session item: {e.errors()[0]['msg']}")
        return items

    async def save(self, items: List[SessionItem]):
        """Writes `items` to disk; an empty list removes the session file."""
        if not items:
            try:
                self.session_path.unlink(missing_ok=True)
            except OSError as e:
                self.logger.warning(f"Failed to clear download session: {e}")
            return

        payload = SessionPayload(version=SESSION_VERSION, updated_at=now_ms(), items=items)
        temp_path = self.session_path.with_suffix('.tmp')
        try:
            self.session_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f_out:
                await f_out.write(payload.model_dump_json())
            temp_path.replace(self.session_path)
        except OSError as e:
            self.logger.warning(f"Failed to save download session: {e}")


class SessionSnapshotter:
    """Writes a debounced snapshot of the queue whenever it changes."""
    def __init__(self, queue: DownloadQueue, store: SessionStore, delay: float = SESSION_PERSIST_DELAY):
        self.queue = queue
        self.store = store
        self.logger = logging.getLogger(__name__)
        self.timer = CoalescingTimer(delay, self.persist, name='session-persist')
        self.closed = False
        queue.on_change(self._on_queue_change)

    def _on_queue_change(self, _status: QueueStatus):
        self.schedule()

    def schedule(self):
        if not self.closed:
            self.timer.schedule()

    def close(self):
        """Stops reacting to queue changes; the file keeps the last flushed snapshot."""
        self.closed = True
        self.timer.cancel()

    def snapshot(self) -> List[SessionItem]:
        """Builds session items for every active and queued entry, active first."""
        entries = self.queue.get_active_entries() + self.queue.get_queued_entries()
        return [
            SessionItem(id=entry.id, request=entry.request, record=entry.record)
            for entry in entries
        ]

    async def persist(self):
        await self.store.save(self.snapshot())

    async def flush(self):
        await self.timer.flush()
