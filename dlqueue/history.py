"""
Durable download history backed by a JSON file.

Rows are keyed by job id. `upsert` merges partial updates onto the existing
row, so repeated updates for the same id never lose fields. Writes to disk are
coalesced; `flush()` forces the pending write.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles
from pydantic import ValidationError

from .constants import HISTORY_PERSIST_DELAY
from .jobs import HistoryItem
from .timers import CoalescingTimer


class HistoryManager:
    """In-memory history map mirrored to a JSON file."""
    def __init__(self, history_path: Optional[Path], persist_delay: float = HISTORY_PERSIST_DELAY):
        """
        Initializes the HistoryManager and loads any existing rows.

        Args:
            history_path: Location of the history file; None keeps history in memory only.
            persist_delay: Seconds to coalesce writes over.
        """
        self.history_path = history_path
        self.logger = logging.getLogger(__name__)
        self._items: Dict[str, HistoryItem] = {}
        self._timer = CoalescingTimer(persist_delay, self._write, name='history-persist')
        self._load()

    def _load(self):
        if self.history_path is None or not self.history_path.exists():
            return
        try:
            rows = json.loads(self.history_path.read_text(encoding='utf-8'))
        except (json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Failed to load history from {self.history_path}: {e}")
            return
        if not isinstance(rows, list):
            self.logger.error("History file does not contain a list; ignoring it.")
            return
        for row in rows:
            try:
                item = HistoryItem.model_validate(row)
            except ValidationError as e:
                self.logger.warning(f"Skipping invalid history row: {e.errors()[0]['msg']}")
                continue
            self._items[item.id] = item
        self.logger.info(f"Loaded {len(self._items)} history item(s).")

    def get_by_id(self, item_id: str) -> Optional[HistoryItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    def get_all(self) -> List[HistoryItem]:
        """All rows, newest first."""
        return sorted(
            (item.model_copy(deep=True) for item in self._items.values()),
            key=lambda item: item.completed_at or item.downloaded_at,
            reverse=True
        )

    def upsert(self, item_id: str, fields: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> HistoryItem:
        """
        Merges `fields` into the row for `item_id`, creating it from `defaults` if absent.

        Args:
            item_id: The job id.
            fields: Values to set; None values are ignored so partial updates never erase data.
            defaults: Values used only when the row does not exist yet (must include `url`).

        Returns:
            A copy of the stored row.
        """
        updates = {key: value for key, value in fields.items() if value is not None}
        existing = self._items.get(item_id)
        if existing is not None:
            merged = existing.model_copy(update=updates)
        else:
            merged = HistoryItem.model_validate({**(defaults or {}), **updates, 'id': item_id})
        self._items[item_id] = merged
        self._schedule_save()
        return merged.model_copy(deep=True)

    def remove(self, item_id: str) -> bool:
        removed = self._items.pop(item_id, None) is not None
        if removed:
            self._schedule_save()
        return removed

    def remove_many(self, item_ids: Iterable[str]) -> int:
        count = 0
        for item_id in item_ids:
            if self._items.pop(item_id, None) is not None:
                count += 1
        if count:
            self._schedule_save()
        return count

    def _serialize(self) -> str:
        return json.dumps([item.model_dump(mode='json') for item in self._items.values()], indent=2)

    def _schedule_save(self):
        if self.history_path is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._write_sync()
            return
        self._timer.schedule()

    def _write_sync(self):
        try:
            self.history_path.parent.mkdir(parents=True, exist_ok=True)
            self.history_path.write_text(self._serialize(), encoding='utf-8')
        except OSError as e:
            self.logger.error(f"Error saving history to {self.history_path}: {e}")

    async def _write(self):
        if self.history_path is None:
            return
        temp_path = self.history_path.with_suffix('.tmp')
        try:
            self.history_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f_out:
                await f_out.write(self._serialize())
            temp_path.replace(self.history_path)
        except OSError as e:
            self.logger.error(f"Error saving history to {self.history_path}: {e}")

    async def flush(self):
        if self.history_path is None:
            return
        await self._timer.flush()
