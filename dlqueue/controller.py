"""
Defines the main AppController class, which orchestrates the application's logic.
"""
import asyncio
import uuid
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .config import ConfigManager, Settings
from .constants import HISTORY_FILE, SESSION_FILE
from .dependencies import DependencyManager
from .download_queue import QueueStatus
from .engine import DownloadEngine
from .exceptions import DependencyNotFoundError, DownloadCancelledError, InfoExtractionError
from .history import HistoryManager
from .info import InfoExtractor
from .jobs import JobProgress, JobRecord, JobRequest, PlaylistDownloadResult, PlaylistRequest
from .runner import ProcessRunner
from .session import SessionStore
from .transcoder import Transcoder


class AppController:
    """The central controller for the application's business logic."""

    def __init__(self, config_manager: ConfigManager, config: Settings,
                 history_path: Path = HISTORY_FILE, session_path: Path = SESSION_FILE):
        """
        Initializes the AppController.

        Args:
            config_manager: The manager for handling configuration persistence.
            config: The loaded application settings.
            history_path: Where the download history is stored.
            session_path: Where unfinished downloads are stored between runs.
        """
        self.config_manager = config_manager
        self.config = config
        self.logger = logging.getLogger(__name__)

        # Application State
        self.completed_ids: List[str] = []
        self.failed_ids: List[str] = []
        self._last_logged_percent: Dict[str, int] = {}
        self._idle = asyncio.Event()
        self._idle.set()

        # Backend Managers
        self.dep_manager = DependencyManager(progress_callback=self._on_dependency_progress)
        self.history = HistoryManager(history_path)
        self.info_extractor = InfoExtractor()
        self.engine = DownloadEngine(
            settings=self.config,
            history=self.history,
            info_provider=self.info_extractor,
            runner_factory=lambda: ProcessRunner(self.dep_manager.require_yt_dlp()),
            dependencies=self.dep_manager,
            transcoder=Transcoder(),
            session_store=SessionStore(session_path)
        )
        self.engine.queue.on_change(self._on_queue_change)
        self._subscribe_to_engine()

    def _subscribe_to_engine(self):
        events = self.engine.events
        events.on('queued', self._on_job_queued)
        events.on('started', self._on_job_started)
        events.on('progress', self._on_job_progress)
        events.on('completed', self._on_job_completed)
        events.on('error', self._on_job_error)
        events.on('cancelled', self._on_job_cancelled)

    # --- Engine and manager events ---

    def _on_dependency_progress(self, percent: float, text: str):
        self.logger.info(f"[dependencies] {percent:5.1f}% {text}")

    def _on_queue_change(self, status: QueueStatus):
        if status.active == 0 and status.queued == 0:
            self._idle.set()
        else:
            self._idle.clear()

    def _on_job_queued(self, record: JobRecord):
        self.logger.info(f"Queued {record.id}: {record.url}")

    def _on_job_started(self, job_id: str):
        self.logger.info(f"Started {job_id}")

    def _on_job_progress(self, job_id: str, progress: JobProgress):
        step = int(progress.percent // 10) * 10
        if step > self._last_logged_percent.get(job_id, -1):
            self._last_logged_percent[job_id] = step
            self.logger.info(f"{job_id}: {progress.percent:.1f}% at {progress.current_speed or '?'} (ETA {progress.eta or '?'})")

    def _on_job_completed(self, job_id: str):
        self._last_logged_percent.pop(job_id, None)
        self.completed_ids.append(job_id)
        entry = self.engine.queue.get_entry(job_id)
        saved_as = entry.record.saved_file_name if entry else None
        self.logger.info(f"Completed {job_id}: {saved_as or 'file location unknown'}")

    def _on_job_error(self, job_id: str, message: str):
        self._last_logged_percent.pop(job_id, None)
        self.failed_ids.append(job_id)
        self.logger.error(f"Failed {job_id}: {message}")

    def _on_job_cancelled(self, job_id: str):
        self._last_logged_percent.pop(job_id, None)
        self.logger.info(f"Cancelled {job_id}")

    # --- Startup ---

    async def run_startup_checks(self, install_missing: bool = True, restore_session: bool = True) -> bool:
        """
        Locates dependencies, installs yt-dlp if needed and restores the previous session.

        Args:
            install_missing: Download yt-dlp when it cannot be found.
            restore_session: Re-queue downloads left unfinished by the last run.

        Returns:
            False if yt-dlp is unavailable and downloads cannot run.
        """
        await self.dep_manager.initialize()

        if not self.dep_manager.yt_dlp_path and install_missing:
            self.logger.info("yt-dlp not found. Downloading it...")
            try:
                await self.dep_manager.install_yt_dlp()
            except (DependencyNotFoundError, DownloadCancelledError) as e:
                self.logger.error(f"Could not install yt-dlp: {e}")

        if not self.dep_manager.yt_dlp_path:
            self.logger.critical("yt-dlp is required but was not found.")
            return False
        if not self.dep_manager.ffmpeg_path:
            self.logger.warning("FFmpeg not found. Downloads will fail until it is installed or FFMPEG_PATH is set.")

        self.info_extractor.yt_dlp_path = self.dep_manager.yt_dlp_path
        version = await self.dep_manager.get_version(self.dep_manager.yt_dlp_path)
        self.logger.info(f"Using yt-dlp {version}")

        if restore_session:
            self.engine.restore_active_downloads()
        return True

    # --- Downloads ---

    def start_downloads(self, urls: List[str], request_fields: Optional[Dict[str, Any]] = None) -> List[str]:
        """
        Queues one download per URL.

        Args:
            urls: The URLs to download; blanks are ignored.
            request_fields: Extra `JobRequest` fields shared by every URL.

        Returns:
            The ids of the downloads that were admitted.
        """
        accepted: List[str] = []
        for url in (u.strip() for u in urls):
            if not url:
                continue
            try:
                request = JobRequest(url=url, **(request_fields or {}))
            except ValidationError as e:
                error_details = e.errors()[0]
                self.logger.error(f"Invalid download options for {url}: {error_details['msg']}")
                continue
            job_id = uuid.uuid4().hex
            if self.engine.start_download(job_id, request):
                accepted.append(job_id)
        return accepted

    async def start_playlist(self, url: str, media_type: str = 'video', format_selector: Optional[str] = None,
                             start_index: Optional[int] = None, end_index: Optional[int] = None,
                             custom_download_path: Optional[str] = None) -> Optional[PlaylistDownloadResult]:
        """Expands a playlist URL into downloads; returns None if it could not be listed."""
        try:
            request = PlaylistRequest(
                url=url.strip(),
                type=media_type,
                format=format_selector,
                start_index=start_index,
                end_index=end_index,
                custom_download_path=custom_download_path
            )
            result = await self.engine.start_playlist_download(request)
        except ValidationError as e:
            self.logger.error(f"Invalid playlist options for {url}: {e.errors()[0]['msg']}")
            return None
        except InfoExtractionError as e:
            self.logger.error(f"Could not list playlist {url}: {e}")
            return None
        self.logger.info(
            f"Queued {len(result.entries)} of {result.total_count} entries from '{result.playlist_title}' "
            f"({result.start_index}-{result.end_index})"
        )
        return result

    def cancel(self, job_id: str) -> bool:
        return self.engine.cancel_download(job_id)

    async def wait_until_idle(self):
        """Waits until nothing is queued or running."""
        while True:
            await self._idle.wait()
            await self.engine.drain()
            if self._idle.is_set():
                break
        self.logger.info("--- All queued downloads are complete! ---")

    # --- Settings and shutdown ---

    def save_settings(self, new_settings_data: Dict[str, Any]) -> Tuple[bool, str]:
        """Validates and saves new settings."""
        try:
            new_settings = self.config_manager.merge(self.config, new_settings_data)
        except ValidationError as e:
            error_details = e.errors()[0]
            field, msg = error_details['loc'][0], error_details['msg']
            return False, f"Error in field '{field}': {msg}"
        self.config_manager.save(new_settings)
        self.config = new_settings
        self.engine.update_settings(new_settings)
        return True, "Settings have been saved."

    async def on_app_closing(self):
        """Handles application shutdown logic."""
        self.logger.info("Application closing.")
        await self.engine.shutdown()
        self.config_manager.save(self.config)
