"""
The download engine: admits jobs, runs them through yt-dlp and reconciles their history.

Jobs enter through `start_download` (or `start_playlist_download`) and are held
by a `DownloadQueue`. Whenever the queue promotes an entry, the engine runs it as
a background task: it consumes prefetched metadata, late-binds the destination,
builds the command line, spawns the process and folds its output into the
job's record. Observers subscribe to `engine.events`.

Cancellation is a record state: `cancel_download` marks the record
`cancelling`, and every step of a running job checks that state after each
await, so a cancelled job is never spawned, finalized or recorded as an error.
"""

import asyncio
import re
import secrets
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .args_builder import build_download_args, format_command, resolve_ffmpeg_location, resolve_video_format_selector
from .config import Settings
from .constants import BRANDING_MARKER, LOG_FLUSH_DELAY, PLACEHOLDER_TITLE, SESSION_PERSIST_DELAY
from .download_queue import DownloadQueue, QueueStatus
from .exceptions import DependencyNotFoundError, DownloadCancelledError, InfoExtractionError, TranscodeError
from .formats import find_format_by_id_candidates, resolve_selected_format
from .history import HistoryManager
from .jobs import (
    JobProgress, JobRecord, JobRequest, JobStatus, MediaInfo, PlaylistDownloadResult,
    PlaylistJobRef, PlaylistRequest, ProcessHandle, QueueEntry, Rendition, now_ms
)
from .output_resolver import OutputTracker, build_fallback_path, resolve_extension, resolve_output
from .paths import (
    build_filename_key, ensure_directory_exists, resolve_auto_playlist_download_path,
    resolve_auto_video_download_path, resolve_history_download_path, sanitize_template_value
)
from .progress import ProgressBlender, estimate_progress_parts, is_muxed_format, parse_size_to_bytes
from .runner import ProgressEvent
from .session import SessionSnapshotter, SessionStore
from .timers import CoalescingTimer

_INFO_FORMATS = re.compile(r'format\(s\):\s*([0-9A-Za-z+_-]+)')
_DOWNLOAD_FORMAT = re.compile(r'format\s*([0-9A-Za-z+-]+)')

# Record fields mirrored into the history row by `update_download_info`.
HISTORY_FIELDS = frozenset({
    'title', 'thumbnail', 'duration', 'file_size', 'description', 'uploader', 'view_count',
    'tags', 'playlist_id', 'playlist_title', 'playlist_index', 'playlist_size', 'selected_format',
    'status', 'completed_at', 'error', 'command', 'log', 'saved_file_name',
})

EngineCallback = Callable[..., None]


class EngineEvents:
    """
    Callback registry for engine notifications.

    Events and their arguments:
        queued(record), started(job_id), progress(job_id, JobProgress),
        log(job_id, log_text), updated(job_id, updates), completed(job_id),
        error(job_id, message), cancelled(job_id).
    """
    NAMES = ('queued', 'started', 'progress', 'log', 'updated', 'completed', 'error', 'cancelled')

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._callbacks: Dict[str, List[EngineCallback]] = {name: [] for name in self.NAMES}

    def on(self, name: str, callback: EngineCallback):
        if name not in self._callbacks:
            raise ValueError(f"Unknown engine event: {name}")
        self._callbacks[name].append(callback)

    def emit(self, name: str, *args: Any):
        for callback in list(self._callbacks[name]):
            try:
                callback(*args)
            except Exception:
                self.logger.exception(f"Error in '{name}' event callback")


class JobRun:
    """Per-execution state of one active job: log buffer, progress blending and output tracking."""
    def __init__(self, engine: 'DownloadEngine', entry: QueueEntry, download_dir: Path,
                 total_parts: int, formats: List[Rendition], selected: Optional[Rendition]):
        self.engine = engine
        self.entry = entry
        self.job_id = entry.id
        self.formats = formats
        self.selected = selected
        self.actual_ext: Optional[str] = selected.ext if selected else None
        self.blender = ProgressBlender(total_parts)
        self.tracker = OutputTracker(download_dir)
        self.latest_known_size: Optional[int] = None
        self.log = ''
        self._flushed_log = ''
        self.log_timer = CoalescingTimer(engine.log_flush_delay, self.flush_log, name=f'log-{self.job_id}')

    def on_output(self, text: str):
        if not text:
            return
        self.log += text
        self.log_timer.schedule()

    def flush_log(self):
        self.log_timer.cancel()
        if self.log == self._flushed_log:
            return
        self._flushed_log = self.log
        self.engine.update_download_info(self.job_id, {'log': self.log})
        self.engine.events.emit('log', self.job_id, self.log)

    def on_progress(self, event: ProgressEvent):
        total_bytes = parse_size_to_bytes(event.total)
        if total_bytes is not None:
            self.latest_known_size = total_bytes
        downloaded_bytes = parse_size_to_bytes(event.downloaded)
        if downloaded_bytes is not None:
            self.latest_known_size = max(self.latest_known_size or 0, downloaded_bytes)

        progress = JobProgress(
            percent=self.blender.update(event.percent),
            current_speed=event.speed,
            eta=event.eta,
            downloaded=event.downloaded,
            total=event.total
        )
        if self.engine.queue.update_record(self.job_id, {'progress': progress, 'speed': event.speed}):
            self.engine.events.emit('progress', self.job_id, progress)

    def on_event(self, event_type: str, message: str):
        lowered = message.lower()
        if event_type == 'postprocess' or 'merging formats' in lowered or 'post-process' in lowered:
            if self.entry.record.status != JobStatus.PROCESSING:
                self.engine.update_download_info(self.job_id, {'status': JobStatus.PROCESSING})

        if event_type == 'info' and (match := _INFO_FORMATS.search(message)):
            self.apply_selected_format(match.group(1))
        elif event_type == 'download' and 'format' in lowered and (match := _DOWNLOAD_FORMAT.search(message)):
            self.apply_selected_format(match.group(1))

        self.tracker.capture_from_log(message)

    def apply_selected_format(self, raw_format_id: str) -> bool:
        candidate = find_format_by_id_candidates(self.formats, raw_format_id)
        if candidate is None:
            return False
        if self.selected is not None and self.selected.format_id == candidate.format_id:
            return True
        self.selected = candidate
        self.actual_ext = candidate.ext or self.actual_ext
        self.engine.update_download_info(self.job_id, {'selected_format': candidate})
        return True


class DownloadEngine:
    """Runs download jobs under a concurrency limit and keeps queue, history and session consistent."""
    def __init__(self, settings: Settings, history: HistoryManager, info_provider: Any,
                 runner_factory: Callable[[], Any], dependencies: Any, transcoder: Any = None,
                 session_store: Optional[SessionStore] = None,
                 log_flush_delay: float = LOG_FLUSH_DELAY, session_delay: float = SESSION_PERSIST_DELAY):
        """
        Initializes the DownloadEngine.

        Args:
            settings: Current application settings.
            history: The durable history store.
            info_provider: Object with `get_media_info(url, settings)` and
                `get_playlist_info(url, settings)` coroutines.
            runner_factory: Returns a new runner with a `run(args, cancel_token,
                on_output, on_progress, on_event)` coroutine for each job.
            dependencies: Object with `require_ffmpeg()`.
            transcoder: Object with an `apply_share_watermark(path, ffmpeg_path, title, author)` coroutine.
            session_store: Where unfinished jobs are persisted; None disables the session.
            log_flush_delay: Seconds to coalesce log updates over.
            session_delay: Seconds to coalesce session writes over.
        """
        self.settings = settings
        self.history = history
        self.info_provider = info_provider
        self.runner_factory = runner_factory
        self.dependencies = dependencies
        self.transcoder = transcoder
        self.session_store = session_store
        self.log_flush_delay = log_flush_delay
        self.logger = logging.getLogger(__name__)
        self.events = EngineEvents()

        self.queue = DownloadQueue(settings.max_concurrent_downloads)
        self.queue.on_start(self._on_queue_start)
        self.snapshotter = SessionSnapshotter(self.queue, session_store, session_delay) if session_store else None

        self._handles: Dict[str, ProcessHandle] = {}
        self._job_tasks: Set[asyncio.Task] = set()
        self._prefetch_tasks: Dict[str, asyncio.Task] = {}
        self._prefetched_info: Dict[str, MediaInfo] = {}
        self._session_restored = False
        self._shutting_down = False

    # --- Background tasks ---

    def _task_done_callback(self, task_set: set) -> Callable:
        """Creates a callback to remove a task from a set and log exceptions."""
        def callback(task: asyncio.Task):
            task_set.discard(task)
            try:
                task.result()
            except asyncio.CancelledError:
                pass  # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback

    def _on_queue_start(self, entry: QueueEntry):
        if self._shutting_down:
            return
        handle = ProcessHandle(entry.id)
        self._handles[entry.id] = handle
        task = asyncio.create_task(self._execute(entry, handle), name=f'download-{entry.id}')
        self._job_tasks.add(task)
        task.add_done_callback(self._task_done_callback(self._job_tasks))

    # --- Admission ---

    def start_download(self, job_id: str, request: JobRequest) -> bool:
        """
        Admits a new job.

        Args:
            job_id: Caller-chosen unique id.
            request: What to download.

        Returns:
            False if the id is already queued or an equivalent job is queued or active.
        """
        created_at = now_ms()
        record = JobRecord(
            id=job_id,
            url=request.url,
            type=request.type,
            title=PLACEHOLDER_TITLE,
            status=JobStatus.PENDING,
            created_at=created_at,
            tags=list(request.tags),
            origin=request.origin,
            subscription_id=request.subscription_id
        )
        result = self.queue.submit(request, record)
        if not result:
            self.logger.warning(f"Download {job_id} not admitted ({result.value}): {request.url}")
            return False

        target_path = (request.custom_download_path or '').strip() or str(self.settings.download_path)
        history_path = resolve_history_download_path(target_path, request.custom_filename_template)
        ensure_directory_exists(target_path)
        ensure_directory_exists(history_path)

        self._upsert_history(job_id, request, {
            'title': record.title,
            'status': JobStatus.PENDING,
            'downloaded_at': created_at,
            'download_path': str(history_path),
            'tags': list(request.tags),
            'origin': request.origin,
            'subscription_id': request.subscription_id,
        })
        self.events.emit('queued', record.model_copy(deep=True))
        self._schedule_prefetch(job_id, request.url)
        return True

    def _schedule_prefetch(self, job_id: str, url: str):
        url = url.strip()
        if not url or job_id in self._prefetch_tasks or job_id in self._prefetched_info:
            return
        task = asyncio.create_task(self._prefetch(job_id, url), name=f'prefetch-{job_id}')
        self._prefetch_tasks[job_id] = task

        def forget(finished: asyncio.Task):
            if self._prefetch_tasks.get(job_id) is finished:
                del self._prefetch_tasks[job_id]
            if not finished.cancelled() and finished.exception() is not None:
                self.logger.error(f"Prefetch for {job_id} failed", exc_info=finished.exception())
        task.add_done_callback(forget)

    async def _prefetch(self, job_id: str, url: str) -> Optional[MediaInfo]:
        info = await self._fetch_media_info(job_id, url)
        if info is None or not self.queue.contains(job_id):
            return None
        self._prefetched_info[job_id] = info
        self.update_download_info(job_id, self._display_fields(info))
        return info

    async def _fetch_media_info(self, job_id: str, url: str) -> Optional[MediaInfo]:
        try:
            return await self.info_provider.get_media_info(url, self.settings)
        except (InfoExtractionError, DownloadCancelledError) as e:
            self.logger.warning(f"Failed to fetch media info for {job_id}: {e}")
        except Exception:
            self.logger.exception(f"Unexpected error fetching media info for {job_id}")
        return None

    async def _consume_prefetch(self, job_id: str, url: str) -> Optional[MediaInfo]:
        info = self._prefetched_info.pop(job_id, None)
        if info is not None:
            return info
        task = self._prefetch_tasks.get(job_id)
        if task is not None:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
            info = self._prefetched_info.pop(job_id, None)
            if info is not None:
                return info
        return await self._fetch_media_info(job_id, url)

    @staticmethod
    def _display_fields(info: MediaInfo) -> Dict[str, Any]:
        return {
            'title': info.title,
            'thumbnail': info.thumbnail,
            'duration': info.duration,
            'description': info.description,
            'uploader': info.uploader,
            'view_count': info.view_count,
        }

    # --- Execution ---

    def _is_interrupted(self, entry: QueueEntry) -> bool:
        return self._shutting_down or entry.record.status in (JobStatus.CANCELLING, JobStatus.CANCELLED)

    def _fail(self, entry: QueueEntry, request: JobRequest, message: str):
        self.update_download_info(entry.id, {
            'status': JobStatus.ERROR,
            'completed_at': now_ms(),
            'error': message,
        })
        self.events.emit('error', entry.id, message)
        self._add_to_history(entry.id, request, JobStatus.ERROR, message)

    async def _execute(self, entry: QueueEntry, handle: ProcessHandle):
        """Runs one promoted entry to completion; always releases its queue slot."""
        job_id = entry.id
        try:
            await self._run_job(entry, handle)
        except Exception as e:
            self.logger.exception(f"Unexpected error during download for {job_id}")
            if not self._is_interrupted(entry):
                self._fail(entry, entry.request, f"Unexpected error: {e}")
        finally:
            if entry.record.status == JobStatus.CANCELLING:
                entry.record.status = JobStatus.CANCELLED
            if self._handles.get(job_id) is handle:
                del self._handles[job_id]
            self.queue.completed(job_id)

    async def _run_job(self, entry: QueueEntry, handle: ProcessHandle):
        job_id = entry.id
        request = entry.request
        settings = self.settings
        self.logger.info(f"Starting download execution for {job_id}: {request.url}")

        info = await self._consume_prefetch(job_id, request.url)
        if self._is_interrupted(entry):
            return

        formats: List[Rendition] = info.formats if info else []
        selected = resolve_selected_format(formats, request, settings.one_click_quality) if info else None
        total_parts = estimate_progress_parts(request)
        if request.type == 'video' and not request.audio_format_ids and is_muxed_format(selected):
            total_parts = 1
        if info is not None:
            self.update_download_info(job_id, {**self._display_fields(info), 'selected_format': selected})

        explicit_path = (request.custom_download_path or '').strip()
        download_dir = Path(explicit_path) if explicit_path else resolve_auto_video_download_path(settings.download_path, info)
        # Bound to a local copy so the queued request (and its signature) never changes.
        request = request.model_copy(update={'custom_download_path': str(download_dir)})
        history_dir = resolve_history_download_path(download_dir, request.custom_filename_template, info)
        await asyncio.to_thread(ensure_directory_exists, download_dir)
        await asyncio.to_thread(ensure_directory_exists, history_dir)
        if self._is_interrupted(entry):
            return
        self._upsert_history(job_id, request, {'download_path': str(history_dir)})

        args = build_download_args(request, download_dir, settings)
        url_arg = args.pop() if args else None
        if not url_arg:
            self.logger.error(f"Missing URL argument for download {job_id}")
            self._fail(entry, request, "Download arguments missing URL.")
            return

        try:
            ffmpeg_path = self.dependencies.require_ffmpeg()
            runner = self.runner_factory()
        except DependencyNotFoundError as e:
            self.logger.error(f"Cannot start download {job_id}: {e}")
            self._fail(entry, request, str(e))
            return
        args.extend(['--ffmpeg-location', resolve_ffmpeg_location(ffmpeg_path), url_arg])

        command = format_command(args)
        self.update_download_info(job_id, {'command': command})
        self.logger.info(f"yt-dlp command for {job_id}: {command}")

        if self._is_interrupted(entry):
            return

        run = JobRun(self, entry, download_dir, total_parts, formats, selected)
        handle.runner = runner
        self.update_download_info(job_id, {'status': JobStatus.DOWNLOADING, 'started_at': now_ms()})
        self.events.emit('started', job_id)

        try:
            exit_code = await runner.run(args, handle.cancel_token, run.on_output, run.on_progress, run.on_event)
        except OSError as e:
            run.flush_log()
            if self._is_interrupted(entry):
                return
            self.logger.error(f"Download process error for {job_id}: {e}")
            self._fail(entry, request, str(e))
            return
        run.flush_log()

        if self._shutting_down:
            self.logger.info(f"Download {job_id} interrupted by shutdown; it stays in the session.")
            return
        if self._is_interrupted(entry):
            self.logger.info(f"Download {job_id} stopped after cancellation.")
            return

        if exit_code != 0:
            message = f"Download exited with code {exit_code}"
            self.logger.error(f"Download failed for {job_id}: {message}")
            self._fail(entry, request, message)
            return

        await self._finalize(entry, request, run, download_dir, info, ffmpeg_path)

    async def _finalize(self, entry: QueueEntry, request: JobRequest, run: JobRun,
                        download_dir: Path, info: Optional[MediaInfo], ffmpeg_path: Path):
        job_id = entry.id
        title = (info.title if info else None) or entry.record.title
        will_merge = request.type == 'video' and '+' in resolve_video_format_selector(request)
        extension = resolve_extension(request.type, run.actual_ext, will_merge)
        fallback_path = build_fallback_path(download_dir, info.title if info else None, extension)

        resolved = await resolve_output(
            run.tracker.candidate_paths(fallback_path),
            fallback_path,
            download_dir,
            build_filename_key(title),
            extension,
            run.latest_known_size
        )
        self.logger.info(f"Resolved output for {job_id}: {resolved.path} (located: {resolved.located}, will merge: {will_merge})")
        final_path, final_size = resolved.path, resolved.size

        if self.settings.share_watermark and request.type == 'video' and self.transcoder is not None:
            if resolved.located:
                self.update_download_info(job_id, {'status': JobStatus.PROCESSING})
                author = (info.uploader if info else None) or entry.record.uploader
                try:
                    final_path, final_size = await self.transcoder.apply_share_watermark(
                        resolved.path, ffmpeg_path, title, author
                    )
                except TranscodeError as e:
                    self.logger.warning(f"Failed to apply share watermark for {job_id}: {e}")
            else:
                self.logger.warning(f"Watermark skipped because the file was not found: {resolved.path}")

        if self._is_interrupted(entry):
            return

        self.update_download_info(job_id, {
            'status': JobStatus.COMPLETED,
            'completed_at': now_ms(),
            'file_size': final_size,
            'saved_file_name': final_path.name,
        })
        self.logger.info(f"Download completed successfully for {job_id}")
        self.events.emit('completed', job_id)
        self._add_to_history(job_id, request, JobStatus.COMPLETED)

    # --- Control ---

    def cancel_download(self, job_id: str) -> bool:
        """
        Cancels a queued or active job.

        The record is marked `cancelling`, its process (if any) is signalled, and
        the job is removed from the queue and from history. Its execution task
        later marks it `cancelled` without recording an error.

        Returns:
            Whether the job was found and removed.
        """
        self.logger.info(f"Cancelling download {job_id}")
        entry = self.queue.get_entry(job_id)
        if entry is None:
            return False

        handle = self._handles.get(job_id)
        entry.record.status = JobStatus.CANCELLING if handle is not None else JobStatus.CANCELLED
        if handle is not None:
            handle.cancel_token.set()

        removed = self.queue.remove(job_id)
        self.history.remove(job_id)
        self._prefetch_tasks.pop(job_id, None)
        self._prefetched_info.pop(job_id, None)
        self.events.emit('cancelled', job_id)
        return removed

    def update_max_concurrent(self, max_concurrent: int):
        self.queue.set_concurrency(max_concurrent)

    def update_settings(self, settings: Settings):
        self.settings = settings
        self.update_max_concurrent(settings.max_concurrent_downloads)

    def get_queue_status(self) -> QueueStatus:
        return self.queue.get_status()

    def get_active_downloads(self) -> List[JobRecord]:
        """Copies of all queued and active records, newest first."""
        records: Dict[str, JobRecord] = {}
        for entry in self.queue.get_active_entries() + self.queue.get_queued_entries():
            records[entry.id] = entry.record
        return sorted(records.values(), key=lambda record: record.created_at, reverse=True)

    def update_download_info(self, job_id: str, updates: Dict[str, Any]):
        """Merges `updates` into a queued or active record, mirrors history fields and notifies observers."""
        if not self.queue.update_record(job_id, updates):
            return
        entry = self.queue.get_entry(job_id)
        history_updates = {key: value for key, value in updates.items() if key in HISTORY_FIELDS}
        if history_updates:
            self._upsert_history(job_id, entry.request, history_updates)
        if updates:
            self.events.emit('updated', job_id, dict(updates))

    # --- Session ---

    def restore_active_downloads(self) -> int:
        """
        Re-admits jobs from the saved session. Runs at most once.

        Returns:
            The number of jobs restored.
        """
        if self._session_restored:
            return 0
        self._session_restored = True
        if self.session_store is None:
            return 0

        restored = 0
        for item in self.session_store.load():
            if not (item.id and item.request.url and item.request.type):
                continue
            if self.queue.contains(item.id):
                continue
            history_item = self.history.get_by_id(item.id)
            if history_item is not None and JobStatus(history_item.status).is_terminal:
                self.logger.debug(f"Skipping restore of {item.id}; history says {history_item.status}.")
                continue

            record = item.record.model_copy(update={
                'id': item.id,
                'url': item.request.url,
                'type': item.request.type,
                'status': JobStatus.PENDING,
                'completed_at': None,
            })
            if not self.queue.submit(item.request, record):
                continue
            self._upsert_history(item.id, item.request, {
                'title': record.title or (history_item.title if history_item else None) or f"Download {item.id}",
                'status': JobStatus.PENDING,
                'downloaded_at': history_item.downloaded_at if history_item else record.created_at,
            })
            self.events.emit('queued', record.model_copy(deep=True))
            restored += 1

        if restored:
            self.logger.info(f"Restored {restored} download(s) from the previous session.")
        if self.snapshotter is not None:
            self.snapshotter.schedule()
        return restored

    async def flush_download_session(self):
        if self.snapshotter is not None:
            await self.snapshotter.flush()

    # --- Playlists ---

    async def start_playlist_download(self, playlist_request: PlaylistRequest) -> PlaylistDownloadResult:
        """
        Expands a playlist URL into one job per entry in the requested 1-based range.

        Raises:
            InfoExtractionError: If the playlist cannot be listed.
        """
        playlist = await self.info_provider.get_playlist_info(playlist_request.url, self.settings)
        group_id = f"playlist_group_{now_ms()}_{secrets.token_hex(3)}"

        total_entries = len(playlist.entries)
        if total_entries == 0:
            self.logger.warning(f"Playlist has no entries: {playlist_request.url}")
            return PlaylistDownloadResult(
                group_id=group_id, playlist_id=playlist.id, playlist_title=playlist.title,
                type=playlist_request.type, total_count=0, start_index=0, end_index=0
            )

        requested_start = max((playlist_request.start_index or 1) - 1, 0)
        requested_end = (
            min(playlist_request.end_index - 1, total_entries - 1)
            if playlist_request.end_index else total_entries - 1
        )
        range_start = min(requested_start, requested_end)
        range_end = max(requested_start, requested_end)
        selected = [entry for entry in playlist.entries[range_start:range_end + 1] if entry.url]

        download_path = (playlist_request.custom_download_path or '').strip() or str(
            resolve_auto_playlist_download_path(self.settings.download_path, playlist.title, playlist_request.url)
        )
        await asyncio.to_thread(ensure_directory_exists, download_path)

        title_keys = [sanitize_template_value(entry.title or '').lower() for entry in selected]
        has_duplicate_titles = len(set(title_keys)) != len(title_keys)
        index_width = len(str(max(entry.index for entry in selected))) if has_duplicate_titles and selected else 0

        self.logger.info(f"Starting playlist download: {len(selected)} items from '{playlist.title}'")
        refs: List[PlaylistJobRef] = []
        for entry in selected:
            download_id = f"{group_id}_{secrets.token_hex(4)}"
            filename_template = (
                f"{entry.index:0{index_width}d} - %(title)s via {BRANDING_MARKER}.%(ext)s"
                if has_duplicate_titles else None
            )
            request = JobRequest(
                url=entry.url,
                type=playlist_request.type,
                format=playlist_request.format,
                audio_format=playlist_request.format if playlist_request.type == 'audio' else None,
                custom_download_path=download_path,
                custom_filename_template=filename_template
            )
            record = JobRecord(
                id=download_id,
                url=entry.url,
                type=playlist_request.type,
                title=entry.title,
                playlist_id=group_id,
                playlist_title=playlist.title,
                playlist_index=entry.index,
                playlist_size=len(selected)
            )
            result = self.queue.submit(request, record)
            if not result:
                self.logger.warning(f"Skipping playlist entry {entry.index} ({result.value}): {entry.url}")
                continue

            refs.append(PlaylistJobRef(
                download_id=download_id, entry_id=entry.id, title=entry.title, url=entry.url, index=entry.index
            ))
            self.events.emit('queued', record.model_copy(deep=True))
            self._upsert_history(download_id, request, {
                'title': entry.title,
                'status': JobStatus.PENDING,
                'downloaded_at': record.created_at,
                'download_path': download_path,
                'playlist_id': group_id,
                'playlist_title': playlist.title,
                'playlist_index': entry.index,
                'playlist_size': len(selected),
            })

        return PlaylistDownloadResult(
            group_id=group_id,
            playlist_id=playlist.id,
            playlist_title=playlist.title,
            type=playlist_request.type,
            total_count=len(selected),
            start_index=selected[0].index if selected else range_start + 1,
            end_index=selected[-1].index if selected else range_end + 1,
            entries=refs
        )

    # --- History reconciliation ---

    def _upsert_history(self, job_id: str, request: JobRequest, updates: Dict[str, Any]):
        """Merges `updates` onto the history row, creating it from the request if needed."""
        if not self.queue.contains(job_id):
            self.logger.debug(f"Skipping history update for {job_id}: no longer queued")
            return
        existing = self.history.get_by_id(job_id)
        download_path = (
            updates.get('download_path')
            or (existing.download_path if existing else None)
            or request.custom_download_path
        )
        defaults = {
            'url': request.url,
            'type': request.type,
            'title': updates.get('title') or f"Download {job_id}",
            'tags': list(request.tags),
            'origin': request.origin,
            'subscription_id': request.subscription_id,
        }
        self.history.upsert(job_id, {**updates, 'download_path': download_path}, defaults)

    def _add_to_history(self, job_id: str, request: JobRequest, status: JobStatus, error: Optional[str] = None):
        """Writes the terminal state of a job, copying display fields from its record."""
        fields: Dict[str, Any] = {'status': status, 'completed_at': now_ms(), 'error': error}
        entry = self.queue.get_entry(job_id)
        if entry is not None:
            record = entry.record
            fields.update({
                'title': record.title or f"Download {job_id}",
                'thumbnail': record.thumbnail,
                'duration': record.duration,
                'file_size': record.file_size,
                'saved_file_name': record.saved_file_name,
                'description': record.description,
                'uploader': record.uploader,
                'view_count': record.view_count,
                'tags': record.tags,
                'origin': record.origin,
                'subscription_id': record.subscription_id,
                'selected_format': record.selected_format,
                'playlist_id': record.playlist_id,
                'playlist_title': record.playlist_title,
                'playlist_index': record.playlist_index,
                'playlist_size': record.playlist_size,
            })
        self._upsert_history(job_id, request, fields)

    # --- Teardown ---

    async def drain(self):
        """Waits until every job task has finished, including tasks promoted while waiting."""
        while self._job_tasks:
            await asyncio.gather(*list(self._job_tasks), return_exceptions=True)

    async def shutdown(self):
        """
        Stops the engine: saves the session, stops running processes and flushes history.

        Jobs still queued or running stay in the session file and are restored on the
        next start.
        """
        self.logger.info("Shutting down download engine...")
        if self.snapshotter is not None:
            await self.snapshotter.flush()
            self.snapshotter.close()
        self._shutting_down = True

        for handle in list(self._handles.values()):
            handle.cancel_token.set()
        for task in list(self._prefetch_tasks.values()):
            task.cancel()
        pending = list(self._job_tasks) + list(self._prefetch_tasks.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.history.flush()
        self.logger.info("Download engine stopped.")
