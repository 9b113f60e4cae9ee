import asyncio
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from dlqueue.config import Settings
from dlqueue.engine import DownloadEngine
from dlqueue.exceptions import DependencyNotFoundError, InfoExtractionError
from dlqueue.history import HistoryManager
from dlqueue.jobs import JobRecord, JobRequest, MediaInfo, PlaylistInfo
from dlqueue.runner import ProgressEvent
from dlqueue.session import SessionStore


class RunnerScript:
    """What a fake yt-dlp run emits for one URL."""
    def __init__(self, progress: Optional[List[float]] = None, events: Optional[List[Tuple[str, str]]] = None,
                 output: str = '', exit_code: int = 0, files: Optional[Dict[Path, bytes]] = None,
                 block: bool = False, raise_error: Optional[BaseException] = None):
        self.progress = progress or []
        self.events = events or []
        self.output = output
        self.exit_code = exit_code
        self.files = files or {}
        self.block = block
        self.raise_error = raise_error


class FakeRunner:
    def __init__(self, factory: 'FakeRunnerFactory'):
        self.factory = factory

    async def run(self, args, cancel_token, on_output=None, on_progress=None, on_event=None) -> int:
        factory = self.factory
        script = factory.scripts.get(args[-1], factory.default)
        factory.calls.append(list(args))
        factory.active += 1
        factory.max_active = max(factory.max_active, factory.active)
        try:
            if script.output and on_output:
                on_output(script.output)
            for event_type, message in script.events:
                if on_event:
                    on_event(event_type, message)
            for percent in script.progress:
                if on_progress:
                    on_progress(ProgressEvent(percent=percent))
                await asyncio.sleep(0)
            if script.block:
                while not factory.gate.is_set() and not cancel_token.is_set():
                    await asyncio.sleep(0.005)
            if script.raise_error is not None:
                raise script.raise_error
            if cancel_token.is_set():
                return -2
            for path, content in script.files.items():
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(content)
            return script.exit_code
        finally:
            factory.active -= 1


class FakeRunnerFactory:
    def __init__(self):
        self.scripts: Dict[str, RunnerScript] = {}
        self.default = RunnerScript()
        self.calls: List[List[str]] = []
        self.active = 0
        self.max_active = 0
        self.gate = asyncio.Event()

    def __call__(self) -> FakeRunner:
        return FakeRunner(self)


class FakeInfoProvider:
    def __init__(self):
        self.media: Dict[str, MediaInfo] = {}
        self.playlists: Dict[str, PlaylistInfo] = {}
        self.media_calls: List[str] = []

    async def get_media_info(self, url, settings) -> MediaInfo:
        self.media_calls.append(url)
        await asyncio.sleep(0)
        if url not in self.media:
            raise InfoExtractionError(f"No metadata for {url}")
        return self.media[url]

    async def get_playlist_info(self, url, settings) -> PlaylistInfo:
        if url not in self.playlists:
            raise InfoExtractionError(f"No playlist at {url}")
        return self.playlists[url]


class FakeDependencies:
    def __init__(self, ffmpeg_path: Optional[Path] = Path('/opt/ffmpeg/bin/ffmpeg')):
        self.ffmpeg_path = ffmpeg_path

    def require_ffmpeg(self) -> Path:
        if self.ffmpeg_path is None:
            raise DependencyNotFoundError("ffmpeg executable not found. Install ffmpeg or set FFMPEG_PATH.")
        return self.ffmpeg_path


class FakeTranscoder:
    def __init__(self, size: int = 42):
        self.size = size
        self.calls: List[Tuple[Path, Path, Optional[str], Optional[str]]] = []

    async def apply_share_watermark(self, input_path, ffmpeg_path, title, author):
        self.calls.append((input_path, ffmpeg_path, title, author))
        return input_path, self.size


class EventLog:
    """Collects engine events by name."""
    def __init__(self, engine: DownloadEngine):
        self.events: Dict[str, List[tuple]] = {name: [] for name in engine.events.NAMES}
        for name in engine.events.NAMES:
            engine.events.on(name, self._recorder(name))

    def _recorder(self, name: str) -> Callable:
        def record(*args):
            self.events[name].append(args)
        return record

    def ids(self, name: str) -> List[str]:
        return [args[0] for args in self.events[name]]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
    """Polls `predicate` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.005)


def make_request(url: str = 'https://example.com/watch?v=1', **fields) -> JobRequest:
    return JobRequest(url=url, **fields)


def make_record(job_id: str, url: str = 'https://example.com/watch?v=1', **fields) -> JobRecord:
    return JobRecord(id=job_id, url=url, **fields)


@pytest.fixture
def settings(tmp_path):
    return Settings(download_path=tmp_path / 'downloads', max_concurrent_downloads=2)


@pytest.fixture
def history(tmp_path):
    return HistoryManager(tmp_path / 'history.json', persist_delay=0.01)


@pytest.fixture
def session_store(tmp_path):
    return SessionStore(tmp_path / 'session.json')


@pytest.fixture
def info_provider():
    return FakeInfoProvider()


@pytest.fixture
def runner_factory():
    return FakeRunnerFactory()


@pytest.fixture
def dependencies():
    return FakeDependencies()


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def engine(settings, history, info_provider, runner_factory, dependencies, transcoder, session_store):
    return DownloadEngine(
        settings=settings,
        history=history,
        info_provider=info_provider,
        runner_factory=runner_factory,
        dependencies=dependencies,
        transcoder=transcoder,
        session_store=session_store,
        log_flush_delay=0.01,
        session_delay=0.01
    )


@pytest.fixture
def event_log(engine):
    return EventLog(engine)
