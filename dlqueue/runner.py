"""Runs a single yt-dlp process and turns its output into progress and log events."""
import asyncio
import codecs
import os
import re
import sys
import signal
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .constants import PROCESS_TERMINATE_TIMEOUT, SUBPROCESS_CREATION_FLAGS

PROGRESS_PREFIX = 'PROGRESS::'
PROGRESS_TEMPLATE = (
    f'download:{PROGRESS_PREFIX}%(progress._percent_str)s::%(progress._speed_str)s::'
    '%(progress._eta_str)s::%(progress._downloaded_bytes_str)s::%(progress._total_bytes_str)s'
)

_EVENT_LINE = re.compile(r'^\[([\w:-]+)\]\s*(.*)$')
_DOWNLOAD_PERCENT = re.compile(r'(\d+(?:\.\d+)?)%')
_DOWNLOAD_TOTAL = re.compile(r'of\s+(~?\s*[\d.,]+\s*[KMGTP]?i?B)', re.IGNORECASE)
_DOWNLOAD_SPEED = re.compile(r'at\s+(\S+/s)')
_DOWNLOAD_ETA = re.compile(r'ETA\s+(\S+)')


@dataclass
class ProgressEvent:
    """One progress report from yt-dlp. Text fields are kept as reported (e.g. "10.5MiB")."""
    percent: float
    speed: str = ''
    eta: str = ''
    downloaded: str = ''
    total: str = ''


OutputCallback = Callable[[str], None]
ProgressCallback = Callable[[ProgressEvent], None]
EventCallback = Callable[[str, str], None]


def _clean_field(value: str) -> str:
    value = value.strip()
    return '' if value in ('NA', 'N/A', 'Unknown') else value


def parse_progress_line(line: str) -> Optional[ProgressEvent]:
    """
    Parses a progress line, either from the custom template or yt-dlp's default output.

    Args:
        line: A single output line without its terminator.

    Returns:
        A ProgressEvent, or None if the line carries no progress.
    """
    if line.startswith(PROGRESS_PREFIX):
        fields = line[len(PROGRESS_PREFIX):].split('::')
        try:
            percent = float(fields[0].strip().rstrip('%'))
        except (IndexError, ValueError):
            return None
        fields += [''] * (5 - len(fields))
        return ProgressEvent(
            percent=percent,
            speed=_clean_field(fields[1]),
            eta=_clean_field(fields[2]),
            downloaded=_clean_field(fields[3]),
            total=_clean_field(fields[4])
        )

    if line.startswith('[download]') and (match := _DOWNLOAD_PERCENT.search(line)):
        try:
            percent = float(match.group(1))
        except ValueError:
            return None
        total = _DOWNLOAD_TOTAL.search(line)
        speed = _DOWNLOAD_SPEED.search(line)
        eta = _DOWNLOAD_ETA.search(line)
        return ProgressEvent(
            percent=percent,
            speed=speed.group(1) if speed else '',
            eta=eta.group(1) if eta else '',
            total=total.group(1).replace(' ', '') if total else ''
        )
    return None


def parse_event_line(line: str) -> Optional[tuple]:
    """Splits "[type] message" lines into (type, message); "ERROR: x" becomes ('error', x)."""
    if line.startswith('ERROR:'):
        return 'error', line[6:].strip()
    match = _EVENT_LINE.match(line)
    if match:
        return match.group(1).lower(), match.group(2)
    return None


class ProcessRunner:
    """Spawns yt-dlp in its own process group and streams its output."""
    def __init__(self, executable: Path):
        """
        Initializes the ProcessRunner.

        Args:
            executable: The path to the yt-dlp executable.
        """
        self.executable = executable
        self.logger = logging.getLogger(__name__)
        self.process: Optional[asyncio.subprocess.Process] = None

    def build_command(self, args: List[str]) -> List[str]:
        return [str(self.executable), '--newline', '--progress-template', PROGRESS_TEMPLATE] + list(args)

    async def run(self, args: List[str], cancel_token: asyncio.Event,
                  on_output: Optional[OutputCallback] = None,
                  on_progress: Optional[ProgressCallback] = None,
                  on_event: Optional[EventCallback] = None) -> int:
        """
        Runs yt-dlp until it exits or `cancel_token` is set.

        Args:
            args: yt-dlp arguments (the executable is prepended).
            cancel_token: Setting this event terminates the process.
            on_output: Receives every output chunk, with line endings normalized to '\\n'.
            on_progress: Receives parsed progress reports.
            on_event: Receives (event_type, message) for "[type] message" and "ERROR:" lines.

        Returns:
            The process exit code.

        Raises:
            FileNotFoundError, OSError: If the process cannot be spawned.
        """
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['preexec_fn'] = os.setsid

        self.process = await asyncio.create_subprocess_exec(
            *self.build_command(args),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs
        )
        process = self.process
        readers = [
            asyncio.create_task(self._read_stream(stream, on_output, on_progress, on_event))
            for stream in (process.stdout, process.stderr) if stream is not None
        ]
        wait_task = asyncio.create_task(process.wait())
        cancel_task = asyncio.create_task(cancel_token.wait())
        try:
            await asyncio.wait({wait_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
            if cancel_token.is_set() and not wait_task.done():
                await self.terminate()
            await asyncio.gather(*readers, return_exceptions=True)
            return await wait_task
        except asyncio.CancelledError:
            await self.terminate()
            raise
        finally:
            cancel_task.cancel()
            for reader in readers:
                reader.cancel()

    async def terminate(self):
        """Interrupts the process group, escalating to kill if it does not exit in time."""
        process = self.process
        if process is None or process.returncode is not None:
            return
        self.logger.info(f"Terminating yt-dlp process (PID: {process.pid})...")
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_C_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=PROCESS_TERMINATE_TIMEOUT)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful shutdown of PID {process.pid} failed: {e}. Forcing termination...")
            try:
                process.kill()
            except (ProcessLookupError, OSError):
                pass  # Already gone

    async def _read_stream(self, stream: asyncio.StreamReader,
                           on_output: Optional[OutputCallback],
                           on_progress: Optional[ProgressCallback],
                           on_event: Optional[EventCallback]):
        decoder = codecs.getincrementaldecoder('utf-8')('replace')
        pending = ''
        while True:
            chunk = await stream.read(4096)
            final = not chunk
            text = decoder.decode(chunk, final=final)
            if text:
                normalized = text.replace('\r\n', '\n').replace('\r', '\n')
                if on_output:
                    on_output(normalized)
                pending += normalized
                *lines, pending = pending.split('\n')
                for line in lines:
                    self._handle_line(line, on_progress, on_event)
            if final:
                if pending:
                    self._handle_line(pending, on_progress, on_event)
                return

    def _handle_line(self, raw_line: str, on_progress: Optional[ProgressCallback],
                     on_event: Optional[EventCallback]):
        line = raw_line.strip()
        if not line:
            return
        self.logger.debug(line)
        progress = parse_progress_line(line)
        if progress is not None:
            if on_progress:
                on_progress(progress)
            return
        event = parse_event_line(line)
        if event is not None and on_event:
            on_event(*event)
