"""Manages the discovery and download of the yt-dlp and FFmpeg executables."""
import os
import sys
import shutil
import asyncio
import time
import urllib.parse
import logging
from pathlib import Path
from typing import Callable, List, Optional

import aiohttp
import aiofiles

from .constants import YT_DLP_URLS, REQUEST_HEADERS, APP_PATH, SUBPROCESS_CREATION_FLAGS
from .exceptions import DependencyNotFoundError, DownloadCancelledError

ProgressCallback = Callable[[float, str], None]


class DependencyManager:
    """Locates yt-dlp and FFmpeg, and can fetch the yt-dlp binary when it is missing."""
    DOWNLOAD_RETRY_ATTEMPTS = 3
    ENV_OVERRIDES = {'yt-dlp': 'YTDLP_PATH', 'ffmpeg': 'FFMPEG_PATH'}

    def __init__(self, install_dir: Path = APP_PATH, progress_callback: Optional[ProgressCallback] = None):
        """
        Initializes the DependencyManager.

        Args:
            install_dir: Directory searched first and used for downloaded binaries.
            progress_callback: Called with (percent, text) while downloading.
        """
        self.install_dir = install_dir
        self.progress_callback = progress_callback
        self.logger = logging.getLogger(__name__)
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None

    async def initialize(self):
        """Asynchronously finds paths to dependencies to avoid blocking the event loop."""
        self.logger.info("Initializing dependency paths...")
        self.yt_dlp_path, self.ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.find_yt_dlp),
            asyncio.to_thread(self.find_ffmpeg)
        )
        self.logger.info(f"yt-dlp path: {self.yt_dlp_path}")
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")

    def find_yt_dlp(self) -> Optional[Path]:
        """Finds the yt-dlp executable."""
        self.yt_dlp_path = self._find_executable('yt-dlp')
        return self.yt_dlp_path

    def find_ffmpeg(self) -> Optional[Path]:
        """Finds the ffmpeg executable."""
        self.ffmpeg_path = self._find_executable('ffmpeg')
        return self.ffmpeg_path

    def require_yt_dlp(self) -> Path:
        if self.yt_dlp_path is None and self.find_yt_dlp() is None:
            raise DependencyNotFoundError("yt-dlp executable not found.")
        return self.yt_dlp_path

    def require_ffmpeg(self) -> Path:
        """
        Returns the ffmpeg path, searching again if it was not found before.

        Raises:
            DependencyNotFoundError: If ffmpeg cannot be located.
        """
        if self.ffmpeg_path is None and self.find_ffmpeg() is None:
            raise DependencyNotFoundError(
                "ffmpeg executable not found. Install ffmpeg or set FFMPEG_PATH."
            )
        return self.ffmpeg_path

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable: environment override, then the install dir, then PATH."""
        env_name = self.ENV_OVERRIDES.get(name)
        override = os.environ.get(env_name, '').strip() if env_name else ''
        if override:
            override_path = Path(override).expanduser()
            if override_path.is_file():
                return override_path
            self.logger.warning(f"{env_name} points to a missing file: {override_path}")

        local_path = self.install_dir / (f'{name}.exe' if sys.platform == 'win32' else name)
        if local_path.exists():
            return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Asynchronously returns the version of an executable by running it with '--version'."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        try:
            command: List[str] = [str(executable_path)]
            if 'ffmpeg' in executable_path.name.lower():
                command.append('-version')
            else:
                command.append('--version')

            kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)

            if process.returncode != 0:
                return "Cannot execute"

            return stdout_bytes.decode('utf-8', 'replace').strip().split('\n')[0]
        except FileNotFoundError:
            return "Not found or no permission"
        except asyncio.TimeoutError:
            return "Version check timed out"
        except OSError:
            return "Cannot execute"

    def _report(self, percent: float, text: str):
        if self.progress_callback:
            self.progress_callback(percent, text)

    async def _download_file(self, session: aiohttp.ClientSession, url: str, save_path: Path):
        """Downloads a file as a single stream, with retries."""
        for attempt in range(self.DOWNLOAD_RETRY_ATTEMPTS):
            try:
                timeout = aiohttp.ClientTimeout(total=None, sock_read=60)
                async with session.get(url, headers=REQUEST_HEADERS, timeout=timeout) as r:
                    r.raise_for_status()
                    total_size = int(r.headers.get('Content-Length', 0))
                    if total_size <= 0:
                        self._report(0, 'Downloading... (size unknown)')

                    bytes_downloaded, start_time = 0, time.monotonic()
                    async with aiofiles.open(save_path, 'wb') as f_out:
                        async for chunk in r.content.iter_chunked(8192):
                            await f_out.write(chunk)
                            bytes_downloaded += len(chunk)
                            if total_size > 0:
                                progress = (bytes_downloaded / total_size) * 100
                                elapsed = time.monotonic() - start_time
                                speed = (bytes_downloaded / elapsed) / 1024 / 1024 if elapsed > 0 else 0
                                self._report(progress, f'Downloading... {bytes_downloaded/1024/1024:.1f}/{total_size/1024/1024:.1f} MB ({speed:.1f} MB/s)')
                return
            except aiohttp.ClientError as e:
                self.logger.error(f"Download error on attempt {attempt + 1}: {e}")
                if attempt < self.DOWNLOAD_RETRY_ATTEMPTS - 1:
                    await asyncio.sleep(2 ** attempt)
                else:
                    raise

    async def install_yt_dlp(self) -> Path:
        """
        Downloads the latest yt-dlp release binary into the install dir.

        Returns:
            The path of the installed executable.

        Raises:
            DependencyNotFoundError: If the platform is unsupported or the download fails.
            DownloadCancelledError: If the task is cancelled.
        """
        platform = sys.platform
        if platform not in YT_DLP_URLS:
            raise DependencyNotFoundError(f"No yt-dlp build for platform: {platform}")

        url = YT_DLP_URLS[platform]
        filename = Path(urllib.parse.unquote(url)).name
        save_path = self.install_dir / ('yt-dlp' if platform == 'darwin' and filename == 'yt-dlp_macos' else filename)
        temp_path = save_path.with_name(f"{save_path.name}.part")

        self.logger.info(f"Downloading yt-dlp from {url}")
        try:
            await asyncio.to_thread(self.install_dir.mkdir, parents=True, exist_ok=True)
            async with aiohttp.ClientSession() as session:
                await self._download_file(session, url, temp_path)
            await asyncio.to_thread(temp_path.replace, save_path)
            if platform in ('linux', 'darwin'):
                await asyncio.to_thread(save_path.chmod, 0o755)
        except asyncio.CancelledError:
            self.logger.info("yt-dlp download cancelled.")
            temp_path.unlink(missing_ok=True)
            raise DownloadCancelledError("yt-dlp download cancelled.")
        except aiohttp.ClientError as e:
            temp_path.unlink(missing_ok=True)
            raise DependencyNotFoundError(f"Network error while downloading yt-dlp: {e}") from e
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise DependencyNotFoundError(f"File error while installing yt-dlp: {e}") from e

        self._report(100, 'Download complete.')
        self.yt_dlp_path = save_path
        self.logger.info(f"yt-dlp installed at {save_path}")
        return save_path
