"""
Configures the application's logging setup.

This module sets up a root logger that directs messages to a rotating file
log and, when running interactively, to the console.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path

from .constants import LOG_DIR

LATEST_LOG_NAME = 'latest.log'


def _prune_archives(log_dir: Path, keep_archives: int):
    """Deletes the oldest archived logs beyond `keep_archives`."""
    archives = sorted(p for p in log_dir.glob('*.log') if p.name != LATEST_LOG_NAME)
    for stale in archives[:max(0, len(archives) - keep_archives)]:
        try:
            stale.unlink()
        except OSError as e:
            print(f"Error removing old log file {stale}: {e}", file=sys.stderr)


def setup_logging(file_log_level_str: str = 'INFO', console: bool = True,
                  log_dir: Path = LOG_DIR, keep_archives: int = 10):
    """
    Configures the root logger for file and console logging.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on application startup.

    Args:
        file_log_level_str: The minimum logging level for the file handler (e.g., 'INFO').
        console: Whether to also log INFO and above to stderr.
        log_dir: Directory holding `latest.log` and its archives.
        keep_archives: How many timestamped archives survive a rotation.
    """
    # 1. Ensure Log Directory Exists
    log_dir.mkdir(parents=True, exist_ok=True)

    # 2. Rotate the previous run's log
    latest_log_path = log_dir / LATEST_LOG_NAME
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')
            latest_log_path.rename(log_dir / f"{timestamp_str}.log")
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)
    _prune_archives(log_dir, keep_archives)

    # 3. Configure Root Logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # 4. File Handler
    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)
    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'
    ))
    root_logger.addHandler(file_handler)

    # 5. Console Handler
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter('%(levelname)-8s %(message)s'))
        root_logger.addHandler(console_handler)

    # Subprocess and HTTP chatter stays out of the console
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('aiohttp').setLevel(logging.WARNING)

    logging.info("--- Logging initialized ---")
    logging.debug(f"File log level set to: {logging.getLevelName(file_log_level)}")
