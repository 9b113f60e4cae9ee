"""
Defines application-wide constants, paths, and utility functions.

This module centralizes configuration for paths, URLs, timers, and subprocess
behavior, adapting to whether the application is running from source or as a
frozen executable.
"""

import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'dlqueue').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.dlqueue'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
SESSION_FILE: Path = USER_DATA_DIR / 'download-session.json'
HISTORY_FILE: Path = USER_DATA_DIR / 'history.json'
DEFAULT_DOWNLOAD_DIR: Path = Path.home() / 'Downloads' / 'dlqueue'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Engine Timers (seconds) ---
LOG_FLUSH_DELAY = 0.5
SESSION_PERSIST_DELAY = 1.0
HISTORY_PERSIST_DELAY = 1.0
PROCESS_TERMINATE_TIMEOUT = 10

# --- Naming ---
BRANDING_MARKER = 'dlqueue'
DEFAULT_FILENAME_TEMPLATE = f'%(title)s via {BRANDING_MARKER}.%(ext)s'
PLACEHOLDER_TITLE = 'Downloading...'
SESSION_VERSION = 1

# --- External Tools ---
YT_DLP_URLS = {
    'win32': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp.exe',
    'linux': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp',
    'darwin': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_macos'
}
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}
YOUTUBE_HOST_SUFFIXES = ('youtube.com', 'youtu.be', 'youtube-nocookie.com')
YOUTUBE_SAFE_PLAYER_CLIENTS = 'default,-web,-web_safari'
