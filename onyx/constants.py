"""
Defines application-wide constants and paths.

This module centralizes configuration for paths, URLs, and subprocess behavior,
adapting to whether the application is running from source or as a frozen executable.
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
    # In development, the app path is the project root (parent of 'onyx').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.onyx-dl'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DEFAULT_DOWNLOAD_DIR: Path = Path.home() / 'Downloads'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Downloader ---
YT_DLP_URLS = {
    'win32': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp.exe',
    'linux': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp',
    'darwin': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_macos'
}
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}

DEFAULT_OUTPUT_TEMPLATE = '%(title)s.%(ext)s'
PLAYLIST_OUTPUT_TEMPLATE = 'playlist/%(playlist_title)s/%(title)s.%(ext)s'

# Seconds a child process gets to exit after an interrupt before it is killed.
PROCESS_TERMINATE_GRACE = 10.0
# Number of trailing stderr lines kept as diagnostics for a failed job.
DIAGNOSTIC_LINES = 50

# --- Concurrency ---
DEFAULT_CONCURRENCY = 3
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10

# --- Push-channel server ---
DEFAULT_SERVER_HOST = '127.0.0.1'
DEFAULT_SERVER_PORT = 3000
# Seconds a push-channel client may take to accept one frame before it is dropped.
PUSH_SEND_TIMEOUT = 5.0
