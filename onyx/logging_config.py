"""
Configures logging: a rotated `latest.log` file plus a Rich console handler.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .constants import LOG_DIR

FILE_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-22s - %(message)s'
# Loggers that are chatty at INFO and only interesting when something breaks.
QUIET_LOGGERS = ('aiohttp.access', 'asyncio')


def archive_latest_log(log_dir: Path) -> Optional[Path]:
    """
    Renames `latest.log` after the time it was last written to.

    Returns:
        The archived path, or None if there was nothing to archive.
    """
    latest = log_dir / 'latest.log'
    if not latest.exists():
        return None
    stamp = datetime.fromtimestamp(latest.stat().st_mtime).strftime('%Y-%m-%d_%H-%M-%S')
    archived = log_dir / f"{stamp}.log"
    latest.rename(archived)
    return archived


def setup_logging(file_log_level_str: str = 'INFO', console: Optional[Console] = None,
                  verbose: bool = False, log_dir: Path = LOG_DIR):
    """
    Routes all log records to `<log_dir>/latest.log` and to the terminal.

    The previous run's `latest.log` is archived first, so each run starts a
    fresh file. The console only shows warnings unless `verbose` is set, so
    log lines do not tear through the live progress view.

    Args:
        file_log_level_str: The minimum level written to the file (e.g. 'INFO').
        console: The Rich console shared with the progress view, if any.
        verbose: Show INFO messages on the console instead of only warnings.
        log_dir: Directory holding `latest.log` and the archived logs.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    try:
        archive_latest_log(log_dir)
    except OSError as e:
        print(f"Error rotating log file: {e}", file=sys.stderr)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    file_level = getattr(logging, file_log_level_str.upper(), logging.INFO)
    file_handler = logging.FileHandler(log_dir / 'latest.log', encoding='utf-8')
    file_handler.setLevel(file_level)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    root_logger.addHandler(file_handler)

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False, markup=False)
    console_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter('%(message)s', datefmt='[%X]'))
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.debug(f"Logging initialized; file level {logging.getLevelName(file_level)}")
