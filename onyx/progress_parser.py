"""Parses yt-dlp's textual progress lines into `ProgressUpdate` values."""
import re
from typing import Optional

from .jobs import UNKNOWN, ProgressUpdate

# e.g. "[download]  98.8% of ~ 280.90KiB at 173.13KiB/s ETA 00:05"
_PERCENT_RE = re.compile(r'(\d+(?:\.\d+)?)%')
_SPEED_RE = re.compile(r'\bat\s+(\S+)')
_ETA_RE = re.compile(r'\bETA\s+(\S+)')


def parse_progress_line(line: str) -> Optional[ProgressUpdate]:
    """
    Extracts percent, speed and ETA from one line of downloader output.

    A line is a progress line only if it carries a `<number>%` token. Speed and
    ETA are looked up independently and fall back to `UNKNOWN`. Percent values
    outside 0-100 are passed through as reported.

    Args:
        line: A single output line, with or without its trailing newline.

    Returns:
        The parsed update, or None if the line carries no progress information.
    """
    percent_match = _PERCENT_RE.search(line)
    if not percent_match:
        return None
    try:
        percent = float(percent_match.group(1))
    except ValueError:
        return None

    speed_match = _SPEED_RE.search(line)
    eta_match = _ETA_RE.search(line)
    return ProgressUpdate(
        percent=percent,
        speed=speed_match.group(1) if speed_match else UNKNOWN,
        eta=eta_match.group(1) if eta_match else UNKNOWN,
    )
