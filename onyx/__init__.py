"""Onyx DL: concurrent yt-dlp download orchestration."""

from ._version import __version__

__all__ = ["__version__"]
