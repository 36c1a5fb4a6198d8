"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
Per-job failures (`LaunchError`, `ProcessError`) are caught by the scheduler and
reported to its sink; they never propagate out of a batch.
"""

from typing import Optional


class OnyxError(Exception):
    """Base exception for all application-specific errors."""


class LaunchError(OnyxError):
    """Raised when the downloader executable cannot be found or spawned."""


class ProcessError(OnyxError):
    """Raised when the downloader exits with a non-zero status."""

    def __init__(self, exit_code: int, diagnostics: str = ""):
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        super().__init__(self.summary())

    def summary(self) -> str:
        """Returns a short, user-facing description of the failure."""
        for line in self.diagnostics.splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg
        lines = [line for line in self.diagnostics.strip().splitlines() if line.strip()]
        if lines:
            return lines[-1]
        return f"yt-dlp exited with code {self.exit_code}"


class JobTimeoutError(OnyxError):
    """Raised when a single job exceeds its time allowance."""

    def __init__(self, timeout: float, job_id: Optional[str] = None):
        self.timeout = timeout
        self.job_id = job_id
        super().__init__(f"Timed out after {timeout:g}s")


class DownloadCancelledError(OnyxError):
    """Custom exception for cancelled downloads."""


class URLExtractionError(OnyxError):
    """Custom exception for URL processing failures."""


class OutputDirectoryError(OnyxError):
    """Raised when the download directory cannot be created or written to."""


class DependencyError(OnyxError):
    """Raised when a required external tool (yt-dlp) is unavailable."""


class InvalidTransitionError(OnyxError):
    """Raised when a job is moved to a status its lifecycle does not allow."""
