"""
Defines the application's version string.

This is the single source of truth for the version number, used by the CLI
`--version` flag, the HTTP server banner and packaging.
"""

__version__ = "1.0.0"
