"""
Main entry point for Onyx DL.

Installs the global exception hook and hands control to the command-line
interface, which loads the configuration and sets up logging.
"""

import sys
import logging
from types import TracebackType
from typing import Type

from onyx.cli import main as cli_main


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


if __name__ == "__main__":
    sys.excepthook = handle_exception
    try:
        cli_main()
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
