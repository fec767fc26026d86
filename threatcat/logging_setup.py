"""Logging configuration for the command line.

Console only, file only (silent mode with a log file), console plus file, or
nothing at all (silent mode without a log file).
"""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'
ROOT_LOGGER = 'threatcat'


def configure_logging(verbose: bool = False, log_file: Optional[str | Path] = None,
                      silent: bool = False) -> logging.Logger:
    """Install handlers on the package logger and return it.

    Calling it again replaces the handlers installed by the previous call.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT)

    if not silent:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        logger.addHandler(console)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger
