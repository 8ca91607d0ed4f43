"""Centralized logging configuration for atlantis_sdm."""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

# Create logger
logger = logging.getLogger('atlantis_sdm')
logger.setLevel(logging.DEBUG)

# Create formatter
formatter = logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

# Create console handler with formatting
if not logger.handlers:
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)


def configure_file_logging(
    log_file: Union[str, Path], level: int = logging.DEBUG
) -> Optional[logging.FileHandler]:
    """Attach a file handler so a run leaves a persistent log.

    Parameters
    ----------
    log_file : str or Path
        Destination log file. Parent directories are created.
    level : int
        Level for the file handler (default: DEBUG)

    Returns
    -------
    logging.FileHandler or None
        The handler that was added, or None if the log directory could not
        be created (console logging continues).
    """
    log_file = Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"Could not create log directory {log_file.parent}: {e}")
        return None

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return file_handler


def get_logger(name: str = None):
    """Get a logger instance.

    Parameters
    ----------
    name : str, optional
        Logger name (typically __name__). If None, returns root package logger.

    Returns
    -------
    logging.Logger
        Configured logger instance
    """
    if name:
        if name.startswith('atlantis_sdm.'):
            return logging.getLogger(name)
        return logging.getLogger(f'atlantis_sdm.{name}')
    return logger
