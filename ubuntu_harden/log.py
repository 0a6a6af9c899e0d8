"""Logger setup: rich console output plus a private log file."""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from rich.logging import RichHandler

from ubuntu_harden.ui import console

LOGGER_NAME = "ubuntu_harden"


def setup_logger(log_file: Optional[Union[str, Path]] = None, debug: bool = False) -> logging.Logger:
    """Set up and configure the ``ubuntu_harden`` logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Remove any existing handlers
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.addHandler(console_handler)

    if log_file is None:
        return logger

    log_file = Path(log_file)
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Could not open log file {log_file}: {e}. Logging to console only.")
        return logger

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(file_handler)

    try:
        # Secure the log file
        os.chmod(log_file, 0o600)
    except OSError as e:
        logger.warning(f"Could not set permissions on log file {log_file}: {e}")

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the package logger or one of its children."""
    return logging.getLogger(f"{LOGGER_NAME}.{name}" if name else LOGGER_NAME)
