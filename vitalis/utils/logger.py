"""Logging configuration."""

import logging
from pathlib import Path
from typing import Optional, Union
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """Configure the ``vitalis`` logger hierarchy once per process."""
    logger = logging.getLogger("vitalis")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not logger.handlers:
        # Console handler with rich
        console_handler = RichHandler(
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
        )
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(console_handler)

        # File handler
        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``vitalis`` hierarchy."""
    if not name.startswith("vitalis"):
        name = f"vitalis.{name}"
    return logging.getLogger(name)
