"""
Logging configuration for netup.

Each role runs in its own named thread (netup-client, netup-recorder, ...),
so records carry the thread name next to the logger name.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

from .config import LoggingConfig

LOG_FORMAT = '%(asctime)s.%(msecs)03d - %(threadName)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(config: LoggingConfig, verbose: bool = False) -> int:
    """
    Configure the root logger from the logging section.

    verbose forces DEBUG, which includes a line per probe sent and received.
    Returns the level in effect. Raises ValueError for an unknown level name.
    """
    level = logging.DEBUG if verbose else config.resolve_level()
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if config.file:
        try:
            log_path = Path(config.file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=config.max_size * 1024 * 1024,  # MB
                backupCount=config.backup_count
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Failed to set up file logging: {e}")

    logging.getLogger('netup').setLevel(level)
    return level


def get_logger(name: str) -> logging.Logger:
    """Logger under the netup namespace."""
    return logging.getLogger(f"netup.{name}")
