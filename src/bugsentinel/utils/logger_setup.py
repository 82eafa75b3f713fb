import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from bugsentinel.config.settings import Settings

LOG_FILE_MAX_BYTES_DEFAULT = 10 * 1024 * 1024  # 10 MB
LOG_FILE_BACKUP_COUNT_DEFAULT = 5
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s.%(funcName)s:%(lineno)d] - %(message)s"


def setup_logging(
    logger_name: str = "bugsentinel",
    log_level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    log_file_max_bytes: int = LOG_FILE_MAX_BYTES_DEFAULT,
    log_file_backup_count: int = LOG_FILE_BACKUP_COUNT_DEFAULT,
    console_level: Optional[int] = logging.WARNING,
):
    """
    Configures and returns a logger instance.

    Module loggers under ``bugsentinel.*`` propagate to the package logger, so
    configuring ``"bugsentinel"`` once covers the whole application.

    Args:
        logger_name: The name for the logger.
        log_level: The minimum log level written to the log file.
        log_dir: The directory to store log files (defaults to Settings.LOGS_DIR).
        log_file_max_bytes: Maximum size of a log file before rotation.
        log_file_backup_count: Number of backup log files to keep.
        console_level: Minimum level echoed to stderr; None disables console output.

    Returns:
        A configured logger instance.
    """
    log_dir = log_dir or Settings.LOGS_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(logger_name)

    # Prevent duplicate handlers when the container is built more than once
    if logger.handlers:
        logger.setLevel(log_level)
        return logger

    logger.setLevel(log_level)
    formatter = logging.Formatter(LOG_FORMAT)

    # stderr keeps CLI output on stdout clean
    if console_level is not None:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(console_level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    sanitized_logger_name = "".join(c if c.isalnum() or c in ['_', '-'] else '_' for c in logger_name)
    file_handler = RotatingFileHandler(
        log_dir / f"{sanitized_logger_name}.log",
        maxBytes=log_file_max_bytes,
        backupCount=log_file_backup_count,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    return logger
