"""
Logging setup for Ringline.

Main application log + one app log per signed-in identity.
"""

import logging
import sys
import time
from typing import Optional
from logging.handlers import RotatingFileHandler

from .paths import get_paths, Paths


# Log format
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Maximum log file size before rotation (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup files to keep
BACKUP_COUNT = 5


def _file_handler(path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    return handler


def setup_main_logger(log_level: str = 'INFO', paths: Optional[Paths] = None,
                      install_excepthook: bool = True) -> logging.Logger:
    """
    Setup the main application logger (global, not user-specific).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        paths: Paths instance (default: global paths)
        install_excepthook: Route uncaught exceptions into main.log

    Returns:
        Main logger instance
    """
    paths = paths or get_paths()
    level = getattr(logging, log_level.upper())

    logger = logging.getLogger('ringline')
    logger.setLevel(level)
    logger.handlers.clear()  # Clear existing handlers

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(console_handler)

    main_log_path = paths.main_log_path()
    logger.addHandler(_file_handler(main_log_path, level))

    logger.info(f"Main logger initialized (level: {log_level}, log: {main_log_path})")

    # Media bridge logs to the same file under its own facility
    hook_logger = logging.getLogger('ringline_hook')
    hook_logger.setLevel(level)
    hook_logger.handlers.clear()
    hook_logger.propagate = False
    hook_logger.addHandler(console_handler)
    hook_logger.addHandler(_file_handler(main_log_path, level))

    if install_excepthook:
        def exception_hook(exc_type, exc_value, exc_traceback):
            """Log uncaught exceptions to file instead of just stderr."""
            if issubclass(exc_type, KeyboardInterrupt):
                sys.__excepthook__(exc_type, exc_value, exc_traceback)
                return

            logger.critical("Uncaught exception:", exc_info=(exc_type, exc_value, exc_traceback))

        sys.excepthook = exception_hook
        logger.debug("Global exception hook configured (uncaught exceptions → main.log)")

    return logger


def setup_user_logger(user_id: str, log_level: str = 'INFO',
                      paths: Optional[Paths] = None) -> logging.Logger:
    """
    Setup logging for one authenticated identity.

    Args:
        user_id: Authenticated user identity
        log_level: Logging level
        paths: Paths instance (default: global paths)

    Returns:
        Application logger instance
    """
    paths = paths or get_paths()
    level = getattr(logging, log_level.upper())

    user_logger = logging.getLogger(f'ringline.user-{user_id}')
    user_logger.setLevel(level)
    user_logger.handlers.clear()
    user_logger.propagate = False  # Don't duplicate into main.log

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(f'[User {user_id}] {LOG_FORMAT}', LOG_DATE_FORMAT))
    user_logger.addHandler(console_handler)

    user_logger.addHandler(_file_handler(paths.user_log_path(user_id), level))

    user_logger.info(f"User {user_id} logger initialized (level: {log_level})")
    return user_logger


def get_user_logger(user_id: str) -> logging.Logger:
    """Get existing logger for an identity."""
    return logging.getLogger(f'ringline.user-{user_id}')


def set_log_level(logger_name: str, level: str):
    """
    Change log level for a specific logger.

    Args:
        logger_name: Logger name (e.g., 'ringline.user-alice')
        level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level.upper()))
    for handler in logger.handlers:
        handler.setLevel(getattr(logging, level.upper()))
    logger.info(f"Log level changed to {level.upper()}")


def cleanup_old_logs(retention_days: int, paths: Optional[Paths] = None) -> int:
    """
    Clean up old log files based on retention policy.

    Args:
        retention_days: Number of days to retain logs (0 = keep forever)
        paths: Paths instance (default: global paths)

    Returns:
        Number of deleted files
    """
    if retention_days <= 0:
        return 0

    paths = paths or get_paths()
    logger = logging.getLogger('ringline')
    cutoff_time = time.time() - (retention_days * 86400)

    deleted_count = 0
    for log_file in paths.log_dir.glob('*.log*'):
        if log_file.stat().st_mtime < cutoff_time:
            try:
                log_file.unlink()
                deleted_count += 1
            except OSError as e:
                logger.warning(f"Failed to delete old log {log_file}: {e}")

    if deleted_count > 0:
        logger.info(f"Cleaned up {deleted_count} old log files (retention: {retention_days} days)")
    return deleted_count
