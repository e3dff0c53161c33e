"""
Utility modules for Ringline.
"""

from .paths import get_paths, Paths, PATH_MODE
from .logger import (
    setup_main_logger,
    setup_user_logger,
    get_user_logger,
    set_log_level,
    cleanup_old_logs
)

__all__ = [
    'get_paths',
    'Paths',
    'PATH_MODE',
    'setup_main_logger',
    'setup_user_logger',
    'get_user_logger',
    'set_log_level',
    'cleanup_old_logs',
]
