"""
Realtime change feeds: row-change delivery and the ephemeral side-channel.
"""

from .base import RealtimeFeed, Channel, invoke_callback
from .local import LocalFeed

__all__ = [
    'RealtimeFeed',
    'Channel',
    'LocalFeed',
    'invoke_callback',
]
