"""
Version information for Ringline.

Update this file for releases or use environment variables for CI/CD.
"""

import os

# Version info - update for releases
VERSION = os.getenv('RINGLINE_VERSION', '0.1.0')
APP_NAME = 'Ringline'

# Default STUN servers used when calls.yaml does not list any
DEFAULT_ICE_SERVERS = [
    {'urls': ['stun:stun.l.google.com:19302']},
    {'urls': ['stun:stun1.l.google.com:19302']},
]


def get_version_string():
    """Get formatted version string."""
    return f"{APP_NAME} {VERSION}"
