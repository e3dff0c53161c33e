"""
Call record storage.
"""

from .database import CallStore, Database

__all__ = ['CallStore', 'Database']
