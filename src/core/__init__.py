"""Core functionality for the playbook engine."""

from .config import get_settings, get_cached_settings, Settings
from .database import get_db, get_session_maker
# Import Base from models to avoid circular imports
from models.base import Base

__all__ = [
    "Settings",
    "get_settings",
    "get_cached_settings",
    "Base",
    "get_db",
    "get_session_maker",
]
