"""Core module for configuration, persistence and observability."""

from creditflow.core.config import settings
from creditflow.core.database import Base, get_session

__all__ = [
    "settings",
    "Base",
    "get_session",
]
