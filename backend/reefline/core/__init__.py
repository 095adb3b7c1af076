"""
Reefline - Core Package
=======================

Core business logic, models, and schemas.
"""

from reefline.core.config import settings
from reefline.core.database import Base, get_db

__all__ = ["Base", "get_db", "settings"]
