"""
Supervisor Continuity - Core Package
====================================

Configuration, database, models and the error taxonomy.
"""

from continuity.core.config import settings
from continuity.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
