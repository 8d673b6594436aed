"""
SQLAlchemy async database module.

Re-exports engine and model utilities for the FastAPI service.
"""

from services.api.db.engine import create_engine, create_session_factory
from services.api.db.models import (
    Base,
    AuditLog,
    User,
    Venue,
    Promoter,
    Event,
    Vendor,
    EventVendor,
    UserFavorite,
)

__all__ = [
    "create_engine",
    "create_session_factory",
    "Base",
    "AuditLog",
    "User",
    "Venue",
    "Promoter",
    "Event",
    "Vendor",
    "EventVendor",
    "UserFavorite",
]
