"""Database module for SQLAlchemy async setup."""

from coupon_api.db.database import (
    Base,
    async_session_maker,
    engine,
    get_db,
    init_db,
)
from coupon_api.db.types import GUID, UTCDateTime

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_db",
    "init_db",
    "GUID",
    "UTCDateTime",
]
