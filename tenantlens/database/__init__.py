"""
TenantLens Database Layer

Usage:
    from tenantlens.database import Database, CacheEntry, FindingRecord

    db = Database()
    db.open()
    with db.session() as session:
        ...
"""

from .models import Base, CacheEntry, FindingRecord, utcnow
from .session import Database, create_db_engine, get_database_url, upsert

__all__ = [
    "Base",
    "CacheEntry",
    "FindingRecord",
    "utcnow",
    "Database",
    "create_db_engine",
    "get_database_url",
    "upsert",
]
