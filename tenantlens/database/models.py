"""
SQLAlchemy Models for TenantLens

Two tables, both written with upsert-by-primary-key semantics:
- config_cache: persistent cache of directory API reads
- findings: canonical records produced by the findings orchestrator
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, JSON,
    Index, CheckConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CacheEntry(Base):
    """One cached directory API read, addressed by (cache_key, cache_type)."""
    __tablename__ = "config_cache"

    cache_key = Column(String(512), primary_key=True)
    cache_type = Column(String(64), primary_key=True)

    # JSON text, opaque to the cache
    data = Column(Text, nullable=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("idx_config_cache_type", "cache_type"),
        Index("idx_config_cache_expires", "expires_at"),
        CheckConstraint("expires_at > updated_at", name="ck_config_cache_expiry"),
    )

    def __repr__(self):
        return f"<CacheEntry {self.cache_type}:{self.cache_key} expires={self.expires_at}>"


class FindingRecord(Base):
    """Aggregated finding, owned by the orchestrator and upserted by id."""
    __tablename__ = "findings"

    id = Column(String(255), primary_key=True)
    category = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False)

    # Full serialized record (finding fields + category + detected_at)
    data = Column(JSON, nullable=False)

    detected_at = Column(DateTime, nullable=False)
    last_checked = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_findings_category", "category"),
        Index("idx_findings_severity_detected", "severity", "detected_at"),
    )

    def __repr__(self):
        return f"<FindingRecord {self.id} [{self.category}/{self.severity}]>"
