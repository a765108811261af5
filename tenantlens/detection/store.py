"""
Finding Store

Persistence for aggregated findings (the findings table). Writes are
insert-or-replace by finding id inside a single transaction.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Sequence

from sqlalchemy import case, func

from tenantlens.database import Database, FindingRecord, upsert
from .base import AggregatedRecord, SEVERITY_ORDER

logger = logging.getLogger(__name__)

SEVERITY_RANK = case(
    *((FindingRecord.severity == severity.value, rank) for rank, severity in enumerate(SEVERITY_ORDER)),
    else_=len(SEVERITY_ORDER),
)


class FindingStore:
    """Async facade over the findings table."""

    def __init__(self, db: Database):
        self.db = db

    async def upsert_many(
        self,
        records: Sequence[AggregatedRecord],
        retire_categories: Iterable[str] = (),
    ) -> int:
        """
        Insert or replace records by id. Returns the number written.

        For each category in retire_categories, rows of that category whose
        id is not among records are deleted in the same transaction.
        """
        retire = list(retire_categories)
        if not records and not retire:
            return 0
        return await asyncio.to_thread(self._upsert_sync, records, retire)

    async def load_all(self) -> List[AggregatedRecord]:
        """All records, most severe first, newest first within a severity."""
        return await asyncio.to_thread(self._load_sync)

    async def count(self) -> int:
        return await asyncio.to_thread(self._count_sync)

    async def delete_all(self) -> int:
        return await asyncio.to_thread(self._delete_sync)

    def _upsert_sync(self, records: Sequence[AggregatedRecord], retire: List[str]) -> int:
        # Last record wins when an id repeats within one batch
        by_id: Dict[str, AggregatedRecord] = {record.id: record for record in records}

        with self.db.session() as session:
            for record in by_id.values():
                upsert(
                    session,
                    FindingRecord,
                    {
                        "id": record.id,
                        "category": record.category,
                        "severity": record.severity.value,
                        "data": record.to_dict(),
                        "detected_at": record.detected_at,
                        "last_checked": record.last_checked or record.detected_at,
                        "created_at": record.detected_at,
                    },
                    update_columns=("category", "severity", "data", "detected_at", "last_checked"),
                )

            retired = 0
            if retire:
                query = session.query(FindingRecord).filter(FindingRecord.category.in_(retire))
                if by_id:
                    query = query.filter(FindingRecord.id.notin_(list(by_id)))
                retired = query.delete(synchronize_session=False)

        logger.debug(f"Upserted {len(by_id)} finding records, retired {retired}")
        return len(by_id)

    def _load_sync(self) -> List[AggregatedRecord]:
        with self.db.session() as session:
            rows = (
                session.query(FindingRecord)
                .order_by(SEVERITY_RANK, FindingRecord.detected_at.desc())
                .all()
            )
            records = []
            for row in rows:
                data = dict(row.data)
                data["category"] = row.category
                data["detected_at"] = row.detected_at.isoformat()
                data["last_checked"] = row.last_checked.isoformat() if row.last_checked else None
                records.append(AggregatedRecord.from_dict(data))
        return records

    def _count_sync(self) -> int:
        with self.db.session() as session:
            return session.query(func.count()).select_from(FindingRecord).scalar() or 0

    def _delete_sync(self) -> int:
        with self.db.session() as session:
            return session.query(FindingRecord).delete(synchronize_session=False)
