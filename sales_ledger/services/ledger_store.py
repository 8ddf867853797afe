"""Idempotent persistence of canonical Sale rows and SyncRun audit entries.

Rows are keyed by (user_id, platform, order_id, item_id). An existing row has
its mutable fields overwritten by the latest sync; otherwise a new row is
inserted. All writes for one user go through that user's lock so the
database sees a single writer per user, while different users write
concurrently.
"""

from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sales_ledger.models_sqlalchemy import SessionLocal
from sales_ledger.models_sqlalchemy.models import Sale, SyncRun
from sales_ledger.services.errors import LedgerWriteError
from sales_ledger.services.normalization import SaleRecord
from sales_ledger.utils.logger import logger

MUTABLE_FIELDS = (
    "price",
    "quantity",
    "status",
    "normalized_status",
    "shipping_address",
    "tracking_number",
)


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    failed: List[LedgerWriteError] = field(default_factory=list)

    @property
    def written(self) -> int:
        return self.inserted + self.updated


class LedgerStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory
        # Entries go away once no writer holds or waits on the lock.
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def upsert_sales(self, user_id: str, records: Iterable[SaleRecord]) -> UpsertResult:
        async with self.lock_for(user_id):
            return self._upsert_batch(user_id, list(records))

    def _upsert_batch(self, user_id: str, records: List[SaleRecord]) -> UpsertResult:
        result = UpsertResult()
        db = self._session_factory()
        try:
            for record in records:
                if record.user_id != user_id:
                    raise ValueError(f"record for user {record.user_id} passed to writer for {user_id}")
                # Each row commits on its own so one bad row cannot undo the rest.
                try:
                    inserted = self._upsert_one(db, record)
                    db.commit()
                except SQLAlchemyError as exc:
                    db.rollback()
                    error = LedgerWriteError(record.order_id, record.item_id, str(exc))
                    logger.error(f"Ledger write failed for {record.platform} {error}")
                    result.failed.append(error)
                    continue
                if inserted:
                    result.inserted += 1
                else:
                    result.updated += 1
        finally:
            db.close()
        return result

    def _upsert_one(self, db: Session, record: SaleRecord) -> bool:
        existing: Optional[Sale] = (
            db.query(Sale)
            .filter(
                Sale.user_id == record.user_id,
                Sale.platform == record.platform,
                Sale.order_id == record.order_id,
                Sale.item_id == record.item_id,
            )
            .first()
        )
        if existing is not None:
            for name in MUTABLE_FIELDS:
                setattr(existing, name, getattr(record, name))
            db.flush()
            return False

        db.add(
            Sale(
                user_id=record.user_id,
                platform=record.platform,
                order_id=record.order_id,
                item_id=record.item_id,
                item_title=record.item_title,
                quantity=record.quantity,
                price=record.price,
                currency=record.currency,
                buyer_name=record.buyer_name,
                buyer_email=record.buyer_email,
                sale_date=record.sale_date,
                status=record.status,
                normalized_status=record.normalized_status,
                shipping_address=record.shipping_address,
                tracking_number=record.tracking_number,
            )
        )
        db.flush()
        return True

    async def record_sync_run(
        self,
        *,
        user_id: str,
        platform: str,
        started_at: datetime,
        items_synced: int,
        outcome: str,
        error_detail: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> None:
        async with self.lock_for(user_id):
            db = self._session_factory()
            try:
                db.add(
                    SyncRun(
                        user_id=user_id,
                        platform=platform,
                        started_at=started_at,
                        finished_at=datetime.now(timezone.utc),
                        items_synced=items_synced,
                        outcome=outcome,
                        error_detail=error_detail,
                        warnings=list(warnings or []),
                    )
                )
                db.commit()
                logger.info(
                    f"Recorded sync run user={user_id} platform={platform} outcome={outcome} items={items_synced}"
                )
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error(f"Could not record sync run for user={user_id} platform={platform}: {exc}")
            finally:
                db.close()

    def list_sync_runs(self, user_id: str, limit: int = 50) -> List[SyncRun]:
        db = self._session_factory()
        try:
            return (
                db.query(SyncRun)
                .filter(SyncRun.user_id == user_id)
                .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()
