"""
Idempotent writes for validated import records.

Sales records are keyed by (store, brand, category, year); re-importing a key
replaces the periods present in the new data and keeps the others. Store
records are keyed by store id and carry their executive assignments.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

from sqlalchemy import bindparam, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.errors import CommitError
from app.validation import JobKind, SalesRecord, StoreRecord, ValidatedRecord

logger = logging.getLogger(__name__)


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unreadable stored sales payload")
        return default


def merge_monthly_sales(existing: list[dict[str, Any]], incoming: list[dict[str, Any]]) -> list[dict[str, Any]]:
    by_month = {int(entry["month"]): entry for entry in existing if "month" in entry}
    for entry in incoming:
        by_month[int(entry["month"])] = entry
    return [by_month[month] for month in sorted(by_month)]


def merge_daily_sales(
    existing: dict[str, list[dict[str, Any]]],
    incoming: dict[str, list[dict[str, Any]]],
) -> dict[str, list[dict[str, Any]]]:
    merged = dict(existing)
    merged.update(incoming)
    return {key: merged[key] for key in sorted(merged, key=int)}


def upsert_sales_record(db: Session, record: SalesRecord) -> int:
    """Write every year of ``record``; returns the number of rows written."""
    column = "monthly_sales" if record.kind == JobKind.MONTHLY else "daily_sales"
    # Hold the existing row until commit so a concurrent merge on another connection waits.
    row_lock = " FOR UPDATE" if db.get_bind().dialect.name == "postgresql" else ""
    written = 0
    for year in sorted(record.by_year):
        params = {
            "store_id": record.store_id,
            "brand_id": record.brand_id,
            "category_id": record.category_id,
            "year": int(year),
        }
        existing = db.execute(
            text(
                """
                SELECT monthly_sales, daily_sales
                FROM sales_records
                WHERE store_id = :store_id
                  AND brand_id = :brand_id
                  AND category_id = :category_id
                  AND year = :year
                """
                + row_lock
            ),
            params,
        ).mappings().first()

        if record.kind == JobKind.MONTHLY:
            current = _load_json(existing["monthly_sales"], []) if existing else []
            payload = merge_monthly_sales(current, record.by_year[year])
            params["monthly_sales"] = json.dumps(payload)
            params["daily_sales"] = "{}"
        else:
            current = _load_json(existing["daily_sales"], {}) if existing else {}
            payload = merge_daily_sales(current, record.by_year[year])
            params["monthly_sales"] = "[]"
            params["daily_sales"] = json.dumps(payload)

        db.execute(
            text(
                f"""
                INSERT INTO sales_records
                  (store_id, brand_id, category_id, year, monthly_sales, daily_sales, updated_at)
                VALUES
                  (:store_id, :brand_id, :category_id, :year, :monthly_sales, :daily_sales, NOW())
                ON CONFLICT (store_id, brand_id, category_id, year)
                DO UPDATE SET
                  {column} = EXCLUDED.{column},
                  updated_at = NOW()
                """
            ),
            params,
        )
        written += 1
    return written


def upsert_store_record(db: Session, record: StoreRecord) -> None:
    params = {
        "store_id": record.store_id,
        "store_name": record.store_name,
        "city": record.city,
        "full_address": record.full_address,
        "partner_brand_ids": json.dumps(record.partner_brand_ids),
        "partner_brand_types": json.dumps(record.partner_brand_types or []),
    }
    if record.partner_brand_types is not None:
        types_update = "partner_brand_types = EXCLUDED.partner_brand_types,"
    else:
        types_update = ""

    db.execute(
        text(
            f"""
            INSERT INTO stores
              (id, store_name, city, full_address, partner_brand_ids, partner_brand_types, created_at)
            VALUES
              (:store_id, :store_name, NULLIF(:city, ''), NULLIF(:full_address, ''),
               :partner_brand_ids, :partner_brand_types, NOW())
            ON CONFLICT (id)
            DO UPDATE SET
              store_name = EXCLUDED.store_name,
              city = EXCLUDED.city,
              full_address = EXCLUDED.full_address,
              {types_update}
              partner_brand_ids = EXCLUDED.partner_brand_ids
            """
        ),
        params,
    )

    if record.executive_ids:
        db.execute(
            text(
                """
                DELETE FROM executive_store_assignments
                WHERE store_id = :store_id
                  AND executive_id NOT IN :executive_ids
                """
            ).bindparams(bindparam("executive_ids", expanding=True)),
            {"store_id": record.store_id, "executive_ids": list(record.executive_ids)},
        )
    else:
        db.execute(
            text("DELETE FROM executive_store_assignments WHERE store_id = :store_id"),
            {"store_id": record.store_id},
        )

    for executive_id in record.executive_ids:
        db.execute(
            text(
                """
                INSERT INTO executive_store_assignments (executive_id, store_id, assigned_at)
                VALUES (:executive_id, :store_id, NOW())
                ON CONFLICT (executive_id, store_id) DO NOTHING
                """
            ),
            {"executive_id": executive_id, "store_id": record.store_id},
        )


def write_record(db: Session, record: ValidatedRecord) -> None:
    if isinstance(record, StoreRecord):
        upsert_store_record(db, record)
    else:
        upsert_sales_record(db, record)


class SqlRecordWriter:
    """Async upsert capability used by the batch committer.

    Each write runs on the threadpool with its own session and transaction.
    Writes that touch the same natural key are serialized so a read-merge-write
    for one key never interleaves with another for the same key. One writer is
    shared by every job of the process; a key lock lives only while some write
    holds or waits for it.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._key_locks: dict[tuple, asyncio.Lock] = {}
        self._key_users: dict[tuple, int] = {}

    def _write_sync(self, record: ValidatedRecord) -> None:
        db = self.session_factory()
        try:
            write_record(db, record)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            chunk_fatal = isinstance(exc, DBAPIError) and exc.connection_invalidated
            raise CommitError(
                f"Database error: {exc.__class__.__name__}: {exc}",
                context=record.context,
                chunk_fatal=chunk_fatal,
            ) from exc
        finally:
            db.close()

    def _checkout(self, key: tuple) -> asyncio.Lock:
        self._key_users[key] = self._key_users.get(key, 0) + 1
        return self._key_locks.setdefault(key, asyncio.Lock())

    def _checkin(self, key: tuple) -> None:
        self._key_users[key] -= 1
        if not self._key_users[key]:
            del self._key_users[key]
            del self._key_locks[key]

    @property
    def active_keys(self) -> int:
        return len(self._key_locks)

    async def write(self, record: ValidatedRecord) -> None:
        keys = sorted(record.natural_keys())
        locks = [self._checkout(key) for key in keys]
        acquired: list[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            await run_in_threadpool(self._write_sync, record)
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in keys:
                self._checkin(key)
