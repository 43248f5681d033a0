"""
Read-only snapshot of the lookup data an import validates against.

The snapshot is loaded with one bulk query per entity type and indexed into
in-memory maps, so row validation never touches the database. A
``ReferenceCache`` owns the current snapshot and decides when to reload it.
"""
from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.errors import ReferenceDataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreRef:
    id: str
    store_name: str
    partner_brand_ids: frozenset[str]
    executive_ids: frozenset[str]


@dataclass(frozen=True)
class ReferenceSnapshot:
    stores: Mapping[str, StoreRef]
    brands_by_name: Mapping[str, str]
    brand_ids: frozenset[str]
    categories_by_name: Mapping[str, str]
    category_brands: frozenset[tuple[str, str]]
    executives: Mapping[str, str]
    built_at: float

    def brand_allowed_for_store(self, store_id: str, brand_id: str) -> bool:
        store = self.stores.get(store_id)
        return store is not None and brand_id in store.partner_brand_ids

    def category_allowed_for_brand(self, brand_id: str, category_id: str) -> bool:
        return (brand_id, category_id) in self.category_brands


def _decode_id_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        values = json.loads(raw)
    except (TypeError, ValueError):
        # Tolerate legacy comma-separated values.
        values = raw.split(",")
    return [str(v).strip() for v in values if str(v).strip()]


def load_reference_snapshot(db: Session) -> ReferenceSnapshot:
    stores = db.execute(text("SELECT id, store_name, partner_brand_ids FROM stores")).mappings().all()
    assignments = db.execute(
        text("SELECT executive_id, store_id FROM executive_store_assignments")
    ).mappings().all()
    brands = db.execute(text("SELECT id, brand_name FROM brands")).mappings().all()
    categories = db.execute(text("SELECT id, category_name FROM categories")).mappings().all()
    category_brands = db.execute(text("SELECT brand_id, category_id FROM category_brands")).mappings().all()
    executives = db.execute(text("SELECT id, name FROM executives")).mappings().all()

    executives_by_store: dict[str, set[str]] = defaultdict(set)
    for row in assignments:
        executives_by_store[str(row["store_id"])].add(str(row["executive_id"]))

    store_map = {
        str(row["id"]): StoreRef(
            id=str(row["id"]),
            store_name=row["store_name"] or "",
            partner_brand_ids=frozenset(_decode_id_list(row["partner_brand_ids"])),
            executive_ids=frozenset(executives_by_store.get(str(row["id"]), ())),
        )
        for row in stores
    }

    snapshot = ReferenceSnapshot(
        stores=MappingProxyType(store_map),
        brands_by_name=MappingProxyType({row["brand_name"]: str(row["id"]) for row in brands}),
        brand_ids=frozenset(str(row["id"]) for row in brands),
        categories_by_name=MappingProxyType({row["category_name"]: str(row["id"]) for row in categories}),
        category_brands=frozenset((str(row["brand_id"]), str(row["category_id"])) for row in category_brands),
        executives=MappingProxyType({str(row["id"]): row["name"] or "" for row in executives}),
        built_at=time.time(),
    )
    logger.info(
        "Reference snapshot loaded: %s stores, %s brands, %s categories, %s executives",
        len(store_map),
        len(brands),
        len(categories),
        len(executives),
    )
    return snapshot


class ReferenceCache:
    """Build-or-reuse holder for the current ``ReferenceSnapshot``.

    ``ttl_seconds`` is the refresh policy: a snapshot older than that is
    reloaded on the next ``build()``. ``0`` reloads for every job.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshot: ReferenceSnapshot | None = None
        self._loaded_at = 0.0

    def _is_fresh(self) -> bool:
        if self._snapshot is None or self.ttl_seconds <= 0:
            return False
        return self._clock() - self._loaded_at < self.ttl_seconds

    def _load(self) -> ReferenceSnapshot:
        db = self.session_factory()
        try:
            return load_reference_snapshot(db)
        finally:
            db.close()

    async def build(self) -> ReferenceSnapshot:
        if self._is_fresh():
            return self._snapshot

        try:
            snapshot = await run_in_threadpool(self._load)
        except SQLAlchemyError as exc:
            logger.exception("Reference data load failed")
            raise ReferenceDataError("Could not load reference data from the database") from exc

        self._snapshot = snapshot
        self._loaded_at = self._clock()
        return snapshot

    def invalidate(self) -> None:
        self._snapshot = None
        self._loaded_at = 0.0
