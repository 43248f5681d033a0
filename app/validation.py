"""
Phase 1: turn one parsed row into a persistence-ready record, or a failure.

Everything here is pure computation over the row and a ``ReferenceSnapshot``;
no database or network access happens during validation.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from app.reference_cache import ReferenceSnapshot
from app.tabular import RawRow, clean_code, clean_text


class JobKind(str, Enum):
    MONTHLY = "monthly"
    DAILY = "daily"
    STORES = "stores"


SALES_IDENTITY_FIELDS = ("Store_ID", "Brand", "Category")
STORE_IDENTITY_FIELDS = ("Store_ID", "Store Name")

PARTNER_BRAND_ID_COLUMNS = ("partnerBrandIds", "partneraBrandIds")
PARTNER_BRAND_TYPE_COLUMNS = ("partnerBrandTypes", "partnerBrandType", "PartnerBrandTypes", "Partner Brand Types")
PARTNER_BRAND_TYPES = {"A+": "A_PLUS", "A_PLUS": "A_PLUS", "A": "A", "B": "B", "C": "C", "D": "D"}

MONTHLY_KEY_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{4}) (.+)$")
DAILY_KEY_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{4}) (count of sales|revenue)$", re.IGNORECASE)
MONTHLY_METRICS = (
    (re.compile(r"device sales", re.IGNORECASE), "deviceSales"),
    (re.compile(r"plan sales", re.IGNORECASE), "planSales"),
    (re.compile(r"attach ?%", re.IGNORECASE), "attachPct"),
    (re.compile(r"revenue", re.IGNORECASE), "revenue"),
)


@dataclass
class SalesRecord:
    kind: JobKind
    store_id: str
    brand_id: str
    category_id: str
    # monthly: {year: [month entries]}; daily: {year: {"<month>": [day entries]}}
    by_year: dict[int, Any]
    identity: dict[str, str]
    row_number: int = 0

    @property
    def context(self) -> str:
        return _sales_context(self.identity)

    def natural_keys(self) -> list[tuple[str, str, str, int]]:
        return [(self.store_id, self.brand_id, self.category_id, year) for year in sorted(self.by_year)]


@dataclass
class StoreRecord:
    store_id: str
    store_name: str
    city: str
    full_address: str
    partner_brand_ids: list[str]
    partner_brand_types: list[str] | None
    executive_ids: list[str]
    executives_to_add: list[str] = field(default_factory=list)
    executives_to_remove: list[str] = field(default_factory=list)
    identity: dict[str, str] = field(default_factory=dict)
    row_number: int = 0

    kind = JobKind.STORES

    @property
    def context(self) -> str:
        return _store_context(self.identity)

    def natural_keys(self) -> list[tuple[str]]:
        return [(self.store_id,)]


ValidatedRecord = Union[SalesRecord, StoreRecord]


@dataclass
class RowSuccess:
    row_number: int
    record: ValidatedRecord

    ok = True

    @property
    def identity(self) -> dict[str, str]:
        return self.record.identity


@dataclass
class RowFailure:
    row_number: int
    reason: str
    identity: dict[str, str]
    context: str

    ok = False

    @property
    def message(self) -> str:
        return f"Row {self.row_number}: {self.reason}. {self.context}"


RowOutcome = Union[RowSuccess, RowFailure]


def _sales_context(identity: dict[str, str]) -> str:
    return (
        f"Store: {identity.get('Store_ID') or 'N/A'}, "
        f"Brand: {identity.get('Brand') or 'N/A'}, "
        f"Category: {identity.get('Category') or 'N/A'}"
    )


def _store_context(identity: dict[str, str]) -> str:
    return (
        f"Store: {identity.get('Store_ID') or 'N/A'} | "
        f"{identity.get('Store_Name') or 'N/A'} | {identity.get('City') or 'N/A'}"
    )


def _to_number(value: Any) -> int | float:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return 0 if value != value else value  # NaN
    raw = clean_text(value).replace(",", "").rstrip("%").strip()
    if not raw:
        return 0
    try:
        number = float(raw)
    except ValueError:
        return 0
    return int(number) if number.is_integer() else number


def _split_list(value: Any) -> list[str]:
    return [clean_code(part) for part in clean_text(value).split(",") if clean_code(part)]


def _first_present(row: RawRow, names: tuple[str, ...]) -> Any:
    for name in names:
        value = row.fields.get(name)
        if clean_text(value):
            return value
    return None


def _sales_identity(row: RawRow) -> dict[str, str]:
    return {
        "Store_ID": row.get_code("Store_ID"),
        "Brand": row.get_text("Brand"),
        "Category": row.get_text("Category"),
    }


def _resolve_sales_row(row: RawRow, snapshot: ReferenceSnapshot) -> tuple[dict[str, str], RowFailure | tuple[str, str, str]]:
    identity = _sales_identity(row)
    context = _sales_context(identity)

    def fail(reason: str) -> RowFailure:
        return RowFailure(row_number=row.sequence, reason=reason, identity=identity, context=context)

    missing = [name for name in SALES_IDENTITY_FIELDS if not identity[name]]
    if missing:
        return identity, fail(f"Missing required fields: {', '.join(missing)}")

    store = snapshot.stores.get(identity["Store_ID"])
    if store is None:
        return identity, fail("Store not found")
    brand_id = snapshot.brands_by_name.get(identity["Brand"])
    if brand_id is None:
        return identity, fail("Brand not found")
    category_id = snapshot.categories_by_name.get(identity["Category"])
    if category_id is None:
        return identity, fail("Category not found")

    if not snapshot.brand_allowed_for_store(store.id, brand_id):
        return identity, fail("Store/brand association not permitted: brand is not mapped to this store")
    if not snapshot.category_allowed_for_brand(brand_id, category_id):
        return identity, fail("Brand/category association not permitted: category is not mapped to this brand")

    return identity, (store.id, brand_id, category_id)


def group_monthly_metrics(fields: dict[str, Any]) -> dict[int, list[dict[str, Any]]]:
    """Group "DD-MM-YYYY <metric>" columns into per-year month entries."""
    by_year: dict[int, dict[int, dict[str, Any]]] = {}
    for key, value in fields.items():
        match = MONTHLY_KEY_RE.match(key)
        if not match:
            continue
        _, mm, yyyy, metric = match.groups()
        month = int(mm)
        if not 1 <= month <= 12:
            continue
        attribute = next((name for pattern, name in MONTHLY_METRICS if pattern.search(metric)), None)
        if attribute is None:
            continue
        months = by_year.setdefault(int(yyyy), {})
        entry = months.setdefault(month, {"month": month})
        entry[attribute] = _to_number(value)
    return {year: [months[m] for m in sorted(months)] for year, months in by_year.items()}


def group_daily_metrics(fields: dict[str, Any]) -> dict[int, dict[str, list[dict[str, Any]]]]:
    """Group "DD-MM-YYYY Count of Sales|Revenue" columns by year, then month key "1".."12"."""
    by_year: dict[int, dict[str, list[dict[str, Any]]]] = {}
    entries: dict[str, dict[str, Any]] = {}
    for key, value in fields.items():
        match = DAILY_KEY_RE.match(key)
        if not match:
            continue
        dd, mm, yyyy, metric = match.groups()
        month = int(mm)
        if not 1 <= month <= 12:
            continue
        day_key = f"{dd}-{mm}-{yyyy}"
        entry = entries.get(day_key)
        if entry is None:
            entry = {"date": day_key, "countOfSales": 0, "revenue": 0}
            entries[day_key] = entry
            by_year.setdefault(int(yyyy), {}).setdefault(str(month), []).append(entry)
        attribute = "countOfSales" if metric.lower() == "count of sales" else "revenue"
        entry[attribute] = _to_number(value)
    return by_year


def validate_monthly_sales_row(row: RawRow, snapshot: ReferenceSnapshot) -> RowOutcome:
    identity, resolved = _resolve_sales_row(row, snapshot)
    if isinstance(resolved, RowFailure):
        return resolved
    store_id, brand_id, category_id = resolved
    record = SalesRecord(
        kind=JobKind.MONTHLY,
        store_id=store_id,
        brand_id=brand_id,
        category_id=category_id,
        by_year=group_monthly_metrics(row.fields),
        identity=identity,
        row_number=row.sequence,
    )
    return RowSuccess(row_number=row.sequence, record=record)


def validate_daily_sales_row(row: RawRow, snapshot: ReferenceSnapshot) -> RowOutcome:
    identity, resolved = _resolve_sales_row(row, snapshot)
    if isinstance(resolved, RowFailure):
        return resolved
    store_id, brand_id, category_id = resolved
    record = SalesRecord(
        kind=JobKind.DAILY,
        store_id=store_id,
        brand_id=brand_id,
        category_id=category_id,
        by_year=group_daily_metrics(row.fields),
        identity=identity,
        row_number=row.sequence,
    )
    return RowSuccess(row_number=row.sequence, record=record)


def _map_partner_type(value: str) -> str | None:
    return PARTNER_BRAND_TYPES.get(re.sub(r"\s+", "", value).upper())


def validate_store_row(row: RawRow, snapshot: ReferenceSnapshot) -> RowOutcome:
    identity = {
        "Store_ID": row.get_code("Store_ID"),
        "Store_Name": row.get_text("Store Name"),
        "City": row.get_text("City"),
    }
    context = _store_context(identity)

    def fail(reason: str) -> RowFailure:
        return RowFailure(row_number=row.sequence, reason=reason, identity=identity, context=context)

    missing = [name for name, key in (("Store_ID", "Store_ID"), ("Store Name", "Store_Name")) if not identity[key]]
    if missing:
        return fail(f"Missing required fields: {', '.join(missing)}")

    partner_brand_ids = _split_list(_first_present(row, PARTNER_BRAND_ID_COLUMNS))
    for brand_id in partner_brand_ids:
        if brand_id not in snapshot.brand_ids:
            return fail(f"Brand ID '{brand_id}' not found")

    partner_brand_types: list[str] | None = None
    raw_types = [part.strip() for part in clean_text(_first_present(row, PARTNER_BRAND_TYPE_COLUMNS)).split(",") if part.strip()]
    if raw_types:
        if len(raw_types) != len(partner_brand_ids):
            return fail(
                f"partnerBrandTypes count ({len(raw_types)}) does not match "
                f"partnerBrandIds count ({len(partner_brand_ids)})"
            )
        mapped = [_map_partner_type(value) for value in raw_types]
        if any(value is None for value in mapped):
            return fail("Invalid partnerBrandTypes value(s). Allowed: A+, A, B, C, D")
        partner_brand_types = mapped

    executive_ids = _split_list(row.fields.get("Executive_IDs"))
    for executive_id in executive_ids:
        if executive_id not in snapshot.executives:
            return fail(f"Executive ID '{executive_id}' not found")

    current = snapshot.stores.get(identity["Store_ID"])
    current_executives = current.executive_ids if current is not None else frozenset()
    wanted = list(dict.fromkeys(executive_ids))

    record = StoreRecord(
        store_id=identity["Store_ID"],
        store_name=identity["Store_Name"],
        city=identity["City"],
        full_address=row.get_text("Full Address"),
        partner_brand_ids=partner_brand_ids,
        partner_brand_types=partner_brand_types,
        executive_ids=wanted,
        executives_to_add=[e for e in wanted if e not in current_executives],
        executives_to_remove=sorted(e for e in current_executives if e not in wanted),
        identity=identity,
        row_number=row.sequence,
    )
    return RowSuccess(row_number=row.sequence, record=record)


VALIDATORS = {
    JobKind.MONTHLY: validate_monthly_sales_row,
    JobKind.DAILY: validate_daily_sales_row,
    JobKind.STORES: validate_store_row,
}


def validate_row(kind: JobKind, row: RawRow, snapshot: ReferenceSnapshot) -> RowOutcome:
    return VALIDATORS[kind](row, snapshot)
