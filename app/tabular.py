from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from io import BytesIO
from typing import Any

from app.errors import ParseError

logger = logging.getLogger(__name__)

ACCEPTED_SUFFIXES = (".xlsx", ".xlsm", ".xltx", ".xltm")
# Any header number above this is treated as a spreadsheet date serial.
DATE_SERIAL_THRESHOLD = 40000
SERIAL_EPOCH = date(1899, 12, 30)


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    text_value = str(value).replace("\xa0", " ").strip()
    return text_value


def clean_code(value: Any) -> str:
    raw = clean_text(value)
    if not raw:
        return ""
    if raw.endswith(".0") and raw.replace(".", "", 1).isdigit():
        return raw[:-2]
    return raw


def serial_to_date(serial: float) -> date:
    return SERIAL_EPOCH + timedelta(days=int(serial))


def format_header_date(value: date) -> str:
    return value.strftime("%d-%m-%Y")


def resolve_header_label(value: Any) -> str:
    """Render one primary header cell; dates and date serials become DD-MM-YYYY."""
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > DATE_SERIAL_THRESHOLD:
        return format_header_date(serial_to_date(value))
    if isinstance(value, datetime):
        return format_header_date(value.date())
    if isinstance(value, date):
        return format_header_date(value)
    return clean_text(value)


def resolve_two_row_headers(
    primary: list[Any] | tuple[Any, ...],
    secondary: list[Any] | tuple[Any, ...],
    identity_fields: tuple[str, ...] | frozenset[str],
) -> list[str | None]:
    """Flatten a merged two-row header into one field name per column.

    A blank primary cell inherits the nearest non-blank primary to its left.
    Identity columns keep their primary label verbatim, but only in the column
    that actually carries it. Every other column becomes "{primary} {secondary}"
    and is dropped (``None``) when either part is blank.
    """
    names: list[str | None] = []
    last_primary = ""
    width = max(len(primary), len(secondary))
    for idx in range(width):
        own_primary = resolve_header_label(primary[idx] if idx < len(primary) else None)
        sub_label = clean_text(secondary[idx] if idx < len(secondary) else None)

        if own_primary:
            last_primary = own_primary
        label = own_primary or last_primary

        if own_primary and own_primary in identity_fields:
            names.append(own_primary)
        elif label and label not in identity_fields and sub_label:
            names.append(f"{label} {sub_label}")
        else:
            names.append(None)
    return names


def resolve_single_row_headers(header: list[Any] | tuple[Any, ...]) -> list[str | None]:
    return [clean_text(value) or None for value in header]


@dataclass
class RawRow:
    sequence: int
    sheet_row: int
    fields: dict[str, Any]

    def get_text(self, name: str) -> str:
        return clean_text(self.fields.get(name))

    def get_code(self, name: str) -> str:
        return clean_code(self.fields.get(name))


@dataclass
class ParsedSheet:
    title: str
    header_row: int
    field_names: list[str] = field(default_factory=list)
    rows: list[RawRow] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.rows)


def _load_first_worksheet(content: bytes):
    if not content:
        raise ParseError("Uploaded workbook is empty")

    from openpyxl import load_workbook

    try:
        workbook = load_workbook(BytesIO(content), data_only=True)
    except Exception as exc:
        raise ParseError(f"Could not read workbook: {exc}") from exc

    if not workbook.sheetnames:
        raise ParseError("Workbook has no worksheets")
    return workbook[workbook.sheetnames[0]]


def _is_row_populated(row: tuple[Any, ...] | list[Any]) -> bool:
    return any(clean_text(v) for v in row)


def parse_workbook(
    content: bytes,
    *,
    identity_fields: tuple[str, ...] = (),
    header_rows: int = 2,
) -> ParsedSheet:
    """Decode the first worksheet of ``content`` into flat rows.

    ``header_rows=2`` reads the merged date/metric header used by the sales
    sheets; ``header_rows=1`` takes the first occupied row as field names.
    Rows without any value are skipped.
    """
    if header_rows not in (1, 2):
        raise ValueError("header_rows must be 1 or 2")

    sheet = _load_first_worksheet(content)
    min_row, max_row = sheet.min_row, sheet.max_row
    min_col, max_col = sheet.min_column, sheet.max_column

    header_cells = [
        list(row)
        for row in sheet.iter_rows(
            min_row=min_row,
            max_row=min_row + header_rows - 1,
            min_col=min_col,
            max_col=max_col,
            values_only=True,
        )
    ]
    if not header_cells or not _is_row_populated(header_cells[0]):
        raise ParseError("Worksheet has no header row")

    if header_rows == 2:
        secondary = header_cells[1] if len(header_cells) > 1 else []
        names = resolve_two_row_headers(header_cells[0], secondary, frozenset(identity_fields))
    else:
        names = resolve_single_row_headers(header_cells[0])

    parsed = ParsedSheet(
        title=sheet.title,
        header_row=min_row,
        field_names=[name for name in names if name],
    )

    first_data_row = min_row + header_rows
    if first_data_row > max_row:
        return parsed

    sequence = 0
    for sheet_row, values in enumerate(
        sheet.iter_rows(
            min_row=first_data_row,
            max_row=max_row,
            min_col=min_col,
            max_col=max_col,
            values_only=True,
        ),
        start=first_data_row,
    ):
        if not _is_row_populated(values):
            continue
        sequence += 1
        fields: dict[str, Any] = {}
        for name, value in zip(names, values):
            if name is None:
                continue
            # Leftmost occurrence wins for repeated labels.
            fields.setdefault(name, value)
        parsed.rows.append(RawRow(sequence=sequence, sheet_row=sheet_row, fields=fields))

    logger.info("Parsed sheet '%s': %s data rows", parsed.title, parsed.total_rows)
    return parsed
