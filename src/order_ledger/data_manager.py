"""Data access layer for the order ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business rules belong in :mod:`order_ledger.core_logic`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting, and snapshotting the Excel file.
3. Sheet operations: loading typed records and appending, updating, or
   deleting individual rows of the ``PendingOrders``, ``DateBuckets`` and
   ``LineItems`` sheets.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_CACHE_SECONDS,
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    SheetName,
    SourceKind,
)


CONFIG_FILE_NAME = "config.ini"
PENDING_ORDERS_SHEET = SheetName.PENDING_ORDERS.value
DATE_BUCKETS_SHEET = SheetName.DATE_BUCKETS.value
LINE_ITEMS_SHEET = SheetName.LINE_ITEMS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PENDING_ORDERS_SHEET: [
        "OrderID",
        "DeliveryDate",
        "ProductCode",
        "ProductName",
        "Quantity",
        "CreatedAt",
    ],
    DATE_BUCKETS_SHEET: [
        "BucketID",
        "DeliveryDate",
        "CreatedAt",
    ],
    LINE_ITEMS_SHEET: [
        "LineItemID",
        "BucketID",
        "ProductCode",
        "ProductName",
        "Quantity",
    ],
}

# Environment variables consulted when a source section leaves ApiKey blank.
API_KEY_ENV_FALLBACKS: Mapping[str, str] = {
    "Prices": "PRICE_SPREADSHEET_API_KEY",
    "Products": "SPREADSHEET_API_KEY",
}


@dataclass(frozen=True)
class SourceSettings:
    """Where and how an external row source (prices, products) is read."""

    kind: SourceKind
    location: str = ""
    range_name: str = ""
    api_key: Optional[str] = None
    cache_seconds: int = DEFAULT_CACHE_SECONDS
    timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    autosave: bool
    prices: SourceSettings
    products: SourceSettings


@dataclass(frozen=True)
class PendingOrderRow:
    """In-memory view of a row from the ``PendingOrders`` sheet."""

    order_id: str
    delivery_date: date
    product_code: str
    product_name: str
    quantity: Decimal
    created_at: datetime


@dataclass(frozen=True)
class DateBucketRow:
    """In-memory view of a row from the ``DateBuckets`` sheet."""

    bucket_id: str
    delivery_date: date
    created_at: datetime


@dataclass(frozen=True)
class LineItemRow:
    """In-memory view of a row from the ``LineItems`` sheet."""

    line_item_id: str
    bucket_id: str
    product_code: str
    product_name: str
    quantity: Decimal


SheetSnapshot = Dict[str, List[tuple]]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def _resolve_path(raw: str, base_path: Path) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (base_path / path).resolve()
    return path


def parse_source_settings(
    parser: configparser.ConfigParser,
    section: str,
    *,
    base_path: Path,
) -> SourceSettings:
    """Read an optional ``[Prices]`` or ``[Products]`` section.

    Absent sections produce a ``SourceKind.NONE`` setting so the engine runs
    without any external source. Workbook locations are resolved against
    ``base_path``; a blank ``ApiKey`` falls back to the environment variable
    listed in :data:`API_KEY_ENV_FALLBACKS`.

    Raises:
        ValueError: If ``Source`` names an unknown kind or a numeric option
            cannot be parsed.
    """

    if not parser.has_section(section):
        return SourceSettings(kind=SourceKind.NONE)

    raw_kind = parser.get(section, "Source", fallback=SourceKind.NONE.value).strip().lower()
    try:
        kind = SourceKind(raw_kind)
    except ValueError as exc:
        raise ValueError(f"Unknown {section} source kind: {raw_kind}") from exc

    location = parser.get(section, "Location", fallback="").strip()
    if kind is SourceKind.WORKBOOK and location:
        location = str(_resolve_path(location, base_path))

    api_key = parser.get(section, "ApiKey", fallback="").strip() or None
    if api_key is None and section in API_KEY_ENV_FALLBACKS:
        api_key = os.environ.get(API_KEY_ENV_FALLBACKS[section]) or None

    return SourceSettings(
        kind=kind,
        location=location,
        range_name=parser.get(section, "Range", fallback="").strip(),
        api_key=api_key,
        cache_seconds=parser.getint(section, "CacheSeconds", fallback=DEFAULT_CACHE_SECONDS),
        timeout_seconds=parser.getfloat(section, "TimeoutSeconds", fallback=DEFAULT_FETCH_TIMEOUT_SECONDS),
    )


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored to ``base_path`` (or the current
    working directory) and resolved to an absolute form.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used for relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required ``[System]`` option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    if base_path is None:
        base_path = Path.cwd()

    return ConfigSettings(
        data_file=_resolve_path(data_file_raw, base_path),
        schema_version=schema_version,
        autosave=parser.getboolean("System", "AutoSave", fallback=True),
        prices=parse_source_settings(parser, "Prices", base_path=base_path),
        products=parse_source_settings(parser, "Products", base_path=base_path),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders.

    The workbook is written to a temporary file beside ``destination`` and
    then moved over it, so a failed save leaves the previous file intact.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(dir=dest.parent, suffix=".xlsx", delete=False) as handle:
        temp_path = Path(handle.name)
    try:
        workbook.save(temp_path)
        os.replace(temp_path, dest)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def snapshot_sheets(workbook: Workbook, sheet_names: Iterable[str] = tuple(SHEET_COLUMNS)) -> SheetSnapshot:
    """Copy the data rows of the ledger sheets so they can be restored later.

    Only cell values are captured; header rows are left alone because the
    ledger never rewrites them.
    """

    snapshot: SheetSnapshot = {}
    for name in sheet_names:
        sheet = workbook[name]
        snapshot[name] = [tuple(row) for row in sheet.iter_rows(min_row=2, values_only=True)]
    return snapshot


def restore_sheets(workbook: Workbook, snapshot: SheetSnapshot) -> None:
    """Overwrite the data rows of each sheet in ``snapshot`` with its copy."""

    for name, rows in snapshot.items():
        sheet = workbook[name]
        if sheet.max_row > 1:
            sheet.delete_rows(2, sheet.max_row - 1)
        for row_index, row in enumerate(rows, start=2):
            for column_index, value in enumerate(row, start=1):
                sheet.cell(row=row_index, column=column_index, value=value)
        log.debug("Restored %d rows on sheet '%s'", len(rows), name)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_pending_orders(workbook: Workbook) -> Iterable[PendingOrderRow]:
    """Iterate over the ``PendingOrders`` sheet and yield typed records.

    Header and fully empty rows are skipped.
    """

    for raw in _iter_sheet(workbook, PENDING_ORDERS_SHEET):
        yield deserialize_pending_order(raw)


def iter_date_buckets(workbook: Workbook) -> Iterable[DateBucketRow]:
    """Iterate over the ``DateBuckets`` sheet and yield typed records."""

    for raw in _iter_sheet(workbook, DATE_BUCKETS_SHEET):
        yield deserialize_date_bucket(raw)


def iter_line_items(workbook: Workbook) -> Iterable[LineItemRow]:
    """Iterate over the ``LineItems`` sheet and yield typed records."""

    for raw in _iter_sheet(workbook, LINE_ITEMS_SHEET):
        yield deserialize_line_item(raw)


def append_pending_order(workbook: Workbook, record: PendingOrderRow) -> None:
    """Append a pending order to the ``PendingOrders`` worksheet."""

    workbook[PENDING_ORDERS_SHEET].append(serialize_pending_order(record))


def append_date_bucket(workbook: Workbook, record: DateBucketRow) -> None:
    """Append a date bucket to the ``DateBuckets`` worksheet."""

    workbook[DATE_BUCKETS_SHEET].append(serialize_date_bucket(record))


def append_line_item(workbook: Workbook, record: LineItemRow) -> None:
    """Append a line item to the ``LineItems`` worksheet."""

    workbook[LINE_ITEMS_SHEET].append(serialize_line_item(record))


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[Any, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_rows(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: object,
) -> List[int]:
    """Find every row whose ``key_column`` equals ``key_value``.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (object): Value to match within the key column.

    Returns:
        list[int]: 1-based Excel row indexes of the matches, in sheet order.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    matches: List[int] = []
    for row_idx, row in enumerate(workbook[sheet_name].iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            matches.append(row_idx)
    return matches


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> Optional[int]:
    """Return the first row index whose ``key_column`` equals ``key_value``."""

    matches = locate_rows(workbook, sheet_name, key_column, key_value)
    return matches[0] if matches else None


def update_row(workbook: Workbook, sheet_name: str, row_index: int, *, field_values: Mapping[str, Any]) -> None:
    """Write ``field_values`` into the named columns of a single row.

    Raises:
        KeyError: If any referenced column is missing from the header.
    """

    header_map = _header_map(workbook, sheet_name)
    sheet = workbook[sheet_name]
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def update_pending_order(workbook: Workbook, order_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of an existing pending order.

    Raises:
        KeyError: If the order or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PENDING_ORDERS_SHEET, "OrderID", order_id)
    if row_index is None:
        raise KeyError(f"Pending order not found: {order_id}")
    update_row(workbook, PENDING_ORDERS_SHEET, row_index, field_values=field_values)


def update_line_item(workbook: Workbook, line_item_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of an existing line item.

    Raises:
        KeyError: If the line item or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, LINE_ITEMS_SHEET, "LineItemID", line_item_id)
    if row_index is None:
        raise KeyError(f"Line item not found: {line_item_id}")
    update_row(workbook, LINE_ITEMS_SHEET, row_index, field_values=field_values)


def delete_rows(workbook: Workbook, sheet_name: str, row_indexes: Iterable[int]) -> int:
    """Delete the given rows, bottom-up so earlier indexes stay valid."""

    sheet = workbook[sheet_name]
    removed = 0
    for row_index in sorted(set(row_indexes), reverse=True):
        sheet.delete_rows(row_index, 1)
        removed += 1
    return removed


def delete_pending_order(workbook: Workbook, order_id: str) -> None:
    """Remove a pending order row.

    Raises:
        KeyError: If the order cannot be found.
    """

    row_index = locate_row(workbook, PENDING_ORDERS_SHEET, "OrderID", order_id)
    if row_index is None:
        raise KeyError(f"Pending order not found: {order_id}")
    delete_rows(workbook, PENDING_ORDERS_SHEET, [row_index])


def delete_date_bucket(workbook: Workbook, bucket_id: str) -> None:
    """Remove a date bucket row.

    Raises:
        KeyError: If the bucket cannot be found.
    """

    row_index = locate_row(workbook, DATE_BUCKETS_SHEET, "BucketID", bucket_id)
    if row_index is None:
        raise KeyError(f"Date bucket not found: {bucket_id}")
    delete_rows(workbook, DATE_BUCKETS_SHEET, [row_index])


def delete_line_items(workbook: Workbook, line_item_ids: Iterable[str]) -> int:
    """Remove the line items whose ids are listed and return how many went."""

    wanted = set(line_item_ids)
    header_map = _header_map(workbook, LINE_ITEMS_SHEET)
    id_col = header_map["LineItemID"] - 1
    rows = [
        row_idx
        for row_idx, row in enumerate(workbook[LINE_ITEMS_SHEET].iter_rows(min_row=2, values_only=True), start=2)
        if row[id_col] in wanted
    ]
    return delete_rows(workbook, LINE_ITEMS_SHEET, rows)


def find_bucket_by_date(workbook: Workbook, delivery_date: date) -> Optional[DateBucketRow]:
    """Return the bucket holding ``delivery_date`` or ``None``."""

    for bucket in iter_date_buckets(workbook):
        if bucket.delivery_date == delivery_date:
            return bucket
    return None


def serialize_pending_order(record: PendingOrderRow) -> list[object]:
    """Convert a pending order into the worksheet column ordering."""

    return [
        record.order_id,
        record.delivery_date.isoformat(),
        record.product_code,
        record.product_name,
        record.quantity,
        record.created_at.isoformat(),
    ]


def serialize_date_bucket(record: DateBucketRow) -> list[object]:
    """Convert a date bucket into the worksheet column ordering."""

    return [record.bucket_id, record.delivery_date.isoformat(), record.created_at.isoformat()]


def serialize_line_item(record: LineItemRow) -> list[object]:
    """Convert a line item into the worksheet column ordering."""

    return [
        record.line_item_id,
        record.bucket_id,
        record.product_code,
        record.product_name,
        record.quantity,
    ]


def coerce_decimal(raw: object, default: Decimal = Decimal("0")) -> Decimal:
    """Turn a cell value into a :class:`~decimal.Decimal`.

    ``None`` and unparseable values fall back to ``default``. Floats go through
    ``str`` so ``12.3`` becomes ``Decimal("12.3")`` rather than its binary
    expansion.
    """

    if raw is None or raw == "":
        return default
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation:
        return default


def coerce_date(raw: object) -> date:
    """Turn a cell value (ISO text, ``date`` or ``datetime``) into a ``date``."""

    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw).strip()[:10])


def coerce_datetime(raw: object) -> datetime:
    """Turn a cell value (ISO text or ``datetime``) into a ``datetime``."""

    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw).strip())


def deserialize_pending_order(raw_row: Sequence[object]) -> PendingOrderRow:
    """Convert a raw worksheet row into a typed pending order.

    Identifier and text columns are coerced to ``str`` so that codes Excel
    interprets as numbers still compare as text.
    """

    order_id, delivery_date, product_code, product_name, quantity, created_at = raw_row[:6]
    return PendingOrderRow(
        order_id=str(order_id),
        delivery_date=coerce_date(delivery_date),
        product_code=str(product_code) if product_code is not None else "",
        product_name=str(product_name) if product_name is not None else "",
        quantity=coerce_decimal(quantity),
        created_at=coerce_datetime(created_at),
    )


def deserialize_date_bucket(raw_row: Sequence[object]) -> DateBucketRow:
    """Convert a raw worksheet row into a typed date bucket."""

    bucket_id, delivery_date, created_at = raw_row[:3]
    return DateBucketRow(
        bucket_id=str(bucket_id),
        delivery_date=coerce_date(delivery_date),
        created_at=coerce_datetime(created_at),
    )


def deserialize_line_item(raw_row: Sequence[object]) -> LineItemRow:
    """Convert a raw worksheet row into a typed line item."""

    line_item_id, bucket_id, product_code, product_name, quantity = raw_row[:5]
    return LineItemRow(
        line_item_id=str(line_item_id),
        bucket_id=str(bucket_id),
        product_code=str(product_code) if product_code is not None else "",
        product_name=str(product_name) if product_name is not None else "",
        quantity=coerce_decimal(quantity),
    )
