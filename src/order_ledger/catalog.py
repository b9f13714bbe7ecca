"""External product and price tables.

The ledger never owns the product catalog or the price list; both live in
spreadsheets maintained by someone else. This module turns raw spreadsheet
rows into :class:`Product` and :class:`PriceEntry` records, provides two row
sources (a local workbook read with ``openpyxl`` and the Google Sheets values
API read with ``requests``), and wraps a source in a :class:`SnapshotCache`
whose lifetime is owned by the caller.
"""

from __future__ import annotations

import re
import time
import zipfile
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Generic, Iterable, List, Mapping, Optional, Protocol, Sequence, TypeVar
from urllib.parse import quote

import openpyxl
import requests
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException

from . import log
from .constants import DEFAULT_CACHE_SECONDS, DEFAULT_FETCH_TIMEOUT_SECONDS, SourceKind
from .data_manager import SourceSettings
from .errors import ExternalSourceError

SHEETS_VALUES_URL = "https://sheets.googleapis.com/v4/spreadsheets/{spreadsheet_id}/values/{range}"

# Price sheet layout: code in column A, unit price in column C.
PRICE_CODE_COLUMN = 0
PRICE_VALUE_COLUMN = 2

_NON_NUMERIC = re.compile(r"[^\d.-]")

RawRow = Sequence[object]
T = TypeVar("T")


@dataclass(frozen=True)
class Product:
    """A catalog product; extra spreadsheet columns land in ``extras``."""

    code: str
    name: str
    color: Optional[str] = None
    extras: Mapping[str, object] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class PriceEntry:
    """A price list row; extra spreadsheet columns land in ``extras``."""

    code: str
    unit_price: Decimal
    extras: Mapping[str, object] = field(default_factory=dict, compare=False)


class RowSource(Protocol):
    """Anything that can hand back the raw rows of one spreadsheet range."""

    name: str

    def fetch_rows(self) -> List[RawRow]:
        """Return the rows, raising :class:`ExternalSourceError` on failure."""
        ...


def _cell_text(value: object) -> str:
    return "" if value is None else str(value).strip()


def _extras(row: RawRow, used: Iterable[int]) -> dict[str, object]:
    skip = set(used)
    return {
        get_column_letter(index + 1): value
        for index, value in enumerate(row)
        if index not in skip and value not in (None, "")
    }


def parse_price(value: object) -> Decimal:
    """Parse a price cell such as ``"$1,250.50"``; unparseable cells are ``0``."""

    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return Decimal(str(value))
    cleaned = _NON_NUMERIC.sub("", _cell_text(value))
    try:
        return Decimal(cleaned) if cleaned else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def parse_price_rows(
    rows: Iterable[RawRow],
    *,
    code_column: int = PRICE_CODE_COLUMN,
    price_column: int = PRICE_VALUE_COLUMN,
) -> List[PriceEntry]:
    """Convert raw price-sheet rows into :class:`PriceEntry` records.

    Rows shorter than two cells or without a code are dropped. A missing
    price cell yields ``0`` rather than discarding the code.
    """

    entries: List[PriceEntry] = []
    for row in rows:
        if len(row) < 2:
            continue
        code = _cell_text(row[code_column])
        if not code:
            continue
        raw_price = row[price_column] if len(row) > price_column else None
        entries.append(
            PriceEntry(
                code=code,
                unit_price=parse_price(raw_price),
                extras=_extras(row, (code_column, price_column)),
            )
        )
    return entries


def parse_product_rows(rows: Iterable[RawRow]) -> List[Product]:
    """Convert raw catalog rows (code, name, optional color) into products."""

    products: List[Product] = []
    for row in rows:
        if not row:
            continue
        code = _cell_text(row[0])
        if not code:
            continue
        name = _cell_text(row[1]) if len(row) > 1 else ""
        color = _cell_text(row[2]) if len(row) > 2 else ""
        products.append(
            Product(
                code=code,
                name=name,
                color=color or None,
                extras=_extras(row, (0, 1, 2)),
            )
        )
    return products


class WorkbookRowSource:
    """Read the data rows of one sheet from a local ``.xlsx`` file."""

    def __init__(self, path: Path, sheet_name: str = "", *, min_row: int = 2):
        self.path = Path(path)
        self.sheet_name = sheet_name
        self.min_row = min_row
        self.name = f"workbook:{self.path.name}"

    def fetch_rows(self) -> List[RawRow]:
        try:
            workbook = openpyxl.load_workbook(self.path, read_only=True, data_only=True)
        except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
            raise ExternalSourceError(self.name, str(exc)) from exc
        try:
            if self.sheet_name:
                if self.sheet_name not in workbook.sheetnames:
                    raise ExternalSourceError(self.name, f"missing sheet '{self.sheet_name}'")
                sheet = workbook[self.sheet_name]
            else:
                sheet = workbook.worksheets[0]
            return [
                tuple(row)
                for row in sheet.iter_rows(min_row=self.min_row, values_only=True)
                if any(cell is not None for cell in row)
            ]
        finally:
            workbook.close()


class SheetsValuesRowSource:
    """Read a range through the Google Sheets ``values`` REST endpoint."""

    def __init__(
        self,
        spreadsheet_id: str,
        range_name: str,
        api_key: Optional[str],
        *,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.spreadsheet_id = spreadsheet_id
        self.range_name = range_name
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.name = f"sheets:{range_name}"

    def fetch_rows(self) -> List[RawRow]:
        if not self.spreadsheet_id or not self.api_key:
            raise ExternalSourceError(self.name, "spreadsheet id or API key not configured")

        url = SHEETS_VALUES_URL.format(
            spreadsheet_id=self.spreadsheet_id,
            range=quote(self.range_name, safe="!:"),
        )
        try:
            resp = self.session.get(url, params={"key": self.api_key}, timeout=self.timeout_seconds)
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as exc:
            raise ExternalSourceError(self.name, str(exc)) from exc
        except ValueError as exc:
            raise ExternalSourceError(self.name, f"invalid JSON payload: {exc}") from exc

        values = payload.get("values") if isinstance(payload, dict) else None
        if values is None:
            return []
        if not isinstance(values, list):
            raise ExternalSourceError(self.name, "unexpected 'values' payload")
        return [tuple(row) for row in values]


class EmptyRowSource:
    """Source used when nothing is configured; always yields no rows."""

    name = "none"

    def fetch_rows(self) -> List[RawRow]:
        return []


class SnapshotCache(Generic[T]):
    """Time-boxed cache around a loader of external records.

    ``get`` reloads once the snapshot is older than ``ttl_seconds``. When the
    loader raises :class:`ExternalSourceError` the last good snapshot is served
    instead; with no snapshot yet the cache serves an empty tuple, unless
    ``require_data`` is set, in which case the error propagates.
    """

    def __init__(
        self,
        loader: Callable[[], Sequence[T]],
        *,
        name: str,
        ttl_seconds: float = DEFAULT_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        require_data: bool = False,
    ):
        self._loader = loader
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.require_data = require_data
        self._snapshot: Optional[tuple[T, ...]] = None
        self._loaded_at: Optional[float] = None

    @property
    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return (self._clock() - self._loaded_at) >= self.ttl_seconds

    def invalidate(self) -> None:
        """Force the next :meth:`get` to hit the loader."""

        self._loaded_at = None

    def get(self) -> tuple[T, ...]:
        if self._snapshot is not None and not self.is_stale():
            return self._snapshot

        try:
            records = tuple(self._loader())
        except ExternalSourceError as exc:
            if self._snapshot is not None:
                log.warning(
                    "%s; serving %d cached %s records",
                    exc,
                    len(self._snapshot),
                    self.name,
                )
                return self._snapshot
            if self.require_data:
                log.error("%s; no cached %s records available", exc, self.name)
                raise
            log.warning("%s; no cached %s records, using an empty table", exc, self.name)
            return ()

        self._snapshot = records
        self._loaded_at = self._clock()
        log.info("Loaded %d %s records", len(records), self.name)
        return records


def build_row_source(settings: SourceSettings) -> RowSource:
    """Instantiate the row source described by a config section."""

    if settings.kind is SourceKind.WORKBOOK:
        return WorkbookRowSource(Path(settings.location), settings.range_name)
    if settings.kind is SourceKind.SHEETS:
        return SheetsValuesRowSource(
            settings.location,
            settings.range_name,
            settings.api_key,
            timeout_seconds=settings.timeout_seconds,
        )
    return EmptyRowSource()


def build_price_cache(settings: SourceSettings, *, clock: Callable[[], float] = time.monotonic) -> SnapshotCache[PriceEntry]:
    """Create the price snapshot cache for the ``[Prices]`` config section."""

    source = build_row_source(settings)
    return SnapshotCache(
        lambda: parse_price_rows(source.fetch_rows()),
        name="price",
        ttl_seconds=settings.cache_seconds,
        clock=clock,
    )


def build_product_cache(settings: SourceSettings, *, clock: Callable[[], float] = time.monotonic) -> SnapshotCache[Product]:
    """Create the product snapshot cache for the ``[Products]`` config section."""

    source = build_row_source(settings)
    return SnapshotCache(
        lambda: parse_product_rows(source.fetch_rows()),
        name="product",
        ttl_seconds=settings.cache_seconds,
        clock=clock,
        require_data=True,
    )


def search_products(products: Iterable[Product], query: str) -> List[Product]:
    """Case-insensitive substring search over code, name, and color."""

    needle = query.strip().lower()
    if not needle:
        return []
    return [
        product
        for product in products
        if needle in product.code.lower()
        or needle in product.name.lower()
        or (product.color is not None and needle in product.color.lower())
    ]
