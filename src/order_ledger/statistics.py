"""Fiscal-period statistics over the completed order history.

Periods follow the billing cycle rather than the calendar: a month runs from
the 25th of the previous month to the 24th of the month itself, and a full
year from December 25 of the previous year to December 24.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import openpyxl
from openpyxl.styles import Font

from . import log
from .constants import FISCAL_PERIOD_END_DAY, FISCAL_PERIOD_START_DAY, MONTH_NAMES
from .core_logic import LineItemView, RuntimeContext, list_history
from .errors import ValidationError
from .pricing import PriceResolver

PeriodPart = Union[int, str]

TWO_PLACES = Decimal("0.01")

SUMMARY_COLUMNS = ("Code", "Name", "Orders", "Quantity", "UnitPrice", "TotalPrice")
LINE_ITEM_COLUMNS = ("DeliveryDate", "BucketID", "LineItemID", "ProductCode", "ProductName", "Quantity")


@dataclass(frozen=True)
class FiscalPeriod:
    start: date
    end: date
    label: str


@dataclass(frozen=True)
class ProductStat:
    """Aggregated figures for one product code within a period."""

    code: str
    name: str
    order_count: int
    total_quantity: Decimal
    unit_price: Decimal
    total_price: Decimal


@dataclass(frozen=True)
class StatSummary:
    """Per-product statistics and totals for one fiscal period.

    ``line_items`` holds the history rows the figures were computed from so
    that callers can export them alongside the summary.
    """

    period: FiscalPeriod
    total_orders: int
    total_kilograms: Decimal
    total_amount: Decimal
    per_product: Tuple[ProductStat, ...] = ()
    line_items: Tuple[LineItemView, ...] = field(default=(), repr=False)

    @property
    def period_text(self) -> str:
        return self.period.label


def _coerce_period_part(value: PeriodPart, name: str, *, digits: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {name}: {value!r}")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and value.strip().isdigit():
        text = value.strip()
        if digits is not None and len(text) != digits:
            raise ValidationError(f"Invalid {name}: {value!r}")
        number = int(text)
    else:
        raise ValidationError(f"Invalid {name}: {value!r}")
    return number


def compute_period(year: PeriodPart, month: Optional[PeriodPart] = None) -> FiscalPeriod:
    """Return the fiscal period for ``year`` and optional ``month``.

    Args:
        year (int | str): Four-digit year.
        month (int | str | None): Month number 1-12, or ``None`` or a blank
            string for the full year.

    Returns:
        FiscalPeriod: Inclusive start and end dates plus a display label.

    Raises:
        ValidationError: If the year or month is out of range.
    """

    year_number = _coerce_period_part(year, "year", digits=4)
    if not 1000 <= year_number <= 9999:
        log.error("Rejected statistics year %r", year)
        raise ValidationError(f"Year must have four digits, got {year!r}")

    if month is None or (isinstance(month, str) and not month.strip()):
        return FiscalPeriod(
            start=date(year_number - 1, 12, FISCAL_PERIOD_START_DAY),
            end=date(year_number, 12, FISCAL_PERIOD_END_DAY),
            label=f"Full year {year_number}",
        )

    month_number = _coerce_period_part(month, "month")
    if not 1 <= month_number <= 12:
        log.error("Rejected statistics month %r", month)
        raise ValidationError(f"Month must be between 1 and 12, got {month!r}")

    if month_number == 1:
        start = date(year_number - 1, 12, FISCAL_PERIOD_START_DAY)
    else:
        start = date(year_number, month_number - 1, FISCAL_PERIOD_START_DAY)
    return FiscalPeriod(
        start=start,
        end=date(year_number, month_number, FISCAL_PERIOD_END_DAY),
        label=f"{MONTH_NAMES[month_number - 1]} {year_number}",
    )


def generate_stats(
    context: RuntimeContext,
    resolver: PriceResolver,
    year: PeriodPart,
    month: Optional[PeriodPart] = None,
) -> StatSummary:
    """Aggregate completed line items of a fiscal period into a summary.

    Quantities are summed and line items counted per product code, the first
    line item seen supplies the product name, and every distinct code is
    priced through ``resolver``. Rows come back sorted by total quantity,
    largest first, with ties broken by code.

    An empty period yields zero totals and no rows rather than an error.
    """

    period = compute_period(year, month)
    items = list_history(context, period.start, period.end)

    names: Dict[str, str] = {}
    quantities: Dict[str, Decimal] = {}
    counts: Dict[str, int] = {}
    for item in items:
        names.setdefault(item.product_code, item.product_name)
        quantities[item.product_code] = quantities.get(item.product_code, Decimal("0")) + item.quantity
        counts[item.product_code] = counts.get(item.product_code, 0) + 1

    prices = resolver.resolve(quantities) if quantities else {}

    rows: List[ProductStat] = [
        ProductStat(
            code=code,
            name=names[code],
            order_count=counts[code],
            total_quantity=quantity,
            unit_price=prices[code],
            total_price=prices[code] * quantity,
        )
        for code, quantity in quantities.items()
    ]
    rows.sort(key=lambda row: row.code)
    rows.sort(key=lambda row: row.total_quantity, reverse=True)

    total_kilograms = sum(quantities.values(), Decimal("0")).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    total_amount = sum((row.total_price for row in rows), Decimal("0"))
    log.info(
        "Generated statistics for %s: %d line items, %d products",
        period.label,
        len(items),
        len(rows),
    )
    return StatSummary(
        period=period,
        total_orders=len(items),
        total_kilograms=total_kilograms,
        total_amount=total_amount,
        per_product=tuple(rows),
        line_items=tuple(items),
    )


def write_summary_workbook(summary: StatSummary, destination: Path) -> Path:
    """Export a summary to ``destination`` as an ``.xlsx`` workbook.

    The ``Summary`` sheet lists the per-product rows followed by a totals
    line; the ``LineItems`` sheet lists the underlying history rows.
    """

    destination = Path(destination).expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    bold_font = Font(bold=True)

    summary_sheet = workbook.active
    summary_sheet.title = "Summary"
    summary_sheet.append([summary.period.label])
    summary_sheet["A1"].font = bold_font
    summary_sheet.append(list(SUMMARY_COLUMNS))
    for cell in summary_sheet[2]:
        cell.font = bold_font
    for row in summary.per_product:
        summary_sheet.append(
            [row.code, row.name, row.order_count, row.total_quantity, row.unit_price, row.total_price]
        )
    summary_sheet.append(["Total", "", summary.total_orders, summary.total_kilograms, "", summary.total_amount])
    for cell in summary_sheet[summary_sheet.max_row]:
        cell.font = bold_font

    items_sheet = workbook.create_sheet(title="LineItems")
    items_sheet.append(list(LINE_ITEM_COLUMNS))
    for cell in items_sheet[1]:
        cell.font = bold_font
    for item in summary.line_items:
        items_sheet.append(
            [
                item.delivery_date.isoformat(),
                item.bucket_id,
                item.line_item_id,
                item.product_code,
                item.product_name,
                item.quantity,
            ]
        )

    workbook.save(destination)
    log.info("Wrote statistics for %s to '%s'", summary.period.label, destination)
    return destination
