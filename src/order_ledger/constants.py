"""Enumerations and fixed values shared across the order ledger modules.

Keeps sheet identifiers, lifecycle states, and the billing-cycle convention in
one place so the data access layer, the business rules, and the CLI agree on
them.
"""

from __future__ import annotations

from enum import Enum


# Schema version the ledger workbook must declare in config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Billing cycle: the 25th of the prior month through the 24th of the month.
FISCAL_PERIOD_START_DAY = 25
FISCAL_PERIOD_END_DAY = 24

# Number of leading characters compared by the fuzzy price match.
FUZZY_PREFIX_LENGTH = 4

DEFAULT_CACHE_SECONDS = 300
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PENDING_ORDERS = "PendingOrders"
    DATE_BUCKETS = "DateBuckets"
    LINE_ITEMS = "LineItems"


class CompletionState(str, Enum):
    """States a pending order passes through while being completed."""

    PENDING = "PENDING"
    COMPLETING = "COMPLETING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SourceKind(str, Enum):
    """Where the external price or product rows are read from."""

    NONE = "none"
    WORKBOOK = "workbook"
    SHEETS = "sheets"


MONTH_NAMES: tuple[str, ...] = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "FISCAL_PERIOD_START_DAY",
    "FISCAL_PERIOD_END_DAY",
    "FUZZY_PREFIX_LENGTH",
    "DEFAULT_CACHE_SECONDS",
    "DEFAULT_FETCH_TIMEOUT_SECONDS",
    "SheetName",
    "CompletionState",
    "SourceKind",
    "MONTH_NAMES",
]
