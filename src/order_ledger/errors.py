"""Exception hierarchy for the order ledger."""

from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base exception for all order ledger errors."""


class ValidationError(LedgerError, ValueError):
    """Raised when caller input is rejected before any mutation happens."""


class AmbiguousLineItemError(ValidationError):
    """Raised when an edit matches several history line items."""

    def __init__(self, bucket_id: str, product_code: str, line_item_ids: list[str]):
        self.bucket_id = bucket_id
        self.product_code = product_code
        self.line_item_ids = list(line_item_ids)
        super().__init__(
            f"{len(self.line_item_ids)} line items match product '{product_code}' "
            f"in bucket '{bucket_id}'; pass a line item id to choose one"
        )


class NotFoundError(LedgerError, LookupError):
    """Raised when a referenced order, bucket, or line item does not exist."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class TransactionError(LedgerError):
    """Raised when a storage transaction could not be committed."""

    def __init__(self, operation: str, reason: Optional[str] = None):
        self.operation = operation
        msg = f"Transaction '{operation}' was rolled back"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class ExternalSourceError(LedgerError):
    """Raised when a price or product source cannot be read."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"External source '{source}' unavailable: {reason}")


__all__ = [
    "LedgerError",
    "ValidationError",
    "AmbiguousLineItemError",
    "NotFoundError",
    "TransactionError",
    "ExternalSourceError",
]
