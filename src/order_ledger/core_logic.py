"""Business logic layer for the order ledger.

This module owns the order lifecycle: pending orders are created and edited
freely, then promoted exactly once into the dated history. It consumes the
Data Access Layer for all I/O and wraps every mutation in a storage
transaction that either persists completely or restores the sheets it
touched.
"""

from __future__ import annotations

import re
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, CompletionState
from .errors import (
    AmbiguousLineItemError,
    LedgerError,
    NotFoundError,
    TransactionError,
    ValidationError,
)

DateInput = Union[date, str]
QuantityInput = Union[Decimal, int, float, str]

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class OrderCompleted:
    """Advisory event published after a completion has been committed."""

    pending_order_id: str
    completed_at: datetime
    bucket_id: str
    line_item_id: str


OrderCompletedListener = Callable[[OrderCompleted], None]


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, live workbook, and writer lock shared by the BLL.

    The lock is re-entrant so a transaction can call helpers that also
    serialize on it.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)
    _listeners: List[OrderCompletedListener] = field(default_factory=list, repr=False, compare=False)


@dataclass(frozen=True)
class PendingOrderCommand:
    """User intent for creating a pending order."""

    delivery_date: DateInput
    product_code: str
    product_name: str
    quantity: QuantityInput
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LineItemView:
    """A history line item annotated with its bucket's date."""

    bucket_id: str
    line_item_id: str
    delivery_date: date
    product_code: str
    product_name: str
    quantity: Decimal
    completed_at: datetime


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of promoting a pending order into history."""

    order: data_manager.PendingOrderRow
    bucket: data_manager.DateBucketRow
    line_item: data_manager.LineItemRow
    state: CompletionState
    bucket_created: bool


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier such as ``P20250101120000000000-1a2b3c``.

    The timestamp keeps identifiers in creation order; the random suffix keeps
    two records created in the same microsecond apart.
    """

    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def require_positive_quantity(quantity: QuantityInput) -> Decimal:
    """Coerce ``quantity`` into a strictly positive Decimal.

    Raises:
        ValidationError: If the value is not numeric, not finite, or not
            greater than zero.
    """

    if isinstance(quantity, bool) or quantity is None:
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError("Quantity must be a number")
    try:
        value = quantity if isinstance(quantity, Decimal) else Decimal(str(quantity).strip())
    except InvalidOperation as exc:
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError(f"Quantity must be a number, got {quantity!r}") from exc
    if not value.is_finite() or value <= Decimal("0"):
        log.error("Quantity validation failed: %s", value)
        raise ValidationError("Quantity must be greater than zero")
    return value


def parse_delivery_date(value: DateInput, *, field_name: str = "delivery date") -> date:
    """Accept a ``date`` or ``YYYY-MM-DD`` text and return a plain ``date``.

    Raises:
        ValidationError: If the value is missing or malformed.
    """

    if isinstance(value, date):
        return date(value.year, value.month, value.day)
    text = value.strip() if isinstance(value, str) else ""
    if not _ISO_DATE.match(text):
        log.error("Invalid %s: %r", field_name, value)
        raise ValidationError(f"Invalid {field_name} {value!r}; use YYYY-MM-DD")
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        log.error("Invalid %s: %r", field_name, value)
        raise ValidationError(f"Invalid {field_name} {value!r}: {exc}") from exc


def require_text(value: Optional[str], field_name: str) -> str:
    """Reject missing or blank text fields."""

    text = value.strip() if isinstance(value, str) else ""
    if not text:
        log.error("Missing required field '%s'", field_name)
        raise ValidationError(f"{field_name} is required")
    return text


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with another schema version.

    Raises:
        RuntimeError: If ``config.ini`` declares a different schema version.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file."""

    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.debug("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved modifications.

    Subscribed listeners carry over to the new context.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, _listeners=context._listeners)


def subscribe(context: RuntimeContext, listener: OrderCompletedListener) -> None:
    """Register ``listener`` for :class:`OrderCompleted` events."""

    context._listeners.append(listener)


def unsubscribe(context: RuntimeContext, listener: OrderCompletedListener) -> None:
    """Remove a previously registered listener; unknown listeners are ignored."""

    if listener in context._listeners:
        context._listeners.remove(listener)


def _publish(context: RuntimeContext, event: OrderCompleted) -> None:
    # Delivery is best-effort; a failing listener must not undo a commit.
    for listener in list(context._listeners):
        try:
            listener(event)
        except Exception:
            log.exception("OrderCompleted listener %r failed for '%s'", listener, event.pending_order_id)


def _rollback(context: RuntimeContext, snapshot: data_manager.SheetSnapshot, operation: str) -> None:
    try:
        data_manager.restore_sheets(context.workbook, snapshot)
    except Exception as exc:
        log.critical("Rollback of '%s' failed; in-memory ledger may be inconsistent: %s", operation, exc)
        raise TransactionError(operation, f"rollback failed: {exc}") from exc
    log.warning("Rolled back transaction '%s'", operation)


@contextmanager
def transaction(context: RuntimeContext, operation: str) -> Iterator[None]:
    """Run the enclosed mutations as one commit/rollback unit.

    The writer lock is held for the whole block. On success the workbook is
    saved when ``AutoSave`` is enabled; on any failure the ledger sheets are
    restored from the snapshot taken on entry. Domain errors propagate as-is,
    anything else is wrapped in :class:`TransactionError`.
    """

    with context._lock:
        snapshot = data_manager.snapshot_sheets(context.workbook)
        try:
            yield
            if context.settings.autosave:
                persist_context(context)
        except LedgerError:
            _rollback(context, snapshot, operation)
            raise
        except Exception as exc:
            log.error("Transaction '%s' failed: %s", operation, exc)
            _rollback(context, snapshot, operation)
            raise TransactionError(operation, str(exc)) from exc


def _find_pending_order(workbook: Workbook, order_id: str) -> data_manager.PendingOrderRow:
    for order in data_manager.iter_pending_orders(workbook):
        if order.order_id == order_id:
            return order
    log.warning("Pending order lookup failed for id '%s'", order_id)
    raise NotFoundError("Pending order", order_id)


def create_pending_order(context: RuntimeContext, command: PendingOrderCommand) -> data_manager.PendingOrderRow:
    """Validate and store a new pending order.

    Raises:
        ValidationError: If the date, code, name, or quantity is invalid.
    """

    delivery_date = parse_delivery_date(command.delivery_date)
    product_code = require_text(command.product_code, "product code")
    product_name = require_text(command.product_name, "product name")
    quantity = require_positive_quantity(command.quantity)

    created_at = _resolve_timestamp(command.timestamp)
    order = data_manager.PendingOrderRow(
        order_id=generate_id("P", when=created_at),
        delivery_date=delivery_date,
        product_code=product_code,
        product_name=product_name,
        quantity=quantity,
        created_at=created_at,
    )
    with transaction(context, "create_pending_order"):
        data_manager.append_pending_order(context.workbook, order)
    log.info(
        "Created pending order '%s' for '%s' on %s (quantity=%s)",
        order.order_id,
        product_code,
        delivery_date.isoformat(),
        quantity,
    )
    return order


def get_pending_order(context: RuntimeContext, order_id: str) -> data_manager.PendingOrderRow:
    """Return one pending order or raise :class:`NotFoundError`."""

    with context._lock:
        return _find_pending_order(context.workbook, order_id)


def list_pending_orders(context: RuntimeContext) -> Dict[date, List[data_manager.PendingOrderRow]]:
    """Group pending orders by delivery date.

    Dates come out in ascending order and each group is sorted by product code
    (then creation time) for stable display.
    """

    with context._lock:
        orders = list(data_manager.iter_pending_orders(context.workbook))

    grouped: Dict[date, List[data_manager.PendingOrderRow]] = {}
    for order in sorted(orders, key=lambda o: (o.delivery_date, o.product_code, o.created_at)):
        grouped.setdefault(order.delivery_date, []).append(order)
    return grouped


def update_pending_order(
    context: RuntimeContext,
    order_id: str,
    *,
    quantity: Optional[QuantityInput] = None,
    delivery_date: Optional[DateInput] = None,
) -> data_manager.PendingOrderRow:
    """Change the quantity and/or delivery date of a pending order.

    Raises:
        ValidationError: If nothing is supplied or a supplied value is invalid.
        NotFoundError: If ``order_id`` is unknown.
    """

    if quantity is None and delivery_date is None:
        raise ValidationError("Provide a quantity or a delivery date to update")

    field_values: Dict[str, object] = {}
    changes: Dict[str, object] = {}
    if quantity is not None:
        changes["quantity"] = require_positive_quantity(quantity)
        field_values["Quantity"] = changes["quantity"]
    if delivery_date is not None:
        changes["delivery_date"] = parse_delivery_date(delivery_date)
        field_values["DeliveryDate"] = changes["delivery_date"].isoformat()

    with transaction(context, "update_pending_order"):
        current = _find_pending_order(context.workbook, order_id)
        data_manager.update_pending_order(context.workbook, order_id, field_values=field_values)
    log.info("Updated pending order '%s': %s", order_id, ", ".join(sorted(changes)))
    return replace(current, **changes)


def delete_pending_order(context: RuntimeContext, order_id: str) -> None:
    """Remove a pending order.

    Raises:
        NotFoundError: If the order no longer exists.
    """

    with transaction(context, "delete_pending_order"):
        _find_pending_order(context.workbook, order_id)
        data_manager.delete_pending_order(context.workbook, order_id)
    log.info("Deleted pending order '%s'", order_id)


def _get_or_create_bucket(
    workbook: Workbook,
    delivery_date: date,
    created_at: datetime,
) -> tuple[data_manager.DateBucketRow, bool]:
    existing = data_manager.find_bucket_by_date(workbook, delivery_date)
    if existing is not None:
        return existing, False
    bucket = data_manager.DateBucketRow(
        bucket_id=generate_id("B", when=created_at),
        delivery_date=delivery_date,
        created_at=created_at,
    )
    data_manager.append_date_bucket(workbook, bucket)
    log.info("Created date bucket '%s' for %s", bucket.bucket_id, delivery_date.isoformat())
    return bucket, True


def complete_order(
    context: RuntimeContext,
    order_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> CompletionResult:
    """Promote a pending order into the dated history exactly once.

    Under the writer lock the order is looked up, its delivery date's bucket
    is fetched or created, a new line item is appended, and the pending row is
    deleted. The four steps commit together; if any fails the sheets are
    restored and the pending order stays where it was. Listeners receive an
    :class:`OrderCompleted` event only after the commit.

    Raises:
        NotFoundError: If the pending order does not exist (including when it
            was already completed).
        TransactionError: If the promotion could not be committed.
    """

    state = CompletionState.PENDING
    with context._lock:
        order = _find_pending_order(context.workbook, order_id)
        completed_at = _resolve_timestamp(timestamp)
        state = CompletionState.COMPLETING
        log.debug("Pending order '%s' is %s", order_id, state.value)
        try:
            with transaction(context, "complete_order"):
                bucket, bucket_created = _get_or_create_bucket(
                    context.workbook, order.delivery_date, completed_at
                )
                line_item = data_manager.LineItemRow(
                    line_item_id=generate_id("L", when=completed_at),
                    bucket_id=bucket.bucket_id,
                    product_code=order.product_code,
                    product_name=order.product_name,
                    quantity=order.quantity,
                )
                data_manager.append_line_item(context.workbook, line_item)
                data_manager.delete_pending_order(context.workbook, order.order_id)
        except TransactionError:
            state = CompletionState.FAILED
            log.error("Completion of pending order '%s' %s; order left pending", order_id, state.value)
            raise

    state = CompletionState.COMPLETED
    log.info(
        "Completed pending order '%s' into bucket '%s' as line item '%s'",
        order_id,
        bucket.bucket_id,
        line_item.line_item_id,
    )
    _publish(
        context,
        OrderCompleted(
            pending_order_id=order_id,
            completed_at=completed_at,
            bucket_id=bucket.bucket_id,
            line_item_id=line_item.line_item_id,
        ),
    )
    return CompletionResult(
        order=order,
        bucket=bucket,
        line_item=line_item,
        state=state,
        bucket_created=bucket_created,
    )


def list_history(context: RuntimeContext, start: DateInput, end: DateInput) -> List[LineItemView]:
    """Return every line item whose bucket date lies in ``[start, end]``.

    Rows are ordered by delivery date, newest first, and keep sheet order
    within a date.

    Raises:
        ValidationError: If either date is malformed or ``start > end``.
    """

    start_date = parse_delivery_date(start, field_name="start date")
    end_date = parse_delivery_date(end, field_name="end date")
    if start_date > end_date:
        raise ValidationError(f"Start date {start_date} is after end date {end_date}")

    with context._lock:
        buckets = {
            bucket.bucket_id: bucket
            for bucket in data_manager.iter_date_buckets(context.workbook)
            if start_date <= bucket.delivery_date <= end_date
        }
        items = [
            item
            for item in data_manager.iter_line_items(context.workbook)
            if item.bucket_id in buckets
        ]

    views = [
        LineItemView(
            bucket_id=item.bucket_id,
            line_item_id=item.line_item_id,
            delivery_date=buckets[item.bucket_id].delivery_date,
            product_code=item.product_code,
            product_name=item.product_name,
            quantity=item.quantity,
            completed_at=buckets[item.bucket_id].created_at,
        )
        for item in items
    ]
    views.sort(key=lambda view: view.delivery_date, reverse=True)
    log.debug("Listed %d history line items between %s and %s", len(views), start_date, end_date)
    return views


def _matching_line_items(
    workbook: Workbook,
    bucket_id: str,
    product_code: str,
    line_item_id: Optional[str],
) -> List[data_manager.LineItemRow]:
    return [
        item
        for item in data_manager.iter_line_items(workbook)
        if item.bucket_id == bucket_id
        and item.product_code == product_code
        and (line_item_id is None or item.line_item_id == line_item_id)
    ]


def edit_history_line_item(
    context: RuntimeContext,
    bucket_id: str,
    product_code: str,
    quantity: QuantityInput,
    *,
    line_item_id: Optional[str] = None,
) -> data_manager.LineItemRow:
    """Set the quantity of one history line item.

    Several line items may share a ``(bucket, product_code)`` pair because
    every completion is recorded separately. Such an edit must name the
    ``line_item_id`` it targets.

    Raises:
        ValidationError: If the quantity is not positive.
        AmbiguousLineItemError: If several rows match and no id was given.
        NotFoundError: If no row matches.
    """

    new_quantity = require_positive_quantity(quantity)
    bucket_id = require_text(bucket_id, "bucket id")
    product_code = require_text(product_code, "product code")

    with transaction(context, "edit_history_line_item"):
        matches = _matching_line_items(context.workbook, bucket_id, product_code, line_item_id)
        if not matches:
            log.warning("No line item for product '%s' in bucket '%s'", product_code, bucket_id)
            raise NotFoundError("Line item", f"{bucket_id}/{product_code}")
        if len(matches) > 1:
            log.warning("Edit of product '%s' in bucket '%s' is ambiguous", product_code, bucket_id)
            raise AmbiguousLineItemError(bucket_id, product_code, [item.line_item_id for item in matches])
        target = matches[0]
        data_manager.update_line_item(
            context.workbook,
            target.line_item_id,
            field_values={"Quantity": new_quantity},
        )
    log.info(
        "Edited line item '%s' (bucket '%s', product '%s'): %s -> %s",
        target.line_item_id,
        bucket_id,
        product_code,
        target.quantity,
        new_quantity,
    )
    return replace(target, quantity=new_quantity)


def delete_history_line_item(
    context: RuntimeContext,
    bucket_id: str,
    product_code: str,
    *,
    line_item_id: Optional[str] = None,
) -> int:
    """Delete matching history line items and drop the bucket if it empties.

    Without ``line_item_id`` every row for ``(bucket_id, product_code)`` goes.

    Returns:
        int: Number of line items removed.

    Raises:
        NotFoundError: If the bucket or a matching line item does not exist.
    """

    bucket_id = require_text(bucket_id, "bucket id")
    product_code = require_text(product_code, "product code")

    with transaction(context, "delete_history_line_item"):
        if data_manager.locate_row(context.workbook, data_manager.DATE_BUCKETS_SHEET, "BucketID", bucket_id) is None:
            log.warning("Date bucket lookup failed for id '%s'", bucket_id)
            raise NotFoundError("Date bucket", bucket_id)
        matches = _matching_line_items(context.workbook, bucket_id, product_code, line_item_id)
        if not matches:
            log.warning("No line item for product '%s' in bucket '%s'", product_code, bucket_id)
            raise NotFoundError("Line item", f"{bucket_id}/{product_code}")

        removed = data_manager.delete_line_items(context.workbook, [item.line_item_id for item in matches])
        remaining = any(
            item.bucket_id == bucket_id for item in data_manager.iter_line_items(context.workbook)
        )
        if not remaining:
            data_manager.delete_date_bucket(context.workbook, bucket_id)
            log.info("Removed empty date bucket '%s'", bucket_id)

    log.info("Deleted %d line item(s) for product '%s' from bucket '%s'", removed, product_code, bucket_id)
    return removed


def find_empty_buckets(context: RuntimeContext) -> List[str]:
    """Return ids of buckets without line items; empty when the ledger is sound."""

    with context._lock:
        used = {item.bucket_id for item in data_manager.iter_line_items(context.workbook)}
        return [
            bucket.bucket_id
            for bucket in data_manager.iter_date_buckets(context.workbook)
            if bucket.bucket_id not in used
        ]
