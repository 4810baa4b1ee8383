"""Business logic layer for the cylinder stock ledger.

This module is the mutation gateway and read API that presentation layers
call. It consumes the Data Access Layer (DAL) for all I/O, validates every
request against the stock rules, persists the workbook after each write, and
re-derives current stock from the ledger afterwards. Current quantities are
never stored: they are folded from the ledger on every read by
:mod:`cylinder_stock.derivation`.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from openpyxl.workbook import Workbook

from . import aggregation, data_manager, derivation, log
from .constants import (
    DEFAULT_UNIT,
    EXPECTED_SCHEMA_VERSION,
    ROLE_PERMISSIONS,
    DistributionReason,
    Permission,
    Role,
    TransactionDirection,
    TransactionStatus,
)
from .data_manager import StorageError


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when caller input breaks a stock rule (negative or excessive quantity, missing field)."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced record id is unknown."""


class PermissionDeniedError(BusinessRuleViolation):
    """Raised when the session role lacks the permission an operation needs."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook, and the session role.

    One context is built per session and handed to every call. The lock makes
    each mutation's balance check and ledger write atomic for threads that
    share the context.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    role: Optional[Role] = None
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def session_role(self) -> Role:
        return self.role if self.role is not None else self.settings.role


@dataclass(frozen=True)
class ProductCommand:
    """User intent for registering or updating a product."""

    name: str
    product_type: str
    default_unit: str = DEFAULT_UNIT
    description: Optional[str] = None


@dataclass(frozen=True)
class ReceiptCommand:
    """User intent for recording a stock movement against one product.

    ``opening_balance`` defaults to the product's current derived quantity.
    """

    product_id: int
    received: Decimal = Decimal("0")
    delivered: Decimal = Decimal("0")
    sold: Decimal = Decimal("0")
    converted: Decimal = Decimal("0")
    opening_balance: Optional[Decimal] = None
    transaction_date: Optional[date] = None
    discrepancy_note: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class DistributionCommand:
    """User intent for sending stock out of the depot."""

    product_id: int
    quantity: Decimal
    reason: Union[DistributionReason, str]
    transferred_to: Optional[str] = None
    notes: Optional[str] = None
    transaction_date: Optional[date] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerEntryCommand:
    """Complete replacement content for an existing ledger entry."""

    product_id: int
    transaction_date: date
    opening_balance: Decimal
    received: Decimal
    delivered: Decimal
    sold: Decimal
    converted: Decimal
    discrepancy_note: Optional[str] = None


@dataclass(frozen=True)
class LedgerFilter:
    """Optional narrowing of ledger listings and reports."""

    start: Optional[date] = None
    end: Optional[date] = None
    product_id: Optional[int] = None


@dataclass(frozen=True)
class CustomerStockCommand:
    """Full content of one day of cylinder counts held by a customer.

    Counts left out default to zero.
    """

    product_id: int
    customer_id: int
    transaction_date: date
    opening_full: Decimal = Decimal("0")
    opening_empty: Decimal = Decimal("0")
    opening_defective: Decimal = Decimal("0")
    empty_cylinders_received: Decimal = Decimal("0")
    delivery_challan: Decimal = Decimal("0")
    closing_full: Decimal = Decimal("0")
    closing_empty: Decimal = Decimal("0")
    closing_defective: Decimal = Decimal("0")


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket dedicated to ``name``.

    Buckets hold parsed worksheet rows only. Derived stock and summaries are
    never cached; they are recomputed from these rows on every call.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after the workbook changed."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    with context._lock:
        bucket = _get_cache_bucket(context, "products")
        if "all" not in bucket:
            all_products = list(data_manager.iter_products(context.workbook))
            bucket["all"] = all_products
            bucket["by_id"] = {product.product_id: product for product in all_products}
            log.debug("Populated products cache with %d entries", len(all_products))
        return bucket


def _ensure_ledger_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the ledger bucket with rows in newest-first order and by id."""

    with context._lock:
        bucket = _get_cache_bucket(context, "ledger")
        if "sorted" not in bucket:
            entries = data_manager.sort_ledger_entries(data_manager.iter_ledger_entries(context.workbook))
            bucket["sorted"] = entries
            bucket["by_id"] = {entry.entry_id: entry for entry in entries}
            log.debug("Populated ledger cache with %d entries", len(entries))
        return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    with context._lock:
        bucket = _get_cache_bucket(context, "transactions")
        if "all" not in bucket:
            all_transactions = list(data_manager.iter_transactions(context.workbook))
            bucket["all"] = all_transactions
            bucket["by_id"] = {transaction.transaction_id: transaction for transaction in all_transactions}
            log.debug("Populated transactions cache with %d entries", len(all_transactions))
        return bucket


def _ensure_customer_stock_cache(context: RuntimeContext) -> Dict[str, Any]:
    with context._lock:
        bucket = _get_cache_bucket(context, "customer_stock")
        if "all" not in bucket:
            rows = sorted(data_manager.iter_customer_stock(context.workbook), key=lambda row: row.customer_stock_id)
            bucket["all"] = rows
            bucket["by_id"] = {row.customer_stock_id: row for row in rows}
            log.debug("Populated customer stock cache with %d entries", len(rows))
        return bucket


def load_runtime_context(config_path: Optional[Path] = None, *, role: Optional[Role] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for one session.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upwards from the current
            working directory.
        role (Role | None): Session role. Defaults to the role configured in
            ``[Defaults] Role``.

    Returns:
        RuntimeContext: Context ready to be passed to every gateway call.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
        StorageError: When the workbook exists but cannot be loaded.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded stock ledger '%s' for %s", settings.data_file, settings.business_name)
    return RuntimeContext(settings=settings, workbook=workbook, role=role)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate that ``config.ini`` declares the schema this code writes.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
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

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook to the configured data file.

    Raises:
        StorageError: If the save fails.
    """
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.debug("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk and return a fresh context.

    The returned context keeps the settings and role but starts with an empty
    cache, so it observes writes made by other sessions since the last load.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, role=context.role)


def has_permission(context: RuntimeContext, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(context.session_role, frozenset())


def require_permission(context: RuntimeContext, permission: Permission) -> None:
    """Raise :class:`PermissionDeniedError` unless the session role grants ``permission``."""
    if not has_permission(context, permission):
        log.warning(
            "Role '%s' denied permission '%s'",
            context.session_role.value,
            permission.value,
        )
        raise PermissionDeniedError(
            f"Role '{context.session_role.value}' may not perform '{permission.value}'"
        )


# ---------------------------------------------------------------------------
# Read API
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every registered product in sheet order."""
    require_permission(context, Permission.VIEW)
    return list(_ensure_products_cache(context)["all"])


def get_product(context: RuntimeContext, product_id: int) -> data_manager.ProductRow:
    """Resolve a product by id.

    Raises:
        PermissionDeniedError: If the role may not view records.
        NotFoundError: If ``product_id`` is not registered.
    """
    require_permission(context, Permission.VIEW)
    return _get_product(context, product_id)


def _get_product(context: RuntimeContext, product_id: int) -> data_manager.ProductRow:
    cache = _ensure_products_cache(context)
    try:
        return cache["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}") from exc


def list_ledger_entries(context: RuntimeContext, ledger_filter: Optional[LedgerFilter] = None) -> List[data_manager.LedgerEntryRow]:
    """Return ledger entries newest first, optionally narrowed by date range and product.

    Filtering happens in memory against the full ledger; there is no
    pagination.

    Args:
        context (RuntimeContext): Active session.
        ledger_filter (LedgerFilter | None): Inclusive date bounds and product
            to keep. ``None`` returns the whole ledger.

    Returns:
        list[data_manager.LedgerEntryRow]: Matching entries ordered by
            transaction date, creation time, and id, all descending.
    """
    require_permission(context, Permission.VIEW)
    entries = list(_ensure_ledger_cache(context)["sorted"])
    if ledger_filter is None:
        return entries
    return aggregation.filter_ledger_entries(
        entries,
        start=ledger_filter.start,
        end=ledger_filter.end,
        product_id=ledger_filter.product_id,
    )


def get_ledger_entry(context: RuntimeContext, entry_id: int) -> data_manager.LedgerEntryRow:
    """Resolve a ledger entry by id.

    Raises:
        PermissionDeniedError: If the role may not view records.
        NotFoundError: If ``entry_id`` is absent, for example after another
            session deleted it.
    """
    require_permission(context, Permission.VIEW)
    return _get_ledger_entry(context, entry_id)


def _get_ledger_entry(context: RuntimeContext, entry_id: int) -> data_manager.LedgerEntryRow:
    cache = _ensure_ledger_cache(context)
    try:
        return cache["by_id"][entry_id]
    except KeyError as exc:
        log.warning("Ledger entry lookup failed for id '%s'", entry_id)
        raise NotFoundError(f"Unknown ledger entry id: {entry_id}") from exc


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return every distribution record in the order it was written."""
    require_permission(context, Permission.VIEW)
    return list(_ensure_transactions_cache(context)["all"])


def get_transaction(context: RuntimeContext, transaction_id: int) -> data_manager.TransactionRow:
    """Resolve a distribution record by id.

    Raises:
        PermissionDeniedError: If the role may not view records.
        NotFoundError: If ``transaction_id`` is unknown.
    """
    require_permission(context, Permission.VIEW)
    return _get_transaction(context, transaction_id)


def _get_transaction(context: RuntimeContext, transaction_id: int) -> data_manager.TransactionRow:
    cache = _ensure_transactions_cache(context)
    try:
        return cache["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}") from exc


def list_customer_stock(
    context: RuntimeContext,
    *,
    customer_id: Optional[int] = None,
    product_id: Optional[int] = None,
) -> List[data_manager.CustomerStockRow]:
    """Return customer cylinder counts in id order.

    Args:
        context (RuntimeContext): Active session.
        customer_id (int | None): Keep only rows for this customer.
        product_id (int | None): Keep only rows for this product.

    Returns:
        list[data_manager.CustomerStockRow]: Matching rows, oldest id first.
    """
    require_permission(context, Permission.VIEW)
    return [
        row
        for row in _ensure_customer_stock_cache(context)["all"]
        if (customer_id is None or row.customer_id == customer_id)
        and (product_id is None or row.product_id == product_id)
    ]


def get_customer_stock(context: RuntimeContext, customer_stock_id: int) -> data_manager.CustomerStockRow:
    """Resolve a customer cylinder count by id.

    Raises:
        PermissionDeniedError: If the role may not view records.
        NotFoundError: If ``customer_stock_id`` is unknown.
    """
    require_permission(context, Permission.VIEW)
    return _get_customer_stock(context, customer_stock_id)


def _get_customer_stock(context: RuntimeContext, customer_stock_id: int) -> data_manager.CustomerStockRow:
    cache = _ensure_customer_stock_cache(context)
    try:
        return cache["by_id"][customer_stock_id]
    except KeyError as exc:
        log.warning("Customer stock lookup failed for id '%s'", customer_stock_id)
        raise NotFoundError(f"Unknown customer stock id: {customer_stock_id}") from exc


def _derived_items(context: RuntimeContext) -> List[derivation.DerivedStockItem]:
    return derivation.derive_stock_items(
        _ensure_ledger_cache(context)["sorted"],
        _ensure_products_cache(context)["by_id"],
        threshold=context.settings.low_stock_threshold,
    )


def _booking_date(
    items: Iterable[derivation.DerivedStockItem],
    product_id: int,
    requested: Optional[date],
    today: date,
) -> date:
    """Pick the transaction date of a new ledger row for ``product_id``.

    A new row must sort at or after the product's latest entry, otherwise it
    would never become the current stock. An explicit earlier date is
    rejected; the default date never falls behind the latest entry.

    Raises:
        ValidationError: If ``requested`` predates the latest entry.
    """
    latest = derivation.item_for(items, product_id)
    if latest is None:
        return requested or today
    if requested is None:
        return max(today, latest.last_updated)
    if requested < latest.last_updated:
        log.error(
            "Rejected entry for product %d dated %s before its latest entry on %s",
            product_id,
            requested,
            latest.last_updated,
        )
        raise ValidationError(
            f"Transaction date {requested.isoformat()} is before the latest entry on {latest.last_updated.isoformat()}"
        )
    return requested


def derive_stock(context: RuntimeContext) -> List[derivation.DerivedStockItem]:
    """Fold the full ledger into the current stock of every stocked product.

    Calling this twice against the same ledger returns equal lists.
    """
    require_permission(context, Permission.VIEW)
    return _derived_items(context)


def get_summary(context: RuntimeContext) -> aggregation.StockSummary:
    """Compute dashboard totals from the derived stock and distribution records.

    The recent-transaction window ends at the wall-clock time of the call.
    """
    require_permission(context, Permission.VIEW)
    summary = aggregation.summarize(
        _derived_items(context),
        _ensure_transactions_cache(context)["all"],
        now=_resolve_timestamp(None),
        unit_price=context.settings.unit_price,
    )
    log.debug(
        "Calculated stock summary: quantity=%s value=%s low=%d recent=%d",
        summary.total_quantity,
        summary.total_value,
        summary.low_stock_count,
        summary.recent_transaction_count,
    )
    return summary


def get_low_stock(context: RuntimeContext) -> List[derivation.DerivedStockItem]:
    """Return derived items at or below the low-stock threshold, in derivation order."""
    require_permission(context, Permission.VIEW)
    return aggregation.low_stock_items(_derived_items(context))


def search_stock(context: RuntimeContext, query: str) -> List[derivation.DerivedStockItem]:
    """Search derived items by name or category, case-insensitively."""
    require_permission(context, Permission.VIEW)
    return aggregation.search_items(_derived_items(context), query)


def list_unstocked_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return registered products that have no ledger entry yet."""
    require_permission(context, Permission.VIEW)
    return derivation.unstocked_products(
        _ensure_products_cache(context)["all"],
        _ensure_ledger_cache(context)["sorted"],
    )


def ledger_report(context: RuntimeContext, ledger_filter: Optional[LedgerFilter] = None) -> aggregation.LedgerTotals:
    """Total every ledger column over the filtered entries (sales/inventory report)."""
    return aggregation.summarize_ledger(list_ledger_entries(context, ledger_filter))


# ---------------------------------------------------------------------------
# Mutation gateway
# ---------------------------------------------------------------------------


def register_product(context: RuntimeContext, command: ProductCommand) -> data_manager.ProductRow:
    """Validate and append a new product.

    Args:
        context (RuntimeContext): Active session.
        command (ProductCommand): Name, type, unit, and description.

    Returns:
        data_manager.ProductRow: Stored product with its generated id.

    Raises:
        PermissionDeniedError: If the role may not add records.
        ValidationError: If the name or type is blank.
        StorageError: If the workbook cannot be saved; nothing is kept.
    """
    require_permission(context, Permission.ADD)
    validate_product_command(command)

    with context._lock:
        product = build_product_row(
            command,
            product_id=data_manager.next_row_id(context.workbook, data_manager.PRODUCTS_SHEET),
            created_at=_resolve_timestamp(None),
        )
        data_manager.append_product(context.workbook, product)
        _commit(
            context,
            undo=lambda: data_manager.remove_product(context.workbook, product.product_id),
            buckets=("products",),
        )

    log.info("Registered product %d '%s' (%s)", product.product_id, product.name, product.product_type)
    return product


def update_product(context: RuntimeContext, product_id: int, command: ProductCommand) -> data_manager.ProductRow:
    """Replace the details of a product that nothing references yet.

    Raises:
        NotFoundError: If the product is unknown.
        ValidationError: If the command is incomplete or the product already
            appears in the ledger or in a distribution record.
    """
    require_permission(context, Permission.EDIT)
    validate_product_command(command)

    with context._lock:
        previous = _get_product(context, product_id)
        _require_unreferenced(context, product_id, action="update")
        product = build_product_row(command, product_id=product_id, created_at=previous.created_at)
        data_manager.replace_product(context.workbook, product_id, product)
        _commit(
            context,
            undo=lambda: data_manager.replace_product(context.workbook, product_id, previous),
            buckets=("products",),
        )

    log.info("Updated product %d '%s'", product_id, product.name)
    return product


def delete_product(context: RuntimeContext, product_id: int) -> None:
    """Delete a product that nothing references yet.

    Raises:
        NotFoundError: If the product is unknown.
        ValidationError: If ledger entries or distributions reference it.
    """
    require_permission(context, Permission.DELETE)

    with context._lock:
        previous = _get_product(context, product_id)
        _require_unreferenced(context, product_id, action="delete")
        data_manager.remove_product(context.workbook, product_id)
        _commit(
            context,
            undo=lambda: data_manager.append_product(context.workbook, previous),
            buckets=("products",),
        )

    log.info("Deleted product %d '%s'", product_id, previous.name)


def record_receipt(context: RuntimeContext, command: ReceiptCommand) -> data_manager.LedgerEntryRow:
    """Validate and append one ledger entry for a stock movement.

    The opening balance is the product's current derived quantity unless the
    caller supplies one. Physical stock is always computed from the
    components and floored at zero. The read of the current quantity and the
    append happen under the context lock.

    Args:
        context (RuntimeContext): Active session.
        command (ReceiptCommand): Quantities received, delivered, sold, and
            converted for one product on one day.

    Returns:
        data_manager.LedgerEntryRow: Stored entry with its generated id.

    Raises:
        PermissionDeniedError: If the role may not add records.
        NotFoundError: If the product is not registered.
        ValidationError: If any quantity is negative or the date is
            earlier than the product's latest ledger entry.
        StorageError: If the workbook cannot be saved; the entry is dropped.
    """
    require_permission(context, Permission.ADD)
    _get_product(context, command.product_id)
    for label, value in (
        ("received", command.received),
        ("delivered", command.delivered),
        ("sold", command.sold),
        ("converted", command.converted),
        ("opening balance", command.opening_balance),
    ):
        if value is not None:
            require_nonnegative_quantity(value, label=label)

    with context._lock:
        timestamp = _resolve_timestamp(command.timestamp)
        items = _derived_items(context)
        transaction_date = _booking_date(items, command.product_id, command.transaction_date, timestamp.date())
        opening = (
            _as_quantity(command.opening_balance)
            if command.opening_balance is not None
            else derivation.quantity_for(items, command.product_id)
        )
        entry = build_ledger_entry(
            entry_id=data_manager.next_row_id(context.workbook, data_manager.LEDGER_SHEET),
            product_id=command.product_id,
            transaction_date=transaction_date,
            opening_balance=opening,
            received=command.received,
            delivered=command.delivered,
            sold=command.sold,
            converted=command.converted,
            discrepancy_note=command.discrepancy_note,
            created_at=timestamp,
        )
        data_manager.append_ledger_entry(context.workbook, entry)
        _commit(
            context,
            undo=lambda: data_manager.remove_ledger_entry(context.workbook, entry.entry_id),
            buckets=("ledger",),
        )

    log.info(
        "Recorded ledger entry %d for product %d (opening=%s, received=%s, physical=%s)",
        entry.entry_id,
        entry.product_id,
        entry.opening_balance,
        entry.received,
        entry.physical_stock,
    )
    _rederive(context, command.product_id)
    return entry


def record_distribution(context: RuntimeContext, command: DistributionCommand) -> data_manager.TransactionRow:
    """Validate and record stock leaving the depot.

    Distributions above the configured approval threshold are stored as
    ``pending`` and do not touch the ledger, so derived stock is unchanged
    until :func:`approve_distribution` runs. Others are ``completed``
    immediately: a ledger entry with the reduced balance is appended and the
    distribution links to it.

    Args:
        context (RuntimeContext): Active session.
        command (DistributionCommand): Product, quantity, reason, and
            counterpart. The reason may be a
            :class:`DistributionReason` or its string value.

    Returns:
        data_manager.TransactionRow: Stored distribution record.

    Raises:
        PermissionDeniedError: If the role may not add records.
        NotFoundError: If the product is not registered.
        ValidationError: If the quantity is not positive, exceeds the derived
            quantity, a sale names no counterpart, or the date is
            earlier than the product's latest ledger entry.
        StorageError: If the workbook cannot be saved; nothing is kept.
    """
    require_permission(context, Permission.ADD)
    _get_product(context, command.product_id)
    try:
        command = replace(command, reason=DistributionReason(command.reason))
    except ValueError as exc:
        log.error("Unsupported distribution reason provided: %s", command.reason)
        raise ValidationError(f"Unsupported distribution reason: {command.reason}") from exc

    with context._lock:
        items = _derived_items(context)
        current = derivation.quantity_for(items, command.product_id)
        validate_distribution(command, available=current)

        timestamp = _resolve_timestamp(command.timestamp)
        quantity = _as_quantity(command.quantity)
        needs_approval = quantity > context.settings.approval_threshold
        entry: Optional[data_manager.LedgerEntryRow] = None
        if not needs_approval:
            transaction_date = _booking_date(items, command.product_id, command.transaction_date, timestamp.date())
            entry = build_distribution_entry(
                entry_id=data_manager.next_row_id(context.workbook, data_manager.LEDGER_SHEET),
                product_id=command.product_id,
                quantity=quantity,
                reason=command.reason,
                available=current,
                transaction_date=transaction_date,
                notes=command.notes,
                created_at=timestamp,
            )
            data_manager.append_ledger_entry(context.workbook, entry)

        transaction = data_manager.TransactionRow(
            transaction_id=data_manager.next_row_id(context.workbook, data_manager.TRANSACTIONS_SHEET),
            product_id=command.product_id,
            quantity=quantity,
            direction=TransactionDirection.OUT.value,
            reason=command.reason.value,
            transferred_to=(command.transferred_to or "").strip() or None,
            notes=command.notes,
            status=(TransactionStatus.PENDING if needs_approval else TransactionStatus.COMPLETED).value,
            timestamp=timestamp,
            ledger_entry_id=entry.entry_id if entry is not None else None,
        )
        data_manager.append_transaction(context.workbook, transaction)

        def undo() -> None:
            data_manager.remove_transaction(context.workbook, transaction.transaction_id)
            if entry is not None:
                data_manager.remove_ledger_entry(context.workbook, entry.entry_id)

        _commit(context, undo=undo, buckets=("ledger", "transactions"))

    if needs_approval:
        log.info(
            "Distribution %d of %s from product %d awaits approval (threshold %s)",
            transaction.transaction_id,
            quantity,
            command.product_id,
            context.settings.approval_threshold,
        )
    else:
        log.info(
            "Distributed %s of product %d for %s to '%s' (transaction %d)",
            quantity,
            command.product_id,
            command.reason.value,
            transaction.transferred_to or "-",
            transaction.transaction_id,
        )
        _rederive(context, command.product_id)
    return transaction


def approve_distribution(context: RuntimeContext, transaction_id: int) -> data_manager.TransactionRow:
    """Complete a pending distribution and apply it to the ledger.

    The quantity is checked again against the balance at approval time, since
    stock may have moved since the request was made.

    Raises:
        NotFoundError: If the distribution is unknown.
        ValidationError: If it is not pending or the balance no longer covers it.
    """
    require_permission(context, Permission.EDIT)

    with context._lock:
        pending = _get_transaction(context, transaction_id)
        if pending.status != TransactionStatus.PENDING.value:
            log.error("Distribution %d is '%s', not pending", transaction_id, pending.status)
            raise ValidationError(f"Distribution {transaction_id} is not pending approval")

        items = _derived_items(context)
        current = derivation.quantity_for(items, pending.product_id)
        if pending.quantity > current:
            log.error(
                "Approval of distribution %d failed: quantity %s exceeds available %s",
                transaction_id,
                pending.quantity,
                current,
            )
            raise ValidationError("Quantity exceeds available stock")

        timestamp = _resolve_timestamp(None)
        entry = build_distribution_entry(
            entry_id=data_manager.next_row_id(context.workbook, data_manager.LEDGER_SHEET),
            product_id=pending.product_id,
            quantity=pending.quantity,
            reason=DistributionReason(pending.reason),
            available=current,
            transaction_date=_booking_date(items, pending.product_id, None, timestamp.date()),
            notes=pending.notes,
            created_at=timestamp,
        )
        completed = replace(
            pending,
            status=TransactionStatus.COMPLETED.value,
            ledger_entry_id=entry.entry_id,
        )
        data_manager.append_ledger_entry(context.workbook, entry)
        data_manager.replace_transaction(context.workbook, transaction_id, completed)

        def undo() -> None:
            data_manager.replace_transaction(context.workbook, transaction_id, pending)
            data_manager.remove_ledger_entry(context.workbook, entry.entry_id)

        _commit(context, undo=undo, buckets=("ledger", "transactions"))

    log.info("Approved distribution %d (ledger entry %d)", transaction_id, entry.entry_id)
    _rederive(context, pending.product_id)
    return completed


def edit_ledger_entry(context: RuntimeContext, entry_id: int, command: LedgerEntryCommand) -> data_manager.LedgerEntryRow:
    """Replace a ledger entry wholesale.

    Every column is taken from ``command``; nothing is merged from the stored
    row except its id and creation timestamp. Physical stock is recomputed.

    Raises:
        NotFoundError: If the entry or the referenced product is unknown.
        ValidationError: If any quantity is negative.
    """
    require_permission(context, Permission.EDIT)
    _get_product(context, command.product_id)
    for label, value in (
        ("opening balance", command.opening_balance),
        ("received", command.received),
        ("delivered", command.delivered),
        ("sold", command.sold),
        ("converted", command.converted),
    ):
        require_nonnegative_quantity(value, label=label)

    with context._lock:
        previous = _get_ledger_entry(context, entry_id)
        entry = build_ledger_entry(
            entry_id=entry_id,
            product_id=command.product_id,
            transaction_date=command.transaction_date,
            opening_balance=command.opening_balance,
            received=command.received,
            delivered=command.delivered,
            sold=command.sold,
            converted=command.converted,
            discrepancy_note=command.discrepancy_note,
            created_at=previous.created_at,
        )
        data_manager.replace_ledger_entry(context.workbook, entry_id, entry)
        _commit(
            context,
            undo=lambda: data_manager.replace_ledger_entry(context.workbook, entry_id, previous),
            buckets=("ledger",),
        )

    log.info("Replaced ledger entry %d (physical %s -> %s)", entry_id, previous.physical_stock, entry.physical_stock)
    _rederive(context, entry.product_id)
    if previous.product_id != entry.product_id:
        _rederive(context, previous.product_id)
    return entry


def delete_ledger_entry(context: RuntimeContext, entry_id: int) -> None:
    """Remove a ledger entry.

    Raises:
        NotFoundError: If the entry no longer exists.
    """
    require_permission(context, Permission.DELETE)

    with context._lock:
        previous = _get_ledger_entry(context, entry_id)
        data_manager.remove_ledger_entry(context.workbook, entry_id)
        _commit(
            context,
            undo=lambda: data_manager.append_ledger_entry(context.workbook, previous),
            buckets=("ledger",),
        )

    log.info("Deleted ledger entry %d for product %d", entry_id, previous.product_id)
    _rederive(context, previous.product_id)


def record_customer_stock(context: RuntimeContext, command: CustomerStockCommand) -> data_manager.CustomerStockRow:
    """Append one day of cylinder counts held by a customer.

    These rows track cylinders out at customer sites. They do not feed the
    depot ledger, so derived stock is unaffected.

    Raises:
        PermissionDeniedError: If the role may not add records.
        NotFoundError: If the product is not registered.
        ValidationError: If the customer or date is missing or a count is
            negative.
        StorageError: If the workbook cannot be saved; nothing is kept.
    """
    require_permission(context, Permission.ADD)
    validate_customer_stock_command(command)
    _get_product(context, command.product_id)

    with context._lock:
        row = build_customer_stock_row(
            command,
            customer_stock_id=data_manager.next_row_id(context.workbook, data_manager.CUSTOMER_STOCK_SHEET),
            created_at=_resolve_timestamp(None),
        )
        data_manager.append_customer_stock(context.workbook, row)
        _commit(
            context,
            undo=lambda: data_manager.remove_customer_stock(context.workbook, row.customer_stock_id),
            buckets=("customer_stock",),
        )

    log.info(
        "Recorded customer stock %d for customer %d, product %d (closing total %s)",
        row.customer_stock_id,
        row.customer_id,
        row.product_id,
        row.closing_total,
    )
    return row


def edit_customer_stock(
    context: RuntimeContext, customer_stock_id: int, command: CustomerStockCommand
) -> data_manager.CustomerStockRow:
    """Replace a customer cylinder count wholesale, keeping its id and creation time.

    Raises:
        NotFoundError: If the row or the referenced product is unknown.
        ValidationError: If the customer or date is missing or a count is
            negative.
    """
    require_permission(context, Permission.EDIT)
    validate_customer_stock_command(command)
    _get_product(context, command.product_id)

    with context._lock:
        previous = _get_customer_stock(context, customer_stock_id)
        row = build_customer_stock_row(command, customer_stock_id=customer_stock_id, created_at=previous.created_at)
        data_manager.replace_customer_stock(context.workbook, customer_stock_id, row)
        _commit(
            context,
            undo=lambda: data_manager.replace_customer_stock(context.workbook, customer_stock_id, previous),
            buckets=("customer_stock",),
        )

    log.info("Replaced customer stock %d for customer %d", customer_stock_id, row.customer_id)
    return row


def delete_customer_stock(context: RuntimeContext, customer_stock_id: int) -> None:
    """Remove a customer cylinder count.

    Raises:
        NotFoundError: If the row no longer exists.
    """
    require_permission(context, Permission.DELETE)

    with context._lock:
        previous = _get_customer_stock(context, customer_stock_id)
        data_manager.remove_customer_stock(context.workbook, customer_stock_id)
        _commit(
            context,
            undo=lambda: data_manager.append_customer_stock(context.workbook, previous),
            buckets=("customer_stock",),
        )

    log.info("Deleted customer stock %d for customer %d", customer_stock_id, previous.customer_id)


def _commit(context: RuntimeContext, *, undo: Callable[[], None], buckets: tuple[str, ...]) -> None:
    """Persist pending workbook edits, rolling them back in memory on failure."""
    try:
        persist_context(context)
    except StorageError:
        log.error("Save failed; reverting in-memory changes to %s", ", ".join(buckets))
        undo()
        raise
    finally:
        _invalidate_cache(context, *buckets)


def _rederive(context: RuntimeContext, product_id: int) -> Optional[derivation.DerivedStockItem]:
    """Refold the ledger after a write and raise a low-stock alert if needed.

    The write has already been persisted, so a failure here is logged and
    never reported to the caller as a failed write.
    """
    try:
        items = _derived_items(context)
    except Exception:  # noqa: BLE001 - separate failure domain from the write
        log.exception("Re-deriving stock failed after a write to product %d", product_id)
        return None

    item = derivation.item_for(items, product_id)
    if item is not None and item.is_low:
        log.warning(
            "Low stock alert: %s has %s %s remaining (threshold %s)",
            item.name,
            item.quantity,
            item.unit,
            item.threshold,
        )
    return item


def _require_unreferenced(context: RuntimeContext, product_id: int, *, action: str) -> None:
    referenced = any(
        entry.product_id == product_id for entry in _ensure_ledger_cache(context)["sorted"]
    ) or any(
        transaction.product_id == product_id for transaction in _ensure_transactions_cache(context)["all"]
    ) or any(
        row.product_id == product_id for row in _ensure_customer_stock_cache(context)["all"]
    )
    if referenced:
        log.error("Cannot %s product %d: it is referenced by stock records", action, product_id)
        raise ValidationError(f"Product {product_id} is referenced by stock records and cannot be {action}d")


def validate_product_command(command: ProductCommand) -> None:
    """Require a product name and type."""
    if not command.name.strip() or not command.product_type.strip():
        log.error("Product validation failed: name=%r type=%r", command.name, command.product_type)
        raise ValidationError("Product name and product type are required")


def validate_distribution(command: DistributionCommand, *, available: Decimal) -> None:
    """Check a distribution against the rules and the current balance.

    Args:
        command (DistributionCommand): Requested distribution.
        available (Decimal): Derived quantity of the product right now.

    Raises:
        ValidationError: If the quantity is zero or negative, exceeds
            ``available``, or a sale has a blank ``transferred_to``.
    """
    if command.quantity <= 0:
        log.error("Distribution quantity validation failed: %s", command.quantity)
        raise ValidationError("Please enter a valid quantity")
    if command.quantity > available:
        log.error(
            "Distribution of %s from product %d exceeds available %s",
            command.quantity,
            command.product_id,
            available,
        )
        raise ValidationError("Quantity exceeds available stock")
    if command.reason is DistributionReason.SALES and not (command.transferred_to or "").strip():
        log.error("Sale distribution for product %d names no counterpart", command.product_id)
        raise ValidationError("Please specify who/where the stock is being transferred to")


def validate_customer_stock_command(command: CustomerStockCommand) -> None:
    """Require a customer and a date, and reject negative counts."""
    if command.customer_id is None or command.customer_id <= 0 or command.transaction_date is None:
        log.error(
            "Customer stock validation failed: customer=%r date=%r",
            command.customer_id,
            command.transaction_date,
        )
        raise ValidationError("Product ID, customer ID, and transaction date are required")
    for label, value in (
        ("opening full", command.opening_full),
        ("opening empty", command.opening_empty),
        ("opening defective", command.opening_defective),
        ("empty cylinders received", command.empty_cylinders_received),
        ("delivery challan", command.delivery_challan),
        ("closing full", command.closing_full),
        ("closing empty", command.closing_empty),
        ("closing defective", command.closing_defective),
    ):
        require_nonnegative_quantity(value, label=label)


def require_nonnegative_quantity(quantity: Decimal, *, label: str = "quantity") -> None:
    """Reject negative quantities.

    Raises:
        ValidationError: If ``quantity`` is below zero.
    """
    if quantity < 0:
        log.error("Quantity validation failed for %s: %s", label, quantity)
        raise ValidationError(f"{label.capitalize()} must be zero or positive")


def build_product_row(command: ProductCommand, *, product_id: int, created_at: datetime) -> data_manager.ProductRow:
    return data_manager.ProductRow(
        product_id=product_id,
        name=command.name.strip(),
        product_type=command.product_type.strip(),
        default_unit=(command.default_unit or DEFAULT_UNIT).strip(),
        description=command.description,
        created_at=created_at,
    )


def build_ledger_entry(
    *,
    entry_id: int,
    product_id: int,
    transaction_date: date,
    opening_balance: Decimal,
    received: Decimal,
    delivered: Decimal,
    sold: Decimal,
    converted: Decimal,
    discrepancy_note: Optional[str],
    created_at: datetime,
) -> data_manager.LedgerEntryRow:
    """Materialize a ledger row whose physical stock is the fold of its components."""
    opening, received, delivered, sold, converted = (
        _as_quantity(value) for value in (opening_balance, received, delivered, sold, converted)
    )
    return data_manager.LedgerEntryRow(
        entry_id=entry_id,
        product_id=product_id,
        transaction_date=transaction_date,
        opening_balance=opening,
        received=received,
        delivered=delivered,
        sold=sold,
        converted=converted,
        physical_stock=derivation.compute_physical_stock(opening, received, delivered, sold, converted),
        discrepancy_note=discrepancy_note,
        created_at=created_at,
    )


def build_distribution_entry(
    *,
    entry_id: int,
    product_id: int,
    quantity: Decimal,
    reason: DistributionReason,
    available: Decimal,
    transaction_date: date,
    notes: Optional[str],
    created_at: datetime,
) -> data_manager.LedgerEntryRow:
    """Build the ledger row for a completed distribution.

    Sales are booked in the ``sold`` column and own use in ``delivered``; the
    opening balance is the quantity available before the distribution.
    """
    is_sale = reason is DistributionReason.SALES
    return build_ledger_entry(
        entry_id=entry_id,
        product_id=product_id,
        transaction_date=transaction_date,
        opening_balance=available,
        received=Decimal("0"),
        delivered=Decimal("0") if is_sale else quantity,
        sold=quantity if is_sale else Decimal("0"),
        converted=Decimal("0"),
        discrepancy_note=notes,
        created_at=created_at,
    )


def build_customer_stock_row(
    command: CustomerStockCommand, *, customer_stock_id: int, created_at: datetime
) -> data_manager.CustomerStockRow:
    return data_manager.CustomerStockRow(
        customer_stock_id=customer_stock_id,
        product_id=command.product_id,
        customer_id=command.customer_id,
        transaction_date=command.transaction_date,
        opening_full=_as_quantity(command.opening_full),
        opening_empty=_as_quantity(command.opening_empty),
        opening_defective=_as_quantity(command.opening_defective),
        empty_cylinders_received=_as_quantity(command.empty_cylinders_received),
        delivery_challan=_as_quantity(command.delivery_challan),
        closing_full=_as_quantity(command.closing_full),
        closing_empty=_as_quantity(command.closing_empty),
        closing_defective=_as_quantity(command.closing_defective),
        created_at=created_at,
    )


def _as_quantity(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "NotFoundError",
    "PermissionDeniedError",
    "StorageError",
    "RuntimeContext",
    "ProductCommand",
    "ReceiptCommand",
    "DistributionCommand",
    "LedgerEntryCommand",
    "LedgerFilter",
    "CustomerStockCommand",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "has_permission",
    "require_permission",
    "list_products",
    "get_product",
    "list_ledger_entries",
    "get_ledger_entry",
    "list_transactions",
    "get_transaction",
    "list_customer_stock",
    "get_customer_stock",
    "derive_stock",
    "get_summary",
    "get_low_stock",
    "search_stock",
    "list_unstocked_products",
    "ledger_report",
    "register_product",
    "update_product",
    "delete_product",
    "record_receipt",
    "record_distribution",
    "approve_distribution",
    "edit_ledger_entry",
    "delete_ledger_entry",
    "record_customer_stock",
    "edit_customer_stock",
    "delete_customer_stock",
]
