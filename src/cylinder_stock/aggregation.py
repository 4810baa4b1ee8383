"""Dashboard and report aggregates computed from derived stock and raw rows.

Every function here is pure: no workbook access, no mutation of its inputs,
and a full recomputation on each call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from .constants import RECENT_TRANSACTION_WINDOW_DAYS
from .data_manager import LedgerEntryRow, TransactionRow
from .derivation import ZERO, DerivedStockItem


@dataclass(frozen=True)
class StockSummary:
    """Headline figures for the stock dashboard."""

    total_quantity: Decimal
    total_value: Decimal
    low_stock_count: int
    recent_transaction_count: int
    product_breakdown: Dict[str, Decimal] = field(default_factory=dict)
    category_breakdown: Dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerTotals:
    """Column totals over a set of ledger entries, as shown on the sales report."""

    entry_count: int
    opening_balance: Decimal
    received: Decimal
    delivered: Decimal
    sold: Decimal
    converted: Decimal
    physical_stock: Decimal


def summarize(
    items: Sequence[DerivedStockItem],
    transactions: Iterable[TransactionRow],
    *,
    now: datetime,
    unit_price: Decimal = ZERO,
) -> StockSummary:
    """Compute dashboard totals.

    ``total_value`` is the total quantity priced at the nominal ``unit_price``
    (zero when no price is configured). Transactions count as recent when
    their timestamp falls in the seven days before ``now``.
    """

    total_quantity = sum((item.quantity for item in items), ZERO)
    window_start = now - timedelta(days=RECENT_TRANSACTION_WINDOW_DAYS)
    recent = sum(1 for transaction in transactions if window_start < transaction.timestamp <= now)

    product_breakdown: Dict[str, Decimal] = {}
    category_breakdown: Dict[str, Decimal] = {}
    for item in items:
        product_breakdown.setdefault(item.name, item.quantity)
        category = item.category or "Uncategorized"
        category_breakdown[category] = category_breakdown.get(category, ZERO) + item.quantity

    return StockSummary(
        total_quantity=total_quantity,
        total_value=total_quantity * unit_price,
        low_stock_count=sum(1 for item in items if item.is_low),
        recent_transaction_count=recent,
        product_breakdown=product_breakdown,
        category_breakdown=category_breakdown,
    )


def low_stock_items(items: Iterable[DerivedStockItem]) -> List[DerivedStockItem]:
    """Items at or below their threshold, in input order (not sorted by severity)."""

    return [item for item in items if item.is_low]


def search_items(items: Iterable[DerivedStockItem], query: str) -> List[DerivedStockItem]:
    """Case-insensitive substring match on name or category, input order kept."""

    needle = query.lower()
    return [
        item for item in items
        if needle in item.name.lower() or needle in item.category.lower()
    ]


def filter_ledger_entries(
    entries: Iterable[LedgerEntryRow],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    product_id: Optional[int] = None,
) -> List[LedgerEntryRow]:
    """Keep entries dated within ``[start, end]`` and, if given, for one product."""

    return [
        entry for entry in entries
        if (start is None or entry.transaction_date >= start)
        and (end is None or entry.transaction_date <= end)
        and (product_id is None or entry.product_id == product_id)
    ]


def summarize_ledger(entries: Iterable[LedgerEntryRow]) -> LedgerTotals:
    count = 0
    opening = received = delivered = sold = converted = physical = ZERO
    for entry in entries:
        count += 1
        opening += entry.opening_balance
        received += entry.received
        delivered += entry.delivered
        sold += entry.sold
        converted += entry.converted
        physical += entry.physical_stock

    return LedgerTotals(
        entry_count=count,
        opening_balance=opening,
        received=received,
        delivered=delivered,
        sold=sold,
        converted=converted,
        physical_stock=physical,
    )
