"""Stock derivation: fold the ledger into one current-stock record per product.

The ledger is the only source of truth. Nothing produced here is stored; the
gateway calls :func:`derive_stock_items` again after every write.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from . import log
from .constants import DEFAULT_UNIT
from .data_manager import LedgerEntryRow, ProductRow


ZERO = Decimal("0")


@dataclass(frozen=True)
class DerivedStockItem:
    """Current stock of one product, taken from its latest ledger entry."""

    product_id: int
    name: str
    category: str
    unit: str
    quantity: Decimal
    last_updated: date
    threshold: Decimal
    discrepancy_note: Optional[str] = None

    @property
    def is_low(self) -> bool:
        return self.quantity <= self.threshold


def compute_physical_stock(
    opening_balance: Decimal,
    received: Decimal,
    delivered: Decimal,
    sold: Decimal,
    converted: Decimal,
) -> Decimal:
    """Return ``opening + received - delivered - sold - converted``, floored at zero.

    This is the only place quantities are clamped. An overdrawn entry keeps
    its raw components, so the ledger still shows what was recorded.
    """

    physical = opening_balance + received - delivered - sold - converted
    return physical if physical > ZERO else ZERO


def derive_stock_items(
    entries: Iterable[LedgerEntryRow],
    products: Mapping[int, ProductRow],
    *,
    threshold: Decimal,
) -> List[DerivedStockItem]:
    """Fold ledger entries into the latest stock record per product.

    ``entries`` are expected newest first (see
    :func:`~cylinder_stock.data_manager.sort_ledger_entries`). The first
    entry seen for a product seeds its record; a later entry only replaces it
    when its transaction date is strictly newer, which keeps the result
    correct if the rows arrive out of order. Ties on the same date therefore
    go to the entry encountered first.

    Products without ledger entries are not represented; see
    :func:`unstocked_products`.

    Args:
        entries: Ledger rows, newest first.
        products: Product lookup keyed by id, used for name, category and unit.
        threshold: Low-stock threshold attached to every derived item.

    Returns:
        list[DerivedStockItem]: One item per stocked product, in the order each
            product was first encountered.
    """

    derived: Dict[int, DerivedStockItem] = {}
    for entry in entries:
        current = derived.get(entry.product_id)
        if current is None or entry.transaction_date > current.last_updated:
            derived[entry.product_id] = _item_from_entry(entry, products.get(entry.product_id), threshold)

    log.debug("Derived stock for %d products", len(derived))
    return list(derived.values())


def unstocked_products(products: Iterable[ProductRow], entries: Iterable[LedgerEntryRow]) -> List[ProductRow]:
    """Return products that have never had a ledger entry, in product order."""

    stocked = {entry.product_id for entry in entries}
    return [product for product in products if product.product_id not in stocked]


def item_for(items: Iterable[DerivedStockItem], product_id: int) -> Optional[DerivedStockItem]:
    """Return the derived record of ``product_id``, or ``None`` when never stocked."""

    for item in items:
        if item.product_id == product_id:
            return item
    return None


def quantity_for(items: Iterable[DerivedStockItem], product_id: int) -> Decimal:
    """Return the derived quantity of ``product_id``, or zero when never stocked."""

    item = item_for(items, product_id)
    return item.quantity if item is not None else ZERO


def _item_from_entry(entry: LedgerEntryRow, product: Optional[ProductRow], threshold: Decimal) -> DerivedStockItem:
    if product is None:
        name, category, unit = f"Product {entry.product_id}", "", DEFAULT_UNIT
    else:
        name, category, unit = product.name, product.product_type, product.default_unit

    return DerivedStockItem(
        product_id=entry.product_id,
        name=name,
        category=category,
        unit=unit,
        quantity=entry.physical_stock,
        last_updated=entry.transaction_date,
        threshold=threshold,
        discrepancy_note=entry.discrepancy_note,
    )
