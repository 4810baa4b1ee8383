"""Enumerations and business constants shared across the stock ledger.

The data access layer, the derivation and aggregation engines, and the
mutation gateway all read their identifiers from here so worksheet names,
statuses, and role permissions have a single definition.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Mapping


# Schema version expected in ``config.ini`` before any write is attempted.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_UNIT = "Cylinders"
DEFAULT_LOW_STOCK_THRESHOLD = Decimal("5")
DEFAULT_APPROVAL_THRESHOLD = Decimal("50")
DEFAULT_UNIT_PRICE = Decimal("0")
RECENT_TRANSACTION_WINDOW_DAYS = 7


class SheetName(str, Enum):
    """Worksheets managed by the ledger store."""

    PRODUCTS = "Products"
    LEDGER_ENTRIES = "LedgerEntries"
    TRANSACTIONS = "Transactions"
    CUSTOMER_STOCK = "CustomerStock"
    CUSTOMERS = "Customers"


class TransactionDirection(str, Enum):
    """Whether a recorded movement brings stock in or sends it out."""

    IN = "in"
    OUT = "out"


class TransactionStatus(str, Enum):
    """Lifecycle of a distribution record."""

    PENDING = "pending"
    COMPLETED = "completed"


class DistributionReason(str, Enum):
    """Why stock leaves the depot."""

    SALES = "Sales"
    OWN_USE = "OwnUse"


class Permission(str, Enum):
    VIEW = "view"
    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"
    MANAGE_SETTINGS = "manageSettings"


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    VIEWER = "viewer"


ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.STAFF: frozenset({Permission.VIEW, Permission.ADD, Permission.EDIT}),
    Role.VIEWER: frozenset({Permission.VIEW}),
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_UNIT",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_APPROVAL_THRESHOLD",
    "DEFAULT_UNIT_PRICE",
    "RECENT_TRANSACTION_WINDOW_DAYS",
    "SheetName",
    "TransactionDirection",
    "TransactionStatus",
    "DistributionReason",
    "Permission",
    "Role",
    "ROLE_PERMISSIONS",
]
