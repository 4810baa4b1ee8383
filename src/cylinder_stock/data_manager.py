"""Data access layer for the cylinder stock ledger.

This module reads from and writes to the ledger workbook. It knows nothing
about business rules: quantities are stored exactly as the gateway computed
them.

The public API covers three responsibilities:

1. Configuration handling: finding ``config.ini`` and parsing it into
   :class:`ConfigSettings`.
2. Workbook lifecycle: opening, persisting, and reloading the Excel file.
3. Sheet operations: typed iteration over products, ledger entries,
   distribution transactions, and per-customer cylinder counts, plus append,
   full-row replace, and remove.

Every failure of the storage itself (unreadable file, missing worksheet,
failed save) is raised as :class:`StorageError`. Unknown row ids raise
``KeyError`` so the business layer can translate them.
"""


from __future__ import annotations

import configparser
import zipfile
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import (
    DEFAULT_APPROVAL_THRESHOLD,
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_UNIT,
    DEFAULT_UNIT_PRICE,
    Role,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
LEDGER_SHEET = SheetName.LEDGER_ENTRIES.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
CUSTOMER_STOCK_SHEET = SheetName.CUSTOMER_STOCK.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "ProductName",
        "ProductType",
        "DefaultUnit",
        "Description",
        "CreatedAt",
    ],
    LEDGER_SHEET: [
        "EntryID",
        "ProductID",
        "TransactionDate",
        "OpeningBalance",
        "Received",
        "Delivered",
        "Sold",
        "Converted",
        "PhysicalStock",
        "DiscrepancyNote",
        "CreatedAt",
    ],
    TRANSACTIONS_SHEET: [
        "TransactionID",
        "ProductID",
        "Quantity",
        "Direction",
        "Reason",
        "TransferredTo",
        "Notes",
        "Status",
        "Timestamp",
        "LedgerEntryID",
    ],
    CUSTOMER_STOCK_SHEET: [
        "CustomerStockID",
        "ProductID",
        "CustomerID",
        "TransactionDate",
        "OpeningFull",
        "OpeningEmpty",
        "OpeningDefective",
        "EmptyCylindersReceived",
        "DeliveryChallan",
        "ClosingFull",
        "ClosingEmpty",
        "ClosingDefective",
        "CreatedAt",
    ],
    CUSTOMERS_SHEET: [
        "CustomerID",
        "Name",
        "Email",
        "Phone",
        "Address",
        "IsActive",
        "CreatedAt",
    ],
}


class StorageError(Exception):
    """Raised when the backing workbook cannot be read or written."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    role: Role = Role.ADMIN
    low_stock_threshold: Decimal = DEFAULT_LOW_STOCK_THRESHOLD
    approval_threshold: Decimal = DEFAULT_APPROVAL_THRESHOLD
    unit_price: Decimal = DEFAULT_UNIT_PRICE


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: int
    name: str
    product_type: str
    default_unit: str
    description: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class LedgerEntryRow:
    """In-memory view of a row from the ``LedgerEntries`` sheet."""

    entry_id: int
    product_id: int
    transaction_date: date
    opening_balance: Decimal
    received: Decimal
    delivered: Decimal
    sold: Decimal
    converted: Decimal
    physical_stock: Decimal
    discrepancy_note: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: int
    product_id: int
    quantity: Decimal
    direction: str
    reason: str
    transferred_to: Optional[str]
    notes: Optional[str]
    status: str
    timestamp: datetime
    ledger_entry_id: Optional[int]


@dataclass(frozen=True)
class CustomerStockRow:
    """In-memory view of a row from the ``CustomerStock`` sheet.

    Each row is one day of cylinder counts held by a single customer for a
    single product: opening counts, empties returned, cylinders delivered on
    challan, and closing counts.
    """

    customer_stock_id: int
    product_id: int
    customer_id: int
    transaction_date: date
    opening_full: Decimal
    opening_empty: Decimal
    opening_defective: Decimal
    empty_cylinders_received: Decimal
    delivery_challan: Decimal
    closing_full: Decimal
    closing_empty: Decimal
    closing_defective: Decimal
    created_at: datetime

    @property
    def closing_total(self) -> Decimal:
        return self.closing_full + self.closing_empty + self.closing_defective


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that points at the ledger workbook.

    An explicit path is returned untouched so callers can deliberately target
    a non-standard location. Otherwise the search walks from the current
    working directory up to the filesystem root and returns the first
    ``config.ini`` it finds.

    Args:
        explicit_path (Path | None): Optional path to use instead of the
            upward search.

    Returns:
        Path: The supplied or discovered configuration file.

    Raises:
        FileNotFoundError: If no ``config.ini`` exists in any parent directory.
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
    """Load ``config.ini`` into a ``ConfigParser``.

    Required entries are validated later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` entries are optional
    and fall back to the package constants. A relative ``DataFile`` is
    anchored to ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for a relative ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a default carries an unknown role or a non-numeric
            threshold or price.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    role_raw = parser.get("Defaults", "Role", fallback=Role.ADMIN.value)
    try:
        role = Role(role_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown role in configuration: {role_raw!r}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        role=role,
        low_stock_threshold=_config_decimal(parser, "LowStockThreshold", DEFAULT_LOW_STOCK_THRESHOLD),
        approval_threshold=_config_decimal(parser, "ApprovalThreshold", DEFAULT_APPROVAL_THRESHOLD),
        unit_price=_config_decimal(parser, "UnitPrice", DEFAULT_UNIT_PRICE),
    )


def _config_decimal(parser: configparser.ConfigParser, option: str, default: Decimal) -> Decimal:
    raw = parser.get("Defaults", option, fallback=None)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid number for Defaults.{option}: {raw!r}") from exc


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        StorageError: If the file exists but is not a readable workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except (InvalidFileException, zipfile.BadZipFile, OSError) as exc:
        log.error("Unable to load workbook '%s': %s", data_file, exc)
        raise StorageError(f"Unable to load workbook {data_file}: {exc}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders.

    Raises:
        StorageError: If the file cannot be written.
    """

    dest = Path(destination).expanduser().resolve()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(dest)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise StorageError(f"Unable to save workbook {dest}: {exc}") from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    """Return ``sheet_name`` or raise :class:`StorageError` if the schema lacks it."""

    try:
        return workbook[sheet_name]
    except KeyError as exc:
        raise StorageError(f"Worksheet missing from ledger workbook: {sheet_name}") from exc


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = get_sheet(workbook, sheet_name)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Yield every product in sheet order."""

    for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_ledger_entries(workbook: Workbook) -> Iterable[LedgerEntryRow]:
    """Yield every ledger entry in sheet (insertion) order.

    Use :func:`sort_ledger_entries` for the newest-first ordering the
    derivation engine expects.
    """

    for raw in _iter_raw_rows(workbook, LEDGER_SHEET):
        yield deserialize_ledger_entry(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Yield every distribution transaction in sheet order."""

    for raw in _iter_raw_rows(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def iter_customer_stock(workbook: Workbook) -> Iterable[CustomerStockRow]:
    """Yield every customer cylinder count in sheet order."""

    for raw in _iter_raw_rows(workbook, CUSTOMER_STOCK_SHEET):
        yield deserialize_customer_stock(raw)


def sort_ledger_entries(entries: Iterable[LedgerEntryRow]) -> List[LedgerEntryRow]:
    """Order ledger entries newest first.

    Rows are ordered by transaction date, then creation timestamp, then id,
    all descending, so the first row seen for a product on a given day is the
    one recorded last.
    """

    return sorted(
        entries,
        key=lambda entry: (entry.transaction_date, entry.created_at, entry.entry_id),
        reverse=True,
    )


def next_row_id(workbook: Workbook, sheet_name: str) -> int:
    """Return one more than the largest integer id in the first column."""

    highest = 0
    for raw in _iter_raw_rows(workbook, sheet_name):
        value = raw[0]
        if value is None:
            continue
        highest = max(highest, int(value))
    return highest + 1


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    get_sheet(workbook, PRODUCTS_SHEET).append(serialize_product(record))


def append_ledger_entry(workbook: Workbook, record: LedgerEntryRow) -> None:
    """Append a ledger entry to the ``LedgerEntries`` worksheet.

    Quantities stay :class:`~decimal.Decimal` so Excel keeps their precision.
    """

    get_sheet(workbook, LEDGER_SHEET).append(serialize_ledger_entry(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a distribution record to the ``Transactions`` worksheet."""

    get_sheet(workbook, TRANSACTIONS_SHEET).append(serialize_transaction(record))


def append_customer_stock(workbook: Workbook, record: CustomerStockRow) -> None:
    """Append a customer cylinder count to the ``CustomerStock`` worksheet."""

    get_sheet(workbook, CUSTOMER_STOCK_SHEET).append(serialize_customer_stock(record))


def replace_product(workbook: Workbook, product_id: int, record: ProductRow) -> None:
    """Overwrite every column of an existing product row.

    Raises:
        KeyError: If ``product_id`` is not present.
    """

    _replace_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, serialize_product(record))


def replace_ledger_entry(workbook: Workbook, entry_id: int, record: LedgerEntryRow) -> None:
    """Overwrite every column of an existing ledger entry.

    The write is a full replace: columns missing from ``record`` are not
    merged from the previous row.

    Raises:
        KeyError: If ``entry_id`` is not present.
    """

    _replace_row(workbook, LEDGER_SHEET, "EntryID", entry_id, serialize_ledger_entry(record))


def replace_transaction(workbook: Workbook, transaction_id: int, record: TransactionRow) -> None:
    """Overwrite every column of an existing distribution record.

    Raises:
        KeyError: If ``transaction_id`` is not present.
    """

    _replace_row(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id, serialize_transaction(record))


def replace_customer_stock(workbook: Workbook, customer_stock_id: int, record: CustomerStockRow) -> None:
    """Overwrite every column of an existing customer cylinder count.

    Raises:
        KeyError: If ``customer_stock_id`` is not present.
    """

    _replace_row(workbook, CUSTOMER_STOCK_SHEET, "CustomerStockID", customer_stock_id, serialize_customer_stock(record))


def remove_product(workbook: Workbook, product_id: int) -> None:
    """Delete the product row identified by ``product_id``.

    Raises:
        KeyError: If ``product_id`` is not present.
    """

    _remove_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)


def remove_ledger_entry(workbook: Workbook, entry_id: int) -> None:
    """Delete the ledger row identified by ``entry_id``.

    Raises:
        KeyError: If ``entry_id`` is not present.
    """

    _remove_row(workbook, LEDGER_SHEET, "EntryID", entry_id)


def remove_transaction(workbook: Workbook, transaction_id: int) -> None:
    """Delete the distribution row identified by ``transaction_id``.

    Raises:
        KeyError: If ``transaction_id`` is not present.
    """

    _remove_row(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id)


def remove_customer_stock(workbook: Workbook, customer_stock_id: int) -> None:
    """Delete the customer cylinder count identified by ``customer_stock_id``.

    Raises:
        KeyError: If ``customer_stock_id`` is not present.
    """

    _remove_row(workbook, CUSTOMER_STOCK_SHEET, "CustomerStockID", customer_stock_id)


def _replace_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: int, values: Sequence[object]) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = get_sheet(workbook, sheet_name)
    for column_index, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column_index, value=value)


def _remove_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: int) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    get_sheet(workbook, sheet_name).delete_rows(row_index)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the lookup column.
        key_value (object): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index of the first match, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
        StorageError: If the worksheet itself is missing.
    """

    sheet = get_sheet(workbook, sheet_name)
    header_map = {cell.value: idx for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index] == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product in ``Products`` column order."""

    return [
        record.product_id,
        record.name,
        record.product_type,
        record.default_unit,
        record.description,
        record.created_at.isoformat(),
    ]


def serialize_ledger_entry(record: LedgerEntryRow) -> list[object]:
    """Arrange a ledger entry in ``LedgerEntries`` column order.

    Dates and timestamps are stored as ISO-8601 text.
    """

    return [
        record.entry_id,
        record.product_id,
        record.transaction_date.isoformat(),
        record.opening_balance,
        record.received,
        record.delivered,
        record.sold,
        record.converted,
        record.physical_stock,
        record.discrepancy_note,
        record.created_at.isoformat(),
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Arrange a distribution record in ``Transactions`` column order."""

    return [
        record.transaction_id,
        record.product_id,
        record.quantity,
        record.direction,
        record.reason,
        record.transferred_to,
        record.notes,
        record.status,
        record.timestamp.isoformat(),
        record.ledger_entry_id,
    ]


def serialize_customer_stock(record: CustomerStockRow) -> list[object]:
    """Arrange a customer cylinder count in ``CustomerStock`` column order."""

    return [
        record.customer_stock_id,
        record.product_id,
        record.customer_id,
        record.transaction_date.isoformat(),
        record.opening_full,
        record.opening_empty,
        record.opening_defective,
        record.empty_cylinders_received,
        record.delivery_challan,
        record.closing_full,
        record.closing_empty,
        record.closing_defective,
        record.created_at.isoformat(),
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row into a :class:`ProductRow`."""

    (
        product_id,
        name,
        product_type,
        default_unit,
        description,
        created_at,
    ) = _pad(raw_row, PRODUCTS_SHEET)

    return ProductRow(
        product_id=int(product_id),
        name=str(name) if name is not None else "",
        product_type=str(product_type) if product_type is not None else "",
        default_unit=str(default_unit) if default_unit is not None else DEFAULT_UNIT,
        description=_optional_text(description),
        created_at=_to_datetime(created_at),
    )


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerEntryRow:
    """Convert a raw ``LedgerEntries`` row into a :class:`LedgerEntryRow`.

    Blank quantity cells read as zero; a blank note stays ``None``.
    """

    (
        entry_id,
        product_id,
        transaction_date,
        opening_balance,
        received,
        delivered,
        sold,
        converted,
        physical_stock,
        discrepancy_note,
        created_at,
    ) = _pad(raw_row, LEDGER_SHEET)

    return LedgerEntryRow(
        entry_id=int(entry_id),
        product_id=int(product_id),
        transaction_date=_to_date(transaction_date),
        opening_balance=_to_decimal(opening_balance),
        received=_to_decimal(received),
        delivered=_to_decimal(delivered),
        sold=_to_decimal(sold),
        converted=_to_decimal(converted),
        physical_stock=_to_decimal(physical_stock),
        discrepancy_note=_optional_text(discrepancy_note),
        created_at=_to_datetime(created_at),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw ``Transactions`` row into a :class:`TransactionRow`."""

    (
        transaction_id,
        product_id,
        quantity,
        direction,
        reason,
        transferred_to,
        notes,
        status,
        timestamp,
        ledger_entry_id,
    ) = _pad(raw_row, TRANSACTIONS_SHEET)

    return TransactionRow(
        transaction_id=int(transaction_id),
        product_id=int(product_id),
        quantity=_to_decimal(quantity),
        direction=str(direction) if direction is not None else "",
        reason=str(reason) if reason is not None else "",
        transferred_to=_optional_text(transferred_to),
        notes=_optional_text(notes),
        status=str(status) if status is not None else "",
        timestamp=_to_datetime(timestamp),
        ledger_entry_id=int(ledger_entry_id) if ledger_entry_id is not None else None,
    )


def deserialize_customer_stock(raw_row: Sequence[object]) -> CustomerStockRow:
    """Convert a raw ``CustomerStock`` row into a :class:`CustomerStockRow`.

    Blank count cells read as zero.
    """

    (
        customer_stock_id,
        product_id,
        customer_id,
        transaction_date,
        opening_full,
        opening_empty,
        opening_defective,
        empty_cylinders_received,
        delivery_challan,
        closing_full,
        closing_empty,
        closing_defective,
        created_at,
    ) = _pad(raw_row, CUSTOMER_STOCK_SHEET)

    return CustomerStockRow(
        customer_stock_id=int(customer_stock_id),
        product_id=int(product_id),
        customer_id=int(customer_id),
        transaction_date=_to_date(transaction_date),
        opening_full=_to_decimal(opening_full),
        opening_empty=_to_decimal(opening_empty),
        opening_defective=_to_decimal(opening_defective),
        empty_cylinders_received=_to_decimal(empty_cylinders_received),
        delivery_challan=_to_decimal(delivery_challan),
        closing_full=_to_decimal(closing_full),
        closing_empty=_to_decimal(closing_empty),
        closing_defective=_to_decimal(closing_defective),
        created_at=_to_datetime(created_at),
    )


def _pad(raw_row: Sequence[object], sheet_name: str) -> tuple:
    width = len(SHEET_COLUMNS[sheet_name])
    values = tuple(raw_row)[:width]
    return values + (None,) * (width - len(values))


def _to_decimal(raw: object) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    return Decimal(str(raw))


def _optional_text(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text.strip() else None


def _to_date(raw: object) -> date:
    # Excel may hand back real datetimes when a user edits the sheet by hand.
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw)[:10])


def _to_datetime(raw: object) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, date):
        value = datetime(raw.year, raw.month, raw.day)
    else:
        value = datetime.fromisoformat(str(raw))
    # Naive timestamps are taken as UTC so every comparison stays aware.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
