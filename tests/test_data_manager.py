"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from cylinder_stock import constants, data_manager  # noqa: E402

from conftest import make_customer_stock, make_entry, make_product, make_transaction


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=stock_ledger.xlsx")
    nested = tmp_path / "nested" / "deeper"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Test Depot"
    assert parser.get("Defaults", "Role") == "admin"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.business_name == "Test Depot"
    assert settings.role is constants.Role.ADMIN


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_applies_defaults_when_section_missing(tmp_path):
    """[Defaults] is optional and falls back to the package constants."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=ledger.xlsx\nBusinessName=Depot\nSchemaVersion=1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.role is constants.Role.ADMIN
    assert settings.low_stock_threshold == constants.DEFAULT_LOW_STOCK_THRESHOLD
    assert settings.approval_threshold == constants.DEFAULT_APPROVAL_THRESHOLD
    assert settings.unit_price == Decimal("0")


def test_parse_settings_reads_custom_defaults(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=ledger.xlsx\nBusinessName=Depot\nSchemaVersion=1.0.0\n"
        "[Defaults]\nRole=Viewer\nLowStockThreshold=10\nApprovalThreshold=20\nUnitPrice=12.50\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.role is constants.Role.VIEWER
    assert settings.low_stock_threshold == Decimal("10")
    assert settings.approval_threshold == Decimal("20")
    assert settings.unit_price == Decimal("12.50")


@pytest.mark.parametrize(
    "defaults",
    ["Role=owner", "LowStockThreshold=lots"],
)
def test_parse_settings_rejects_invalid_defaults(tmp_path, defaults):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=ledger.xlsx\nBusinessName=Depot\nSchemaVersion=1.0.0\n"
        f"[Defaults]\n{defaults}\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_corrupt_file_raises_storage_error(tmp_path):
    """A file that is not a workbook should surface as StorageError."""

    corrupt = tmp_path / "corrupt.xlsx"
    corrupt.write_text("not a zip archive")
    with pytest.raises(data_manager.StorageError):
        data_manager.open_workbook(corrupt)


def test_save_workbook_persists_changes(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_product(workbook, make_product(7, "Oxygen 40L", "Industrial"))
    data_manager.save_workbook(workbook, ledger_workbook_path)

    reloaded = data_manager.open_workbook(ledger_workbook_path)
    products = list(data_manager.iter_products(reloaded))
    assert [(row.product_id, row.name) for row in products] == [(7, "Oxygen 40L")]


def test_save_workbook_wraps_os_errors(ledger_workbook_path, monkeypatch):
    """Failed writes should be reported as StorageError."""

    workbook = data_manager.open_workbook(ledger_workbook_path)

    def _fail(_destination):
        raise PermissionError("read-only volume")

    monkeypatch.setattr(workbook, "save", _fail)
    with pytest.raises(data_manager.StorageError):
        data_manager.save_workbook(workbook, ledger_workbook_path)


def test_refresh_workbook_returns_new_instance(ledger_workbook_path):
    original = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_product(original, make_product(3))
    data_manager.save_workbook(original, ledger_workbook_path)

    refreshed = data_manager.refresh_workbook(ledger_workbook_path)
    assert refreshed is not original
    assert [row.product_id for row in data_manager.iter_products(refreshed)] == [3]


def test_get_sheet_missing_raises_storage_error():
    workbook = openpyxl.Workbook()
    with pytest.raises(data_manager.StorageError):
        data_manager.get_sheet(workbook, constants.SheetName.LEDGER_ENTRIES.value)


# ---------------------------------------------------------------------------
# Sheet iteration
# ---------------------------------------------------------------------------


def test_iter_ledger_entries_round_trips_through_disk(ledger_workbook_path):
    """Ledger rows should survive a save and reload with their quantities intact."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    entry = data_manager.LedgerEntryRow(
        entry_id=1,
        product_id=2,
        transaction_date=date(2025, 3, 4),
        opening_balance=Decimal("10"),
        received=Decimal("5.5"),
        delivered=Decimal("1"),
        sold=Decimal("2"),
        converted=Decimal("0"),
        physical_stock=Decimal("12.5"),
        discrepancy_note="Counted twice",
        created_at=datetime(2025, 3, 4, 9, 30, tzinfo=UTC),
    )
    data_manager.append_ledger_entry(workbook, entry)
    data_manager.save_workbook(workbook, ledger_workbook_path)

    reloaded = data_manager.open_workbook(ledger_workbook_path)
    assert list(data_manager.iter_ledger_entries(reloaded)) == [entry]


def test_iter_transactions_yields_transaction_rows(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    pending = make_transaction(1, 4, 75, status=constants.TransactionStatus.PENDING.value)
    data_manager.append_transaction(workbook, pending)
    data_manager.save_workbook(workbook, ledger_workbook_path)

    rows = list(data_manager.iter_transactions(data_manager.open_workbook(ledger_workbook_path)))

    assert rows == [pending]
    assert rows[0].ledger_entry_id is None


def test_iter_customer_stock_round_trips_through_disk(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    row = data_manager.CustomerStockRow(
        customer_stock_id=1,
        product_id=2,
        customer_id=7,
        transaction_date=date(2025, 3, 4),
        opening_full=Decimal("10"),
        opening_empty=Decimal("3"),
        opening_defective=Decimal("1"),
        empty_cylinders_received=Decimal("4"),
        delivery_challan=Decimal("6"),
        closing_full=Decimal("12"),
        closing_empty=Decimal("2"),
        closing_defective=Decimal("1"),
        created_at=datetime(2025, 3, 4, 9, 30, tzinfo=UTC),
    )
    data_manager.append_customer_stock(workbook, row)
    data_manager.save_workbook(workbook, ledger_workbook_path)

    rows = list(data_manager.iter_customer_stock(data_manager.open_workbook(ledger_workbook_path)))

    assert rows == [row]
    assert rows[0].closing_total == Decimal("15")


def test_iter_products_skips_blank_rows(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    sheet = workbook[constants.SheetName.PRODUCTS.value]
    sheet.append([None, None, None])
    data_manager.append_product(workbook, make_product(1))

    assert [row.product_id for row in data_manager.iter_products(workbook)] == [1]


def test_sort_ledger_entries_orders_newest_first_with_tiebreakers():
    """Date, then creation time, then id, all descending."""

    day = date(2025, 5, 1)
    older = make_entry(1, 1, date(2025, 4, 30), 10)
    early = make_entry(2, 1, day, 20, created_at=datetime(2025, 5, 1, 8, tzinfo=UTC))
    late = make_entry(3, 1, day, 30, created_at=datetime(2025, 5, 1, 17, tzinfo=UTC))
    same_time = make_entry(4, 1, day, 40, created_at=datetime(2025, 5, 1, 17, tzinfo=UTC))

    ordered = data_manager.sort_ledger_entries([older, early, late, same_time])

    assert [entry.entry_id for entry in ordered] == [4, 3, 2, 1]


def test_next_row_id_counts_from_highest_id(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    assert data_manager.next_row_id(workbook, data_manager.PRODUCTS_SHEET) == 1

    data_manager.append_product(workbook, make_product(4))
    data_manager.append_product(workbook, make_product(2))

    assert data_manager.next_row_id(workbook, data_manager.PRODUCTS_SHEET) == 5


# ---------------------------------------------------------------------------
# Replace and remove
# ---------------------------------------------------------------------------


def test_replace_ledger_entry_overwrites_every_column(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    original = make_entry(1, 1, date(2025, 1, 1), 10)
    data_manager.append_ledger_entry(workbook, original)

    replacement = make_entry(1, 1, date(2025, 1, 2), 4, opening_balance=4)
    data_manager.replace_ledger_entry(workbook, 1, replacement)

    assert list(data_manager.iter_ledger_entries(workbook)) == [replacement]


def test_replace_transaction_missing_raises(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    with pytest.raises(KeyError):
        data_manager.replace_transaction(workbook, 99, make_transaction(99, 1, 1))


def test_remove_ledger_entry_deletes_only_matching_row(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    for entry_id in (1, 2, 3):
        data_manager.append_ledger_entry(workbook, make_entry(entry_id, 1, date(2025, 1, entry_id), entry_id))

    data_manager.remove_ledger_entry(workbook, 2)

    assert [entry.entry_id for entry in data_manager.iter_ledger_entries(workbook)] == [1, 3]


def test_replace_and_remove_customer_stock(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    for customer_stock_id in (1, 2):
        data_manager.append_customer_stock(workbook, make_customer_stock(customer_stock_id, 1, 7, date(2025, 1, 1)))

    replacement = make_customer_stock(2, 1, 8, date(2025, 1, 2), closing_full=9)
    data_manager.replace_customer_stock(workbook, 2, replacement)
    data_manager.remove_customer_stock(workbook, 1)

    assert list(data_manager.iter_customer_stock(workbook)) == [replacement]
    with pytest.raises(KeyError):
        data_manager.remove_customer_stock(workbook, 1)


def test_remove_product_missing_raises(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    with pytest.raises(KeyError):
        data_manager.remove_product(workbook, 42)


def test_locate_row_returns_row_index(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_product(workbook, make_product(5))
    data_manager.append_product(workbook, make_product(6))

    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", 6) == 3


def test_locate_row_returns_none_when_missing(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", 404) is None


def test_locate_row_unknown_column_raises(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "Barcode", 1)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def test_serialize_ledger_entry_preserves_order():
    record = make_entry(8, 2, date(2025, 6, 1), 12, opening_balance=2, received=10)
    assert data_manager.serialize_ledger_entry(record) == [
        8,
        2,
        "2025-06-01",
        Decimal("2"),
        Decimal("10"),
        Decimal("0"),
        Decimal("0"),
        Decimal("0"),
        Decimal("12"),
        None,
        "2025-06-01T00:00:00+00:00",
    ]


def test_deserialize_ledger_entry_reads_blank_quantities_as_zero():
    record = data_manager.deserialize_ledger_entry(
        [3, 1, "2025-02-01", None, "", 4, None, None, 0, "   ", "2025-02-01T10:00:00"]
    )

    assert record.opening_balance == Decimal("0")
    assert record.received == Decimal("0")
    assert record.delivered == Decimal("4")
    assert record.discrepancy_note is None
    assert record.created_at == datetime(2025, 2, 1, 10, 0, tzinfo=UTC)


def test_deserialize_ledger_entry_accepts_excel_datetimes():
    """Dates edited by hand in Excel come back as datetime objects."""

    record = data_manager.deserialize_ledger_entry(
        [3, 1, datetime(2025, 2, 1, 0, 0), 5, 0, 0, 0, 0, 5, None, datetime(2025, 2, 1, 9, 0)]
    )

    assert record.transaction_date == date(2025, 2, 1)
    assert record.created_at.tzinfo is UTC


def test_deserialize_transaction_pads_short_rows():
    record = data_manager.deserialize_transaction([5, 1, "3", "out", "OwnUse", None, None, "completed", "2025-01-01T00:00:00+00:00"])

    assert record.quantity == Decimal("3")
    assert record.ledger_entry_id is None
