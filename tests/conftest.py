"""Shared pytest fixtures and utilities for the stock ledger tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cylinder_stock import constants, core_logic, data_manager  # noqa: E402
from cylinder_stock.setup_workbook import create_ledger_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "Role = {role}\n"
    "LowStockThreshold = 5\n"
    "ApprovalThreshold = 50\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    business_name: str
    role: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an empty ledger workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "stock_ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_ledger_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def ledger_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Depot",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        role: str = constants.Role.ADMIN.value,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                role=role,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            business_name=business_name,
            role=role,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "stock_ledger.xlsx",
        business_name="Test Depot",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------


def make_product(product_id: int = 1, name: str = "LPG 12.5kg", product_type: str = "LPG") -> data_manager.ProductRow:
    return data_manager.ProductRow(
        product_id=product_id,
        name=name,
        product_type=product_type,
        default_unit=constants.DEFAULT_UNIT,
        description=None,
        created_at=datetime(2025, 1, 1, 8, 0, tzinfo=UTC),
    )


def make_entry(
    entry_id: int,
    product_id: int,
    transaction_date: date,
    physical_stock: Decimal | int,
    *,
    created_at: datetime | None = None,
    opening_balance: Decimal | int = 0,
    received: Decimal | int = 0,
) -> data_manager.LedgerEntryRow:
    return data_manager.LedgerEntryRow(
        entry_id=entry_id,
        product_id=product_id,
        transaction_date=transaction_date,
        opening_balance=Decimal(opening_balance),
        received=Decimal(received),
        delivered=Decimal("0"),
        sold=Decimal("0"),
        converted=Decimal("0"),
        physical_stock=Decimal(physical_stock),
        discrepancy_note=None,
        created_at=created_at or datetime.combine(transaction_date, datetime.min.time(), tzinfo=UTC),
    )


def make_transaction(
    transaction_id: int,
    product_id: int,
    quantity: Decimal | int,
    *,
    status: str = constants.TransactionStatus.COMPLETED.value,
    reason: str = constants.DistributionReason.SALES.value,
    timestamp: datetime | None = None,
    ledger_entry_id: int | None = None,
) -> data_manager.TransactionRow:
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        product_id=product_id,
        quantity=Decimal(quantity),
        direction=constants.TransactionDirection.OUT.value,
        reason=reason,
        transferred_to="Acme" if reason == constants.DistributionReason.SALES.value else None,
        notes=None,
        status=status,
        timestamp=timestamp or datetime(2025, 1, 2, 9, 0, tzinfo=UTC),
        ledger_entry_id=ledger_entry_id,
    )


def make_customer_stock(
    customer_stock_id: int,
    product_id: int,
    customer_id: int,
    transaction_date: date,
    *,
    closing_full: Decimal | int = 0,
    closing_empty: Decimal | int = 0,
    closing_defective: Decimal | int = 0,
) -> data_manager.CustomerStockRow:
    return data_manager.CustomerStockRow(
        customer_stock_id=customer_stock_id,
        product_id=product_id,
        customer_id=customer_id,
        transaction_date=transaction_date,
        opening_full=Decimal("0"),
        opening_empty=Decimal("0"),
        opening_defective=Decimal("0"),
        empty_cylinders_received=Decimal("0"),
        delivery_challan=Decimal("0"),
        closing_full=Decimal(closing_full),
        closing_empty=Decimal(closing_empty),
        closing_defective=Decimal(closing_defective),
        created_at=datetime.combine(transaction_date, datetime.min.time(), tzinfo=UTC),
    )
