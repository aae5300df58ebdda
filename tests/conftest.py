"""Shared pytest fixtures and utilities for dealer engine tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dealer_engine import catalog, constants, context as context_module, data_manager, ledger  # noqa: E402
from dealer_engine.constants import OptionKind, Role  # noqa: E402
from dealer_engine.models import (  # noqa: E402
    Account,
    CatalogItem,
    Option,
    OptionValue,
    PriceRecord,
    Principal,
)
from dealer_engine.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "PortalName = {portal_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Engine]\n"
    "SkuDelimiter = {sku_delimiter}\n"
    "MaxWriteRetries = {max_write_retries}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    portal_name: str


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
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "dealer_master.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        portal_name: str = "Test Portal",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        sku_delimiter: str = "",
        max_write_retries: int = 3,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                portal_name=portal_name,
                schema_version=schema_version,
                sku_delimiter=sku_delimiter,
                max_write_retries=max_write_retries,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            portal_name=portal_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> context_module.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    runtime = context_module.load_runtime_context(config_file)
    context_module.ensure_schema_version(runtime)
    return runtime


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="dealer-cli", description="Dealer CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "dealer_master.xlsx",
        portal_name="Test Portal",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings) -> context_module.RuntimeContext:
    """Return an in-memory runtime context whose clock is frozen at ``FIXED_NOW``."""

    return context_module.create_in_memory_context(settings, clock=lambda: FIXED_NOW)


def make_stratocaster() -> CatalogItem:
    """Catalog item used across tests: one required, one optional, one numeric option."""

    return CatalogItem(
        item_id="STRAT",
        sku="GS-STRAT",
        name="Standard Strat",
        series="Classic",
        specs={"body": "Alder", "hardwareColour": "Chrome"},
        options=(
            Option(
                option_id="hardwareColour",
                label="Hardware Colour",
                required=True,
                values=(
                    OptionValue("BLK", "Black", sku_suffix="-BLK", price_adjustment=Decimal("0")),
                    OptionValue("GLD", "Gold", sku_suffix="-GLD", price_adjustment=Decimal("75")),
                ),
            ),
            Option(
                option_id="pickguard",
                label="Pickguard",
                values=(OptionValue("PRL", "Pearl", sku_suffix="-PRL", price_adjustment=Decimal("25.50")),),
            ),
            Option(option_id="scaleLength", label="Scale Length", kind=OptionKind.NUMERIC),
        ),
    )


@pytest.fixture
def stratocaster() -> CatalogItem:
    return make_stratocaster()


@pytest.fixture
def seeded_context(context: context_module.RuntimeContext, stratocaster: CatalogItem) -> context_module.RuntimeContext:
    """In-memory context with three accounts, one priced item, and five units of stock."""

    catalog.register_account(context, Account("D1", "Dealer One", "TIER_A", "USD", territory="US-West"))
    catalog.register_account(context, Account("D2", "Dealer Two", "TIER_B", "USD"))
    catalog.register_account(context, Account("EU1", "Euro Dealer", "TIER_A", "EUR"))
    catalog.register_catalog_item(context, stratocaster)
    catalog.set_price_record(
        context,
        PriceRecord(
            item_id="STRAT",
            currency="USD",
            base_price=Decimal("1500"),
            tier_prices={"TIER_A": Decimal("1200")},
        ),
    )
    ledger.initialize_availability(context, "STRAT", 5)
    return context


@pytest.fixture
def dealer() -> Principal:
    return Principal(account_id="D1", role=Role.DEALER, tier_id="TIER_A", currency="USD")


@pytest.fixture
def other_dealer() -> Principal:
    return Principal(account_id="D2", role=Role.DEALER, tier_id="TIER_B", currency="USD")


@pytest.fixture
def admin() -> Principal:
    return Principal(account_id=None, role=Role.ADMIN)
