"""Shared pytest fixtures and utilities for Mandi Ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import date
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

from mandi_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from mandi_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_BUSINESS_ID = 1
INTAKE_DAY = date(2024, 3, 1)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "BusinessID = {business_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    business_id: int
    schema_version: str
    business_name: str


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

    def _create_workbook(
        *,
        subdir: str | None = None,
        business_id: int = DEFAULT_BUSINESS_ID,
        filename: str = "mandi_master.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, business_id=business_id, overwrite=True)
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
        business_name: str = "Test Mandi",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        business_id: int = DEFAULT_BUSINESS_ID,
        charges_section: str = "",
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_dir_name, business_id=business_id)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                business_id=business_id,
            )
            + charges_section
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            business_id=business_id,
            schema_version=schema_version,
            business_name=business_name,
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
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def farmer(runtime_context: core_logic.RuntimeContext) -> data_manager.FarmerRow:
    """A registered farmer of the default business."""

    return core_logic.add_farmer(
        runtime_context,
        DEFAULT_BUSINESS_ID,
        name="Ramesh",
        phone="9800000001",
        village="Indore",
        on=INTAKE_DAY,
    )


@pytest.fixture
def buyer(runtime_context: core_logic.RuntimeContext) -> data_manager.BuyerRow:
    """A registered buyer of the default business."""

    return core_logic.add_buyer(
        runtime_context,
        DEFAULT_BUSINESS_ID,
        name="Gupta Traders",
        phone="9800000002",
        on=INTAKE_DAY,
    )


@pytest.fixture
def lot_factory(
    runtime_context: core_logic.RuntimeContext,
    farmer: data_manager.FarmerRow,
) -> Callable[..., data_manager.LotRow]:
    """Create lots for the default farmer with sensible defaults."""

    def _create_lot(
        *,
        bags: int = 100,
        crop: constants.Crop = constants.Crop.POTATO,
        on: date = INTAKE_DAY,
        sample_1: Decimal | None = Decimal("48.2"),
        sample_2: Decimal | None = Decimal("49.0"),
        farmer_id: int | None = None,
        business_id: int = DEFAULT_BUSINESS_ID,
    ) -> data_manager.LotRow:
        intake = core_logic.LotIntake(
            farmer_id=farmer.id if farmer_id is None else farmer_id,
            crop=crop,
            number_of_bags=bags,
            size=constants.BagSize.LARGE,
            sample_bag_weight_1=sample_1,
            sample_bag_weight_2=sample_2,
            on=on,
        )
        return core_logic.create_lot(runtime_context, business_id, intake)

    return _create_lot


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="mandi-cli", description="Mandi CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Mocked context fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "mandi_master.xlsx",
        business_name="Test Mandi",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_business_id=DEFAULT_BUSINESS_ID,
        charge_defaults=data_manager.ChargeDefaults(
            aadhat_percent=Decimal("2"),
            mandi_percent=Decimal("1"),
            hammali_per_bag=Decimal("0"),
            grading_per_bag=Decimal("0"),
        ),
    )


@pytest.fixture
def mock_context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Assemble a runtime context around a mock workbook."""

    return core_logic.RuntimeContext(settings=settings, workbook=Mock(name="workbook"))
