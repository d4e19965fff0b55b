"""Shared pytest fixtures and utilities for pharmacy ERP tests."""

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

from pharmacy_erp import cli, constants, core_logic, data_manager  # noqa: E402
from pharmacy_erp.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
ACCOUNT_ID = "acct-001"
OTHER_ACCOUNT_ID = "acct-002"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "PharmacyName = {pharmacy_name}\n"
    "SchemaVersion = {schema_version}\n"
    "TimeZone = {timezone}\n\n"
    "[Session]\n"
    "AccountId = {account_id}\n\n"
    "[Persistence]\n"
    "LockTimeoutSeconds = 2\n"
    "ReadRetries = 1\n"
    "RetryBackoffSeconds = 0\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    account_id: str
    schema_version: str
    pharmacy_name: str


@dataclass(frozen=True)
class Catalog:
    """Ids of the two medicines seeded by the ``catalog`` fixture."""

    medicine_a: str
    medicine_b: str


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
        filename: str = "master_workbook.xlsx",
    ) -> Path:
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
        pharmacy_name: str = "Test Pharmacy",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        account_id: str = ACCOUNT_ID,
        timezone: str = "UTC",
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
                pharmacy_name=pharmacy_name,
                schema_version=schema_version,
                timezone=timezone,
                account_id=account_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            account_id=account_id,
            schema_version=schema_version,
            pharmacy_name=pharmacy_name,
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


@pytest.fixture(autouse=True)
def _clear_account_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's PHARMACY_ACCOUNT_ID from leaking into tests."""

    monkeypatch.delenv(constants.ACCOUNT_ENV_VAR, raising=False)


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        pharmacy_name="Test Pharmacy",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        account_id=ACCOUNT_ID,
        lock_timeout=2.0,
        read_retries=1,
        retry_backoff=0.0,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Assemble a runtime context around a fresh in-memory workbook."""

    return core_logic.RuntimeContext(settings=settings, workbook=build_master_workbook())


@pytest.fixture
def catalog(context: core_logic.RuntimeContext) -> Catalog:
    """Seed medicine A (stock 10, price 2.00) and B (stock 3, price 5.00)."""

    core_logic.add_medicine(
        context,
        ACCOUNT_ID,
        medicine_id="MED-A",
        name="Amoxicillin",
        unit_price=Decimal("2.00"),
        quantity_in_stock=10,
        reorder_level=5,
    )
    core_logic.add_medicine(
        context,
        ACCOUNT_ID,
        medicine_id="MED-B",
        name="Bisoprolol",
        unit_price=Decimal("5.00"),
        quantity_in_stock=3,
        reorder_level=5,
    )
    return Catalog(medicine_a="MED-A", medicine_b="MED-B")


@pytest.fixture
def store_snapshot() -> Callable[[core_logic.RuntimeContext], dict[str, list[tuple[object, ...]]]]:
    """Return a callable capturing every data row of every sheet."""

    def _snapshot(context: core_logic.RuntimeContext) -> dict[str, list[tuple[object, ...]]]:
        snapshot: dict[str, list[tuple[object, ...]]] = {}
        for sheet_name in data_manager.SHEET_COLUMNS:
            sheet = context.workbook[sheet_name]
            snapshot[sheet_name] = [
                row
                for row in sheet.iter_rows(min_row=2, values_only=True)
                if any(value is not None for value in row)
            ]
        return snapshot

    return _snapshot


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
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pharmacy-cli", description="Pharmacy CLI")


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
