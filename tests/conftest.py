"""Fixtures shared by the POS ledger test modules."""

from __future__ import annotations

import argparse
import configparser
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable
from unittest.mock import Mock

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from pos_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_STORE_NAME = "Test Pet Shop"
WORKBOOK_NAME = "pos_ledger_data.xlsx"


@dataclass(frozen=True)
class ConfigBundle:
    """Paths and values written for one temporary ``config.ini``."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str
    low_stock_threshold: int


def write_config(
    config_path: Path,
    *,
    data_file: str,
    store_name: str,
    schema_version: str,
    low_stock_threshold: int,
) -> None:
    parser = configparser.ConfigParser()
    parser.optionxform = str  # keep the CamelCase keys readable on disk
    parser["System"] = {
        "DataFile": data_file,
        "StoreName": store_name,
        "SchemaVersion": schema_version,
    }
    parser["Inventory"] = {"LowStockThreshold": str(low_stock_threshold)}
    with config_path.open("w", encoding="utf-8") as handle:
        parser.write(handle)


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Create empty four-sheet ledger workbooks under ``tmp_path``."""

    def _make(*, subdir: str | None = None, filename: str = WORKBOOK_NAME) -> Path:
        folder = tmp_path / subdir if subdir else tmp_path
        folder.mkdir(parents=True, exist_ok=True)
        return create_master_workbook(folder / filename, overwrite=True)

    return _make


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    return workbook_factory(subdir=f"ledger_{uuid.uuid4().hex[:8]}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Write a ``config.ini`` (and by default its workbook) into a fresh folder.

    ``make_relative`` stores only the workbook file name so the loader has to
    resolve it against the config directory. ``create_workbook=False`` leaves
    the data file absent, which is what ``pos-cli init`` expects.
    """

    def _make(
        *,
        make_relative: bool = False,
        store_name: str = DEFAULT_STORE_NAME,
        schema_version: str = constants.EXPECTED_SCHEMA_VERSION,
        low_stock_threshold: int = constants.DEFAULT_LOW_STOCK_THRESHOLD,
        create_workbook: bool = True,
    ) -> ConfigBundle:
        name = f"shop_{uuid.uuid4().hex[:8]}"
        directory = tmp_path / name
        directory.mkdir(parents=True)
        workbook_path = workbook_factory(subdir=name) if create_workbook else directory / WORKBOOK_NAME

        config_path = directory / "config.ini"
        write_config(
            config_path,
            data_file=workbook_path.name if make_relative else str(workbook_path),
            store_name=store_name,
            schema_version=schema_version,
            low_stock_threshold=low_stock_threshold,
        )
        return ConfigBundle(
            directory=directory,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
            low_stock_threshold=low_stock_threshold,
        )

    return _make


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def config_file(config_bundle: ConfigBundle) -> Path:
    return config_bundle.config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """A context over a real, empty workbook on disk."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def product_factory(runtime_context: core_logic.RuntimeContext) -> Callable[..., data_manager.ProductRow]:
    """Add a product to ``runtime_context``; keyword overrides replace the defaults."""

    defaults: dict[str, Any] = {
        "name": "Cat Food",
        "category": constants.Category.FOOD.value,
        "price": Decimal("1000"),
        "cost": Decimal("600"),
        "stock": 10,
    }

    def _add(**overrides: Any) -> data_manager.ProductRow:
        return core_logic.add_product(runtime_context, **{**defaults, **overrides})

    return _add


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    return cli.build_parser()


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Three throwaway commands whose handlers always succeed."""

    return [
        cli.CommandSpec(
            name=name,
            help_text=f"{name} help",
            register=lambda subparsers, name=name: subparsers.add_parser(name),
            execute=lambda context, args: 0,
        )
        for name in ("stock", "sell", "audit")
    ]


# ---------------------------------------------------------------------------
# Mock-backed business layer
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    return data_manager.ConfigSettings(
        data_file=tmp_path / WORKBOOK_NAME,
        store_name=DEFAULT_STORE_NAME,
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """A context whose workbook is a Mock; pair with monkeypatched ``data_manager`` calls."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Freeze ``datetime.now`` as seen by ``core_logic``; returns the frozen moment."""

    def _freeze(moment: datetime) -> datetime:
        class _FrozenClock(datetime):
            @classmethod
            def now(cls, tz=None):
                return moment if tz is None else moment.astimezone(tz)

        monkeypatch.setattr(core_logic, "datetime", _FrozenClock)
        return moment

    return _freeze
