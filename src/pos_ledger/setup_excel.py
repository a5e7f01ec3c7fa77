"""Utility for initializing the ledger workbook.

The module runs as a script (``python -m pos_ledger.setup_excel``) and is
also used by the ``init`` CLI command and by the test fixtures, so the
workbook bootstrap logic is the same on every path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl

from . import data_manager, log

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty ledger workbook at ``destination``.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Drop the default sheet openpyxl generates so only ours remain.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    for sheet_name, columns in sheet_columns.items():
        data_manager.create_sheet_with_headers(workbook, sheet_name, columns)

    workbook.save(destination)
    log.info("Created ledger workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by the ``DataFile`` entry of ``config_path``."""

    resolved = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(resolved)
    settings = data_manager.parse_settings(parser, base_path=resolved.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the POS ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- POS Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
