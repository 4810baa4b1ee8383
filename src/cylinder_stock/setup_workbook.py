"""Utility for initializing an empty stock ledger workbook.

The module doubles as a script (``python -m cylinder_stock.setup_workbook``)
and as a library used by tests. The worksheet layout is taken from
:data:`cylinder_stock.data_manager.SHEET_COLUMNS`, so the bootstrap and the
data layer always agree on column order.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import log
from .data_manager import CONFIG_FILE_NAME, SHEET_COLUMNS, ConfigSettings, parse_settings, read_config


def load_settings(config_path: Path) -> ConfigSettings:
    """Read ``config.ini`` and resolve ``DataFile`` against the config's directory."""

    config_path = config_path.expanduser().resolve()
    parser = read_config(config_path)
    return parse_settings(parser, base_path=config_path.parent)


def create_ledger_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty ledger workbook at ``destination``.

    Every worksheet gets a bold header row and no data. When ``overwrite`` is
    ``False`` (the default) an existing file is left alone and
    ``FileExistsError`` is raised.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    workbook.save(destination)
    log.info("Created ledger workbook '%s' with sheets: %s", destination, ", ".join(sheet_columns))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_ledger_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the cylinder stock ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script; returns a process exit code."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    log.info("Using configuration: %s", config_path)

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        log.error("Setup failed: %s", exc)
        return 1
    except FileExistsError as exc:
        log.error("%s. Run with --force to overwrite the existing file if appropriate.", exc)
        return 1
    except OSError as exc:
        log.error("Unable to write workbook: %s", exc)
        return 1

    print(f"Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
