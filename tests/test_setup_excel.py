"""Tests for the workbook bootstrap script."""

from __future__ import annotations

from pathlib import Path

import openpyxl
import pytest

from mandi_ledger import setup_excel


def _write_config(directory: Path, *, data_file: str = "mandi_master.xlsx", extra: str = "") -> Path:
    config_path = directory / "config.ini"
    config_path.write_text(
        "[System]\n"
        f"DataFile = {data_file}\n"
        "BusinessName = Krishna Mandi\n"
        "SchemaVersion = 1.0.0\n\n"
        "[Defaults]\n"
        "BusinessID = 3\n" + extra
    )
    return config_path


def test_create_master_workbook_writes_every_sheet(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "book.xlsx", business_id=2, business_name="Mandi Two")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == list(setup_excel.SHEET_COLUMNS)
    for sheet_name, columns in setup_excel.SHEET_COLUMNS.items():
        header = [cell.value for cell in workbook[sheet_name][1]]
        assert header == list(columns)

    businesses = list(workbook["Businesses"].iter_rows(min_row=2, values_only=True))
    assert businesses == [(2, "Mandi Two", "active")]


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "book.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(destination)
    assert setup_excel.create_master_workbook(destination, overwrite=True) == destination


def test_load_settings_resolves_relative_data_file(tmp_path):
    """Relative DataFile entries are anchored at the config directory."""

    settings = setup_excel.load_settings(_write_config(tmp_path))

    assert settings.data_file == (tmp_path / "mandi_master.xlsx").resolve()
    assert settings.business_id == 3
    assert settings.business_name == "Krishna Mandi"


def test_load_settings_reports_missing_entries(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = book.xlsx\n")

    with pytest.raises(KeyError):
        setup_excel.load_settings(config_path)


def test_run_from_config_seeds_configured_business(tmp_path):
    output = setup_excel.run_from_config(_write_config(tmp_path))

    workbook = openpyxl.load_workbook(output)
    assert workbook["Businesses"].cell(row=2, column=1).value == 3
    assert workbook["Businesses"].cell(row=2, column=2).value == "Krishna Mandi"


def test_main_exit_codes(tmp_path, capsys):
    """main returns 0 on success and 1 for every reported failure."""

    config_path = _write_config(tmp_path)

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert "Successfully created" in capsys.readouterr().out

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out

    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0
    assert setup_excel.main(["--config", str(tmp_path / "missing.ini")]) == 1
