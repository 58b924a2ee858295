"""Utility for initializing the Mandi Ledger master workbook.

The module doubles as a script (``python -m mandi_ledger.setup_excel``) and as
a library used by tests or other tooling. Shared helpers keep the workbook
bootstrap logic consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, MutableMapping, Sequence

import openpyxl
from openpyxl.styles import Font

# Column order is the persisted layout; the DAL serializes in this order.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    "Businesses": [
        "BusinessID",
        "BusinessName",
        "Status",
    ],
    "Farmers": [
        "ID",
        "BusinessID",
        "FarmerCode",
        "Name",
        "Phone",
        "Village",
        "OpeningBalance",
        "NegativeFlag",
        "IsActive",
    ],
    "Buyers": [
        "ID",
        "BusinessID",
        "BuyerCode",
        "Name",
        "Phone",
        "Address",
        "OpeningBalance",
        "NegativeFlag",
        "IsActive",
    ],
    "Lots": [
        "ID",
        "BusinessID",
        "LotID",
        "SerialNumber",
        "FarmerID",
        "Date",
        "Crop",
        "Variety",
        "NumberOfBags",
        "RemainingBags",
        "Size",
        "SampleBagWeight1",
        "SampleBagWeight2",
        "AverageBagWeight",
        "InitialTotalWeight",
        "IsReturned",
        "Version",
    ],
    "Bids": [
        "ID",
        "BusinessID",
        "LotPK",
        "BuyerID",
        "PricePerKg",
        "NumberOfBags",
        "Grade",
        "IsDeleted",
        "CreatedAt",
    ],
    "Transactions": [
        "ID",
        "TransactionID",
        "BusinessID",
        "LotPK",
        "BidID",
        "FarmerID",
        "BuyerID",
        "Date",
        "NumberOfBags",
        "NetWeight",
        "PricePerKg",
        "GrossAmount",
        "HammaliCharges",
        "GradingCharges",
        "AadhatCharges",
        "MandiCharges",
        "AadhatPercent",
        "MandiPercent",
        "ChargedTo",
        "FarmerCharges",
        "BuyerCharges",
        "TotalPayableToFarmer",
        "TotalReceivableFromBuyer",
        "Status",
        "CreatedAt",
    ],
    "CashEntries": [
        "ID",
        "CashFlowID",
        "BusinessID",
        "EntryType",
        "FarmerID",
        "BuyerID",
        "TransactionPK",
        "Amount",
        "PaymentMode",
        "Date",
        "Notes",
        "IsReversed",
    ],
    "ChargeSettings": [
        "BusinessID",
        "AadhatPercent",
        "MandiPercent",
        "HammaliPerBag",
        "GradingPerBag",
        "AadhatFarmerPercent",
        "AadhatBuyerPercent",
        "MandiFarmerPercent",
        "MandiBuyerPercent",
        "HammaliFarmerPerBag",
        "HammaliBuyerPerBag",
        "GradingFarmerPerBag",
        "GradingBuyerPerBag",
    ],
    "Sequences": [
        "BusinessID",
        "Scope",
        "NextValue",
    ],
}

# Seeded so a fresh workbook is immediately usable by the CLI.
DEFAULT_BUSINESS: MutableMapping[str, object] = {
    "BusinessID": 1,
    "BusinessName": "Mandi Business",
    "Status": "active",
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    business_id: int
    business_name: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        business_id = parser.getint("Defaults", "BusinessID")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(
        data_file=data_file_path,
        business_id=business_id,
        business_name=business_name,
    )


def create_master_workbook(
    destination: Path,
    *,
    business_id: int = 1,
    business_name: str | None = None,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    default_business_template: Mapping[str, object] = DEFAULT_BUSINESS,
    overwrite: bool = False,
) -> Path:
    """Create the Mandi Ledger master workbook at ``destination``.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    business = dict(default_business_template)
    business["BusinessID"] = business_id
    if business_name:
        business["BusinessName"] = business_name
    workbook["Businesses"].append(
        [business["BusinessID"], business["BusinessName"], business["Status"]]
    )

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook described by ``config_path``."""

    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        business_id=settings.business_id,
        business_name=settings.business_name,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize Mandi Ledger data file")
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

    print("--- Mandi Ledger Setup Script ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\nSuccessfully created '{output_path}'.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
