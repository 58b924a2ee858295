"""Data access layer for Mandi Ledger.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows, with the uniqueness constraints the engine relies on.
4. Atomicity: a per-workbook re-entrant lock and :func:`unit_of_work`, which
   rolls back every row appended or cell changed when the unit fails.
"""


from __future__ import annotations

import configparser
import functools
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName, TransactionStatus
from .errors import AlreadySettled, DuplicateIdentifier, StaleVersion
from .setup_excel import SHEET_COLUMNS


CONFIG_FILE_NAME = "config.ini"

_DEFAULT_CHARGES = {
    "AadhatCommissionPercent": "2",
    "MandiCommissionPercent": "1",
    "HammaliPerBag": "0",
    "GradingPerBag": "0",
}


@dataclass(frozen=True)
class ChargeDefaults:
    """Fallback charge rates read from the ``[Charges]`` config section."""

    aadhat_percent: Decimal
    mandi_percent: Decimal
    hammali_per_bag: Decimal
    grading_per_bag: Decimal


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    default_business_id: int
    charge_defaults: ChargeDefaults


@dataclass(frozen=True)
class BusinessRow:
    """In-memory view of a row from the ``Businesses`` sheet."""

    business_id: int
    business_name: str
    status: str


@dataclass(frozen=True)
class FarmerRow:
    """In-memory view of a row from the ``Farmers`` sheet."""

    id: int
    business_id: int
    farmer_code: str
    name: str
    phone: Optional[str]
    village: Optional[str]
    opening_balance: Decimal
    negative_flag: bool
    is_active: bool


@dataclass(frozen=True)
class BuyerRow:
    """In-memory view of a row from the ``Buyers`` sheet."""

    id: int
    business_id: int
    buyer_code: str
    name: str
    phone: Optional[str]
    address: Optional[str]
    opening_balance: Decimal
    negative_flag: bool
    is_active: bool


@dataclass(frozen=True)
class LotRow:
    """In-memory view of a row from the ``Lots`` sheet."""

    id: int
    business_id: int
    lot_id: str
    serial_number: int
    farmer_id: int
    date: date
    crop: str
    variety: Optional[str]
    number_of_bags: int
    remaining_bags: int
    size: str
    sample_bag_weight_1: Optional[Decimal]
    sample_bag_weight_2: Optional[Decimal]
    average_bag_weight: Optional[Decimal]
    initial_total_weight: Optional[Decimal]
    is_returned: bool
    version: int


@dataclass(frozen=True)
class BidRow:
    """In-memory view of a row from the ``Bids`` sheet."""

    id: int
    business_id: int
    lot_pk: int
    buyer_id: int
    price_per_kg: Decimal
    number_of_bags: int
    grade: str
    is_deleted: bool
    created_at: str


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    id: int
    transaction_id: str
    business_id: int
    lot_pk: int
    bid_id: int
    farmer_id: int
    buyer_id: int
    date: date
    number_of_bags: int
    net_weight: Decimal
    price_per_kg: Decimal
    gross_amount: Decimal
    hammali_charges: Decimal
    grading_charges: Decimal
    aadhat_charges: Decimal
    mandi_charges: Decimal
    aadhat_percent: Decimal
    mandi_percent: Decimal
    charged_to: str
    farmer_charges: Decimal
    buyer_charges: Decimal
    total_payable_to_farmer: Decimal
    total_receivable_from_buyer: Decimal
    status: str
    created_at: str

    @property
    def is_reversed(self) -> bool:
        return self.status == TransactionStatus.REVERSED.value


@dataclass(frozen=True)
class CashEntryRow:
    """In-memory view of a row from the ``CashEntries`` sheet."""

    id: int
    cash_flow_id: str
    business_id: int
    entry_type: str
    farmer_id: Optional[int]
    buyer_id: Optional[int]
    transaction_pk: Optional[int]
    amount: Decimal
    payment_mode: str
    date: date
    notes: Optional[str]
    is_reversed: bool


@dataclass(frozen=True)
class ChargeSettingsRow:
    """Per-business default rates stored on the ``ChargeSettings`` sheet.

    The four totals drive the Buyer and Farmer policies; the eight per-party
    rates drive the Split policy and stay ``None`` until configured.
    """

    business_id: int
    aadhat_percent: Optional[Decimal]
    mandi_percent: Optional[Decimal]
    hammali_per_bag: Optional[Decimal]
    grading_per_bag: Optional[Decimal]
    aadhat_farmer_percent: Optional[Decimal] = None
    aadhat_buyer_percent: Optional[Decimal] = None
    mandi_farmer_percent: Optional[Decimal] = None
    mandi_buyer_percent: Optional[Decimal] = None
    hammali_farmer_per_bag: Optional[Decimal] = None
    hammali_buyer_per_bag: Optional[Decimal] = None
    grading_farmer_per_bag: Optional[Decimal] = None
    grading_buyer_per_bag: Optional[Decimal] = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` entries are mandatory. The ``[Charges]``
    section is optional and each missing rate falls back to the engine
    default (aadhat 2 %, mandi 1 %, no hammali or grading). Relative
    ``DataFile`` entries are anchored at ``base_path`` (or the working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing, or a
            value cannot be converted.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        default_business = parser.getint("Defaults", "BusinessID")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc
    except ValueError as exc:
        raise KeyError(f"Invalid configuration value: {exc}") from exc

    charges = {
        key: parser.get("Charges", key, fallback=default)
        for key, default in _DEFAULT_CHARGES.items()
    }
    try:
        charge_defaults = ChargeDefaults(
            aadhat_percent=Decimal(charges["AadhatCommissionPercent"]),
            mandi_percent=Decimal(charges["MandiCommissionPercent"]),
            hammali_per_bag=Decimal(charges["HammaliPerBag"]),
            grading_per_bag=Decimal(charges["GradingPerBag"]),
        )
    except ArithmeticError as exc:
        raise KeyError(f"Invalid [Charges] value: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        default_business_id=default_business,
        charge_defaults=charge_defaults,
    )


# ---------------------------------------------------------------------------
# Locking and units of work
# ---------------------------------------------------------------------------


_LOCKS: "weakref.WeakKeyDictionary[Any, threading.RLock]" = weakref.WeakKeyDictionary()
_LOCKS_GUARD = threading.Lock()
_local = threading.local()


def workbook_lock(workbook: Workbook) -> threading.RLock:
    """Return the re-entrant lock guarding ``workbook``.

    openpyxl worksheets are not thread-safe, so every read and write in this
    module runs under this lock. Callers may hold it themselves to read a
    consistent snapshot across several sheets.
    """

    with _LOCKS_GUARD:
        lock = _LOCKS.get(workbook)
        if lock is None:
            lock = threading.RLock()
            _LOCKS[workbook] = lock
        return lock


def _synchronized(func: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(func)
    def wrapper(workbook: Workbook, *args: Any, **kwargs: Any) -> Any:
        with workbook_lock(workbook):
            return func(workbook, *args, **kwargs)

    return wrapper


def _journals() -> Dict[int, List[Callable[[], None]]]:
    journals = getattr(_local, "journals", None)
    if journals is None:
        journals = {}
        _local.journals = journals
    return journals


def _record_undo(workbook: Workbook, undo: Callable[[], None]) -> None:
    journal = _journals().get(id(workbook))
    if journal is not None:
        journal.append(undo)


@contextmanager
def unit_of_work(workbook: Workbook) -> Iterator[None]:
    """Run a block of reads and writes atomically against ``workbook``.

    The workbook lock is held for the whole block, so no other thread observes
    intermediate state. Every append and cell update performed inside the
    block is journaled; if the block raises, the journal is replayed in
    reverse to restore the sheets before the exception propagates. Nested
    units join the outermost one and only the outermost unit rolls back.
    """

    with workbook_lock(workbook):
        journals = _journals()
        key = id(workbook)
        if key in journals:
            yield
            return

        journal: List[Callable[[], None]] = []
        journals[key] = journal
        try:
            yield
        except BaseException:
            log.warning("Rolling back %d workbook change(s)", len(journal))
            for undo in reversed(journal):
                undo()
            raise
        finally:
            journals.pop(key, None)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        KeyError: If a required sheet is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    ensure_sheets(wb)
    return wb


def ensure_sheets(workbook: Workbook) -> None:
    """Validate that every sheet and header the DAL writes to is present."""

    for sheet_name, columns in SHEET_COLUMNS.items():
        if sheet_name not in workbook.sheetnames:
            raise KeyError(f"Workbook is missing sheet: {sheet_name}")
        headers = [cell.value for cell in workbook[sheet_name][1]]
        missing = [column for column in columns if column not in headers]
        if missing:
            raise KeyError(f"Sheet '{sheet_name}' is missing columns: {', '.join(missing)}")


@_synchronized
def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Generic sheet helpers
# ---------------------------------------------------------------------------


def _sheet_name(sheet: SheetName | str) -> str:
    return sheet.value if isinstance(sheet, SheetName) else sheet


def _header_map(workbook: Workbook, sheet: SheetName | str) -> Dict[str, int]:
    worksheet = workbook[_sheet_name(sheet)]
    return {cell.value: idx + 1 for idx, cell in enumerate(worksheet[1]) if cell.value is not None}


def _iter_raw(workbook: Workbook, sheet: SheetName | str) -> Iterator[Tuple[int, Sequence[object]]]:
    worksheet = workbook[_sheet_name(sheet)]
    for row_idx, raw in enumerate(worksheet.iter_rows(min_row=2, values_only=True), start=2):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield row_idx, raw


def _append_row(workbook: Workbook, sheet: SheetName | str, values: Sequence[object]) -> int:
    worksheet = workbook[_sheet_name(sheet)]
    worksheet.append(list(values))
    row_index = worksheet.max_row
    _record_undo(workbook, lambda: worksheet.delete_rows(row_index))
    return row_index


def _write_cells(workbook: Workbook, sheet: SheetName | str, row_index: int, field_values: Mapping[str, Any]) -> None:
    worksheet = workbook[_sheet_name(sheet)]
    header_map = _header_map(workbook, sheet)

    for field in field_values:
        if field not in header_map:
            raise KeyError(f"Unknown {_sheet_name(sheet)} field: {field}")

    previous = {field: worksheet.cell(row=row_index, column=header_map[field]).value for field in field_values}
    for field, value in field_values.items():
        worksheet.cell(row=row_index, column=header_map[field], value=value)

    def undo() -> None:
        for field, value in previous.items():
            worksheet.cell(row=row_index, column=header_map[field], value=value)

    _record_undo(workbook, undo)


def locate_row(workbook: Workbook, sheet_name: SheetName | str, key_column: str, key_value: object, *, business_id: Optional[int] = None) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (SheetName | str): Worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (object): Value to match within the key column.
        business_id (int | None): When given, only rows of that business match.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_idx = header_map[key_column] - 1
    business_idx = header_map.get("BusinessID", 0) - 1

    for row_idx, row in _iter_raw(workbook, sheet_name):
        if _as_key(row[key_idx]) != _as_key(key_value):
            continue
        if business_id is not None and _as_int(row[business_idx]) != business_id:
            continue
        return row_idx

    return None


@_synchronized
def next_row_id(workbook: Workbook, sheet_name: SheetName | str, column: str = "ID") -> int:
    """Return ``max(column) + 1`` for the sheet; call inside a unit of work."""

    idx = _header_map(workbook, sheet_name)[column] - 1
    highest = 0
    for _, raw in _iter_raw(workbook, sheet_name):
        value = _as_int(raw[idx])
        if value > highest:
            highest = value
    return highest + 1


def _as_key(value: object) -> object:
    # Excel may hand integers back as floats; compare ids by their int value.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _as_int(raw: object, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    return int(Decimal(str(raw)))


def _as_optional_int(raw: object) -> Optional[int]:
    if raw is None or raw == "":
        return None
    return _as_int(raw)


def _as_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None and raw != "" else Decimal(default)


def _as_optional_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    return Decimal(str(raw))


def _as_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _as_date(raw: object) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def _iso(value: date) -> str:
    return value.isoformat()


# ---------------------------------------------------------------------------
# Businesses
# ---------------------------------------------------------------------------


@_synchronized
def read_businesses(workbook: Workbook) -> List[BusinessRow]:
    """Load every business registered in the workbook."""

    return [deserialize_business(raw) for _, raw in _iter_raw(workbook, SheetName.BUSINESSES)]


@_synchronized
def append_business(workbook: Workbook, record: BusinessRow) -> None:
    """Append a business; ``BusinessID`` must be unique."""

    if locate_row(workbook, SheetName.BUSINESSES, "BusinessID", record.business_id) is not None:
        raise DuplicateIdentifier(f"Business already exists: {record.business_id}")
    _append_row(workbook, SheetName.BUSINESSES, serialize_business(record))


def serialize_business(record: BusinessRow) -> list[object]:
    return [record.business_id, record.business_name, record.status]


def deserialize_business(raw_row: Sequence[object]) -> BusinessRow:
    business_id, business_name, status = raw_row[:3]
    return BusinessRow(
        business_id=_as_int(business_id),
        business_name=str(business_name) if business_name is not None else "",
        status=str(status) if status is not None else "active",
    )


# ---------------------------------------------------------------------------
# Farmers and buyers
# ---------------------------------------------------------------------------


@_synchronized
def read_farmers(workbook: Workbook, business_id: int) -> List[FarmerRow]:
    """Load the farmers that belong to ``business_id`` in sheet order."""

    rows = (deserialize_farmer(raw) for _, raw in _iter_raw(workbook, SheetName.FARMERS))
    return [row for row in rows if row.business_id == business_id]


@_synchronized
def append_farmer(workbook: Workbook, record: FarmerRow) -> None:
    """Append a farmer; the farmer code is unique per business."""

    if locate_row(workbook, SheetName.FARMERS, "FarmerCode", record.farmer_code, business_id=record.business_id) is not None:
        raise DuplicateIdentifier(f"Farmer code already exists: {record.farmer_code}")
    _append_row(workbook, SheetName.FARMERS, serialize_farmer(record))


@_synchronized
def update_farmer(workbook: Workbook, business_id: int, farmer_id: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing farmer.

    Raises:
        KeyError: If the farmer or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, SheetName.FARMERS, "ID", farmer_id, business_id=business_id)
    if row_index is None:
        raise KeyError(f"Farmer not found: {farmer_id}")
    _write_cells(workbook, SheetName.FARMERS, row_index, field_values)


def serialize_farmer(record: FarmerRow) -> list[object]:
    return [
        record.id,
        record.business_id,
        record.farmer_code,
        record.name,
        record.phone,
        record.village,
        record.opening_balance,
        record.negative_flag,
        record.is_active,
    ]


def deserialize_farmer(raw_row: Sequence[object]) -> FarmerRow:
    (
        farmer_id,
        business_id,
        farmer_code,
        name,
        phone,
        village,
        opening_balance,
        negative_flag,
        is_active,
    ) = raw_row[:9]
    return FarmerRow(
        id=_as_int(farmer_id),
        business_id=_as_int(business_id),
        farmer_code=str(farmer_code) if farmer_code is not None else "",
        name=str(name) if name is not None else "",
        phone=_as_optional_str(phone),
        village=_as_optional_str(village),
        opening_balance=_as_decimal(opening_balance, "0.00"),
        negative_flag=bool(negative_flag),
        is_active=bool(is_active),
    )


@_synchronized
def read_buyers(workbook: Workbook, business_id: int) -> List[BuyerRow]:
    """Load the buyers that belong to ``business_id`` in sheet order."""

    rows = (deserialize_buyer(raw) for _, raw in _iter_raw(workbook, SheetName.BUYERS))
    return [row for row in rows if row.business_id == business_id]


@_synchronized
def append_buyer(workbook: Workbook, record: BuyerRow) -> None:
    """Append a buyer; the buyer code is unique per business."""

    if locate_row(workbook, SheetName.BUYERS, "BuyerCode", record.buyer_code, business_id=record.business_id) is not None:
        raise DuplicateIdentifier(f"Buyer code already exists: {record.buyer_code}")
    _append_row(workbook, SheetName.BUYERS, serialize_buyer(record))


@_synchronized
def update_buyer(workbook: Workbook, business_id: int, buyer_id: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing buyer.

    Raises:
        KeyError: If the buyer or any referenced column is missing.
    """

    row_index = locate_row(workbook, SheetName.BUYERS, "ID", buyer_id, business_id=business_id)
    if row_index is None:
        raise KeyError(f"Buyer not found: {buyer_id}")
    _write_cells(workbook, SheetName.BUYERS, row_index, field_values)


def serialize_buyer(record: BuyerRow) -> list[object]:
    return [
        record.id,
        record.business_id,
        record.buyer_code,
        record.name,
        record.phone,
        record.address,
        record.opening_balance,
        record.negative_flag,
        record.is_active,
    ]


def deserialize_buyer(raw_row: Sequence[object]) -> BuyerRow:
    (
        buyer_id,
        business_id,
        buyer_code,
        name,
        phone,
        address,
        opening_balance,
        negative_flag,
        is_active,
    ) = raw_row[:9]
    return BuyerRow(
        id=_as_int(buyer_id),
        business_id=_as_int(business_id),
        buyer_code=str(buyer_code) if buyer_code is not None else "",
        name=str(name) if name is not None else "",
        phone=_as_optional_str(phone),
        address=_as_optional_str(address),
        opening_balance=_as_decimal(opening_balance, "0.00"),
        negative_flag=bool(negative_flag),
        is_active=bool(is_active),
    )


# ---------------------------------------------------------------------------
# Lots
# ---------------------------------------------------------------------------


@_synchronized
def read_lots(workbook: Workbook, business_id: int) -> List[LotRow]:
    """Load the lots of ``business_id`` in intake order."""

    rows = (deserialize_lot(raw) for _, raw in _iter_raw(workbook, SheetName.LOTS))
    return [row for row in rows if row.business_id == business_id]


@_synchronized
def append_lot(workbook: Workbook, record: LotRow) -> None:
    """Append a lot while enforcing the identifier uniqueness constraints.

    Within one business no two lots may share a ``LotID``, and no two lots of
    the same crop on the same date may share a ``SerialNumber``.

    Raises:
        DuplicateIdentifier: If either constraint would be violated.
    """

    for existing in read_lots(workbook, record.business_id):
        if existing.lot_id == record.lot_id:
            raise DuplicateIdentifier(f"Lot id already exists: {record.lot_id}")
        if (
            existing.crop == record.crop
            and existing.date == record.date
            and existing.serial_number == record.serial_number
        ):
            raise DuplicateIdentifier(
                f"Serial number {record.serial_number} already used for {record.crop} on {record.date}"
            )
    _append_row(workbook, SheetName.LOTS, serialize_lot(record))


@_synchronized
def compare_and_swap_lot(
    workbook: Workbook,
    business_id: int,
    lot_pk: int,
    *,
    expected_version: int,
    field_values: dict[str, Any],
) -> LotRow:
    """Update a lot only if its ``Version`` still equals ``expected_version``.

    The version is bumped as part of the same write. Callers supply the
    columns to change (for example ``RemainingBags``) and must re-read and
    retry when the swap fails.

    Returns:
        LotRow: The lot as stored after the update.

    Raises:
        KeyError: If the lot does not exist in ``business_id``.
        StaleVersion: If another writer updated the lot first.
    """

    row_index = locate_row(workbook, SheetName.LOTS, "ID", lot_pk, business_id=business_id)
    if row_index is None:
        raise KeyError(f"Lot not found: {lot_pk}")

    worksheet = workbook[SheetName.LOTS.value]
    current = deserialize_lot([cell.value for cell in worksheet[row_index]])
    if current.version != expected_version:
        raise StaleVersion(
            f"Lot {current.lot_id} changed (expected version {expected_version}, found {current.version})"
        )

    values = dict(field_values)
    values["Version"] = current.version + 1
    _write_cells(workbook, SheetName.LOTS, row_index, values)
    return deserialize_lot([cell.value for cell in worksheet[row_index]])


def serialize_lot(record: LotRow) -> list[object]:
    return [
        record.id,
        record.business_id,
        record.lot_id,
        record.serial_number,
        record.farmer_id,
        _iso(record.date),
        record.crop,
        record.variety,
        record.number_of_bags,
        record.remaining_bags,
        record.size,
        record.sample_bag_weight_1,
        record.sample_bag_weight_2,
        record.average_bag_weight,
        record.initial_total_weight,
        record.is_returned,
        record.version,
    ]


def deserialize_lot(raw_row: Sequence[object]) -> LotRow:
    """Convert a raw worksheet row into a strongly typed lot record."""

    (
        lot_pk,
        business_id,
        lot_id,
        serial_number,
        farmer_id,
        lot_date,
        crop,
        variety,
        number_of_bags,
        remaining_bags,
        size,
        sample_1,
        sample_2,
        average,
        initial_total,
        is_returned,
        version,
    ) = raw_row[:17]
    return LotRow(
        id=_as_int(lot_pk),
        business_id=_as_int(business_id),
        lot_id=str(lot_id),
        serial_number=_as_int(serial_number),
        farmer_id=_as_int(farmer_id),
        date=_as_date(lot_date),
        crop=str(crop),
        variety=_as_optional_str(variety),
        number_of_bags=_as_int(number_of_bags),
        remaining_bags=_as_int(remaining_bags),
        size=str(size) if size is not None else "",
        sample_bag_weight_1=_as_optional_decimal(sample_1),
        sample_bag_weight_2=_as_optional_decimal(sample_2),
        average_bag_weight=_as_optional_decimal(average),
        initial_total_weight=_as_optional_decimal(initial_total),
        is_returned=bool(is_returned),
        version=_as_int(version),
    )


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------


@_synchronized
def read_bids(workbook: Workbook, business_id: int, *, lot_pk: Optional[int] = None) -> List[BidRow]:
    """Load bids of ``business_id``, optionally restricted to one lot.

    Soft-deleted bids are included; callers filter on ``is_deleted``.
    """

    rows = (deserialize_bid(raw) for _, raw in _iter_raw(workbook, SheetName.BIDS))
    return [
        row
        for row in rows
        if row.business_id == business_id and (lot_pk is None or row.lot_pk == lot_pk)
    ]


@_synchronized
def append_bid(workbook: Workbook, record: BidRow) -> None:
    """Append a bid row."""

    _append_row(workbook, SheetName.BIDS, serialize_bid(record))


@_synchronized
def update_bid(workbook: Workbook, business_id: int, bid_id: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing bid.

    Raises:
        KeyError: If the bid or any referenced column is missing.
    """

    row_index = locate_row(workbook, SheetName.BIDS, "ID", bid_id, business_id=business_id)
    if row_index is None:
        raise KeyError(f"Bid not found: {bid_id}")
    _write_cells(workbook, SheetName.BIDS, row_index, field_values)


def serialize_bid(record: BidRow) -> list[object]:
    return [
        record.id,
        record.business_id,
        record.lot_pk,
        record.buyer_id,
        record.price_per_kg,
        record.number_of_bags,
        record.grade,
        record.is_deleted,
        record.created_at,
    ]


def deserialize_bid(raw_row: Sequence[object]) -> BidRow:
    (
        bid_id,
        business_id,
        lot_pk,
        buyer_id,
        price_per_kg,
        number_of_bags,
        grade,
        is_deleted,
        created_at,
    ) = raw_row[:9]
    return BidRow(
        id=_as_int(bid_id),
        business_id=_as_int(business_id),
        lot_pk=_as_int(lot_pk),
        buyer_id=_as_int(buyer_id),
        price_per_kg=_as_decimal(price_per_kg, "0.00"),
        number_of_bags=_as_int(number_of_bags),
        grade=str(grade) if grade is not None else "",
        is_deleted=bool(is_deleted),
        created_at=str(created_at) if created_at is not None else "",
    )


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@_synchronized
def read_transactions(workbook: Workbook, business_id: int) -> List[TransactionRow]:
    """Load every transaction of ``business_id``, reversed ones included."""

    rows = (deserialize_transaction(raw) for _, raw in _iter_raw(workbook, SheetName.TRANSACTIONS))
    return [row for row in rows if row.business_id == business_id]


@_synchronized
def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction while enforcing exactly-once settlement.

    Raises:
        AlreadySettled: If the bid already has an active transaction.
        DuplicateIdentifier: If ``TransactionID`` is already taken in the
            business.
    """

    for existing in read_transactions(workbook, record.business_id):
        if existing.bid_id == record.bid_id and not existing.is_reversed:
            raise AlreadySettled(
                f"Bid {record.bid_id} is already settled by {existing.transaction_id}"
            )
        if existing.transaction_id == record.transaction_id:
            raise DuplicateIdentifier(f"Transaction id already exists: {record.transaction_id}")
    _append_row(workbook, SheetName.TRANSACTIONS, serialize_transaction(record))


@_synchronized
def update_transaction(workbook: Workbook, business_id: int, transaction_pk: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing transaction.

    Raises:
        KeyError: If the transaction or any referenced column is missing.
    """

    row_index = locate_row(workbook, SheetName.TRANSACTIONS, "ID", transaction_pk, business_id=business_id)
    if row_index is None:
        raise KeyError(f"Transaction not found: {transaction_pk}")
    _write_cells(workbook, SheetName.TRANSACTIONS, row_index, field_values)


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the sheet column order.

    Numeric fields stay :class:`~decimal.Decimal` so the workbook keeps full
    precision.
    """

    return [
        record.id,
        record.transaction_id,
        record.business_id,
        record.lot_pk,
        record.bid_id,
        record.farmer_id,
        record.buyer_id,
        _iso(record.date),
        record.number_of_bags,
        record.net_weight,
        record.price_per_kg,
        record.gross_amount,
        record.hammali_charges,
        record.grading_charges,
        record.aadhat_charges,
        record.mandi_charges,
        record.aadhat_percent,
        record.mandi_percent,
        record.charged_to,
        record.farmer_charges,
        record.buyer_charges,
        record.total_payable_to_farmer,
        record.total_receivable_from_buyer,
        record.status,
        record.created_at,
    ]


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Decimal-compatible columns become :class:`~decimal.Decimal` instances and
    a blank status is read as ``Active``.
    """

    (
        transaction_pk,
        transaction_id,
        business_id,
        lot_pk,
        bid_id,
        farmer_id,
        buyer_id,
        tx_date,
        number_of_bags,
        net_weight,
        price_per_kg,
        gross_amount,
        hammali,
        grading,
        aadhat,
        mandi,
        aadhat_percent,
        mandi_percent,
        charged_to,
        farmer_charges,
        buyer_charges,
        payable,
        receivable,
        status,
        created_at,
    ) = raw_row[:25]
    return TransactionRow(
        id=_as_int(transaction_pk),
        transaction_id=str(transaction_id),
        business_id=_as_int(business_id),
        lot_pk=_as_int(lot_pk),
        bid_id=_as_int(bid_id),
        farmer_id=_as_int(farmer_id),
        buyer_id=_as_int(buyer_id),
        date=_as_date(tx_date),
        number_of_bags=_as_int(number_of_bags),
        net_weight=_as_decimal(net_weight, "0.00"),
        price_per_kg=_as_decimal(price_per_kg, "0.00"),
        gross_amount=_as_decimal(gross_amount, "0.00"),
        hammali_charges=_as_decimal(hammali, "0.00"),
        grading_charges=_as_decimal(grading, "0.00"),
        aadhat_charges=_as_decimal(aadhat, "0.00"),
        mandi_charges=_as_decimal(mandi, "0.00"),
        aadhat_percent=_as_decimal(aadhat_percent),
        mandi_percent=_as_decimal(mandi_percent),
        charged_to=str(charged_to) if charged_to is not None else "",
        farmer_charges=_as_decimal(farmer_charges, "0.00"),
        buyer_charges=_as_decimal(buyer_charges, "0.00"),
        total_payable_to_farmer=_as_decimal(payable, "0.00"),
        total_receivable_from_buyer=_as_decimal(receivable, "0.00"),
        status=str(status) if status else TransactionStatus.ACTIVE.value,
        created_at=str(created_at) if created_at is not None else "",
    )


# ---------------------------------------------------------------------------
# Cash entries
# ---------------------------------------------------------------------------


@_synchronized
def read_cash_entries(workbook: Workbook, business_id: int) -> List[CashEntryRow]:
    """Load every cash entry of ``business_id``, reversed ones included."""

    rows = (deserialize_cash_entry(raw) for _, raw in _iter_raw(workbook, SheetName.CASH_ENTRIES))
    return [row for row in rows if row.business_id == business_id]


@_synchronized
def append_cash_entry(workbook: Workbook, record: CashEntryRow) -> None:
    """Append a cash entry; ``CashFlowID`` is unique per business."""

    if locate_row(workbook, SheetName.CASH_ENTRIES, "CashFlowID", record.cash_flow_id, business_id=record.business_id) is not None:
        raise DuplicateIdentifier(f"Cash flow id already exists: {record.cash_flow_id}")
    _append_row(workbook, SheetName.CASH_ENTRIES, serialize_cash_entry(record))


@_synchronized
def update_cash_entry(workbook: Workbook, business_id: int, entry_pk: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing cash entry."""

    row_index = locate_row(workbook, SheetName.CASH_ENTRIES, "ID", entry_pk, business_id=business_id)
    if row_index is None:
        raise KeyError(f"Cash entry not found: {entry_pk}")
    _write_cells(workbook, SheetName.CASH_ENTRIES, row_index, field_values)


def serialize_cash_entry(record: CashEntryRow) -> list[object]:
    return [
        record.id,
        record.cash_flow_id,
        record.business_id,
        record.entry_type,
        record.farmer_id,
        record.buyer_id,
        record.transaction_pk,
        record.amount,
        record.payment_mode,
        _iso(record.date),
        record.notes,
        record.is_reversed,
    ]


def deserialize_cash_entry(raw_row: Sequence[object]) -> CashEntryRow:
    (
        entry_pk,
        cash_flow_id,
        business_id,
        entry_type,
        farmer_id,
        buyer_id,
        transaction_pk,
        amount,
        payment_mode,
        entry_date,
        notes,
        is_reversed,
    ) = raw_row[:12]
    return CashEntryRow(
        id=_as_int(entry_pk),
        cash_flow_id=str(cash_flow_id) if cash_flow_id is not None else "",
        business_id=_as_int(business_id),
        entry_type=str(entry_type) if entry_type is not None else "",
        farmer_id=_as_optional_int(farmer_id),
        buyer_id=_as_optional_int(buyer_id),
        transaction_pk=_as_optional_int(transaction_pk),
        amount=_as_decimal(amount, "0.00"),
        payment_mode=str(payment_mode) if payment_mode is not None else "",
        date=_as_date(entry_date),
        notes=_as_optional_str(notes),
        is_reversed=bool(is_reversed),
    )


# ---------------------------------------------------------------------------
# Charge settings
# ---------------------------------------------------------------------------


_CHARGE_COLUMNS = (
    ("AadhatPercent", "aadhat_percent"),
    ("MandiPercent", "mandi_percent"),
    ("HammaliPerBag", "hammali_per_bag"),
    ("GradingPerBag", "grading_per_bag"),
    ("AadhatFarmerPercent", "aadhat_farmer_percent"),
    ("AadhatBuyerPercent", "aadhat_buyer_percent"),
    ("MandiFarmerPercent", "mandi_farmer_percent"),
    ("MandiBuyerPercent", "mandi_buyer_percent"),
    ("HammaliFarmerPerBag", "hammali_farmer_per_bag"),
    ("HammaliBuyerPerBag", "hammali_buyer_per_bag"),
    ("GradingFarmerPerBag", "grading_farmer_per_bag"),
    ("GradingBuyerPerBag", "grading_buyer_per_bag"),
)


@_synchronized
def read_charge_settings(workbook: Workbook, business_id: int) -> Optional[ChargeSettingsRow]:
    """Return the stored charge rates for ``business_id`` or ``None``."""

    for _, raw in _iter_raw(workbook, SheetName.CHARGE_SETTINGS):
        if _as_int(raw[0]) == business_id:
            values = {attr: _as_optional_decimal(raw[idx + 1]) for idx, (_, attr) in enumerate(_CHARGE_COLUMNS)}
            return ChargeSettingsRow(business_id=business_id, **values)
    return None


@_synchronized
def upsert_charge_settings(workbook: Workbook, record: ChargeSettingsRow) -> None:
    """Insert or replace the charge settings row of a business."""

    values = [getattr(record, attr) for _, attr in _CHARGE_COLUMNS]
    row_index = locate_row(workbook, SheetName.CHARGE_SETTINGS, "BusinessID", record.business_id)
    if row_index is None:
        _append_row(workbook, SheetName.CHARGE_SETTINGS, [record.business_id, *values])
        return
    _write_cells(
        workbook,
        SheetName.CHARGE_SETTINGS,
        row_index,
        {column: value for (column, _), value in zip(_CHARGE_COLUMNS, values)},
    )


# ---------------------------------------------------------------------------
# Sequences
# ---------------------------------------------------------------------------


@_synchronized
def increment_sequence(workbook: Workbook, business_id: int, scope: str, *, seed: Callable[[], int]) -> int:
    """Atomically take the next value of a counter row.

    The counter for ``(business_id, scope)`` is created on first use with
    ``seed() + 1`` as its first value, where ``seed`` returns the count of
    rows already present in that scope. Inside a :func:`unit_of_work` the
    increment rolls back together with the insert that consumed it.
    """

    for row_idx, raw in _iter_raw(workbook, SheetName.SEQUENCES):
        if _as_int(raw[0]) == business_id and str(raw[1]) == scope:
            value = _as_int(raw[2], default=1)
            _write_cells(workbook, SheetName.SEQUENCES, row_idx, {"NextValue": value + 1})
            return value

    value = seed() + 1
    _append_row(workbook, SheetName.SEQUENCES, [business_id, scope, value + 1])
    return value
