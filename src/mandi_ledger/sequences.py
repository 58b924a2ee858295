"""Collision-free identifier allocation for lots and ledger documents.

Numbers are served from counter rows on the ``Sequences`` sheet. Each counter
is seeded on first use from the rows already present in its scope, so the
values always continue the historical numbering. Call the ``allocate_*``
helpers inside :func:`data_manager.unit_of_work` together with the insert that
consumes the value; a failed insert then rolls the counter back as well.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import Crop


class DocumentKind(str, Enum):
    """Prefixes of the generated document and party codes."""

    TRANSACTION = "TX"
    CASH_FLOW = "CF"
    FARMER = "FM"
    BUYER = "BY"


_SCOPES = {
    DocumentKind.TRANSACTION: "tx",
    DocumentKind.CASH_FLOW: "cf",
    DocumentKind.FARMER: "farmer",
    DocumentKind.BUYER: "buyer",
}


@dataclass(frozen=True)
class LotIdentifiers:
    """Identifiers allocated for one lot intake."""

    lot_id: str
    lot_number: int
    serial_number: int


def _day(on: date) -> str:
    return on.strftime("%Y%m%d")


def build_lot_id(crop: Crop, on: date, lot_number: int) -> str:
    """Return the durable lot code ``<PREFIX><YYYYMMDD><lotNumber>``.

    >>> build_lot_id(Crop.POTATO, date(2024, 3, 1), 4)
    'POT202403014'
    """

    return f"{Crop(crop).lot_prefix}{_day(on)}{lot_number}"


def build_document_code(kind: DocumentKind, on: date, number: int) -> str:
    """Return a document code such as ``TX202403011``."""

    return f"{DocumentKind(kind).value}{_day(on)}{number}"


def next_lot_number(workbook: Workbook, business_id: int, on: date) -> int:
    """Allocate the next lot number of ``business_id`` for the day ``on``.

    Lot numbers count intakes across all crops of the day.
    """

    def seed() -> int:
        return sum(1 for lot in data_manager.read_lots(workbook, business_id) if lot.date == on)

    value = data_manager.increment_sequence(workbook, business_id, f"lot:{_day(on)}", seed=seed)
    log.debug("Allocated lot number %d for business %d on %s", value, business_id, on)
    return value


def next_serial_number(workbook: Workbook, business_id: int, crop: Crop, on: date) -> int:
    """Allocate the next per-crop serial of ``business_id`` for the day ``on``."""

    crop = Crop(crop)

    def seed() -> int:
        serials = [
            lot.serial_number
            for lot in data_manager.read_lots(workbook, business_id)
            if lot.crop == crop.value and lot.date == on
        ]
        return max(serials, default=0)

    value = data_manager.increment_sequence(
        workbook, business_id, f"serial:{crop.value}:{_day(on)}", seed=seed
    )
    log.debug("Allocated %s serial %d for business %d on %s", crop.value, value, business_id, on)
    return value


def _highest_suffix(codes: Iterable[str], prefix: str) -> int:
    highest = 0
    for code in codes:
        if not code.startswith(prefix):
            continue
        suffix = code[len(prefix):]
        if suffix.isdigit() and int(suffix) > highest:
            highest = int(suffix)
    return highest


def _existing_codes(workbook: Workbook, business_id: int, kind: DocumentKind) -> list[str]:
    if kind is DocumentKind.TRANSACTION:
        return [row.transaction_id for row in data_manager.read_transactions(workbook, business_id)]
    if kind is DocumentKind.CASH_FLOW:
        return [row.cash_flow_id for row in data_manager.read_cash_entries(workbook, business_id)]
    if kind is DocumentKind.FARMER:
        return [row.farmer_code for row in data_manager.read_farmers(workbook, business_id)]
    return [row.buyer_code for row in data_manager.read_buyers(workbook, business_id)]


def next_document_number(workbook: Workbook, business_id: int, kind: DocumentKind, on: date) -> int:
    """Allocate the next number of a ``kind`` code series for the day ``on``."""

    kind = DocumentKind(kind)
    prefix = f"{kind.value}{_day(on)}"

    def seed() -> int:
        return _highest_suffix(_existing_codes(workbook, business_id, kind), prefix)

    return data_manager.increment_sequence(
        workbook, business_id, f"{_SCOPES[kind]}:{_day(on)}", seed=seed
    )


def allocate_lot_identifiers(workbook: Workbook, business_id: int, crop: Crop, on: date) -> LotIdentifiers:
    """Allocate the lot number, serial and lot code for a new intake."""

    crop = Crop(crop)
    lot_number = next_lot_number(workbook, business_id, on)
    serial_number = next_serial_number(workbook, business_id, crop, on)
    return LotIdentifiers(
        lot_id=build_lot_id(crop, on, lot_number),
        lot_number=lot_number,
        serial_number=serial_number,
    )


def allocate_document_code(workbook: Workbook, business_id: int, kind: DocumentKind, on: date) -> str:
    """Allocate and format the next code of a document series."""

    number = next_document_number(workbook, business_id, kind, on)
    return build_document_code(kind, on, number)


__all__ = [
    "DocumentKind",
    "LotIdentifiers",
    "build_lot_id",
    "build_document_code",
    "next_lot_number",
    "next_serial_number",
    "next_document_number",
    "allocate_lot_identifiers",
    "allocate_document_code",
]
