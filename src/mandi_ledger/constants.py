"""Enumerations shared across the Mandi Ledger modules.

Centralises domain constants so that the data access layer (DAL), the
engine modules, and the CLI rely on a single source of truth for crop codes,
charge policies, and sheet names.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Bounded retry for identifier collisions and optimistic lock conflicts.
MAX_IDENTIFIER_ATTEMPTS = 3
MAX_VERSION_ATTEMPTS = 5


class Crop(str, Enum):
    """Enumerate the crops handled at the mandi."""

    GARLIC = "Garlic"
    ONION = "Onion"
    POTATO = "Potato"

    @property
    def lot_prefix(self) -> str:
        """Three-letter prefix used in persisted lot identifiers."""

        return CROP_PREFIXES[self]


# Part of the durable lot id format; never change existing entries.
CROP_PREFIXES = {
    Crop.POTATO: "POT",
    Crop.ONION: "ONI",
    Crop.GARLIC: "GAR",
}


class BagSize(str, Enum):
    """Enumerate the size grades used at intake and on bids."""

    LARGE = "Large"
    MEDIUM = "Medium"
    SMALL = "Small"
    CHHATAN = "Chhatan"


class ChargedTo(str, Enum):
    """Enumerate which party absorbs the charges of a settlement."""

    FARMER = "Farmer"
    BUYER = "Buyer"
    SPLIT = "Split"


class TransactionStatus(str, Enum):
    """Tagged state of a settlement record."""

    ACTIVE = "Active"
    REVERSED = "Reversed"


class CashEntryType(str, Enum):
    """Enumerate the direction of a cash movement."""

    PAYMENT_IN = "payment-in"
    PAYMENT_OUT = "payment-out"


class PaymentMode(str, Enum):
    """Enumerate supported payment mechanisms for cash entries."""

    CASH = "Cash"
    ONLINE = "Online"
    CHEQUE = "Cheque"


class PaymentStatus(str, Enum):
    """Settlement progress of a single transaction."""

    PAID = "paid"
    PARTIAL = "partial"
    DUE = "due"


class PartyKind(str, Enum):
    """Enumerate the counterpart types that own a ledger."""

    FARMER = "farmer"
    BUYER = "buyer"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    BUSINESSES = "Businesses"
    FARMERS = "Farmers"
    BUYERS = "Buyers"
    LOTS = "Lots"
    BIDS = "Bids"
    TRANSACTIONS = "Transactions"
    CASH_ENTRIES = "CashEntries"
    CHARGE_SETTINGS = "ChargeSettings"
    SEQUENCES = "Sequences"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MAX_IDENTIFIER_ATTEMPTS",
    "MAX_VERSION_ATTEMPTS",
    "Crop",
    "CROP_PREFIXES",
    "BagSize",
    "ChargedTo",
    "TransactionStatus",
    "CashEntryType",
    "PaymentMode",
    "PaymentStatus",
    "PartyKind",
    "SheetName",
]
