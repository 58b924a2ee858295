"""Business logic layer for Mandi Ledger.

This module owns the runtime context and the operations that are not part of
a dedicated engine: business and party management, lot intake and cash
entries. It consumes the Data Access Layer (DAL) for all I/O and every
mutation runs inside :func:`data_manager.unit_of_work`, so a failed operation
leaves the workbook untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log, sequences
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MAX_IDENTIFIER_ATTEMPTS,
    BagSize,
    CashEntryType,
    Crop,
    PaymentMode,
    SheetName,
)
from .errors import BusinessRuleViolation, DuplicateIdentifier, NotFound, ValidationError
from .money import ZERO, optional_decimal, quantize_money, quantize_weight, to_decimal


E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the engine."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class LotIntake:
    """User intent for registering a farmer's consignment."""

    farmer_id: int
    crop: Crop
    number_of_bags: int
    size: BagSize
    variety: Optional[str] = None
    sample_bag_weight_1: Optional[Decimal] = None
    sample_bag_weight_2: Optional[Decimal] = None
    initial_total_weight: Optional[Decimal] = None
    on: Optional[date] = None


@dataclass(frozen=True)
class CashEntryCommand:
    """User intent for recording money received from or paid to a party."""

    entry_type: CashEntryType
    amount: Decimal
    payment_mode: PaymentMode = PaymentMode.CASH
    farmer_id: Optional[int] = None
    buyer_id: Optional[int] = None
    transaction_id: Optional[str] = None
    on: Optional[date] = None
    notes: Optional[str] = None


def resolve_date(candidate: Optional[date]) -> date:
    """Return ``candidate`` or today's date in UTC."""

    return candidate if candidate is not None else datetime.now(UTC).date()


def require_date_range(date_from: Optional[date], date_to: Optional[date]) -> None:
    if date_from is not None and date_to is not None and date_from > date_to:
        raise ValidationError(f"date_from {date_from} is after date_to {date_to}")


def in_date_range(value: Optional[date], date_from: Optional[date], date_to: Optional[date]) -> bool:
    """Inclusive range check; an open end matches everything on that side."""

    if date_from is not None and (value is None or value < date_from):
        return False
    if date_to is not None and (value is None or value > date_to):
        return False
    return True


def current_timestamp() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are plain dictionaries keyed by domain area and business, for
    example ``farmers:1``. They are only read and written while the workbook
    lock is held, so a bucket never mixes rows from before and after a write.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    with data_manager.workbook_lock(context.workbook):
        for name in names:
            context._cache.pop(name, None)


def _ensure_farmers_cache(context: RuntimeContext, business_id: int) -> Dict[str, Any]:
    with data_manager.workbook_lock(context.workbook):
        bucket = _get_cache_bucket(context, f"farmers:{business_id}")
        if "all" not in bucket:
            all_farmers = data_manager.read_farmers(context.workbook, business_id)
            bucket["all"] = all_farmers
            bucket["by_id"] = {farmer.id: farmer for farmer in all_farmers}
            log.debug("Populated farmers cache for business %d with %d entries", business_id, len(all_farmers))
        return bucket


def _ensure_buyers_cache(context: RuntimeContext, business_id: int) -> Dict[str, Any]:
    with data_manager.workbook_lock(context.workbook):
        bucket = _get_cache_bucket(context, f"buyers:{business_id}")
        if "all" not in bucket:
            all_buyers = data_manager.read_buyers(context.workbook, business_id)
            bucket["all"] = all_buyers
            bucket["by_id"] = {buyer.id: buyer for buyer in all_buyers}
            log.debug("Populated buyers cache for business %d with %d entries", business_id, len(all_buyers))
        return bucket


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the engine.

    Resolves ``config.ini``, parses settings and opens the workbook that
    stores every business. The resulting :class:`RuntimeContext` bundles the
    immutable settings with a mutable workbook handle and an empty cache store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for engine calls.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_business_id(business_id: Optional[int]) -> int:
    """Reject calls that do not name the business they act on.

    Raises:
        ValidationError: If ``business_id`` is missing or not a positive
            integer.
    """
    if business_id is None or isinstance(business_id, bool):
        log.error("Operation attempted without a business id")
        raise ValidationError("business_id is required")
    try:
        value = int(business_id)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"business_id must be an integer, got {business_id!r}") from exc
    if value <= 0:
        log.error("Invalid business id: %s", business_id)
        raise ValidationError(f"business_id must be positive, got {business_id!r}")
    return value


def require_positive_bags(bags: Any, *, field_name: str = "number_of_bags") -> int:
    """Validate that a bag count is a strictly positive integer.

    Raises:
        ValidationError: If ``bags`` is not an integer greater than zero.
    """
    if isinstance(bags, bool):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        value = int(bags)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be an integer, got {bags!r}") from exc
    if value != bags and not isinstance(bags, str):
        raise ValidationError(f"{field_name} must be a whole number, got {bags!r}")
    if value <= 0:
        log.error("Bag count validation failed: %s=%s", field_name, bags)
        raise ValidationError(f"{field_name} must be greater than zero")
    return value


def require_positive_money(amount: Any, *, field_name: str = "amount") -> Decimal:
    """Validate that a monetary or weight value is strictly positive."""
    value = to_decimal(amount, field=field_name)
    if value <= ZERO:
        log.error("Positive value validation failed: %s=%s", field_name, amount)
        raise ValidationError(f"{field_name} must be greater than zero")
    return value


def require_nonnegative_money(amount: Any, *, field_name: str = "amount") -> Decimal:
    """Validate that a monetary value is zero or positive."""
    value = to_decimal(amount, field=field_name)
    if value < ZERO:
        log.error("Monetary value validation failed: %s=%s", field_name, amount)
        raise ValidationError(f"{field_name} must be zero or positive")
    return value


def coerce_enum(enum_cls: Type[E], value: Any, *, field_name: str) -> E:
    """Convert ``value`` into ``enum_cls`` or raise :class:`ValidationError`."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        log.error("Unsupported %s: %s", field_name, value)
        raise ValidationError(f"Unsupported {field_name} '{value}' (expected one of: {allowed})") from exc


def require_text(value: Optional[str], *, field_name: str) -> str:
    """Return the stripped text or raise when it is blank."""
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required")
    return text


# ---------------------------------------------------------------------------
# Businesses
# ---------------------------------------------------------------------------


def create_business(context: RuntimeContext, business_id: int, name: str) -> data_manager.BusinessRow:
    """Register a new business (tenant) in the workbook.

    Raises:
        ValidationError: If the id or name is missing.
        DuplicateIdentifier: If the business id is already registered.
    """
    business_id = require_business_id(business_id)
    record = data_manager.BusinessRow(
        business_id=business_id,
        business_name=require_text(name, field_name="name"),
        status="active",
    )
    with data_manager.unit_of_work(context.workbook):
        data_manager.append_business(context.workbook, record)
    log.info("Created business %d ('%s')", business_id, record.business_name)
    return record


def get_business(context: RuntimeContext, business_id: Optional[int]) -> data_manager.BusinessRow:
    """Resolve a business by id.

    Raises:
        ValidationError: If ``business_id`` is missing.
        NotFound: If the business is not registered.
    """
    business_id = require_business_id(business_id)
    for business in data_manager.read_businesses(context.workbook):
        if business.business_id == business_id:
            return business
    log.warning("Business lookup failed for id '%s'", business_id)
    raise NotFound(f"Unknown business id: {business_id}")


# ---------------------------------------------------------------------------
# Parties
# ---------------------------------------------------------------------------


def list_farmers(
    context: RuntimeContext,
    business_id: int,
    *,
    search: Optional[str] = None,
    include_inactive: bool = False,
) -> List[data_manager.FarmerRow]:
    """Return the farmers of a business, optionally filtered.

    ``search`` matches case-insensitively against name, phone and farmer
    code.
    """
    business_id = require_business_id(business_id)
    farmers = _ensure_farmers_cache(context, business_id)["all"]
    result = [farmer for farmer in farmers if include_inactive or farmer.is_active]
    if search:
        needle = search.strip().lower()
        result = [
            farmer
            for farmer in result
            if needle in farmer.name.lower()
            or needle in (farmer.phone or "").lower()
            or needle in farmer.farmer_code.lower()
        ]
    return result


def list_buyers(
    context: RuntimeContext,
    business_id: int,
    *,
    search: Optional[str] = None,
    include_inactive: bool = False,
) -> List[data_manager.BuyerRow]:
    """Return the buyers of a business, optionally filtered by ``search``."""
    business_id = require_business_id(business_id)
    buyers = _ensure_buyers_cache(context, business_id)["all"]
    result = [buyer for buyer in buyers if include_inactive or buyer.is_active]
    if search:
        needle = search.strip().lower()
        result = [
            buyer
            for buyer in result
            if needle in buyer.name.lower()
            or needle in (buyer.phone or "").lower()
            or needle in buyer.buyer_code.lower()
        ]
    return result


def get_farmer(context: RuntimeContext, business_id: int, farmer_id: int) -> data_manager.FarmerRow:
    """Resolve a farmer record within a business.

    Raises:
        NotFound: If ``farmer_id`` is unknown to ``business_id``.
    """
    business_id = require_business_id(business_id)
    cache = _ensure_farmers_cache(context, business_id)
    try:
        return cache["by_id"][farmer_id]
    except KeyError as exc:
        log.warning("Farmer lookup failed for id '%s' in business %d", farmer_id, business_id)
        raise NotFound(f"Unknown farmer id: {farmer_id}") from exc


def get_buyer(context: RuntimeContext, business_id: int, buyer_id: int) -> data_manager.BuyerRow:
    """Resolve a buyer record within a business.

    Raises:
        NotFound: If ``buyer_id`` is unknown to ``business_id``.
    """
    business_id = require_business_id(business_id)
    cache = _ensure_buyers_cache(context, business_id)
    try:
        return cache["by_id"][buyer_id]
    except KeyError as exc:
        log.warning("Buyer lookup failed for id '%s' in business %d", buyer_id, business_id)
        raise NotFound(f"Unknown buyer id: {buyer_id}") from exc


def add_farmer(
    context: RuntimeContext,
    business_id: int,
    *,
    name: str,
    phone: Optional[str] = None,
    village: Optional[str] = None,
    opening_balance: Any = ZERO,
    negative_flag: bool = False,
    on: Optional[date] = None,
) -> data_manager.FarmerRow:
    """Register a farmer and allocate its ``FM<YYYYMMDD><n>`` code.

    A positive ``opening_balance`` means the business owes the farmer money
    brought forward from before the ledger started.
    """
    business_id = require_business_id(business_id)
    get_business(context, business_id)
    name = require_text(name, field_name="name")
    opening = quantize_money(to_decimal(opening_balance, field="opening_balance"))
    when = resolve_date(on)

    with data_manager.unit_of_work(context.workbook):
        record = data_manager.FarmerRow(
            id=data_manager.next_row_id(context.workbook, SheetName.FARMERS),
            business_id=business_id,
            farmer_code=sequences.allocate_document_code(
                context.workbook, business_id, sequences.DocumentKind.FARMER, when
            ),
            name=name,
            phone=phone,
            village=village,
            opening_balance=opening,
            negative_flag=bool(negative_flag),
            is_active=True,
        )
        data_manager.append_farmer(context.workbook, record)
        _invalidate_cache(context, f"farmers:{business_id}")
    log.info("Added farmer '%s' (%s) to business %d", record.name, record.farmer_code, business_id)
    return record


def add_buyer(
    context: RuntimeContext,
    business_id: int,
    *,
    name: str,
    phone: Optional[str] = None,
    address: Optional[str] = None,
    opening_balance: Any = ZERO,
    negative_flag: bool = False,
    on: Optional[date] = None,
) -> data_manager.BuyerRow:
    """Register a buyer and allocate its ``BY<YYYYMMDD><n>`` code.

    A positive ``opening_balance`` means the buyer owes the business money.
    """
    business_id = require_business_id(business_id)
    get_business(context, business_id)
    name = require_text(name, field_name="name")
    opening = quantize_money(to_decimal(opening_balance, field="opening_balance"))
    when = resolve_date(on)

    with data_manager.unit_of_work(context.workbook):
        record = data_manager.BuyerRow(
            id=data_manager.next_row_id(context.workbook, SheetName.BUYERS),
            business_id=business_id,
            buyer_code=sequences.allocate_document_code(
                context.workbook, business_id, sequences.DocumentKind.BUYER, when
            ),
            name=name,
            phone=phone,
            address=address,
            opening_balance=opening,
            negative_flag=bool(negative_flag),
            is_active=True,
        )
        data_manager.append_buyer(context.workbook, record)
        _invalidate_cache(context, f"buyers:{business_id}")
    log.info("Added buyer '%s' (%s) to business %d", record.name, record.buyer_code, business_id)
    return record


_FARMER_FIELDS = {
    "name": "Name",
    "phone": "Phone",
    "village": "Village",
    "opening_balance": "OpeningBalance",
    "negative_flag": "NegativeFlag",
    "is_active": "IsActive",
}

_BUYER_FIELDS = {
    "name": "Name",
    "phone": "Phone",
    "address": "Address",
    "opening_balance": "OpeningBalance",
    "negative_flag": "NegativeFlag",
    "is_active": "IsActive",
}


def _party_field_values(changes: Dict[str, Any], columns: Dict[str, str]) -> Dict[str, Any]:
    unknown = sorted(set(changes) - set(columns))
    if unknown:
        raise ValidationError(f"Unsupported field(s): {', '.join(unknown)}")
    values: Dict[str, Any] = {}
    for attr, value in changes.items():
        if attr == "name":
            value = require_text(value, field_name="name")
        elif attr == "opening_balance":
            value = quantize_money(to_decimal(value, field="opening_balance"))
        elif attr in ("negative_flag", "is_active"):
            value = bool(value)
        values[columns[attr]] = value
    return values


def update_farmer(context: RuntimeContext, business_id: int, farmer_id: int, **changes: Any) -> data_manager.FarmerRow:
    """Change mutable attributes of a farmer and return the updated row.

    Raises:
        NotFound: If the farmer does not belong to ``business_id``.
        ValidationError: If an unsupported attribute is supplied.
    """
    business_id = require_business_id(business_id)
    get_farmer(context, business_id, farmer_id)
    field_values = _party_field_values(changes, _FARMER_FIELDS)
    if not field_values:
        return get_farmer(context, business_id, farmer_id)
    with data_manager.unit_of_work(context.workbook):
        data_manager.update_farmer(context.workbook, business_id, farmer_id, field_values=field_values)
        _invalidate_cache(context, f"farmers:{business_id}")
    log.info("Updated farmer %d in business %d (%s)", farmer_id, business_id, ", ".join(field_values))
    return get_farmer(context, business_id, farmer_id)


def update_buyer(context: RuntimeContext, business_id: int, buyer_id: int, **changes: Any) -> data_manager.BuyerRow:
    """Change mutable attributes of a buyer and return the updated row."""
    business_id = require_business_id(business_id)
    get_buyer(context, business_id, buyer_id)
    field_values = _party_field_values(changes, _BUYER_FIELDS)
    if not field_values:
        return get_buyer(context, business_id, buyer_id)
    with data_manager.unit_of_work(context.workbook):
        data_manager.update_buyer(context.workbook, business_id, buyer_id, field_values=field_values)
        _invalidate_cache(context, f"buyers:{business_id}")
    log.info("Updated buyer %d in business %d (%s)", buyer_id, business_id, ", ".join(field_values))
    return get_buyer(context, business_id, buyer_id)


# ---------------------------------------------------------------------------
# Lots
# ---------------------------------------------------------------------------


def average_bag_weight(
    sample_1: Optional[Decimal],
    sample_2: Optional[Decimal],
) -> Optional[Decimal]:
    """Derive the average bag weight from up to two sample weighings.

    Both samples give their mean rounded half-up to 2 dp, a single sample is
    used as is, and no samples give ``None``.
    """
    if sample_1 is not None and sample_2 is not None:
        return quantize_weight((sample_1 + sample_2) / 2)
    if sample_1 is not None:
        return quantize_weight(sample_1)
    if sample_2 is not None:
        return quantize_weight(sample_2)
    return None


def get_lot(context: RuntimeContext, business_id: int, lot_id: str) -> data_manager.LotRow:
    """Resolve a lot by its ``lot_id`` code within a business.

    Raises:
        NotFound: If no lot of ``business_id`` carries ``lot_id``.
    """
    business_id = require_business_id(business_id)
    for lot in data_manager.read_lots(context.workbook, business_id):
        if lot.lot_id == lot_id:
            return lot
    log.warning("Lot lookup failed for id '%s' in business %d", lot_id, business_id)
    raise NotFound(f"Unknown lot id: {lot_id}")


def get_lot_by_pk(context: RuntimeContext, business_id: int, lot_pk: int) -> data_manager.LotRow:
    """Resolve a lot by its row id within a business."""
    business_id = require_business_id(business_id)
    for lot in data_manager.read_lots(context.workbook, business_id):
        if lot.id == lot_pk:
            return lot
    log.warning("Lot lookup failed for row %s in business %d", lot_pk, business_id)
    raise NotFound(f"Unknown lot: {lot_pk}")


def list_lots(
    context: RuntimeContext,
    business_id: int,
    *,
    crop: Optional[Crop] = None,
    on: Optional[date] = None,
    search: Optional[str] = None,
    include_returned: bool = True,
) -> List[data_manager.LotRow]:
    """Return the lots of a business in intake order.

    Args:
        crop (Crop | None): Only lots of this crop.
        on (date | None): Only lots taken in on this date.
        search (str | None): Case-insensitive match on lot id, variety or the
            farmer's name.
        include_returned (bool): When ``False`` returned lots are hidden.
    """
    business_id = require_business_id(business_id)
    lots = data_manager.read_lots(context.workbook, business_id)
    if crop is not None:
        crop_value = coerce_enum(Crop, crop, field_name="crop").value
        lots = [lot for lot in lots if lot.crop == crop_value]
    if on is not None:
        lots = [lot for lot in lots if lot.date == on]
    if not include_returned:
        lots = [lot for lot in lots if not lot.is_returned]
    if search:
        needle = search.strip().lower()
        farmers = _ensure_farmers_cache(context, business_id)["by_id"]
        lots = [
            lot
            for lot in lots
            if needle in lot.lot_id.lower()
            or needle in (lot.variety or "").lower()
            or (lot.farmer_id in farmers and needle in farmers[lot.farmer_id].name.lower())
        ]
    return lots


def create_lot(context: RuntimeContext, business_id: int, intake: LotIntake) -> data_manager.LotRow:
    """Validate an intake, allocate its identifiers and insert the lot.

    The lot number, the serial and the insert run in one unit of work. An
    identifier collision (for example after a manual sheet edit) advances the
    counters and retries, at most ``MAX_IDENTIFIER_ATTEMPTS`` times.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        business_id (int): Business receiving the consignment.
        intake (LotIntake): Validated user intent.

    Returns:
        data_manager.LotRow: The stored lot with ``remaining_bags`` equal to
            ``number_of_bags``.

    Raises:
        ValidationError: For unknown crops or sizes, non-positive bag counts
            or non-positive weights.
        NotFound: If the farmer is unknown to ``business_id``.
        BusinessRuleViolation: If the farmer is inactive.
        DuplicateIdentifier: When every retry collided.
    """
    business_id = require_business_id(business_id)
    get_business(context, business_id)
    crop = coerce_enum(Crop, intake.crop, field_name="crop")
    size = coerce_enum(BagSize, intake.size, field_name="size")
    bags = require_positive_bags(intake.number_of_bags)
    samples = []
    for field_name in ("sample_bag_weight_1", "sample_bag_weight_2", "initial_total_weight"):
        value = optional_decimal(getattr(intake, field_name), field=field_name)
        if value is not None:
            value = require_positive_money(value, field_name=field_name)
        samples.append(value)
    sample_1, sample_2, initial_total = samples

    farmer = get_farmer(context, business_id, intake.farmer_id)
    if not farmer.is_active:
        log.warning("Attempted intake for inactive farmer '%s'", intake.farmer_id)
        raise BusinessRuleViolation(f"Farmer '{farmer.farmer_code}' is inactive")

    when = resolve_date(intake.on)
    average = average_bag_weight(sample_1, sample_2)

    with data_manager.unit_of_work(context.workbook):
        for attempt in range(1, MAX_IDENTIFIER_ATTEMPTS + 1):
            identifiers = sequences.allocate_lot_identifiers(context.workbook, business_id, crop, when)
            record = data_manager.LotRow(
                id=data_manager.next_row_id(context.workbook, SheetName.LOTS),
                business_id=business_id,
                lot_id=identifiers.lot_id,
                serial_number=identifiers.serial_number,
                farmer_id=farmer.id,
                date=when,
                crop=crop.value,
                variety=intake.variety,
                number_of_bags=bags,
                remaining_bags=bags,
                size=size.value,
                sample_bag_weight_1=sample_1,
                sample_bag_weight_2=sample_2,
                average_bag_weight=average,
                initial_total_weight=initial_total,
                is_returned=False,
                version=1,
            )
            try:
                data_manager.append_lot(context.workbook, record)
                break
            except DuplicateIdentifier as exc:
                log.warning(
                    "Lot identifier collision on attempt %d/%d: %s",
                    attempt,
                    MAX_IDENTIFIER_ATTEMPTS,
                    exc,
                )
                if attempt == MAX_IDENTIFIER_ATTEMPTS:
                    log.error("Giving up lot intake for business %d after %d attempts", business_id, attempt)
                    raise

    log.info(
        "Created lot '%s' (serial %d, %d bag(s)) for farmer %d in business %d",
        record.lot_id,
        record.serial_number,
        bags,
        farmer.id,
        business_id,
    )
    return record


# ---------------------------------------------------------------------------
# Cash entries
# ---------------------------------------------------------------------------


def list_cash_entries(
    context: RuntimeContext,
    business_id: int,
    *,
    include_reversed: bool = False,
    entry_type: Optional[CashEntryType] = None,
    farmer_id: Optional[int] = None,
    buyer_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[data_manager.CashEntryRow]:
    """Return the cash entries of a business in entry order.

    Every filter is optional and they combine; dates are inclusive.

    Raises:
        ValidationError: For an unknown entry type or an inverted date range.
    """
    business_id = require_business_id(business_id)
    require_date_range(date_from, date_to)
    wanted_type = coerce_enum(CashEntryType, entry_type, field_name="entry type").value if entry_type else None
    return [
        entry
        for entry in data_manager.read_cash_entries(context.workbook, business_id)
        if (include_reversed or not entry.is_reversed)
        and (wanted_type is None or entry.entry_type == wanted_type)
        and (farmer_id is None or entry.farmer_id == farmer_id)
        and (buyer_id is None or entry.buyer_id == buyer_id)
        and in_date_range(entry.date, date_from, date_to)
    ]


def get_cash_entry(context: RuntimeContext, business_id: int, cash_flow_id: str) -> data_manager.CashEntryRow:
    """Resolve a cash entry by its ``CF`` code within a business."""
    business_id = require_business_id(business_id)
    for entry in data_manager.read_cash_entries(context.workbook, business_id):
        if entry.cash_flow_id == cash_flow_id:
            return entry
    log.warning("Cash entry lookup failed for id '%s' in business %d", cash_flow_id, business_id)
    raise NotFound(f"Unknown cash entry: {cash_flow_id}")


def _find_transaction(context: RuntimeContext, business_id: int, transaction_id: str) -> data_manager.TransactionRow:
    for transaction in data_manager.read_transactions(context.workbook, business_id):
        if transaction.transaction_id == transaction_id:
            return transaction
    log.warning("Transaction lookup failed for id '%s' in business %d", transaction_id, business_id)
    raise NotFound(f"Unknown transaction id: {transaction_id}")


def record_cash_entry(context: RuntimeContext, business_id: int, command: CashEntryCommand) -> data_manager.CashEntryRow:
    """Validate and append a cash entry for at most one party.

    The amount reduces the party's running balance. An entry without a
    farmer or buyer is a business expense or receipt: it is stored and
    listed but never reaches a ledger. When ``transaction_id`` is given the
    entry must name the party the transaction belongs to.

    Raises:
        ValidationError: If the type, mode or amount is invalid, the entry
            names both a farmer and a buyer, or links a transaction without
            naming a party.
        NotFound: If the party or transaction is unknown to ``business_id``.
        BusinessRuleViolation: If the linked transaction is reversed or
            belongs to another party.
    """
    business_id = require_business_id(business_id)
    get_business(context, business_id)
    entry_type = coerce_enum(CashEntryType, command.entry_type, field_name="entry type")
    payment_mode = coerce_enum(PaymentMode, command.payment_mode, field_name="payment mode")
    amount = quantize_money(to_decimal(command.amount, field="amount"))
    if amount == ZERO:
        log.error("Cash entry amount validation failed: %s", command.amount)
        raise ValidationError("amount must not be zero")

    if command.farmer_id is not None and command.buyer_id is not None:
        raise ValidationError("A cash entry may reference a farmer or a buyer, not both")
    if command.farmer_id is not None:
        get_farmer(context, business_id, command.farmer_id)
    elif command.buyer_id is not None:
        get_buyer(context, business_id, command.buyer_id)
    elif command.transaction_id:
        raise ValidationError("A cash entry linked to a transaction must name its farmer or buyer")

    when = resolve_date(command.on)

    with data_manager.unit_of_work(context.workbook):
        transaction_pk = None
        if command.transaction_id:
            transaction = _find_transaction(context, business_id, command.transaction_id)
            if transaction.is_reversed:
                raise BusinessRuleViolation(f"Transaction '{transaction.transaction_id}' is reversed")
            party_matches = (
                transaction.farmer_id == command.farmer_id
                if command.farmer_id is not None
                else transaction.buyer_id == command.buyer_id
            )
            if not party_matches:
                log.error(
                    "Cash entry party does not match transaction '%s'",
                    transaction.transaction_id,
                )
                raise BusinessRuleViolation(
                    f"Transaction '{transaction.transaction_id}' belongs to another party"
                )
            transaction_pk = transaction.id

        record = data_manager.CashEntryRow(
            id=data_manager.next_row_id(context.workbook, SheetName.CASH_ENTRIES),
            cash_flow_id=sequences.allocate_document_code(
                context.workbook, business_id, sequences.DocumentKind.CASH_FLOW, when
            ),
            business_id=business_id,
            entry_type=entry_type.value,
            farmer_id=command.farmer_id,
            buyer_id=command.buyer_id,
            transaction_pk=transaction_pk,
            amount=amount,
            payment_mode=payment_mode.value,
            date=when,
            notes=command.notes,
            is_reversed=False,
        )
        data_manager.append_cash_entry(context.workbook, record)

    log.info(
        "Recorded %s cash entry '%s' (amount=%s) in business %d",
        record.entry_type,
        record.cash_flow_id,
        record.amount,
        business_id,
    )
    return record


def reverse_cash_entry(context: RuntimeContext, business_id: int, cash_flow_id: str) -> data_manager.CashEntryRow:
    """Soft-reverse a cash entry so ledgers ignore it.

    Raises:
        NotFound: If the entry is unknown to ``business_id``.
        BusinessRuleViolation: If the entry is already reversed.
    """
    business_id = require_business_id(business_id)
    with data_manager.unit_of_work(context.workbook):
        entry = get_cash_entry(context, business_id, cash_flow_id)
        if entry.is_reversed:
            log.error("Cash entry '%s' is already reversed", cash_flow_id)
            raise BusinessRuleViolation(f"Cash entry '{cash_flow_id}' is already reversed")
        data_manager.update_cash_entry(
            context.workbook, business_id, entry.id, field_values={"IsReversed": True}
        )
    log.info("Reversed cash entry '%s' in business %d", cash_flow_id, business_id)
    return get_cash_entry(context, business_id, cash_flow_id)


__all__ = [
    "RuntimeContext",
    "LotIntake",
    "CashEntryCommand",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "require_business_id",
    "create_business",
    "get_business",
    "add_farmer",
    "add_buyer",
    "update_farmer",
    "update_buyer",
    "list_farmers",
    "list_buyers",
    "get_farmer",
    "get_buyer",
    "average_bag_weight",
    "create_lot",
    "get_lot",
    "get_lot_by_pk",
    "list_lots",
    "record_cash_entry",
    "reverse_cash_entry",
    "get_cash_entry",
    "list_cash_entries",
    "require_date_range",
    "in_date_range",
]
