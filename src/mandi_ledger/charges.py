"""Charge calculation and settlement of bids into transactions.

A settlement turns one live bid into an immutable transaction carrying the
gross value of the produce, the four mandi charges and the net amounts owed
to the farmer and by the buyer. Every component is rounded half-up to two
decimal places first and the totals are built from the rounded components,
so a printed breakdown always adds up.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import date
from decimal import Decimal
from typing import Any, List, Optional

from . import data_manager, log, sequences
from .constants import MAX_IDENTIFIER_ATTEMPTS, ChargedTo, SheetName, TransactionStatus
from .core_logic import (
    RuntimeContext,
    average_bag_weight,
    coerce_enum,
    current_timestamp,
    get_business,
    get_lot_by_pk,
    in_date_range,
    require_business_id,
    require_date_range,
    require_nonnegative_money,
    require_positive_money,
    resolve_date,
)
from .errors import (
    AlreadySettled,
    BusinessRuleViolation,
    DuplicateIdentifier,
    InvariantViolation,
    NotFound,
    ValidationError,
)
from .inventory import get_bid
from .money import ZERO, optional_decimal, percent_of, quantize_money, quantize_weight


@dataclass(frozen=True)
class ChargeRates:
    """Rates applied to one settlement.

    The four totals drive the ``Buyer`` and ``Farmer`` policies. The per-party
    rates drive ``Split``; ``None`` means the rate was never configured.
    """

    aadhat_percent: Decimal
    mandi_percent: Decimal
    hammali_per_bag: Decimal
    grading_per_bag: Decimal
    aadhat_farmer_percent: Optional[Decimal] = None
    aadhat_buyer_percent: Optional[Decimal] = None
    mandi_farmer_percent: Optional[Decimal] = None
    mandi_buyer_percent: Optional[Decimal] = None
    hammali_farmer_per_bag: Optional[Decimal] = None
    hammali_buyer_per_bag: Optional[Decimal] = None
    grading_farmer_per_bag: Optional[Decimal] = None
    grading_buyer_per_bag: Optional[Decimal] = None

    @property
    def has_split_rates(self) -> bool:
        return any(getattr(self, name) is not None for name in SPLIT_RATE_FIELDS)


SPLIT_RATE_FIELDS = (
    "aadhat_farmer_percent",
    "aadhat_buyer_percent",
    "mandi_farmer_percent",
    "mandi_buyer_percent",
    "hammali_farmer_per_bag",
    "hammali_buyer_per_bag",
    "grading_farmer_per_bag",
    "grading_buyer_per_bag",
)


@dataclass(frozen=True)
class SettleCommand:
    """User intent for settling a bid.

    Every rate left as ``None`` falls back to the business charge settings
    and then to the ``[Charges]`` section of ``config.ini``. ``total_weight``
    overrides the weight derived from the lot's average bag weight.
    """

    bid_id: int
    charged_to: ChargedTo = ChargedTo.BUYER
    total_weight: Optional[Decimal] = None
    aadhat_percent: Optional[Decimal] = None
    mandi_percent: Optional[Decimal] = None
    hammali_per_bag: Optional[Decimal] = None
    grading_per_bag: Optional[Decimal] = None
    aadhat_farmer_percent: Optional[Decimal] = None
    aadhat_buyer_percent: Optional[Decimal] = None
    mandi_farmer_percent: Optional[Decimal] = None
    mandi_buyer_percent: Optional[Decimal] = None
    hammali_farmer_per_bag: Optional[Decimal] = None
    hammali_buyer_per_bag: Optional[Decimal] = None
    grading_farmer_per_bag: Optional[Decimal] = None
    grading_buyer_per_bag: Optional[Decimal] = None
    on: Optional[date] = None


@dataclass(frozen=True)
class ChargeBreakdown:
    """Rounded monetary components of one settlement."""

    net_weight: Decimal
    gross_amount: Decimal
    hammali_charges: Decimal
    grading_charges: Decimal
    aadhat_charges: Decimal
    mandi_charges: Decimal
    aadhat_percent: Decimal
    mandi_percent: Decimal
    farmer_charges: Decimal
    buyer_charges: Decimal
    total_payable_to_farmer: Decimal
    total_receivable_from_buyer: Decimal


def _rate(value: Optional[Decimal], field_name: str) -> Optional[Decimal]:
    parsed = optional_decimal(value, field=field_name)
    if parsed is not None:
        require_nonnegative_money(parsed, field_name=field_name)
    return parsed


def charge_rates(context: RuntimeContext, business_id: int) -> ChargeRates:
    """Return the default rates of a business.

    Values stored on the ``ChargeSettings`` sheet win over the ``[Charges]``
    configuration section.
    """
    business_id = require_business_id(business_id)
    defaults = context.settings.charge_defaults
    stored = data_manager.read_charge_settings(context.workbook, business_id)

    def pick(name: str, fallback: Optional[Decimal]) -> Optional[Decimal]:
        value = getattr(stored, name) if stored is not None else None
        return value if value is not None else fallback

    return ChargeRates(
        aadhat_percent=pick("aadhat_percent", defaults.aadhat_percent),
        mandi_percent=pick("mandi_percent", defaults.mandi_percent),
        hammali_per_bag=pick("hammali_per_bag", defaults.hammali_per_bag),
        grading_per_bag=pick("grading_per_bag", defaults.grading_per_bag),
        **{name: pick(name, None) for name in SPLIT_RATE_FIELDS},
    )


def configure_charges(context: RuntimeContext, business_id: int, **rates: Any) -> ChargeRates:
    """Store default rates for a business and return the effective rates.

    Only the supplied rates change; passing ``None`` clears a stored rate so
    the configuration default applies again.

    Raises:
        ValidationError: For unknown rate names or negative values.
    """
    business_id = require_business_id(business_id)
    get_business(context, business_id)
    known = {item.name for item in fields(data_manager.ChargeSettingsRow)} - {"business_id"}
    unknown = sorted(set(rates) - known)
    if unknown:
        raise ValidationError(f"Unsupported charge setting(s): {', '.join(unknown)}")

    with data_manager.unit_of_work(context.workbook):
        stored = data_manager.read_charge_settings(context.workbook, business_id)
        current = {
            name: (getattr(stored, name) if stored is not None else None) for name in sorted(known)
        }
        current.update({name: _rate(value, name) for name, value in rates.items()})
        data_manager.upsert_charge_settings(
            context.workbook,
            data_manager.ChargeSettingsRow(business_id=business_id, **current),
        )
    log.info("Updated charge settings of business %d (%s)", business_id, ", ".join(sorted(rates)))
    return charge_rates(context, business_id)


def _resolve_rates(context: RuntimeContext, business_id: int, command: SettleCommand) -> ChargeRates:
    defaults = charge_rates(context, business_id)
    values = {}
    for item in fields(ChargeRates):
        override = _rate(getattr(command, item.name), item.name)
        values[item.name] = override if override is not None else getattr(defaults, item.name)
    return ChargeRates(**values)


def compute_charges(
    *,
    bags: int,
    net_weight: Decimal,
    price_per_kg: Decimal,
    charged_to: ChargedTo,
    rates: ChargeRates,
) -> ChargeBreakdown:
    """Apply a charge policy to a sale and return the rounded breakdown.

    Args:
        bags (int): Bags sold; drives the per-bag charges.
        net_weight (Decimal): Kilograms sold.
        price_per_kg (Decimal): Agreed price.
        charged_to (ChargedTo): ``Buyer`` adds every charge to the buyer's
            bill, ``Farmer`` deducts every charge from the farmer's payout and
            ``Split`` apportions each charge by the per-party rates.
        rates (ChargeRates): Rates to apply.

    Returns:
        ChargeBreakdown: Components and totals, each rounded to 2 dp.

    Raises:
        ValidationError: If ``Split`` is requested without any per-party rate.
        InvariantViolation: If the farmer's payable would be negative.
    """
    charged_to = coerce_enum(ChargedTo, charged_to, field_name="charged_to")
    net_weight = quantize_weight(net_weight)
    gross = quantize_money(net_weight * price_per_kg)
    count = Decimal(bags)

    if charged_to is ChargedTo.SPLIT:
        if not rates.has_split_rates:
            log.error("Split settlement requested without per-party rates")
            raise ValidationError("Split charging needs per-party rates; none are configured")

        def part(name: str) -> Decimal:
            value = getattr(rates, name)
            return value if value is not None else ZERO

        aadhat_farmer = percent_of(gross, part("aadhat_farmer_percent"))
        aadhat_buyer = percent_of(gross, part("aadhat_buyer_percent"))
        mandi_farmer = percent_of(gross, part("mandi_farmer_percent"))
        mandi_buyer = percent_of(gross, part("mandi_buyer_percent"))
        hammali_farmer = quantize_money(part("hammali_farmer_per_bag") * count)
        hammali_buyer = quantize_money(part("hammali_buyer_per_bag") * count)
        grading_farmer = quantize_money(part("grading_farmer_per_bag") * count)
        grading_buyer = quantize_money(part("grading_buyer_per_bag") * count)

        hammali = hammali_farmer + hammali_buyer
        grading = grading_farmer + grading_buyer
        aadhat = aadhat_farmer + aadhat_buyer
        mandi = mandi_farmer + mandi_buyer
        aadhat_percent = part("aadhat_farmer_percent") + part("aadhat_buyer_percent")
        mandi_percent = part("mandi_farmer_percent") + part("mandi_buyer_percent")
        farmer_charges = aadhat_farmer + mandi_farmer + hammali_farmer + grading_farmer
        buyer_charges = aadhat_buyer + mandi_buyer + hammali_buyer + grading_buyer
    else:
        hammali = quantize_money(rates.hammali_per_bag * count)
        grading = quantize_money(rates.grading_per_bag * count)
        aadhat = percent_of(gross, rates.aadhat_percent)
        mandi = percent_of(gross, rates.mandi_percent)
        aadhat_percent = rates.aadhat_percent
        mandi_percent = rates.mandi_percent
        total = hammali + grading + aadhat + mandi
        farmer_charges = total if charged_to is ChargedTo.FARMER else ZERO
        buyer_charges = total if charged_to is ChargedTo.BUYER else ZERO

    payable = gross - farmer_charges
    receivable = gross + buyer_charges
    if payable < ZERO:
        log.critical("Charges %s exceed gross amount %s", farmer_charges, gross)
        raise InvariantViolation(
            f"Farmer charges {farmer_charges} exceed the gross amount {gross}"
        )

    return ChargeBreakdown(
        net_weight=net_weight,
        gross_amount=gross,
        hammali_charges=hammali,
        grading_charges=grading,
        aadhat_charges=aadhat,
        mandi_charges=mandi,
        aadhat_percent=aadhat_percent,
        mandi_percent=mandi_percent,
        farmer_charges=farmer_charges,
        buyer_charges=buyer_charges,
        total_payable_to_farmer=payable,
        total_receivable_from_buyer=receivable,
    )


def net_weight_for(lot: data_manager.LotRow, bags: int, total_weight: Optional[Decimal] = None) -> Decimal:
    """Return the kilograms sold for ``bags`` bags of ``lot``.

    An explicit ``total_weight`` wins; otherwise the lot's average bag weight
    is used, recomputed from the samples when the stored value is blank.

    Raises:
        ValidationError: If neither a weight nor any sample is available.
    """
    if total_weight is not None:
        return quantize_weight(require_positive_money(total_weight, field_name="total_weight"))
    average = lot.average_bag_weight or average_bag_weight(lot.sample_bag_weight_1, lot.sample_bag_weight_2)
    if average is None:
        log.error("Lot '%s' has no sample weights and no total weight was given", lot.lot_id)
        raise ValidationError(
            f"Lot '{lot.lot_id}' has no average bag weight; pass the total weight"
        )
    return quantize_weight(average * bags)


def settle(context: RuntimeContext, business_id: int, command: SettleCommand) -> data_manager.TransactionRow:
    """Settle a live bid into a transaction, exactly once.

    The bid is re-read inside the unit of work that allocates the
    ``TX<YYYYMMDD><n>`` code and appends the row. The DAL refuses a second
    active transaction for the same bid, so of two concurrent settlements
    only one succeeds and the other receives :class:`AlreadySettled`.

    Raises:
        NotFound: If the bid is unknown, deleted or owned by another business.
        AlreadySettled: If the bid already has an active transaction.
        ValidationError: For invalid rates or a missing weight.
        InvariantViolation: If the charges exceed the gross amount.
    """
    business_id = require_business_id(business_id)
    charged_to = coerce_enum(ChargedTo, command.charged_to, field_name="charged_to")
    rates = _resolve_rates(context, business_id, command)
    when = resolve_date(command.on)

    with data_manager.unit_of_work(context.workbook):
        bid = get_bid(context, business_id, command.bid_id)
        lot = get_lot_by_pk(context, business_id, bid.lot_pk)
        breakdown = compute_charges(
            bags=bid.number_of_bags,
            net_weight=net_weight_for(lot, bid.number_of_bags, command.total_weight),
            price_per_kg=bid.price_per_kg,
            charged_to=charged_to,
            rates=rates,
        )

        for attempt in range(1, MAX_IDENTIFIER_ATTEMPTS + 1):
            record = data_manager.TransactionRow(
                id=data_manager.next_row_id(context.workbook, SheetName.TRANSACTIONS),
                transaction_id=sequences.allocate_document_code(
                    context.workbook, business_id, sequences.DocumentKind.TRANSACTION, when
                ),
                business_id=business_id,
                lot_pk=lot.id,
                bid_id=bid.id,
                farmer_id=lot.farmer_id,
                buyer_id=bid.buyer_id,
                date=when,
                number_of_bags=bid.number_of_bags,
                price_per_kg=bid.price_per_kg,
                charged_to=charged_to.value,
                status=TransactionStatus.ACTIVE.value,
                created_at=current_timestamp(),
                **{item.name: getattr(breakdown, item.name) for item in fields(ChargeBreakdown)},
            )
            try:
                data_manager.append_transaction(context.workbook, record)
                break
            except AlreadySettled:
                log.error("Bid %d is already settled", bid.id)
                raise
            except DuplicateIdentifier as exc:
                log.warning(
                    "Transaction id collision on attempt %d/%d: %s",
                    attempt,
                    MAX_IDENTIFIER_ATTEMPTS,
                    exc,
                )
                if attempt == MAX_IDENTIFIER_ATTEMPTS:
                    raise

    log.info(
        "Settled bid %d as '%s' (gross=%s, payable=%s, receivable=%s, charged to %s)",
        bid.id,
        record.transaction_id,
        record.gross_amount,
        record.total_payable_to_farmer,
        record.total_receivable_from_buyer,
        record.charged_to,
    )
    return record


def list_transactions(
    context: RuntimeContext,
    business_id: int,
    *,
    include_reversed: bool = True,
    farmer_id: Optional[int] = None,
    buyer_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[data_manager.TransactionRow]:
    """Return the transactions of a business in settlement order.

    Party and inclusive date filters are optional and combine.

    Raises:
        ValidationError: If ``date_from`` is after ``date_to``.
    """
    business_id = require_business_id(business_id)
    require_date_range(date_from, date_to)
    return [
        transaction
        for transaction in data_manager.read_transactions(context.workbook, business_id)
        if (include_reversed or not transaction.is_reversed)
        and (farmer_id is None or transaction.farmer_id == farmer_id)
        and (buyer_id is None or transaction.buyer_id == buyer_id)
        and in_date_range(transaction.date, date_from, date_to)
    ]


def get_transaction(context: RuntimeContext, business_id: int, transaction_id: str) -> data_manager.TransactionRow:
    """Retrieve a transaction, reversed or not, by its ``TX`` code.

    Raises:
        NotFound: If no transaction of ``business_id`` carries the code.
    """
    business_id = require_business_id(business_id)
    for transaction in data_manager.read_transactions(context.workbook, business_id):
        if transaction.transaction_id == transaction_id:
            return transaction
    log.warning("Transaction lookup failed for id '%s' in business %d", transaction_id, business_id)
    raise NotFound(f"Unknown transaction id: {transaction_id}")


def reverse_transaction(context: RuntimeContext, business_id: int, transaction_id: str) -> data_manager.TransactionRow:
    """Mark a transaction as reversed so ledgers stop counting it.

    The row stays in the workbook and remains retrievable. Afterwards the bid
    may be settled again with corrected figures.

    Raises:
        NotFound: If the transaction is unknown to ``business_id``.
        BusinessRuleViolation: If it is already reversed.
    """
    business_id = require_business_id(business_id)
    with data_manager.unit_of_work(context.workbook):
        transaction = get_transaction(context, business_id, transaction_id)
        if transaction.is_reversed:
            log.error("Transaction '%s' is already reversed", transaction_id)
            raise BusinessRuleViolation(f"Transaction '{transaction_id}' is already reversed")
        data_manager.update_transaction(
            context.workbook,
            business_id,
            transaction.id,
            field_values={"Status": TransactionStatus.REVERSED.value},
        )
    log.info("Reversed transaction '%s' in business %d", transaction_id, business_id)
    return get_transaction(context, business_id, transaction_id)


__all__ = [
    "ChargeRates",
    "SettleCommand",
    "ChargeBreakdown",
    "charge_rates",
    "configure_charges",
    "compute_charges",
    "net_weight_for",
    "settle",
    "list_transactions",
    "get_transaction",
    "reverse_transaction",
]
