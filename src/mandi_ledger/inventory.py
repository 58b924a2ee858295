"""Remaining-bag bookkeeping for lots as bids come and go.

Every mutation reads the lot, validates against that snapshot and then writes
through :func:`data_manager.compare_and_swap_lot`. If another writer bumped
the lot's version in between, the operation re-reads and tries again, at
most ``MAX_VERSION_ATTEMPTS`` times.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional, TypeVar

from . import data_manager, log
from .constants import MAX_VERSION_ATTEMPTS, BagSize, SheetName, TransactionStatus
from .core_logic import (
    RuntimeContext,
    average_bag_weight,
    coerce_enum,
    current_timestamp,
    get_buyer,
    get_lot,
    get_lot_by_pk,
    require_business_id,
    require_positive_bags,
    require_positive_money,
)
from .errors import (
    BusinessRuleViolation,
    InsufficientCapacity,
    InvariantViolation,
    NotFound,
    StaleVersion,
    ValidationError,
)
from .money import optional_decimal


T = TypeVar("T")


@dataclass(frozen=True)
class BidCommand:
    """User intent for placing a bid on a lot."""

    lot_id: str
    buyer_id: int
    number_of_bags: int
    price_per_kg: Decimal
    grade: Optional[str] = None


@dataclass(frozen=True)
class LotAllocation:
    """Bag accounting of a lot used to audit the remaining count."""

    lot_id: str
    number_of_bags: int
    remaining_bags: int
    bid_bags: int

    @property
    def is_consistent(self) -> bool:
        return self.remaining_bags == self.number_of_bags - self.bid_bags


def _with_version_retry(subject: str, attempt_fn: Callable[[], T]) -> T:
    """Run ``attempt_fn`` until it stops raising :class:`StaleVersion`.

    ``subject`` names what is being changed, e.g. ``lot 'POT202403011'`` or
    ``bid 7``.
    """

    for attempt in range(1, MAX_VERSION_ATTEMPTS + 1):
        try:
            return attempt_fn()
        except StaleVersion as exc:
            log.warning(
                "Concurrent update on %s (attempt %d/%d): %s",
                subject,
                attempt,
                MAX_VERSION_ATTEMPTS,
                exc,
            )
    log.error("Giving up on %s after %d conflicting attempts", subject, MAX_VERSION_ATTEMPTS)
    raise BusinessRuleViolation(f"Concurrent updates kept changing {subject}; please retry")


def _checked_remaining(lot: data_manager.LotRow, remaining: int, capacity: Optional[int] = None) -> int:
    capacity = lot.number_of_bags if capacity is None else capacity
    if remaining < 0 or remaining > capacity:
        log.critical(
            "Remaining bags for lot '%s' would become %d (capacity %d)",
            lot.lot_id,
            remaining,
            capacity,
        )
        raise InvariantViolation(
            f"Remaining bags for lot '{lot.lot_id}' out of range: {remaining}"
        )
    return remaining


def _active_transactions(
    context: RuntimeContext, business_id: int, bid_id: int
) -> List[data_manager.TransactionRow]:
    return [
        transaction
        for transaction in data_manager.read_transactions(context.workbook, business_id)
        if transaction.bid_id == bid_id and not transaction.is_reversed
    ]


def list_bids(
    context: RuntimeContext,
    business_id: int,
    *,
    lot_id: Optional[str] = None,
    include_deleted: bool = False,
) -> List[data_manager.BidRow]:
    """Return the bids of a business, optionally only those of one lot."""
    business_id = require_business_id(business_id)
    lot_pk = get_lot(context, business_id, lot_id).id if lot_id is not None else None
    bids = data_manager.read_bids(context.workbook, business_id, lot_pk=lot_pk)
    if include_deleted:
        return bids
    return [bid for bid in bids if not bid.is_deleted]


def get_bid(context: RuntimeContext, business_id: int, bid_id: int) -> data_manager.BidRow:
    """Resolve a live (not deleted) bid within a business.

    Raises:
        NotFound: If the bid is unknown, deleted or owned by another business.
    """
    business_id = require_business_id(business_id)
    for bid in data_manager.read_bids(context.workbook, business_id):
        if bid.id == bid_id and not bid.is_deleted:
            return bid
    log.warning("Bid lookup failed for id '%s' in business %d", bid_id, business_id)
    raise NotFound(f"Unknown bid id: {bid_id}")


def place_bid(context: RuntimeContext, business_id: int, command: BidCommand) -> data_manager.BidRow:
    """Record a buyer's bid and take its bags out of the lot.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        business_id (int): Business owning the lot and buyer.
        command (BidCommand): Bid details; ``grade`` defaults to the lot size.

    Returns:
        data_manager.BidRow: The stored bid.

    Raises:
        ValidationError: For non-positive bags or price.
        NotFound: If the lot or buyer is unknown to ``business_id``.
        BusinessRuleViolation: If the lot is returned or the buyer inactive.
        InsufficientCapacity: If the lot has fewer bags left than requested.
    """
    business_id = require_business_id(business_id)
    bags = require_positive_bags(command.number_of_bags)
    price = require_positive_money(command.price_per_kg, field_name="price_per_kg")
    buyer = get_buyer(context, business_id, command.buyer_id)
    if not buyer.is_active:
        log.warning("Attempted bid by inactive buyer '%s'", command.buyer_id)
        raise BusinessRuleViolation(f"Buyer '{buyer.buyer_code}' is inactive")

    def attempt() -> data_manager.BidRow:
        lot = get_lot(context, business_id, command.lot_id)
        if lot.is_returned:
            log.error("Bid rejected: lot '%s' was returned to the farmer", lot.lot_id)
            raise BusinessRuleViolation(f"Lot '{lot.lot_id}' has been returned")
        if bags > lot.remaining_bags:
            log.error(
                "Bid rejected: lot '%s' has %d bag(s) left, %d requested",
                lot.lot_id,
                lot.remaining_bags,
                bags,
            )
            raise InsufficientCapacity(lot.lot_id, bags, lot.remaining_bags)
        remaining = _checked_remaining(lot, lot.remaining_bags - bags)

        with data_manager.unit_of_work(context.workbook):
            data_manager.compare_and_swap_lot(
                context.workbook,
                business_id,
                lot.id,
                expected_version=lot.version,
                field_values={"RemainingBags": remaining},
            )
            record = data_manager.BidRow(
                id=data_manager.next_row_id(context.workbook, SheetName.BIDS),
                business_id=business_id,
                lot_pk=lot.id,
                buyer_id=buyer.id,
                price_per_kg=price,
                number_of_bags=bags,
                grade=command.grade or lot.size,
                is_deleted=False,
                created_at=current_timestamp(),
            )
            data_manager.append_bid(context.workbook, record)
        log.info(
            "Placed bid %d on lot '%s' for %d bag(s) at %s/kg (remaining %d)",
            record.id,
            lot.lot_id,
            bags,
            price,
            remaining,
        )
        return record

    return _with_version_retry(f"lot '{command.lot_id}'", attempt)


def edit_bid(
    context: RuntimeContext,
    business_id: int,
    bid_id: int,
    *,
    number_of_bags: Optional[int] = None,
    price_per_kg: Optional[Decimal] = None,
    grade: Optional[str] = None,
) -> data_manager.BidRow:
    """Change the bag count, price or grade of a live bid.

    The lot gives back or takes the difference between the old and the new
    bag count. Bids that already have an active transaction cannot be edited;
    the transaction has to be reversed first.

    Raises:
        NotFound: If the bid is unknown or deleted.
        BusinessRuleViolation: If the bid is settled or the lot returned.
        InsufficientCapacity: If the lot cannot cover the increase.
    """
    business_id = require_business_id(business_id)
    new_bags = require_positive_bags(number_of_bags) if number_of_bags is not None else None
    new_price = (
        require_positive_money(price_per_kg, field_name="price_per_kg")
        if price_per_kg is not None
        else None
    )

    def attempt() -> data_manager.BidRow:
        bid = get_bid(context, business_id, bid_id)
        lot = get_lot_by_pk(context, business_id, bid.lot_pk)
        bags = new_bags if new_bags is not None else bid.number_of_bags
        if lot.is_returned:
            log.error("Edit rejected: lot '%s' was returned to the farmer", lot.lot_id)
            raise BusinessRuleViolation(f"Lot '{lot.lot_id}' has been returned")
        available = lot.remaining_bags + bid.number_of_bags
        if bags > available:
            log.error(
                "Edit rejected: lot '%s' can cover %d bag(s), %d requested",
                lot.lot_id,
                available,
                bags,
            )
            raise InsufficientCapacity(lot.lot_id, bags, available)
        delta = bags - bid.number_of_bags
        remaining = _checked_remaining(lot, lot.remaining_bags - delta)

        field_values = {"NumberOfBags": bags}
        if new_price is not None:
            field_values["PricePerKg"] = new_price
        if grade:
            field_values["Grade"] = grade

        with data_manager.unit_of_work(context.workbook):
            if _active_transactions(context, business_id, bid.id):
                log.error("Edit rejected: bid %d is settled", bid.id)
                raise BusinessRuleViolation(
                    f"Bid {bid.id} is settled; reverse its transaction before editing"
                )
            data_manager.compare_and_swap_lot(
                context.workbook,
                business_id,
                lot.id,
                expected_version=lot.version,
                field_values={"RemainingBags": remaining},
            )
            data_manager.update_bid(context.workbook, business_id, bid.id, field_values=field_values)
        log.info(
            "Edited bid %d on lot '%s': %d -> %d bag(s) (remaining %d)",
            bid.id,
            lot.lot_id,
            bid.number_of_bags,
            bags,
            remaining,
        )
        return get_bid(context, business_id, bid.id)

    return _with_version_retry(f"bid {bid_id}", attempt)


def delete_bid(context: RuntimeContext, business_id: int, bid_id: int) -> None:
    """Soft-delete a bid and give its bags back to the lot.

    Deleting is never refused: an active transaction of the bid is reversed
    in the same unit of work, so ledgers stop counting a sale whose bags are
    back on the lot.

    Raises:
        NotFound: If the bid is unknown or already deleted.
        InvariantViolation: If restoring the bags would overfill the lot.
    """
    business_id = require_business_id(business_id)

    def attempt() -> None:
        bid = get_bid(context, business_id, bid_id)
        lot = get_lot_by_pk(context, business_id, bid.lot_pk)
        remaining = _checked_remaining(lot, lot.remaining_bags + bid.number_of_bags)

        with data_manager.unit_of_work(context.workbook):
            settled = _active_transactions(context, business_id, bid.id)
            data_manager.compare_and_swap_lot(
                context.workbook,
                business_id,
                lot.id,
                expected_version=lot.version,
                field_values={"RemainingBags": remaining},
            )
            data_manager.update_bid(context.workbook, business_id, bid.id, field_values={"IsDeleted": True})
            for transaction in settled:
                data_manager.update_transaction(
                    context.workbook,
                    business_id,
                    transaction.id,
                    field_values={"Status": TransactionStatus.REVERSED.value},
                )
                log.warning(
                    "Reversed transaction '%s' along with deleted bid %d",
                    transaction.transaction_id,
                    bid.id,
                )
        log.info(
            "Deleted bid %d on lot '%s'; %d bag(s) restored (remaining %d)",
            bid.id,
            lot.lot_id,
            bid.number_of_bags,
            remaining,
        )

    _with_version_retry(f"bid {bid_id}", attempt)


def mark_returned(context: RuntimeContext, business_id: int, lot_id: str) -> data_manager.LotRow:
    """Flag a lot as returned to its farmer; further bids are rejected.

    Marking a lot that is already returned is a no-op. Remaining bags are
    left untouched.
    """
    business_id = require_business_id(business_id)

    def attempt() -> data_manager.LotRow:
        lot = get_lot(context, business_id, lot_id)
        if lot.is_returned:
            log.debug("Lot '%s' already marked returned", lot.lot_id)
            return lot
        with data_manager.unit_of_work(context.workbook):
            updated = data_manager.compare_and_swap_lot(
                context.workbook,
                business_id,
                lot.id,
                expected_version=lot.version,
                field_values={"IsReturned": True},
            )
        log.info("Marked lot '%s' as returned in business %d", lot.lot_id, business_id)
        return updated

    return _with_version_retry(f"lot '{lot_id}'", attempt)


_LOT_COLUMNS = {
    "variety": "Variety",
    "size": "Size",
    "sample_bag_weight_1": "SampleBagWeight1",
    "sample_bag_weight_2": "SampleBagWeight2",
    "initial_total_weight": "InitialTotalWeight",
    "number_of_bags": "NumberOfBags",
}


def _lot_changes(changes: dict) -> dict:
    unknown = sorted(set(changes) - set(_LOT_COLUMNS))
    if unknown:
        raise ValidationError(f"Unsupported field(s): {', '.join(unknown)}")
    values = {}
    for name, value in changes.items():
        if name == "size":
            value = coerce_enum(BagSize, value, field_name="size").value
        elif name == "number_of_bags":
            value = require_positive_bags(value)
        elif name == "variety":
            value = (value or "").strip() or None
        else:
            value = optional_decimal(value, field=name)
            if value is not None:
                value = require_positive_money(value, field_name=name)
        values[name] = value
    return values


def update_lot(context: RuntimeContext, business_id: int, lot_id: str, **changes) -> data_manager.LotRow:
    """Correct the intake details of a lot.

    Variety, size, the sample weighings, the initial total weight and the bag
    count may change. Crop, date and farmer are baked into the lot id and
    stay fixed. New samples recompute ``average_bag_weight``. A new bag count
    keeps the bags already bid and moves ``remaining_bags`` by the same
    difference, in the same versioned write.

    Raises:
        ValidationError: For unsupported fields or invalid values.
        NotFound: If the lot is unknown to ``business_id``.
        BusinessRuleViolation: If the new bag count is below the bags bid.
    """
    business_id = require_business_id(business_id)
    values = _lot_changes(changes)
    if not values:
        return get_lot(context, business_id, lot_id)

    def attempt() -> data_manager.LotRow:
        lot = get_lot(context, business_id, lot_id)
        field_values = {_LOT_COLUMNS[name]: value for name, value in values.items()}
        if "sample_bag_weight_1" in values or "sample_bag_weight_2" in values:
            field_values["AverageBagWeight"] = average_bag_weight(
                values.get("sample_bag_weight_1", lot.sample_bag_weight_1),
                values.get("sample_bag_weight_2", lot.sample_bag_weight_2),
            )
        if "number_of_bags" in values:
            total = values["number_of_bags"]
            bid_bags = lot.number_of_bags - lot.remaining_bags
            if total < bid_bags:
                log.error(
                    "Lot '%s' has %d bag(s) bid; cannot shrink it to %d",
                    lot.lot_id,
                    bid_bags,
                    total,
                )
                raise BusinessRuleViolation(
                    f"Lot '{lot.lot_id}' has {bid_bags} bag(s) bid; cannot shrink it to {total}"
                )
            field_values["RemainingBags"] = _checked_remaining(lot, total - bid_bags, capacity=total)

        with data_manager.unit_of_work(context.workbook):
            updated = data_manager.compare_and_swap_lot(
                context.workbook,
                business_id,
                lot.id,
                expected_version=lot.version,
                field_values=field_values,
            )
        log.info("Updated lot '%s' in business %d: %s", lot.lot_id, business_id, ", ".join(sorted(field_values)))
        return updated

    return _with_version_retry(f"lot '{lot_id}'", attempt)


def lot_allocation(context: RuntimeContext, business_id: int, lot_id: str) -> LotAllocation:
    """Report the bag accounting of a lot from one consistent snapshot."""
    business_id = require_business_id(business_id)
    with data_manager.workbook_lock(context.workbook):
        lot = get_lot(context, business_id, lot_id)
        bids = data_manager.read_bids(context.workbook, business_id, lot_pk=lot.id)
    bid_bags = sum(bid.number_of_bags for bid in bids if not bid.is_deleted)
    return LotAllocation(
        lot_id=lot.lot_id,
        number_of_bags=lot.number_of_bags,
        remaining_bags=lot.remaining_bags,
        bid_bags=bid_bags,
    )


__all__ = [
    "BidCommand",
    "LotAllocation",
    "list_bids",
    "get_bid",
    "place_bid",
    "edit_bid",
    "delete_bid",
    "mark_returned",
    "update_lot",
    "lot_allocation",
]
