"""Tests for charge computation and bid settlement."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
import threading

import pytest

from mandi_ledger import charges, core_logic, inventory
from mandi_ledger.constants import ChargedTo, TransactionStatus
from mandi_ledger.errors import (
    AlreadySettled,
    BusinessRuleViolation,
    InvariantViolation,
    NotFound,
    ValidationError,
)

BUSINESS_ID = 1
SALE_DAY = date(2024, 3, 1)

DEFAULT_RATES = charges.ChargeRates(
    aadhat_percent=Decimal("2"),
    mandi_percent=Decimal("1"),
    hammali_per_bag=Decimal("0"),
    grading_per_bag=Decimal("0"),
)


@pytest.fixture
def fifty_bag_bid(runtime_context, buyer, lot_factory):
    """A 50-bag bid at 20/kg on a lot sampled at 48.2 kg and 49.0 kg."""

    lot = lot_factory(bags=100)
    return inventory.place_bid(
        runtime_context,
        BUSINESS_ID,
        inventory.BidCommand(lot_id=lot.lot_id, buyer_id=buyer.id, number_of_bags=50, price_per_kg=Decimal("20")),
    )


def _settle(context, bid, **overrides):
    command = charges.SettleCommand(bid_id=bid.id, on=SALE_DAY, **overrides)
    return charges.settle(context, BUSINESS_ID, command)


def test_average_bag_weight_rounds_half_up():
    assert core_logic.average_bag_weight(Decimal("48.2"), Decimal("49.0")) == Decimal("48.60")
    assert core_logic.average_bag_weight(Decimal("10.005"), Decimal("10.005")) == Decimal("10.01")
    assert core_logic.average_bag_weight(None, Decimal("51")) == Decimal("51.00")
    assert core_logic.average_bag_weight(None, None) is None


def test_buyer_policy_adds_charges_to_receivable():
    breakdown = charges.compute_charges(
        bags=50,
        net_weight=Decimal("2430"),
        price_per_kg=Decimal("20"),
        charged_to=ChargedTo.BUYER,
        rates=DEFAULT_RATES,
    )

    assert breakdown.gross_amount == Decimal("48600.00")
    assert breakdown.aadhat_charges == Decimal("972.00")
    assert breakdown.mandi_charges == Decimal("486.00")
    assert breakdown.buyer_charges == Decimal("1458.00")
    assert breakdown.farmer_charges == Decimal("0")
    assert breakdown.total_receivable_from_buyer == Decimal("50058.00")
    assert breakdown.total_payable_to_farmer == Decimal("48600.00")


def test_farmer_policy_deducts_charges_from_payable():
    breakdown = charges.compute_charges(
        bags=50,
        net_weight=Decimal("2430"),
        price_per_kg=Decimal("20"),
        charged_to=ChargedTo.FARMER,
        rates=DEFAULT_RATES,
    )

    assert breakdown.total_payable_to_farmer == Decimal("47142.00")
    assert breakdown.total_receivable_from_buyer == Decimal("48600.00")


def test_per_bag_charges_scale_with_bags():
    rates = charges.ChargeRates(
        aadhat_percent=Decimal("0"),
        mandi_percent=Decimal("0"),
        hammali_per_bag=Decimal("5.5"),
        grading_per_bag=Decimal("2"),
    )
    breakdown = charges.compute_charges(
        bags=10, net_weight=Decimal("500"), price_per_kg=Decimal("10"), charged_to="Buyer", rates=rates
    )

    assert breakdown.hammali_charges == Decimal("55.00")
    assert breakdown.grading_charges == Decimal("20.00")
    assert breakdown.total_receivable_from_buyer == Decimal("5075.00")


def test_components_are_rounded_before_totals():
    """Each component is rounded half-up; totals are sums of rounded parts."""

    rates = charges.ChargeRates(
        aadhat_percent=Decimal("1.5"),
        mandi_percent=Decimal("0.5"),
        hammali_per_bag=Decimal("0"),
        grading_per_bag=Decimal("0"),
    )
    breakdown = charges.compute_charges(
        bags=1, net_weight=Decimal("1"), price_per_kg=Decimal("10.33"), charged_to=ChargedTo.BUYER, rates=rates
    )

    assert breakdown.aadhat_charges == Decimal("0.15")
    assert breakdown.mandi_charges == Decimal("0.05")
    assert breakdown.total_receivable_from_buyer == Decimal("10.53")


def test_split_policy_without_rates_is_rejected():
    with pytest.raises(ValidationError):
        charges.compute_charges(
            bags=50,
            net_weight=Decimal("2430"),
            price_per_kg=Decimal("20"),
            charged_to=ChargedTo.SPLIT,
            rates=DEFAULT_RATES,
        )


def test_negative_payable_is_an_invariant_violation():
    rates = charges.ChargeRates(
        aadhat_percent=Decimal("0"),
        mandi_percent=Decimal("0"),
        hammali_per_bag=Decimal("1000"),
        grading_per_bag=Decimal("0"),
    )
    with pytest.raises(InvariantViolation):
        charges.compute_charges(
            bags=1, net_weight=Decimal("10"), price_per_kg=Decimal("1"), charged_to=ChargedTo.FARMER, rates=rates
        )


def test_unknown_policy_is_rejected():
    with pytest.raises(ValidationError):
        charges.compute_charges(
            bags=1, net_weight=Decimal("1"), price_per_kg=Decimal("1"), charged_to="Nobody", rates=DEFAULT_RATES
        )


def test_settle_worked_example(runtime_context, fifty_bag_bid):
    """50 bags at 48.6 kg and 20/kg, charged to the buyer."""

    transaction = _settle(runtime_context, fifty_bag_bid)

    assert transaction.transaction_id == "TX202403011"
    assert transaction.net_weight == Decimal("2430.00")
    assert transaction.gross_amount == Decimal("48600.00")
    assert transaction.total_receivable_from_buyer == Decimal("50058.00")
    assert transaction.total_payable_to_farmer == Decimal("48600.00")
    assert transaction.charged_to == ChargedTo.BUYER.value
    assert transaction.status == TransactionStatus.ACTIVE.value
    assert charges.get_transaction(runtime_context, BUSINESS_ID, "TX202403011") == transaction


def test_settle_with_farmer_policy(runtime_context, fifty_bag_bid):
    transaction = _settle(runtime_context, fifty_bag_bid, charged_to=ChargedTo.FARMER)

    assert transaction.total_payable_to_farmer == Decimal("47142.00")
    assert transaction.total_receivable_from_buyer == Decimal("48600.00")


def test_settle_split_uses_configured_rates(runtime_context, fifty_bag_bid):
    charges.configure_charges(
        runtime_context,
        BUSINESS_ID,
        aadhat_farmer_percent=Decimal("1"),
        aadhat_buyer_percent=Decimal("1"),
        mandi_buyer_percent=Decimal("1"),
        hammali_farmer_per_bag=Decimal("2"),
    )

    transaction = _settle(runtime_context, fifty_bag_bid, charged_to=ChargedTo.SPLIT)

    assert transaction.aadhat_charges == Decimal("972.00")
    assert transaction.mandi_charges == Decimal("486.00")
    assert transaction.hammali_charges == Decimal("100.00")
    assert transaction.farmer_charges == Decimal("586.00")
    assert transaction.buyer_charges == Decimal("972.00")
    assert transaction.total_payable_to_farmer == Decimal("48014.00")
    assert transaction.total_receivable_from_buyer == Decimal("49572.00")


def test_settle_split_without_configuration_fails(runtime_context, fifty_bag_bid):
    with pytest.raises(ValidationError):
        _settle(runtime_context, fifty_bag_bid, charged_to=ChargedTo.SPLIT)
    assert charges.list_transactions(runtime_context, BUSINESS_ID) == []


def test_settle_overrides_weight_and_rates(runtime_context, fifty_bag_bid):
    transaction = _settle(
        runtime_context,
        fifty_bag_bid,
        total_weight=Decimal("2500"),
        aadhat_percent=Decimal("0"),
        mandi_percent=Decimal("0"),
    )

    assert transaction.net_weight == Decimal("2500.00")
    assert transaction.total_receivable_from_buyer == Decimal("50000.00")


def test_configured_rates_win_over_config_defaults(runtime_context):
    assert charges.charge_rates(runtime_context, BUSINESS_ID).aadhat_percent == Decimal("2")

    rates = charges.configure_charges(runtime_context, BUSINESS_ID, aadhat_percent=Decimal("3"))
    assert rates.aadhat_percent == Decimal("3")
    assert rates.mandi_percent == Decimal("1")

    rates = charges.configure_charges(runtime_context, BUSINESS_ID, aadhat_percent=None)
    assert rates.aadhat_percent == Decimal("2")


def test_configure_charges_rejects_bad_input(runtime_context):
    with pytest.raises(ValidationError):
        charges.configure_charges(runtime_context, BUSINESS_ID, tea_money=Decimal("1"))
    with pytest.raises(ValidationError):
        charges.configure_charges(runtime_context, BUSINESS_ID, mandi_percent=Decimal("-1"))


def test_config_charges_section_sets_defaults(config_factory):
    bundle = config_factory(charges_section="\n[Charges]\nAadhatCommissionPercent = 2.5\n")
    context = core_logic.load_runtime_context(bundle.config_path)

    assert charges.charge_rates(context, BUSINESS_ID).aadhat_percent == Decimal("2.5")


def test_missing_weight_information_is_rejected(runtime_context, buyer, lot_factory):
    lot = lot_factory(sample_1=None, sample_2=None)
    bid = inventory.place_bid(
        runtime_context,
        BUSINESS_ID,
        inventory.BidCommand(lot_id=lot.lot_id, buyer_id=buyer.id, number_of_bags=5, price_per_kg=Decimal("10")),
    )

    with pytest.raises(ValidationError):
        _settle(runtime_context, bid)
    assert _settle(runtime_context, bid, total_weight=Decimal("250")).gross_amount == Decimal("2500.00")


def test_double_settlement_is_rejected(runtime_context, fifty_bag_bid):
    _settle(runtime_context, fifty_bag_bid)

    with pytest.raises(AlreadySettled):
        _settle(runtime_context, fifty_bag_bid)
    assert len(charges.list_transactions(runtime_context, BUSINESS_ID)) == 1


def test_concurrent_settlements_produce_one_transaction(runtime_context, fifty_bag_bid):
    """Of two racing settlements exactly one wins."""

    barrier = threading.Barrier(2)

    def attempt(_):
        barrier.wait()
        try:
            return _settle(runtime_context, fifty_bag_bid)
        except AlreadySettled as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(attempt, range(2)))

    assert sum(isinstance(outcome, AlreadySettled) for outcome in outcomes) == 1
    active = charges.list_transactions(runtime_context, BUSINESS_ID, include_reversed=False)
    assert len(active) == 1


def test_reversal_keeps_row_and_allows_resettlement(runtime_context, fifty_bag_bid):
    first = _settle(runtime_context, fifty_bag_bid)

    reversed_row = charges.reverse_transaction(runtime_context, BUSINESS_ID, first.transaction_id)
    assert reversed_row.is_reversed
    assert charges.get_transaction(runtime_context, BUSINESS_ID, first.transaction_id).status == "Reversed"

    second = _settle(runtime_context, fifty_bag_bid, charged_to=ChargedTo.FARMER)
    assert second.transaction_id == "TX202403012"
    assert [row.transaction_id for row in charges.list_transactions(runtime_context, BUSINESS_ID, include_reversed=False)] == [
        "TX202403012"
    ]


def test_reversing_twice_is_rejected(runtime_context, fifty_bag_bid):
    transaction = _settle(runtime_context, fifty_bag_bid)
    charges.reverse_transaction(runtime_context, BUSINESS_ID, transaction.transaction_id)

    with pytest.raises(BusinessRuleViolation):
        charges.reverse_transaction(runtime_context, BUSINESS_ID, transaction.transaction_id)


def test_settling_a_deleted_bid_raises_not_found(runtime_context, fifty_bag_bid):
    inventory.delete_bid(runtime_context, BUSINESS_ID, fifty_bag_bid.id)

    with pytest.raises(NotFound):
        _settle(runtime_context, fifty_bag_bid)


def test_transactions_are_scoped_to_business(runtime_context, fifty_bag_bid):
    transaction = _settle(runtime_context, fifty_bag_bid)
    core_logic.create_business(runtime_context, 2, "Second Mandi")

    with pytest.raises(NotFound):
        charges.get_transaction(runtime_context, 2, transaction.transaction_id)
    with pytest.raises(NotFound):
        charges.settle(runtime_context, 2, charges.SettleCommand(bid_id=fifty_bag_bid.id))


def test_list_transactions_filters_by_party_and_date(runtime_context, farmer, buyer, fifty_bag_bid):
    other_buyer = core_logic.add_buyer(runtime_context, BUSINESS_ID, name="Sharma & Sons", on=SALE_DAY)
    lot = core_logic.get_lot_by_pk(runtime_context, BUSINESS_ID, fifty_bag_bid.lot_pk)
    second_bid = inventory.place_bid(
        runtime_context,
        BUSINESS_ID,
        inventory.BidCommand(lot_id=lot.lot_id, buyer_id=other_buyer.id, number_of_bags=20, price_per_kg=Decimal("18")),
    )
    first = _settle(runtime_context, fifty_bag_bid)
    second = charges.settle(runtime_context, BUSINESS_ID, charges.SettleCommand(bid_id=second_bid.id, on=date(2024, 3, 4)))

    def listed(**filters):
        return [row.transaction_id for row in charges.list_transactions(runtime_context, BUSINESS_ID, **filters)]

    assert listed(buyer_id=buyer.id) == [first.transaction_id]
    assert listed(buyer_id=other_buyer.id) == [second.transaction_id]
    assert listed(farmer_id=farmer.id) == [first.transaction_id, second.transaction_id]
    assert listed(farmer_id=farmer.id + 1) == []
    assert listed(date_from=date(2024, 3, 2)) == [second.transaction_id]
    assert listed(date_to=SALE_DAY) == [first.transaction_id]
    assert listed(buyer_id=buyer.id, date_from=date(2024, 3, 2)) == []

    with pytest.raises(ValidationError):
        charges.list_transactions(runtime_context, BUSINESS_ID, date_from=date(2024, 3, 4), date_to=SALE_DAY)
