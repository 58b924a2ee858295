"""Unit tests for the business logic layer: context, parties, lots and cash."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from mandi_ledger import charges, constants, core_logic, data_manager, inventory, ledger
from mandi_ledger.errors import (
    BusinessRuleViolation,
    DuplicateIdentifier,
    NotFound,
    ValidationError,
)

BUSINESS_ID = 1


@pytest.fixture
def set_fixed_datetime(monkeypatch):
    """Patch core_logic.datetime.now to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


def _farmer_row(farmer_id: int, *, name: str = "Farmer", active: bool = True) -> data_manager.FarmerRow:
    return data_manager.FarmerRow(
        id=farmer_id,
        business_id=BUSINESS_ID,
        farmer_code=f"FM20240301{farmer_id}",
        name=name,
        phone=None,
        village=None,
        opening_balance=Decimal("0"),
        negative_flag=False,
        is_active=active,
    )


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path, settings):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(settings.data_file)
    assert context.settings is settings
    assert context.workbook is workbook


def test_ensure_schema_version_rejects_mismatch(config_factory):
    bundle = config_factory(schema_version="0.9.0")
    context = core_logic.load_runtime_context(bundle.config_path)

    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(context)


def test_persist_and_refresh_round_trip(runtime_context):
    """Persisted rows survive a refresh; unsaved ones do not."""

    core_logic.add_farmer(runtime_context, BUSINESS_ID, name="Saved", on=date(2024, 3, 1))
    core_logic.persist_context(runtime_context)
    core_logic.add_farmer(runtime_context, BUSINESS_ID, name="Unsaved", on=date(2024, 3, 1))

    refreshed = core_logic.refresh_context(runtime_context)

    assert refreshed.workbook is not runtime_context.workbook
    assert [farmer.name for farmer in core_logic.list_farmers(refreshed, BUSINESS_ID)] == ["Saved"]


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("business_id", [None, 0, -4, True, "abc"])
def test_require_business_id_rejects_missing_or_invalid(business_id):
    with pytest.raises(ValidationError):
        core_logic.require_business_id(business_id)


def test_require_business_id_accepts_positive():
    assert core_logic.require_business_id(3) == 3


@pytest.mark.parametrize("bags", [0, -1, 2.5, True])
def test_require_positive_bags_rejects_invalid(bags):
    with pytest.raises(ValidationError):
        core_logic.require_positive_bags(bags)


def test_require_nonnegative_money_accepts_zero():
    assert core_logic.require_nonnegative_money(Decimal("0")) == Decimal("0")


def test_coerce_enum_lists_allowed_values():
    with pytest.raises(ValidationError) as excinfo:
        core_logic.coerce_enum(constants.Crop, "Tomato", field_name="crop")
    assert "Potato" in str(excinfo.value)


def test_every_operation_requires_business_id(runtime_context):
    with pytest.raises(ValidationError):
        core_logic.list_farmers(runtime_context, None)
    with pytest.raises(ValidationError):
        core_logic.list_lots(runtime_context, 0)
    with pytest.raises(ValidationError):
        inventory.list_bids(runtime_context, None)


# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------


def test_list_farmers_excludes_inactive_by_default(monkeypatch, mock_context):
    read_farmers = Mock(return_value=[_farmer_row(1), _farmer_row(2, active=False)])
    monkeypatch.setattr(data_manager, "read_farmers", read_farmers)

    assert [farmer.id for farmer in core_logic.list_farmers(mock_context, BUSINESS_ID)] == [1]
    assert len(core_logic.list_farmers(mock_context, BUSINESS_ID, include_inactive=True)) == 2


def test_list_farmers_reuses_cache_between_calls(monkeypatch, mock_context):
    read_farmers = Mock(return_value=[_farmer_row(1)])
    monkeypatch.setattr(data_manager, "read_farmers", read_farmers)

    core_logic.list_farmers(mock_context, BUSINESS_ID)
    core_logic.get_farmer(mock_context, BUSINESS_ID, 1)

    read_farmers.assert_called_once_with(mock_context.workbook, BUSINESS_ID)


def test_farmer_cache_is_keyed_by_business(monkeypatch, mock_context):
    read_farmers = Mock(return_value=[])
    monkeypatch.setattr(data_manager, "read_farmers", read_farmers)

    core_logic.list_farmers(mock_context, 1)
    core_logic.list_farmers(mock_context, 2)

    assert read_farmers.call_count == 2


def test_add_farmer_invalidates_cache(runtime_context):
    assert core_logic.list_farmers(runtime_context, BUSINESS_ID) == []

    added = core_logic.add_farmer(runtime_context, BUSINESS_ID, name="Ramesh", on=date(2024, 3, 1))

    assert core_logic.list_farmers(runtime_context, BUSINESS_ID) == [added]


# ---------------------------------------------------------------------------
# Businesses and parties
# ---------------------------------------------------------------------------


def test_create_business_rejects_duplicate(runtime_context):
    created = core_logic.create_business(runtime_context, 2, "Second Mandi")
    assert core_logic.get_business(runtime_context, 2) == created

    with pytest.raises(DuplicateIdentifier):
        core_logic.create_business(runtime_context, 2, "Again")


def test_get_business_unknown_raises(runtime_context):
    with pytest.raises(NotFound):
        core_logic.get_business(runtime_context, 42)


def test_add_farmer_allocates_code_for_today(runtime_context, set_fixed_datetime):
    set_fixed_datetime(datetime(2024, 5, 6, 9, 30, tzinfo=UTC))

    first = core_logic.add_farmer(runtime_context, BUSINESS_ID, name=" Ramesh ", opening_balance="120.456")
    second = core_logic.add_farmer(runtime_context, BUSINESS_ID, name="Suresh")

    assert first.farmer_code == "FM202405061"
    assert second.farmer_code == "FM202405062"
    assert first.name == "Ramesh"
    assert first.opening_balance == Decimal("120.46")


def test_add_party_requires_name(runtime_context):
    with pytest.raises(ValidationError):
        core_logic.add_farmer(runtime_context, BUSINESS_ID, name="  ")
    with pytest.raises(ValidationError):
        core_logic.add_buyer(runtime_context, BUSINESS_ID, name="")


def test_add_party_to_unknown_business_raises(runtime_context):
    with pytest.raises(NotFound):
        core_logic.add_buyer(runtime_context, 9, name="Nobody")


def test_search_matches_name_phone_and_code(runtime_context, farmer, buyer):
    core_logic.add_farmer(runtime_context, BUSINESS_ID, name="Mahesh", phone="9811111111", on=date(2024, 3, 1))

    assert [row.name for row in core_logic.list_farmers(runtime_context, BUSINESS_ID, search="rAmE")] == ["Ramesh"]
    assert [row.name for row in core_logic.list_farmers(runtime_context, BUSINESS_ID, search="98111")] == ["Mahesh"]
    assert [row.name for row in core_logic.list_buyers(runtime_context, BUSINESS_ID, search=buyer.buyer_code)] == [
        "Gupta Traders"
    ]


def test_update_farmer_changes_fields(runtime_context, farmer):
    updated = core_logic.update_farmer(
        runtime_context, BUSINESS_ID, farmer.id, village="Dewas", opening_balance=Decimal("50"), is_active=False
    )

    assert updated.village == "Dewas"
    assert updated.opening_balance == Decimal("50.00")
    assert updated.is_active is False
    assert core_logic.list_farmers(runtime_context, BUSINESS_ID) == []


def test_update_party_rejects_unknown_field(runtime_context, buyer):
    with pytest.raises(ValidationError):
        core_logic.update_buyer(runtime_context, BUSINESS_ID, buyer.id, colour="blue")


def test_parties_are_isolated_between_businesses(runtime_context, farmer):
    core_logic.create_business(runtime_context, 2, "Second Mandi")

    with pytest.raises(NotFound):
        core_logic.get_farmer(runtime_context, 2, farmer.id)
    assert core_logic.list_farmers(runtime_context, 2) == []


# ---------------------------------------------------------------------------
# Lots
# ---------------------------------------------------------------------------


def test_create_lot_derives_average_and_remaining(lot_factory):
    lot = lot_factory(bags=100)

    assert lot.average_bag_weight == Decimal("48.60")
    assert lot.remaining_bags == 100
    assert lot.version == 1
    assert lot.is_returned is False


def test_create_lot_validates_input(runtime_context, farmer):
    base = dict(farmer_id=farmer.id, crop="Potato", number_of_bags=10, size="Large", on=date(2024, 3, 1))

    with pytest.raises(ValidationError):
        core_logic.create_lot(runtime_context, BUSINESS_ID, core_logic.LotIntake(**{**base, "crop": "Tomato"}))
    with pytest.raises(ValidationError):
        core_logic.create_lot(runtime_context, BUSINESS_ID, core_logic.LotIntake(**{**base, "size": "Huge"}))
    with pytest.raises(ValidationError):
        core_logic.create_lot(runtime_context, BUSINESS_ID, core_logic.LotIntake(**{**base, "number_of_bags": 0}))
    with pytest.raises(ValidationError):
        core_logic.create_lot(
            runtime_context,
            BUSINESS_ID,
            core_logic.LotIntake(**{**base, "sample_bag_weight_1": Decimal("-1")}),
        )
    with pytest.raises(NotFound):
        core_logic.create_lot(runtime_context, BUSINESS_ID, core_logic.LotIntake(**{**base, "farmer_id": 77}))
    assert core_logic.list_lots(runtime_context, BUSINESS_ID) == []


def test_create_lot_rejects_inactive_farmer(runtime_context, farmer, lot_factory):
    core_logic.update_farmer(runtime_context, BUSINESS_ID, farmer.id, is_active=False)

    with pytest.raises(BusinessRuleViolation):
        lot_factory()


def test_list_lots_filters(runtime_context, lot_factory):
    potato = lot_factory(crop=constants.Crop.POTATO)
    onion = lot_factory(crop=constants.Crop.ONION, on=date(2024, 3, 2))
    inventory.mark_returned(runtime_context, BUSINESS_ID, potato.lot_id)

    assert core_logic.list_lots(runtime_context, BUSINESS_ID, crop="Onion") == [onion]
    assert [lot.lot_id for lot in core_logic.list_lots(runtime_context, BUSINESS_ID, on=date(2024, 3, 1))] == [
        potato.lot_id
    ]
    assert core_logic.list_lots(runtime_context, BUSINESS_ID, include_returned=False) == [onion]
    assert len(core_logic.list_lots(runtime_context, BUSINESS_ID, search="ramesh")) == 2


def test_lots_are_isolated_between_businesses(runtime_context, lot_factory):
    lot = lot_factory()
    core_logic.create_business(runtime_context, 2, "Second Mandi")

    with pytest.raises(NotFound):
        core_logic.get_lot(runtime_context, 2, lot.lot_id)
    assert core_logic.list_lots(runtime_context, 2) == []


# ---------------------------------------------------------------------------
# Cash entries
# ---------------------------------------------------------------------------


def test_record_cash_entry_allocates_code(runtime_context, buyer):
    entry = core_logic.record_cash_entry(
        runtime_context,
        BUSINESS_ID,
        core_logic.CashEntryCommand(
            entry_type="payment-in",
            amount=Decimal("300"),
            payment_mode="Online",
            buyer_id=buyer.id,
            on=date(2024, 3, 1),
            notes="UPI",
        ),
    )

    assert entry.cash_flow_id == "CF202403011"
    assert entry.amount == Decimal("300.00")
    assert entry.payment_mode == constants.PaymentMode.ONLINE.value
    assert core_logic.get_cash_entry(runtime_context, BUSINESS_ID, "CF202403011") == entry


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": Decimal("0")},
        {"entry_type": "refund"},
        {"payment_mode": "Barter"},
        {"farmer_id": None, "transaction_id": "TX202403011"},
    ],
)
def test_record_cash_entry_validates(runtime_context, farmer, overrides):
    values = dict(entry_type="payment-out", amount=Decimal("10"), farmer_id=farmer.id, on=date(2024, 3, 1))
    values.update(overrides)

    with pytest.raises(ValidationError):
        core_logic.record_cash_entry(runtime_context, BUSINESS_ID, core_logic.CashEntryCommand(**values))
    assert core_logic.list_cash_entries(runtime_context, BUSINESS_ID) == []


def test_record_cash_entry_rejects_two_parties(runtime_context, farmer, buyer):
    with pytest.raises(ValidationError):
        core_logic.record_cash_entry(
            runtime_context,
            BUSINESS_ID,
            core_logic.CashEntryCommand(
                entry_type="payment-in", amount=Decimal("10"), farmer_id=farmer.id, buyer_id=buyer.id
            ),
        )


def test_business_expense_is_stored_but_stays_off_ledgers(runtime_context, farmer, buyer):
    expense = core_logic.record_cash_entry(
        runtime_context,
        BUSINESS_ID,
        core_logic.CashEntryCommand(
            entry_type="payment-out", amount=Decimal("450"), on=date(2024, 3, 1), notes="Weighbridge repair"
        ),
    )

    assert expense.farmer_id is None
    assert expense.buyer_id is None
    assert core_logic.list_cash_entries(runtime_context, BUSINESS_ID) == [expense]
    assert ledger.farmer_ledger(runtime_context, BUSINESS_ID, farmer.id).cash_entries == ()
    assert ledger.buyer_ledger(runtime_context, BUSINESS_ID, buyer.id).total_paid == Decimal("0.00")
    assert ledger.total_due(ledger.dues_summary(runtime_context, BUSINESS_ID)) == Decimal("0.00")


def test_list_cash_entries_filters(runtime_context, farmer, buyer):
    def record(entry_type, amount, on, **party):
        return core_logic.record_cash_entry(
            runtime_context,
            BUSINESS_ID,
            core_logic.CashEntryCommand(entry_type=entry_type, amount=Decimal(amount), on=on, **party),
        )

    advance = record("payment-out", "500", date(2024, 3, 1), farmer_id=farmer.id)
    receipt = record("payment-in", "800", date(2024, 3, 2), buyer_id=buyer.id)
    expense = record("payment-out", "40", date(2024, 3, 3))

    def listed(**filters):
        return core_logic.list_cash_entries(runtime_context, BUSINESS_ID, **filters)

    assert listed(entry_type=constants.CashEntryType.PAYMENT_OUT) == [advance, expense]
    assert listed(entry_type="payment-in") == [receipt]
    assert listed(farmer_id=farmer.id) == [advance]
    assert listed(buyer_id=buyer.id) == [receipt]
    assert listed(date_from=date(2024, 3, 2)) == [receipt, expense]
    assert listed(date_from=date(2024, 3, 1), date_to=date(2024, 3, 2)) == [advance, receipt]
    assert listed(entry_type="payment-out", date_to=date(2024, 3, 2)) == [advance]

    with pytest.raises(ValidationError):
        listed(date_from=date(2024, 3, 3), date_to=date(2024, 3, 1))
    with pytest.raises(ValidationError):
        listed(entry_type="refund")


def test_cash_entry_linked_to_transaction_of_same_party(runtime_context, farmer, buyer, lot_factory):
    lot = lot_factory()
    bid = inventory.place_bid(
        runtime_context,
        BUSINESS_ID,
        inventory.BidCommand(lot_id=lot.lot_id, buyer_id=buyer.id, number_of_bags=10, price_per_kg=Decimal("20")),
    )
    transaction = charges.settle(runtime_context, BUSINESS_ID, charges.SettleCommand(bid_id=bid.id))
    other_buyer = core_logic.add_buyer(runtime_context, BUSINESS_ID, name="Other", on=date(2024, 3, 1))

    linked = core_logic.record_cash_entry(
        runtime_context,
        BUSINESS_ID,
        core_logic.CashEntryCommand(
            entry_type="payment-in", amount=Decimal("100"), buyer_id=buyer.id, transaction_id=transaction.transaction_id
        ),
    )
    assert linked.transaction_pk == transaction.id

    with pytest.raises(BusinessRuleViolation):
        core_logic.record_cash_entry(
            runtime_context,
            BUSINESS_ID,
            core_logic.CashEntryCommand(
                entry_type="payment-in",
                amount=Decimal("100"),
                buyer_id=other_buyer.id,
                transaction_id=transaction.transaction_id,
            ),
        )
    with pytest.raises(NotFound):
        core_logic.record_cash_entry(
            runtime_context,
            BUSINESS_ID,
            core_logic.CashEntryCommand(
                entry_type="payment-out", amount=Decimal("100"), farmer_id=farmer.id, transaction_id="TX209901011"
            ),
        )


def test_reverse_cash_entry_hides_entry_and_rejects_repeat(runtime_context, farmer):
    entry = core_logic.record_cash_entry(
        runtime_context,
        BUSINESS_ID,
        core_logic.CashEntryCommand(entry_type="payment-out", amount=Decimal("50"), farmer_id=farmer.id),
    )

    reversed_entry = core_logic.reverse_cash_entry(runtime_context, BUSINESS_ID, entry.cash_flow_id)

    assert reversed_entry.is_reversed is True
    assert core_logic.list_cash_entries(runtime_context, BUSINESS_ID) == []
    assert core_logic.list_cash_entries(runtime_context, BUSINESS_ID, include_reversed=True) == [reversed_entry]
    with pytest.raises(BusinessRuleViolation):
        core_logic.reverse_cash_entry(runtime_context, BUSINESS_ID, entry.cash_flow_id)
