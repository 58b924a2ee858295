"""Party statements, dues summary and payment-status allocation.

Every figure here is derived on demand from the ``Transactions`` and
``CashEntries`` sheets; nothing is stored. A single balance function serves
both the per-party statement and the business-wide dues summary, so the sum
of the individual ledgers always equals the summary total.

Sign convention: a farmer's balance is what the business owes the farmer, a
buyer's balance is what the buyer owes the business. Sales raise the
balance and cash entries lower it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from . import data_manager, log
from .constants import PartyKind, PaymentStatus
from .core_logic import (
    RuntimeContext,
    coerce_enum,
    get_buyer,
    get_farmer,
    in_date_range,
    require_business_id,
    require_date_range,
)
from .money import ZERO

Party = Union[data_manager.FarmerRow, data_manager.BuyerRow]


@dataclass(frozen=True)
class LedgerEntry:
    """One printable row of a statement with the balance after it."""

    date: Optional[date]
    kind: str
    reference: str
    obligation: Decimal
    payment: Decimal
    balance: Decimal


@dataclass(frozen=True)
class LedgerStatement:
    """Statement of one party over an optional inclusive date range."""

    party_kind: PartyKind
    party_id: int
    party_code: str
    party_name: str
    date_from: Optional[date]
    date_to: Optional[date]
    opening_balance: Decimal
    transactions: Tuple[data_manager.TransactionRow, ...]
    cash_entries: Tuple[data_manager.CashEntryRow, ...]
    entries: Tuple[LedgerEntry, ...]
    total_obligations: Decimal
    total_paid: Decimal
    running_balance: Decimal


@dataclass(frozen=True)
class PartyDue:
    """Outstanding balance of one party in the dues summary."""

    party_kind: PartyKind
    party_id: int
    party_code: str
    party_name: str
    opening_balance: Decimal
    total_obligations: Decimal
    total_paid: Decimal
    total_due: Decimal
    transaction_count: int


@dataclass(frozen=True)
class TransactionPayment:
    """How much of one transaction the party's cash has covered."""

    transaction_id: str
    date: date
    obligation: Decimal
    paid_amount: Decimal
    outstanding: Decimal
    status: PaymentStatus


def _obligation(transaction: data_manager.TransactionRow, kind: PartyKind) -> Decimal:
    if kind is PartyKind.FARMER:
        return transaction.total_payable_to_farmer
    return transaction.total_receivable_from_buyer


def _belongs(row: Union[data_manager.TransactionRow, data_manager.CashEntryRow], kind: PartyKind, party_id: int) -> bool:
    owner = row.farmer_id if kind is PartyKind.FARMER else row.buyer_id
    return owner == party_id


def party_balance(
    opening_balance: Decimal,
    transactions: Iterable[data_manager.TransactionRow],
    cash_entries: Iterable[data_manager.CashEntryRow],
    kind: PartyKind,
) -> Tuple[Decimal, Decimal, Decimal]:
    """Return ``(obligations, paid, balance)`` for already-selected rows.

    Reversed transactions and reversed cash entries are skipped.
    ``balance = opening + obligations - paid``.
    """
    obligations = sum(
        (_obligation(transaction, kind) for transaction in transactions if not transaction.is_reversed),
        ZERO,
    )
    paid = sum((entry.amount for entry in cash_entries if not entry.is_reversed), ZERO)
    return obligations, paid, opening_balance + obligations - paid


def _snapshot(
    context: RuntimeContext,
    business_id: int,
) -> Tuple[List[data_manager.TransactionRow], List[data_manager.CashEntryRow]]:
    with data_manager.workbook_lock(context.workbook):
        return (
            data_manager.read_transactions(context.workbook, business_id),
            data_manager.read_cash_entries(context.workbook, business_id),
        )


def _resolve_party(context: RuntimeContext, business_id: int, kind: PartyKind, party_id: int) -> Tuple[Party, str]:
    if kind is PartyKind.FARMER:
        farmer = get_farmer(context, business_id, party_id)
        return farmer, farmer.farmer_code
    buyer = get_buyer(context, business_id, party_id)
    return buyer, buyer.buyer_code


def _entries(
    opening_balance: Decimal,
    transactions: Sequence[data_manager.TransactionRow],
    cash_entries: Sequence[data_manager.CashEntryRow],
    kind: PartyKind,
) -> Tuple[LedgerEntry, ...]:
    rows: List[Tuple[date, int, int, str, str, Decimal, Decimal]] = []
    for transaction in transactions:
        rows.append(
            (transaction.date, 0, transaction.id, "sale", transaction.transaction_id, _obligation(transaction, kind), ZERO)
        )
    for entry in cash_entries:
        rows.append((entry.date, 1, entry.id, entry.entry_type, entry.cash_flow_id, ZERO, entry.amount))
    rows.sort(key=lambda row: (row[0], row[1], row[2]))

    balance = opening_balance
    result = [LedgerEntry(None, "opening", "", ZERO, ZERO, balance)]
    for when, _, _, kind_label, reference, obligation, payment in rows:
        balance = balance + obligation - payment
        result.append(LedgerEntry(when, kind_label, reference, obligation, payment, balance))
    return tuple(result)


def ledger(
    context: RuntimeContext,
    business_id: int,
    party_kind: PartyKind,
    party_id: int,
    *,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> LedgerStatement:
    """Build the statement of one farmer or buyer.

    Date filters are inclusive and apply independently to transactions and
    cash entries. The party's opening balance is the only carry-forward, so
    activity before ``date_from`` does not enter the balance.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        business_id (int): Business owning the party.
        party_kind (PartyKind): ``farmer`` or ``buyer``.
        party_id (int): Row id of the party.
        date_from (date | None): First day to include.
        date_to (date | None): Last day to include.

    Returns:
        LedgerStatement: Active rows in range and the running balance.

    Raises:
        ValidationError: If ``date_from`` is after ``date_to``.
        NotFound: If the party is unknown to ``business_id``.
    """
    business_id = require_business_id(business_id)
    kind = coerce_enum(PartyKind, party_kind, field_name="party kind")
    require_date_range(date_from, date_to)

    party, code = _resolve_party(context, business_id, kind, party_id)
    all_transactions, all_cash = _snapshot(context, business_id)

    transactions = sorted(
        (
            transaction
            for transaction in all_transactions
            if _belongs(transaction, kind, party.id)
            and not transaction.is_reversed
            and in_date_range(transaction.date, date_from, date_to)
        ),
        key=lambda transaction: (transaction.date, transaction.id),
    )
    cash_entries = sorted(
        (
            entry
            for entry in all_cash
            if _belongs(entry, kind, party.id)
            and not entry.is_reversed
            and in_date_range(entry.date, date_from, date_to)
        ),
        key=lambda entry: (entry.date, entry.id),
    )
    obligations, paid, balance = party_balance(party.opening_balance, transactions, cash_entries, kind)
    log.debug(
        "Built %s ledger for %s: %d transaction(s), %d cash entr(ies), balance %s",
        kind.value,
        code,
        len(transactions),
        len(cash_entries),
        balance,
    )
    return LedgerStatement(
        party_kind=kind,
        party_id=party.id,
        party_code=code,
        party_name=party.name,
        date_from=date_from,
        date_to=date_to,
        opening_balance=party.opening_balance,
        transactions=tuple(transactions),
        cash_entries=tuple(cash_entries),
        entries=_entries(party.opening_balance, transactions, cash_entries, kind),
        total_obligations=obligations,
        total_paid=paid,
        running_balance=balance,
    )


def farmer_ledger(context: RuntimeContext, business_id: int, farmer_id: int, **kwargs) -> LedgerStatement:
    return ledger(context, business_id, PartyKind.FARMER, farmer_id, **kwargs)


def buyer_ledger(context: RuntimeContext, business_id: int, buyer_id: int, **kwargs) -> LedgerStatement:
    return ledger(context, business_id, PartyKind.BUYER, buyer_id, **kwargs)


def dues_summary(
    context: RuntimeContext,
    business_id: int,
    *,
    party_kind: Optional[PartyKind] = None,
) -> List[PartyDue]:
    """Return the outstanding balance of every farmer and buyer.

    Inactive parties are included because they can still carry a balance.
    Farmers come first, then buyers, each in registration order.
    """
    business_id = require_business_id(business_id)
    kinds = (
        [coerce_enum(PartyKind, party_kind, field_name="party kind")]
        if party_kind is not None
        else [PartyKind.FARMER, PartyKind.BUYER]
    )

    with data_manager.workbook_lock(context.workbook):
        transactions, cash_entries = _snapshot(context, business_id)
        parties = {
            PartyKind.FARMER: data_manager.read_farmers(context.workbook, business_id),
            PartyKind.BUYER: data_manager.read_buyers(context.workbook, business_id),
        }

    result: List[PartyDue] = []
    for kind in kinds:
        for party in parties[kind]:
            own_transactions = [row for row in transactions if _belongs(row, kind, party.id)]
            own_cash = [row for row in cash_entries if _belongs(row, kind, party.id)]
            obligations, paid, balance = party_balance(party.opening_balance, own_transactions, own_cash, kind)
            result.append(
                PartyDue(
                    party_kind=kind,
                    party_id=party.id,
                    party_code=party.farmer_code if kind is PartyKind.FARMER else party.buyer_code,
                    party_name=party.name,
                    opening_balance=party.opening_balance,
                    total_obligations=obligations,
                    total_paid=paid,
                    total_due=balance,
                    transaction_count=sum(1 for row in own_transactions if not row.is_reversed),
                )
            )
    return result


def total_due(dues: Iterable[PartyDue], party_kind: Optional[PartyKind] = None) -> Decimal:
    """Sum ``total_due`` over a dues summary, optionally for one party kind."""
    return sum(
        (due.total_due for due in dues if party_kind is None or due.party_kind is party_kind),
        ZERO,
    )


def payment_status(
    context: RuntimeContext,
    business_id: int,
    party_kind: PartyKind,
    party_id: int,
) -> List[TransactionPayment]:
    """Allocate a party's cash to its transactions, oldest first.

    The party's active cash total is applied to active transactions ordered
    by date and id. Each transaction is ``paid`` when fully covered,
    ``partial`` when partly covered and ``due`` otherwise. Nothing is
    written back to the workbook.
    """
    business_id = require_business_id(business_id)
    kind = coerce_enum(PartyKind, party_kind, field_name="party kind")
    party, _ = _resolve_party(context, business_id, kind, party_id)
    all_transactions, all_cash = _snapshot(context, business_id)

    transactions = sorted(
        (row for row in all_transactions if _belongs(row, kind, party.id) and not row.is_reversed),
        key=lambda row: (row.date, row.id),
    )
    available = sum(
        (row.amount for row in all_cash if _belongs(row, kind, party.id) and not row.is_reversed),
        ZERO,
    )
    available = max(available, ZERO)

    result: List[TransactionPayment] = []
    for transaction in transactions:
        obligation = _obligation(transaction, kind)
        paid = min(available, obligation)
        available -= paid
        if paid >= obligation:
            status = PaymentStatus.PAID
        elif paid > ZERO:
            status = PaymentStatus.PARTIAL
        else:
            status = PaymentStatus.DUE
        result.append(
            TransactionPayment(
                transaction_id=transaction.transaction_id,
                date=transaction.date,
                obligation=obligation,
                paid_amount=paid,
                outstanding=obligation - paid,
                status=status,
            )
        )
    return result


__all__ = [
    "LedgerEntry",
    "LedgerStatement",
    "PartyDue",
    "TransactionPayment",
    "party_balance",
    "ledger",
    "farmer_ledger",
    "buyer_ledger",
    "dues_summary",
    "total_due",
    "payment_status",
]
