"""Command-line entry points for Mandi Ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the engine
modules. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import charges, core_logic, inventory, ledger, log
from .constants import BagSize, CashEntryType, ChargedTo, Crop, PartyKind, PaymentMode
from .errors import BusinessRuleViolation, NotFound
from .money import optional_decimal, quantize_money, to_decimal


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    persist: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="mandi-cli",
        description="Command-line tools for the Mandi Ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument(
        "--business-id",
        type=int,
        default=None,
        help="Business to act on (defaults to [Defaults] BusinessID).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as intake, bids and settlements."""
    specs = {
        "add-farmer": register_add_farmer_command(subparsers),
        "add-buyer": register_add_buyer_command(subparsers),
        "create-lot": register_create_lot_command(subparsers),
        "edit-lot": register_edit_lot_command(subparsers),
        "bid": register_bid_command(subparsers),
        "edit-bid": register_edit_bid_command(subparsers),
        "delete-bid": register_delete_bid_command(subparsers),
        "return-lot": register_return_lot_command(subparsers),
        "settle": register_settle_command(subparsers),
        "reverse": register_reverse_command(subparsers),
        "cash": register_cash_command(subparsers),
        "reverse-cash": register_reverse_cash_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as statements and reports."""
    specs = {
        "lots": register_lots_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "cash-entries": register_cash_entries_command(subparsers),
        "ledger": register_ledger_command(subparsers),
        "dues": register_dues_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_farmer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-farmer``."""
    name = "add-farmer"
    help_text = "Register a farmer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--village", default=None)
        parser.add_argument("--opening-balance", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_farmer)


def register_add_buyer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-buyer``."""
    name = "add-buyer"
    help_text = "Register a buyer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--opening-balance", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_buyer)


def register_create_lot_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-lot``."""
    name = "create-lot"
    help_text = "Record a farmer's consignment as a new lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--farmer-id", type=int, required=True)
        parser.add_argument("--crop", choices=[member.value for member in Crop], required=True)
        parser.add_argument("--bags", required=True)
        parser.add_argument("--size", choices=[member.value for member in BagSize], required=True)
        parser.add_argument("--variety", default=None)
        parser.add_argument("--sample-1", default=None, help="First sample bag weight in kg.")
        parser.add_argument("--sample-2", default=None, help="Second sample bag weight in kg.")
        parser.add_argument("--total-weight", default=None)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_lot)


def register_edit_lot_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-lot``."""
    name = "edit-lot"
    help_text = "Correct the intake details of a lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-id", required=True)
        parser.add_argument("--bags", default=None)
        parser.add_argument("--size", choices=[member.value for member in BagSize], default=None)
        parser.add_argument("--variety", default=None)
        parser.add_argument("--sample-1", default=None)
        parser.add_argument("--sample-2", default=None)
        parser.add_argument("--total-weight", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_lot)


def register_bid_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bid``."""
    name = "bid"
    help_text = "Place a buyer's bid on a lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-id", required=True)
        parser.add_argument("--buyer-id", type=int, required=True)
        parser.add_argument("--bags", required=True)
        parser.add_argument("--price", required=True, help="Price per kg.")
        parser.add_argument("--grade", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bid)


def register_edit_bid_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-bid``."""
    name = "edit-bid"
    help_text = "Change the bags, price or grade of a bid."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bid-id", type=int, required=True)
        parser.add_argument("--bags", default=None)
        parser.add_argument("--price", default=None)
        parser.add_argument("--grade", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_bid)


def register_delete_bid_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-bid``."""
    name = "delete-bid"
    help_text = "Delete a bid and return its bags to the lot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bid-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_bid)


def register_return_lot_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return-lot``."""
    name = "return-lot"
    help_text = "Mark a lot as returned to its farmer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--lot-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return_lot)


def register_settle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settle``."""
    name = "settle"
    help_text = "Settle a bid into a transaction."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bid-id", type=int, required=True)
        parser.add_argument(
            "--charged-to",
            choices=[member.value for member in ChargedTo],
            default=ChargedTo.BUYER.value,
        )
        parser.add_argument("--total-weight", default=None)
        parser.add_argument("--aadhat-percent", default=None)
        parser.add_argument("--mandi-percent", default=None)
        parser.add_argument("--hammali-per-bag", default=None)
        parser.add_argument("--grading-per-bag", default=None)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settle)


def register_reverse_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reverse``."""
    name = "reverse"
    help_text = "Reverse a transaction."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reverse)


def register_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cash``."""
    name = "cash"
    help_text = "Record money received or paid, for a party or as a business expense."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="entry_type", choices=[member.value for member in CashEntryType], required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--mode", choices=[member.value for member in PaymentMode], default=PaymentMode.CASH.value)
        party = parser.add_mutually_exclusive_group()
        party.add_argument("--farmer-id", type=int, default=None)
        party.add_argument("--buyer-id", type=int, default=None)
        parser.add_argument("--transaction-id", default=None)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cash)


def register_reverse_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reverse-cash``."""
    name = "reverse-cash"
    help_text = "Reverse a cash entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--cash-flow-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reverse_cash)


def register_lots_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``lots``."""
    name = "lots"
    help_text = "List lots with their remaining bags."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--crop", choices=[member.value for member in Crop], default=None)
        parser.add_argument("--date", type=date.fromisoformat, default=None)
        parser.add_argument("--search", default=None)
        parser.add_argument("--hide-returned", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_lots_report, persist=False)


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "List settlements, optionally for one party or date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--farmer-id", type=int, default=None)
        parser.add_argument("--buyer-id", type=int, default=None)
        parser.add_argument("--from", dest="date_from", type=date.fromisoformat, default=None)
        parser.add_argument("--to", dest="date_to", type=date.fromisoformat, default=None)
        parser.add_argument("--hide-reversed", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions_report, persist=False)


def register_cash_entries_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cash-entries``."""
    name = "cash-entries"
    help_text = "List cash entries, optionally by type, party or date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="entry_type", choices=[member.value for member in CashEntryType], default=None)
        parser.add_argument("--farmer-id", type=int, default=None)
        parser.add_argument("--buyer-id", type=int, default=None)
        parser.add_argument("--from", dest="date_from", type=date.fromisoformat, default=None)
        parser.add_argument("--to", dest="date_to", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cash_entries_report, persist=False)


def register_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Print the statement of a farmer or buyer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        party = parser.add_mutually_exclusive_group(required=True)
        party.add_argument("--farmer-id", type=int, default=None)
        party.add_argument("--buyer-id", type=int, default=None)
        parser.add_argument("--from", dest="date_from", type=date.fromisoformat, default=None)
        parser.add_argument("--to", dest="date_to", type=date.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger_report, persist=False)


def register_dues_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dues``."""
    name = "dues"
    help_text = "Print outstanding balances of all farmers and buyers."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=[member.value for member in PartyKind], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dues_report, persist=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def resolve_business_id(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Return ``--business-id`` or the configured default business."""
    business_id = getattr(args, "business_id", None)
    if business_id is None:
        business_id = context.settings.default_business_id
    return core_logic.require_business_id(business_id)


def translate_add_farmer(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-farmer request."""
    return {
        "name": args.name,
        "phone": args.phone,
        "village": args.village,
        "opening_balance": to_decimal(args.opening_balance, field="opening_balance"),
    }


def translate_add_buyer(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-buyer request."""
    return {
        "name": args.name,
        "phone": args.phone,
        "address": args.address,
        "opening_balance": to_decimal(args.opening_balance, field="opening_balance"),
    }


def translate_create_lot(args: argparse.Namespace) -> core_logic.LotIntake:
    """Translate CLI args into a lot intake object."""
    return core_logic.LotIntake(
        farmer_id=args.farmer_id,
        crop=Crop(args.crop),
        number_of_bags=core_logic.require_positive_bags(args.bags),
        size=BagSize(args.size),
        variety=args.variety,
        sample_bag_weight_1=optional_decimal(args.sample_1, field="sample_1"),
        sample_bag_weight_2=optional_decimal(args.sample_2, field="sample_2"),
        initial_total_weight=optional_decimal(args.total_weight, field="total_weight"),
        on=args.date,
    )


def translate_edit_lot(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into lot corrections; omitted flags stay unchanged."""
    candidates = {
        "number_of_bags": args.bags,
        "size": args.size,
        "variety": args.variety,
        "sample_bag_weight_1": args.sample_1,
        "sample_bag_weight_2": args.sample_2,
        "initial_total_weight": args.total_weight,
    }
    return {name: value for name, value in candidates.items() if value is not None}


def translate_bid(args: argparse.Namespace) -> inventory.BidCommand:
    """Translate CLI args into a bid command object."""
    return inventory.BidCommand(
        lot_id=args.lot_id,
        buyer_id=args.buyer_id,
        number_of_bags=core_logic.require_positive_bags(args.bags),
        price_per_kg=to_decimal(args.price, field="price"),
        grade=args.grade,
    )


def translate_edit_bid(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an edit-bid request."""
    return {
        "number_of_bags": core_logic.require_positive_bags(args.bags) if args.bags is not None else None,
        "price_per_kg": optional_decimal(args.price, field="price"),
        "grade": args.grade,
    }


def translate_settle(args: argparse.Namespace) -> charges.SettleCommand:
    """Translate CLI args into a settlement command object."""
    return charges.SettleCommand(
        bid_id=args.bid_id,
        charged_to=ChargedTo(args.charged_to),
        total_weight=optional_decimal(args.total_weight, field="total_weight"),
        aadhat_percent=optional_decimal(args.aadhat_percent, field="aadhat_percent"),
        mandi_percent=optional_decimal(args.mandi_percent, field="mandi_percent"),
        hammali_per_bag=optional_decimal(args.hammali_per_bag, field="hammali_per_bag"),
        grading_per_bag=optional_decimal(args.grading_per_bag, field="grading_per_bag"),
        on=args.date,
    )


def translate_cash(args: argparse.Namespace) -> core_logic.CashEntryCommand:
    """Translate CLI args into a cash entry command object."""
    return core_logic.CashEntryCommand(
        entry_type=CashEntryType(args.entry_type),
        amount=to_decimal(args.amount, field="amount"),
        payment_mode=PaymentMode(args.mode),
        farmer_id=args.farmer_id,
        buyer_id=args.buyer_id,
        transaction_id=args.transaction_id,
        on=args.date,
        notes=args.notes,
    )


def run_add_farmer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-farmer workflow."""
    farmer = core_logic.add_farmer(context, resolve_business_id(context, args), **translate_add_farmer(args))
    print(f"Added farmer {farmer.id} ({farmer.farmer_code})")
    return 0


def run_add_buyer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-buyer workflow."""
    buyer = core_logic.add_buyer(context, resolve_business_id(context, args), **translate_add_buyer(args))
    print(f"Added buyer {buyer.id} ({buyer.buyer_code})")
    return 0


def run_create_lot(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot intake workflow."""
    lot = core_logic.create_lot(context, resolve_business_id(context, args), translate_create_lot(args))
    print(f"Created lot {lot.lot_id} (serial {lot.serial_number}, {lot.number_of_bags} bags)")
    return 0


def run_edit_lot(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot correction workflow."""
    lot = inventory.update_lot(context, resolve_business_id(context, args), args.lot_id, **translate_edit_lot(args))
    print(f"Updated lot {lot.lot_id}: {lot.remaining_bags}/{lot.number_of_bags} bags, average {lot.average_bag_weight}")
    return 0


def run_bid(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bid placement workflow."""
    bid = inventory.place_bid(context, resolve_business_id(context, args), translate_bid(args))
    print(f"Placed bid {bid.id} for {bid.number_of_bags} bags at {bid.price_per_kg}/kg")
    return 0


def run_edit_bid(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bid edit workflow."""
    bid = inventory.edit_bid(context, resolve_business_id(context, args), args.bid_id, **translate_edit_bid(args))
    print(f"Updated bid {bid.id}: {bid.number_of_bags} bags at {bid.price_per_kg}/kg")
    return 0


def run_delete_bid(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bid deletion workflow."""
    inventory.delete_bid(context, resolve_business_id(context, args), args.bid_id)
    print(f"Deleted bid {args.bid_id}")
    return 0


def run_return_lot(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the lot return workflow."""
    lot = inventory.mark_returned(context, resolve_business_id(context, args), args.lot_id)
    print(f"Lot {lot.lot_id} marked as returned ({lot.remaining_bags} bags unsold)")
    return 0


def run_settle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow."""
    transaction = charges.settle(context, resolve_business_id(context, args), translate_settle(args))
    print(
        f"Settled {transaction.transaction_id}: gross {transaction.gross_amount}, "
        f"farmer payable {transaction.total_payable_to_farmer}, "
        f"buyer receivable {transaction.total_receivable_from_buyer}"
    )
    return 0


def run_reverse(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction reversal workflow."""
    transaction = charges.reverse_transaction(context, resolve_business_id(context, args), args.transaction_id)
    print(f"Reversed {transaction.transaction_id}")
    return 0


def run_cash(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cash entry workflow."""
    entry = core_logic.record_cash_entry(context, resolve_business_id(context, args), translate_cash(args))
    print(f"Recorded {entry.cash_flow_id}: {entry.entry_type} {entry.amount}")
    return 0


def run_reverse_cash(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cash entry reversal workflow."""
    entry = core_logic.reverse_cash_entry(context, resolve_business_id(context, args), args.cash_flow_id)
    print(f"Reversed {entry.cash_flow_id}")
    return 0


def run_lots_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the lots of the business."""
    lots = core_logic.list_lots(
        context,
        resolve_business_id(context, args),
        crop=Crop(args.crop) if args.crop else None,
        on=args.date,
        search=args.search,
        include_returned=not args.hide_returned,
    )
    for lot in lots:
        flag = " (returned)" if lot.is_returned else ""
        print(f"{lot.lot_id}\t{lot.date}\t{lot.crop}\t{lot.remaining_bags}/{lot.number_of_bags}{flag}")
    return 0


def run_transactions_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the settlements of the business."""
    transactions = charges.list_transactions(
        context,
        resolve_business_id(context, args),
        include_reversed=not args.hide_reversed,
        farmer_id=args.farmer_id,
        buyer_id=args.buyer_id,
        date_from=args.date_from,
        date_to=args.date_to,
    )
    for transaction in transactions:
        print(
            f"{transaction.transaction_id}\t{transaction.date}\t{transaction.status}\t"
            f"{quantize_money(transaction.total_payable_to_farmer)}\t{quantize_money(transaction.total_receivable_from_buyer)}"
        )
    return 0


def run_cash_entries_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the cash entries of the business."""
    entries = core_logic.list_cash_entries(
        context,
        resolve_business_id(context, args),
        entry_type=CashEntryType(args.entry_type) if args.entry_type else None,
        farmer_id=args.farmer_id,
        buyer_id=args.buyer_id,
        date_from=args.date_from,
        date_to=args.date_to,
    )
    for entry in entries:
        if entry.farmer_id is not None:
            party = f"farmer {entry.farmer_id}"
        elif entry.buyer_id is not None:
            party = f"buyer {entry.buyer_id}"
        else:
            party = "business"
        print(f"{entry.cash_flow_id}\t{entry.date}\t{entry.entry_type}\t{party}\t{quantize_money(entry.amount)}")
    return 0


def run_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the statement of one party."""
    kind = PartyKind.FARMER if args.farmer_id is not None else PartyKind.BUYER
    party_id = args.farmer_id if args.farmer_id is not None else args.buyer_id
    statement = ledger.ledger(
        context,
        resolve_business_id(context, args),
        kind,
        party_id,
        date_from=args.date_from,
        date_to=args.date_to,
    )
    print(f"{statement.party_code} {statement.party_name}")
    for entry in statement.entries:
        print(f"{entry.date or '':<10}\t{entry.kind}\t{entry.reference}\t{entry.obligation}\t{entry.payment}\t{entry.balance}")
    print(f"Balance: {statement.running_balance}")
    return 0


def run_dues_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dues summary."""
    dues = ledger.dues_summary(
        context,
        resolve_business_id(context, args),
        party_kind=PartyKind(args.kind) if args.kind else None,
    )
    for due in dues:
        print(f"{due.party_kind.value}\t{due.party_code}\t{due.party_name}\t{due.total_due}")
    print(f"Total: {ledger.total_due(dues)}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, NotFound):
        log.error("%s", error)
        return 4
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].persist:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
