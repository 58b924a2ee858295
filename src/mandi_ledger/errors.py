"""Exception taxonomy shared by the engine modules and the CLI."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for malformed or missing input before any state is touched."""


class InsufficientCapacity(BusinessRuleViolation):
    """Raised when a bid would consume more bags than a lot has left."""

    def __init__(self, lot_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Lot '{lot_id}' has {available} bag(s) remaining; {requested} requested"
        )
        self.lot_id = lot_id
        self.requested = requested
        self.available = available


class DuplicateIdentifier(BusinessRuleViolation):
    """Raised when an insert collides with a uniqueness constraint."""


class AlreadySettled(DuplicateIdentifier):
    """Raised when a bid already has an active transaction."""


class NotFound(BusinessRuleViolation, KeyError):
    """Raised when a referenced row is unknown or belongs to another business."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message instead.
        return str(self.args[0]) if self.args else ""


class StaleVersion(Exception):
    """Raised by the DAL when a compare-and-swap sees a newer row version."""


class InvariantViolation(RuntimeError):
    """Raised when a computation would corrupt the ledger; never user-facing."""


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "InsufficientCapacity",
    "DuplicateIdentifier",
    "AlreadySettled",
    "NotFound",
    "StaleVersion",
    "InvariantViolation",
]
