from decimal import Decimal
from typing import Any, Dict


class LedgerError(Exception):
    """Base exception for ledger failures. `kind` is stable and machine-checkable."""

    kind = "LedgerError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class InvalidInput(LedgerError):
    """Raised before any I/O when a request is malformed"""
    kind = "InvalidInput"


class PricingUnavailable(LedgerError):
    """Raised when the oracle cannot price a buy. Retryable by the caller."""
    kind = "PricingUnavailable"

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"Could not get a price for {symbol}. Please try again.")


class AccountNotFound(LedgerError):
    kind = "AccountNotFound"

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"Account not found for user {user_id}")


class InsufficientFunds(LedgerError):
    kind = "InsufficientFunds"

    def __init__(self, balance: Decimal, required: Decimal):
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient funds. You need ${required:.2f} but only have ${balance:.2f}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"current_balance": str(self.balance), "required_amount": str(self.required)})
        return data


class PositionNotFound(LedgerError):
    kind = "PositionNotFound"

    def __init__(self, position_id: int):
        self.position_id = position_id
        super().__init__("Investment not found")


class InsufficientShares(LedgerError):
    kind = "InsufficientShares"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(f"Cannot sell {requested} shares. You only own {available} shares.")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"requested": self.requested, "available": self.available})
        return data


class StorageFailure(LedgerError):
    """Raised when a commit fails. Nothing from the operation was applied."""
    kind = "StorageFailure"
