"""Domain errors raised by the ledger, withdrawal and copy-trading services.

Each error carries the HTTP status it maps to and an optional payload that is
merged into the JSON error body, so a client can render an actionable message
(e.g. the user's available amount).
"""
from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    status_code = 400

    def __init__(self, message: str, **payload):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self) -> dict:
        body = {"detail": self.message}
        for k, v in self.payload.items():
            body[k] = float(v) if isinstance(v, Decimal) else v
        return body


class InvalidAmount(LedgerError):
    status_code = 400


class InsufficientBalance(LedgerError):
    status_code = 400

    def __init__(self, available: Decimal, requested: Decimal, locked: Optional[Decimal] = None):
        payload = {"available": available, "requested": requested}
        if locked is not None:
            payload["locked"] = locked
        super().__init__("Insufficient available balance", **payload)
        self.available = available
        self.requested = requested


class InvalidState(LedgerError):
    status_code = 409


class CapacityFilled(LedgerError):
    status_code = 409

    def __init__(self, message: str = "Trader capacity is full", remaining: int = 0):
        super().__init__(message, remaining=remaining)


class ClaimExpired(LedgerError):
    status_code = 410

    def __init__(self, message: str = "Claim window has expired"):
        super().__init__(message)


class DuplicatePosition(LedgerError):
    status_code = 409

    def __init__(self, message: str = "You are already copying this trader"):
        super().__init__(message)


class NotFound(LedgerError):
    status_code = 404


class FeatureDisabled(LedgerError):
    status_code = 404

    def __init__(self):
        super().__init__("Feature not available")


class OperationFailed(LedgerError):
    """A collaborator or compensation step failed. Never exposes internals."""
    status_code = 500

    def __init__(self, message: str = "Something went wrong. Please try again or contact support."):
        super().__init__(message)
