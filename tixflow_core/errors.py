"""
Error taxonomy for the TixFlow ticket ledger.

Every failure is raised synchronously to the caller and leaves the ledger
exactly as it was before the call.  Each error carries a stable ``code``
string that the HTTP layer and the event log use instead of class names.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger failures."""

    code = "LedgerError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class InvalidConfiguration(LedgerError):
    """Creation-time parameter violation; no ledger is produced."""
    code = "InvalidConfiguration"


class NotAdministrator(LedgerError):
    code = "NotAdministrator"


class SoldOut(LedgerError):
    code = "SoldOut"


class NotOwner(LedgerError):
    code = "NotOwner"


class NotResellable(LedgerError):
    code = "NotResellable"


class InvalidRecipient(LedgerError):
    code = "InvalidRecipient"


class UnknownTicket(LedgerError):
    """Ticket was never issued or has been refunded."""
    code = "UnknownTicket"


class InvalidAmount(LedgerError):
    code = "InvalidAmount"


class TransferFailed(LedgerError):
    """The reserve cannot cover a royalty or refund payout."""
    code = "TransferFailed"


class AlreadyValidated(LedgerError):
    """Raised only under the single-use admission policy."""
    code = "AlreadyValidated"


class InvariantViolation(LedgerError):
    code = "InvariantViolation"
