"""
Fund accounting for the TixFlow ledger.

The ledger holds a reserve (payments collected at issuance and resale, plus
funds sent to it through fallback receipt).  Royalties and refunds are paid out of that
reserve into per-identity payout balances.  A payout the reserve cannot
cover raises ``TransferFailed`` before anything is debited.

Conservation: ``reserve == total_received - total_paid`` at all times.
"""

from __future__ import annotations

import logging

from tixflow_core.errors import InvalidAmount, TransferFailed

logger = logging.getLogger("tixflow.funds")


def require_amount(amount, name: str = "amount", allow_zero: bool = True) -> int:
    """Validate an integer amount; booleans and negatives are rejected."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{name} must be an integer")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount(f"{name} must be {'non-negative' if allow_zero else 'positive'}")
    return amount


class FundsLedger:
    """Reserve plus per-identity payout balances."""

    def __init__(self):
        self.reserve: int = 0
        self.total_received: int = 0
        self.total_paid: int = 0
        self.balances: dict[str, int] = {}

    def receive(self, amount: int) -> None:
        require_amount(amount)
        self.reserve += amount
        self.total_received += amount

    def can_pay(self, amount: int, pending_receipt: int = 0) -> bool:
        return 0 <= amount <= self.reserve + pending_receipt

    def pay(self, to: str, amount: int) -> None:
        """Move *amount* from the reserve to *to*'s payout balance."""
        require_amount(amount)
        if amount > self.reserve:
            raise TransferFailed(
                f"Reserve of {self.reserve} cannot cover payout of {amount}"
            )
        if amount == 0:
            return
        self.reserve -= amount
        self.total_paid += amount
        self.balances[to] = self.balances.get(to, 0) + amount
        logger.debug(f"Paid {amount} to {to}; reserve now {self.reserve}")

    def balance_of(self, address: str) -> int:
        return self.balances.get(address, 0)

    def copy(self) -> FundsLedger:
        clone = FundsLedger()
        clone.reserve = self.reserve
        clone.total_received = self.total_received
        clone.total_paid = self.total_paid
        clone.balances = dict(self.balances)
        return clone

    def to_dict(self) -> dict:
        return {
            "reserve": self.reserve,
            "total_received": self.total_received,
            "total_paid": self.total_paid,
            "balances": dict(self.balances),
        }
