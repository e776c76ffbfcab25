"""
Post-operation invariant checks for the TixFlow ledger.

  - issued_count never exceeds total_supply and never decreases
  - every live ticket id lies in 1..issued_count
  - every live ticket sits in its holder's index exactly once
  - every index entry points at a live ticket with that holder
  - reserve == total_received - total_paid, nothing negative

When ``check_invariants`` is enabled the ledger captures a snapshot before
each state change and runs these checks afterwards.  If any fails, the
change is rolled back and ``InvariantViolation`` is raised.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class LedgerSnapshot:
    """Counters captured before an operation."""
    issued_count: int = 0
    total_received: int = 0
    total_paid: int = 0


class InvariantChecker:

    def __init__(self):
        self._snapshot: LedgerSnapshot | None = None

    def capture(self, ledger) -> None:
        self._snapshot = LedgerSnapshot(
            issued_count=ledger.issued_count,
            total_received=ledger.funds.total_received,
            total_paid=ledger.funds.total_paid,
        )

    def verify(self, ledger) -> tuple[bool, str]:
        """Return (passed, error_message)."""
        errors: list[str] = []
        for check in (
            self._check_supply_cap,
            self._check_issued_monotonic,
            self._check_ticket_ids,
            self._check_index_agreement,
            self._check_funds,
        ):
            ok, msg = check(ledger)
            if not ok:
                errors.append(msg)
        if errors:
            return False, "; ".join(errors)
        return True, ""

    # ── individual checks ────────────────────────────────────────

    def _check_supply_cap(self, ledger) -> tuple[bool, str]:
        if not 0 <= ledger.issued_count <= ledger.total_supply:
            return False, (
                f"issued_count {ledger.issued_count} outside 0..{ledger.total_supply}"
            )
        return True, ""

    def _check_issued_monotonic(self, ledger) -> tuple[bool, str]:
        if self._snapshot and ledger.issued_count < self._snapshot.issued_count:
            return False, (
                f"issued_count decreased from {self._snapshot.issued_count} "
                f"to {ledger.issued_count}"
            )
        return True, ""

    def _check_ticket_ids(self, ledger) -> tuple[bool, str]:
        for tid, ticket in ledger.tickets.items():
            if tid != ticket.ticket_id or not 1 <= tid <= ledger.issued_count:
                return False, f"Ticket id {tid} out of range or mismatched"
        return True, ""

    def _check_index_agreement(self, ledger) -> tuple[bool, str]:
        index = ledger.holder_index
        if len(index) != len(ledger.tickets):
            return False, (
                f"Index holds {len(index)} ids but {len(ledger.tickets)} tickets exist"
            )
        for holder, ids in index.items():
            if len(ids) != len(set(ids)):
                return False, f"Duplicate ticket ids in index of {holder}"
            for tid in ids:
                ticket = ledger.tickets.get(tid)
                if ticket is None:
                    return False, f"Index of {holder} references missing ticket {tid}"
                if ticket.holder != holder:
                    return False, (
                        f"Ticket {tid} held by {ticket.holder} but indexed under {holder}"
                    )
        return True, ""

    def _check_funds(self, ledger) -> tuple[bool, str]:
        funds = ledger.funds
        if funds.reserve != funds.total_received - funds.total_paid:
            return False, "Reserve does not match received minus paid"
        if funds.reserve < 0 or any(b < 0 for b in funds.balances.values()):
            return False, "Negative reserve or payout balance"
        if self._snapshot and (
            funds.total_received < self._snapshot.total_received
            or funds.total_paid < self._snapshot.total_paid
        ):
            return False, "Fund totals decreased"
        return True, ""
