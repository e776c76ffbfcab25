"""
Shared pytest fixtures for the TixFlow test suite.
"""

import pytest

from tixflow_core.ledger import TicketLedger

# Fixed clock: ledgers are created "now" for an event far in the future.
NOW = 1_700_000_000.0
EVENT_TS = 4_102_444_800  # 2100-01-01

ADMIN = "tAdmin"


def make_ledger(**overrides) -> TicketLedger:
    params = dict(
        event_name="Spring Gala",
        total_supply=10,
        event_timestamp=EVENT_TS,
        base_price=100,
        royalty_rate=10,
        administrator=ADMIN,
        check_invariants=True,
        now=NOW,
    )
    params.update(overrides)
    return TicketLedger(**params)


@pytest.fixture(params=[True, False], ids=["checked", "unchecked"])
def ledger(request):
    """Fresh ledger: 10 tickets, base price 100, 10% royalty, run with and without invariant checks."""
    return make_ledger(check_invariants=request.param)


@pytest.fixture
def funded_ledger(ledger):
    """Ledger with 10k in its reserve so royalties and refunds can be paid."""
    ledger.receive("tSponsor", 10_000, now=NOW)
    return ledger


@pytest.fixture
def stocked_ledger(funded_ledger):
    """Funded ledger with tickets 1-3 held by Alice, Bob and Carol (3 is not resellable)."""
    funded_ledger.issue("tAlice", "GA", True, caller=ADMIN, now=NOW)
    funded_ledger.issue("tBob", "VIP", True, caller=ADMIN, now=NOW)
    funded_ledger.issue("tCarol", "GA", False, caller=ADMIN, now=NOW)
    return funded_ledger
