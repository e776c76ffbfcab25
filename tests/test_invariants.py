"""
Tests for the invariant checker and the rollback it drives in the ledger.
"""

import unittest

from conftest import ADMIN, make_ledger
from tixflow_core.errors import InvariantViolation
from tixflow_core.funds import FundsLedger
from tixflow_core.invariants import InvariantChecker
from tixflow_core.ticket import Ticket


class TestInvariantChecker(unittest.TestCase):

    def setUp(self):
        self.ledger = make_ledger(check_invariants=False)
        self.ledger.receive("tSponsor", 1000)
        self.ledger.issue("tAlice", caller=ADMIN)
        self.ledger.issue("tBob", caller=ADMIN)
        self.checker = InvariantChecker()

    def test_clean_ledger_passes(self):
        self.checker.capture(self.ledger)
        ok, msg = self.checker.verify(self.ledger)
        self.assertTrue(ok, msg)

    def test_supply_cap(self):
        self.ledger.issued_count = self.ledger.total_supply + 1
        ok, msg = self.checker.verify(self.ledger)
        self.assertFalse(ok)
        self.assertIn("issued_count", msg)

    def test_issued_count_decrease(self):
        self.checker.capture(self.ledger)
        self.ledger.issued_count = 1
        ok, msg = self.checker.verify(self.ledger)
        self.assertFalse(ok)
        self.assertIn("decreased", msg)

    def test_index_disagreement(self):
        self.ledger.tickets[1].holder = "tMallory"
        ok, msg = self.checker.verify(self.ledger)
        self.assertFalse(ok)
        self.assertIn("indexed under", msg)

    def test_orphan_index_entry(self):
        del self.ledger.tickets[2]
        ok, _ = self.checker.verify(self.ledger)
        self.assertFalse(ok)

    def test_funds_conservation(self):
        self.ledger.funds.reserve += 1
        ok, msg = self.checker.verify(self.ledger)
        self.assertFalse(ok)
        self.assertIn("Reserve", msg)


class TestRollback(unittest.TestCase):

    def test_violating_mutation_is_rolled_back(self):
        led = make_ledger(check_invariants=True)
        led.issue("tAlice", caller=ADMIN)

        # Rewinding the issued count breaks the post-check.
        with self.assertRaises(InvariantViolation):
            with led._transaction("test"):
                led.issued_count = 0
        self.assertEqual(led.issued_count, 1)
        self.assertEqual(led.tickets_of("tAlice"), [1])

    def test_load_state_rejects_inconsistent_state(self):
        led = make_ledger()
        bad = [Ticket(ticket_id=5, price=100, holder="tAlice", resellable=True)]
        with self.assertRaises(InvariantViolation):
            led.load_state(1, bad, FundsLedger())
        self.assertEqual(led.issued_count, 0)
        self.assertEqual(led.tickets, {})

    def test_load_state_accepts_consistent_state(self):
        led = make_ledger()
        tickets = [
            Ticket(ticket_id=1, price=100, holder="tAlice", resellable=True),
            Ticket(ticket_id=3, price=250, holder="tAlice", resellable=False),
        ]
        funds = FundsLedger()
        funds.receive(500)
        led.load_state(3, tickets, funds)
        self.assertEqual(sorted(led.tickets_of("tAlice")), [1, 3])
        self.assertEqual(led.dynamic_price(), 130)


if __name__ == "__main__":
    unittest.main()
