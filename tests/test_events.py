"""
Tests for the ledger event log: ordering, listeners and serialization.
"""

import unittest

from tixflow_core.events import EventLog, EventType, LedgerEvent


class TestEventLog(unittest.TestCase):

    def setUp(self):
        self.log = EventLog()

    def test_sequence_numbers(self):
        a = self.log.emit(EventType.ISSUED, 1, holder="tAlice")
        b = self.log.emit(EventType.VALIDATED, 1, holder="tAlice")
        self.assertEqual((a.sequence, b.sequence), (1, 2))
        self.assertEqual(self.log.last_sequence, 2)
        self.assertEqual(len(self.log), 2)

    def test_since(self):
        for tid in (1, 2, 3):
            self.log.emit(EventType.ISSUED, tid)
        self.assertEqual([e.ticket_id for e in self.log.since(0)], [1, 2, 3])
        self.assertEqual([e.ticket_id for e in self.log.since(1)], [2, 3])
        self.assertEqual([e.ticket_id for e in self.log.since(1, limit=1)], [2])
        self.assertEqual(self.log.since(3), [])

    def test_for_ticket_and_count(self):
        self.log.emit(EventType.ISSUED, 1)
        self.log.emit(EventType.ISSUED, 2)
        self.log.emit(EventType.VALIDATED, 1)
        self.log.emit(EventType.VALIDATED, 1)
        self.log.emit(EventType.FUNDS_RECEIVED, None, amount=5)
        self.assertEqual(len(self.log.for_ticket(1)), 3)
        self.assertEqual(self.log.count(1, EventType.VALIDATED), 2)
        self.assertEqual(self.log.count(2, EventType.VALIDATED), 0)
        self.assertEqual(self.log.for_ticket(99), [])

    def test_explicit_timestamp(self):
        event = self.log.emit(EventType.ISSUED, 1, now=123.0)
        self.assertEqual(event.timestamp, 123.0)

    def test_listener_receives_events(self):
        seen = []
        self.log.subscribe(seen.append)
        self.log.emit(EventType.ISSUED, 1)
        self.log.unsubscribe(seen.append)
        self.log.emit(EventType.ISSUED, 2)
        self.assertEqual([e.ticket_id for e in seen], [1])

    def test_failing_listener_does_not_break_emit(self):
        def broken(_event):
            raise RuntimeError("boom")

        seen = []
        self.log.subscribe(broken)
        self.log.subscribe(seen.append)
        with self.assertLogs("tixflow.events", level="ERROR"):
            self.log.emit(EventType.REFUNDED, 4, amount=100)
        self.assertEqual(len(seen), 1)
        self.assertEqual(len(self.log), 1)

    def test_restore_orders_by_sequence(self):
        events = [
            LedgerEvent(2, EventType.VALIDATED, 1, {}, 2.0),
            LedgerEvent(1, EventType.ISSUED, 1, {"holder": "tAlice"}, 1.0),
        ]
        self.log.restore(events)
        self.assertEqual([e.sequence for e in self.log], [1, 2])
        self.assertEqual(self.log.count(1, EventType.VALIDATED), 1)
        nxt = self.log.emit(EventType.VALIDATED, 1)
        self.assertEqual(nxt.sequence, 3)


class TestLedgerEvent(unittest.TestCase):

    def test_to_dict_flattens_data(self):
        event = LedgerEvent(5, EventType.RESOLD, 3, {"price": 200, "royalty": 20}, 9.0)
        d = event.to_dict()
        self.assertEqual(d["event_type"], "TicketResold")
        self.assertEqual(d["ticket_id"], 3)
        self.assertEqual(d["royalty"], 20)

    def test_ticketless_event_omits_id(self):
        event = LedgerEvent(1, EventType.FUNDS_RECEIVED, None, {"amount": 10}, 1.0)
        self.assertNotIn("ticket_id", event.to_dict())

    def test_from_dict(self):
        d = {"sequence": 4, "event_type": "TicketRefunded", "ticket_id": 2,
             "timestamp": 7.5, "amount": 150, "holder": "tBob"}
        event = LedgerEvent.from_dict(d)
        self.assertIs(event.event_type, EventType.REFUNDED)
        self.assertEqual(event.data, {"amount": 150, "holder": "tBob"})
        self.assertEqual(event.timestamp, 7.5)


if __name__ == "__main__":
    unittest.main()
