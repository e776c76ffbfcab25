"""
Tests for SQLite persistence layer (storage.py).

Covers:
  - Schema creation and version tracking
  - snapshot_ledger / restore_ledger roundtrip
  - Refunded tickets disappear from the stored table
  - Event log is appended incrementally
  - Empty database and context manager lifecycle
"""

from __future__ import annotations

import os

import pytest

from conftest import ADMIN, NOW, make_ledger
from tixflow_core.errors import UnknownTicket
from tixflow_core.events import EventType
from tixflow_core.storage import LedgerStore


@pytest.fixture
def store(tmp_path):
    """Fresh LedgerStore in a temp directory."""
    s = LedgerStore(str(tmp_path / "test.db"))
    yield s
    s.close()


@pytest.fixture
def busy_ledger():
    led = make_ledger()
    led.receive("tSponsor", 5_000, now=NOW)
    led.issue("tAlice", "VIP", True, caller=ADMIN, now=NOW)
    led.issue("tBob", "GA", False, caller=ADMIN, now=NOW)
    led.issue("tAlice", "GA", True, caller=ADMIN, now=NOW)
    led.resell(1, 300, "tCarol", caller="tAlice", now=NOW)
    led.validate(2, caller=ADMIN, now=NOW)
    led.refund(3, caller=ADMIN, now=NOW)
    return led


# ═══════════════════════════════════════════════════════════════════
#  Schema
# ═══════════════════════════════════════════════════════════════════

class TestSchema:
    def test_tables_created(self, store):
        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        names = {r["name"] for r in tables}
        assert {"ledger_config", "tickets", "funds", "balances",
                "events", "schema_version"} <= names

    def test_wal_mode_enabled(self, store):
        mode = store._conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_schema_version(self, store):
        assert store.schema_version == LedgerStore.CURRENT_SCHEMA_VERSION

    def test_newer_schema_rejected(self, tmp_path):
        path = str(tmp_path / "future.db")
        s = LedgerStore(path)
        s._conn.execute("UPDATE schema_version SET version = 99 WHERE id = 1")
        s.close()
        with pytest.raises(RuntimeError):
            LedgerStore(path)

    def test_directory_created_if_missing(self, tmp_path):
        deep_path = str(tmp_path / "a" / "b" / "c" / "test.db")
        s = LedgerStore(deep_path)
        assert os.path.isfile(deep_path)
        s.close()


# ═══════════════════════════════════════════════════════════════════
#  Snapshot / restore
# ═══════════════════════════════════════════════════════════════════

class TestSnapshotRestore:
    def test_empty_store(self, store):
        assert not store.has_ledger()
        assert store.restore_ledger() is None

    def test_roundtrip(self, store, busy_ledger):
        store.snapshot_ledger(busy_ledger)
        assert store.has_ledger()

        restored = store.restore_ledger(check_invariants=True)
        assert restored.event_name == busy_ledger.event_name
        assert restored.administrator == ADMIN
        assert restored.issued_count == 3
        assert restored.owner_of(1) == "tCarol"
        assert restored.ticket(1).price == 300
        assert restored.ticket(2).resellable is False
        assert restored.get_ticket(3) is None
        assert restored.tickets_of("tCarol") == [1]
        assert restored.balance_of(ADMIN) == 30
        assert restored.balance_of("tAlice") == 370
        assert restored.funds.reserve == busy_ledger.funds.reserve
        assert restored.validation_count(2) == 1
        assert len(restored.events) == len(busy_ledger.events)
        assert restored.dynamic_price() == busy_ledger.dynamic_price()

    def test_restored_ledger_keeps_working(self, store, busy_ledger):
        store.snapshot_ledger(busy_ledger)
        restored = store.restore_ledger()
        assert restored.issue("tDave", caller=ADMIN) == 4
        with pytest.raises(UnknownTicket):
            restored.validate(3, caller=ADMIN)
        assert restored.events.since(0)[-1].sequence == len(busy_ledger.events) + 1

    def test_refund_removes_stored_ticket(self, store, busy_ledger):
        store.snapshot_ledger(busy_ledger)
        busy_ledger.refund(1, caller=ADMIN)
        store.snapshot_ledger(busy_ledger)
        ids = [t.ticket_id for t in store.load_tickets()]
        assert ids == [2]

    def test_events_appended_incrementally(self, store, busy_ledger):
        store.snapshot_ledger(busy_ledger)
        first = len(store.load_events())
        busy_ledger.validate(2, caller=ADMIN)
        store.snapshot_ledger(busy_ledger)
        events = store.load_events()
        assert len(events) == first + 1
        assert events[-1].event_type is EventType.VALIDATED
        assert [e.sequence for e in store.load_events(since=first)] == [first + 1]

    def test_event_data_preserved(self, store, busy_ledger):
        store.snapshot_ledger(busy_ledger)
        resold = [e for e in store.load_events() if e.event_type is EventType.RESOLD]
        assert resold[0].data["royalty"] == 30
        assert resold[0].data["seller"] == "tAlice"

    def test_single_use_flag_persisted(self, store):
        led = make_ledger(single_use_admission=True)
        store.snapshot_ledger(led)
        assert store.restore_ledger().single_use_admission is True

    def test_restore_past_event(self, store):
        # Created before the event; restoring afterwards must still work.
        led = make_ledger(event_timestamp=NOW + 10)
        store.snapshot_ledger(led)
        restored = store.restore_ledger()
        assert restored.event_timestamp == NOW + 10


class TestLifecycle:
    def test_context_manager(self, tmp_path):
        path = str(tmp_path / "ctx.db")
        with LedgerStore(path) as s:
            s.snapshot_ledger(make_ledger())
        with LedgerStore(path) as s:
            assert s.has_ledger()
