"""
SQLite-based persistence for TixFlow ledger state.

Stores the ledger's immutable configuration, live ticket records, fund
balances and the event log so that a ledger can be rebuilt after restart.
The holder index is not stored; it is rebuilt from the ticket records.

Usage:
    store = LedgerStore("data/tixflow.db")
    store.snapshot_ledger(ledger)
    ...
    ledger = store.restore_ledger()
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from tixflow_core.events import LedgerEvent
from tixflow_core.funds import FundsLedger
from tixflow_core.ticket import Ticket

logger = logging.getLogger("tixflow.storage")


class LedgerStore:
    """Thin SQLite wrapper for persisting ledger state."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/tixflow.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS ledger_config (
                id               INTEGER PRIMARY KEY CHECK (id = 1),
                event_name       TEXT NOT NULL,
                total_supply     INTEGER NOT NULL,
                event_timestamp  REAL NOT NULL,
                base_price       INTEGER NOT NULL,
                royalty_rate     INTEGER NOT NULL,
                administrator    TEXT NOT NULL,
                created_at       REAL NOT NULL,
                issued_count     INTEGER NOT NULL DEFAULT 0,
                single_use       INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS tickets (
                ticket_id   INTEGER PRIMARY KEY,
                price       INTEGER NOT NULL,
                holder      TEXT NOT NULL,
                resellable  INTEGER NOT NULL,
                category    TEXT NOT NULL DEFAULT '',
                issued_at   REAL NOT NULL
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_tickets_holder ON tickets(holder)")
        c.execute("""
            CREATE TABLE IF NOT EXISTS funds (
                id              INTEGER PRIMARY KEY CHECK (id = 1),
                reserve         INTEGER NOT NULL,
                total_received  INTEGER NOT NULL,
                total_paid      INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                address  TEXT PRIMARY KEY,
                amount   INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS events (
                sequence    INTEGER PRIMARY KEY,
                event_type  TEXT NOT NULL,
                ticket_id   INTEGER,
                timestamp   REAL NOT NULL,
                data_json   TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade TixFlow."
            )

    @property
    def schema_version(self) -> int:
        row = self._conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
        return row["version"]

    # ── reads ────────────────────────────────────────────────────

    def has_ledger(self) -> bool:
        return self._conn.execute(
            "SELECT 1 FROM ledger_config WHERE id = 1"
        ).fetchone() is not None

    def load_config_row(self) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM ledger_config WHERE id = 1").fetchone()
        return dict(row) if row else None

    def load_tickets(self) -> list[Ticket]:
        rows = self._conn.execute("SELECT * FROM tickets ORDER BY ticket_id").fetchall()
        return [Ticket.from_dict(dict(r)) for r in rows]

    def load_funds(self) -> FundsLedger:
        funds = FundsLedger()
        row = self._conn.execute("SELECT * FROM funds WHERE id = 1").fetchone()
        if row is not None:
            funds.reserve = row["reserve"]
            funds.total_received = row["total_received"]
            funds.total_paid = row["total_paid"]
        for r in self._conn.execute("SELECT address, amount FROM balances"):
            funds.balances[r["address"]] = r["amount"]
        return funds

    def load_events(self, since: int = 0) -> list[LedgerEvent]:
        rows = self._conn.execute(
            "SELECT * FROM events WHERE sequence > ? ORDER BY sequence", (since,)
        ).fetchall()
        events = []
        for r in rows:
            d = json.loads(r["data_json"])
            d.update(sequence=r["sequence"], event_type=r["event_type"],
                     timestamp=r["timestamp"])
            if r["ticket_id"] is not None:
                d["ticket_id"] = r["ticket_id"]
            events.append(LedgerEvent.from_dict(d))
        return events

    # ── snapshot / restore ───────────────────────────────────────

    def snapshot_ledger(self, ledger: Any) -> None:
        """
        Write the full ledger state in a single transaction, so a crash
        mid-write never leaves a partial snapshot behind.
        """
        c = self._conn
        with ledger._lock:
            c.execute("BEGIN IMMEDIATE")
            try:
                c.execute(
                    """INSERT OR REPLACE INTO ledger_config
                       (id, event_name, total_supply, event_timestamp, base_price,
                        royalty_rate, administrator, created_at, issued_count, single_use)
                       VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (ledger.event_name, ledger.total_supply, ledger.event_timestamp,
                     ledger.base_price, ledger.royalty_rate, ledger.administrator,
                     ledger.created_at, ledger.issued_count,
                     int(ledger.single_use_admission)),
                )
                # Refunded tickets must disappear, so the table is rewritten.
                c.execute("DELETE FROM tickets")
                c.executemany(
                    """INSERT INTO tickets
                       (ticket_id, price, holder, resellable, category, issued_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    [(t.ticket_id, t.price, t.holder, int(t.resellable),
                      t.category, t.issued_at) for t in ledger.tickets.values()],
                )
                funds = ledger.funds
                c.execute(
                    """INSERT OR REPLACE INTO funds
                       (id, reserve, total_received, total_paid) VALUES (1, ?, ?, ?)""",
                    (funds.reserve, funds.total_received, funds.total_paid),
                )
                c.execute("DELETE FROM balances")
                c.executemany(
                    "INSERT INTO balances (address, amount) VALUES (?, ?)",
                    list(funds.balances.items()),
                )
                # The log is append-only: only new sequences are written.
                row = c.execute("SELECT MAX(sequence) AS m FROM events").fetchone()
                stored = row["m"] or 0
                c.executemany(
                    """INSERT INTO events (sequence, event_type, ticket_id, timestamp, data_json)
                       VALUES (?, ?, ?, ?, ?)""",
                    [(e.sequence, e.event_type.value, e.ticket_id, e.timestamp,
                      json.dumps(e.data, default=str))
                     for e in ledger.events.since(stored)],
                )
                c.execute("COMMIT")
            except Exception:
                c.execute("ROLLBACK")
                raise
        logger.debug(
            f"Snapshot written: {len(ledger.tickets)} tickets, {len(ledger.events)} events"
        )

    def restore_ledger(self, check_invariants: bool = False):
        """
        Rebuild a ``TicketLedger`` from the database.  Returns None if no
        ledger has been stored yet.
        """
        from tixflow_core.ledger import TicketLedger

        cfg = self.load_config_row()
        if cfg is None:
            return None
        ledger = TicketLedger(
            cfg["event_name"],
            cfg["total_supply"],
            cfg["event_timestamp"],
            cfg["base_price"],
            cfg["royalty_rate"],
            cfg["administrator"],
            check_invariants=check_invariants,
            single_use_admission=bool(cfg["single_use"]),
            # creation-time validation is replayed against the original clock
            now=cfg["created_at"],
        )
        ledger.load_state(
            cfg["issued_count"],
            self.load_tickets(),
            self.load_funds(),
            self.load_events(),
        )
        logger.info(
            f"Restored ledger '{ledger.event_name}': {len(ledger.tickets)} live tickets, "
            f"{ledger.issued_count}/{ledger.total_supply} issued"
        )
        return ledger

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
