"""
Notification events emitted by the TixFlow ledger.

Every state-changing operation appends one event to the ledger's
``EventLog``.  The log is append-only and ordered by call sequence, so
external observers (indexers, admission terminals, the HTTP API) can poll
it with ``since()`` or register a callback with ``subscribe()``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger("tixflow.events")


class EventType(Enum):
    ISSUED = "TicketIssued"
    RESOLD = "TicketResold"
    VALIDATED = "TicketValidated"
    REFUNDED = "TicketRefunded"
    FUNDS_RECEIVED = "FundsReceived"


@dataclass
class LedgerEvent:
    """One entry in the event log."""
    sequence: int                # 1-based position in the log
    event_type: EventType
    ticket_id: int | None        # None for events not tied to a ticket
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        d = {
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
        }
        if self.ticket_id is not None:
            d["ticket_id"] = self.ticket_id
        d.update(self.data)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> LedgerEvent:
        data = {k: v for k, v in d.items()
                if k not in ("sequence", "event_type", "timestamp", "ticket_id")}
        return cls(
            sequence=int(d["sequence"]),
            event_type=EventType(d["event_type"]),
            ticket_id=d.get("ticket_id"),
            data=data,
            timestamp=float(d.get("timestamp", 0.0)),
        )


Listener = Callable[[LedgerEvent], Any]


class EventLog:
    """Append-only, sequence-ordered event log with listeners."""

    def __init__(self):
        self._events: list[LedgerEvent] = []
        self._by_ticket: dict[int, list[LedgerEvent]] = {}
        self._listeners: list[Listener] = []

    def emit(
        self,
        event_type: EventType,
        ticket_id: int | None = None,
        now: float | None = None,
        **data: Any,
    ) -> LedgerEvent:
        event = LedgerEvent(
            sequence=len(self._events) + 1,
            event_type=event_type,
            ticket_id=ticket_id,
            data=data,
            timestamp=now if now is not None else time.time(),
        )
        self._append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # A broken observer must not undo a committed transition.
                logger.exception(f"Event listener failed on {event.event_type.value}")
        return event

    def restore(self, events: list[LedgerEvent]) -> None:
        """Replace the log contents (used when loading from storage)."""
        self._events = []
        self._by_ticket = {}
        for event in sorted(events, key=lambda e: e.sequence):
            self._append(event)

    def _append(self, event: LedgerEvent) -> None:
        self._events.append(event)
        if event.ticket_id is not None:
            self._by_ticket.setdefault(event.ticket_id, []).append(event)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def since(self, sequence: int = 0, limit: int | None = None) -> list[LedgerEvent]:
        """Events with a sequence strictly greater than *sequence*."""
        out = self._events[max(sequence, 0):]
        return out[:limit] if limit is not None else list(out)

    def for_ticket(self, ticket_id: int) -> list[LedgerEvent]:
        return list(self._by_ticket.get(ticket_id, []))

    def count(self, ticket_id: int, event_type: EventType) -> int:
        return sum(1 for e in self._by_ticket.get(ticket_id, []) if e.event_type is event_type)

    @property
    def last_sequence(self) -> int:
        return len(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))
