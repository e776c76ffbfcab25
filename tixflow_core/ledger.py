"""
Ticket ledger for TixFlow.

The ledger owns every ticket record, the reverse holder index, the supply
counters and the fund reserve.  It exposes:

  - issue      administrator mints the next ticket to a buyer
  - resell     the holder transfers a resellable ticket, paying a royalty
  - validate   administrator admission check (read-only, emits an event)
  - refund     administrator burns a ticket and repays its stored price
  - receive    fallback receipt of funds into the reserve
  - dynamic_price  quoted price for prospective issuance

State-changing calls are serialised on a re-entrant lock.  Every check runs
before anything is mutated, so a raised ``LedgerError`` always leaves the
ledger exactly as it was.

Usage:
    ledger = TicketLedger("Concert", 10, event_ts, 100, 10, administrator="tAdmin")
    tid = ledger.issue("tAlice", "VIP", True, caller="tAdmin")
    ledger.resell(tid, 200, "tBob", caller="tAlice")
"""

from __future__ import annotations

import contextlib
import dataclasses
import functools
import logging
import math
import threading
import time
from typing import Any

from tixflow_core.errors import (
    AlreadyValidated,
    InvalidConfiguration,
    InvalidRecipient,
    InvariantViolation,
    LedgerError,
    NotAdministrator,
    NotOwner,
    NotResellable,
    SoldOut,
    TransferFailed,
    UnknownTicket,
)
from tixflow_core.events import EventLog, EventType
from tixflow_core.funds import FundsLedger, require_amount
from tixflow_core.invariants import InvariantChecker
from tixflow_core.ticket import HolderIndex, Ticket
from tixflow_core.wallet import is_valid_identity

logger = logging.getLogger("tixflow.ledger")


def require_administrator(ledger: TicketLedger, caller: str) -> None:
    """Guard for administrator-only operations."""
    if caller != ledger.administrator:
        raise NotAdministrator(f"{caller!r} is not the ledger administrator")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _operation(name: str):
    """Log rejected calls at WARNING before re-raising them."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except LedgerError as exc:
                logger.warning(f"{name} rejected: {exc.code}: {exc.message}")
                raise
        return wrapper

    return decorator


class TicketLedger:
    """Issues, transfers, validates and refunds tickets for one event."""

    def __init__(
        self,
        event_name: str,
        total_supply: int,
        event_timestamp: float,
        base_price: int,
        royalty_rate: int,
        administrator: str,
        *,
        check_invariants: bool = False,
        single_use_admission: bool = False,
        now: float | None = None,
    ):
        now = now if now is not None else time.time()
        if not isinstance(event_name, str):
            raise InvalidConfiguration("event_name must be a string")
        if not _is_int(total_supply) or total_supply <= 0:
            raise InvalidConfiguration("total_supply must be a positive integer")
        if isinstance(event_timestamp, bool) or not isinstance(event_timestamp, (int, float)):
            raise InvalidConfiguration("event_timestamp must be a number")
        if not math.isfinite(event_timestamp):
            raise InvalidConfiguration("event_timestamp must be finite")
        if event_timestamp <= now:
            raise InvalidConfiguration("event_timestamp must lie in the future")
        if not _is_int(base_price) or base_price <= 0:
            raise InvalidConfiguration("base_price must be a positive integer")
        if not _is_int(royalty_rate) or not 0 <= royalty_rate <= 100:
            raise InvalidConfiguration("royalty_rate must be an integer in 0..100")
        if not is_valid_identity(administrator):
            raise InvalidConfiguration("administrator must be a valid identity")

        self._event_name = event_name
        self._total_supply = total_supply
        self._event_timestamp = event_timestamp
        self._base_price = base_price
        self._royalty_rate = royalty_rate
        self._administrator = administrator
        self.created_at = now

        self.single_use_admission = single_use_admission
        self.issued_count: int = 0
        self.tickets: dict[int, Ticket] = {}
        self.holder_index = HolderIndex()
        self.funds = FundsLedger()
        self.events = EventLog()

        self._lock = threading.RLock()
        self._checker = InvariantChecker() if check_invariants else None

        logger.info(
            f"Ledger created for '{event_name}': supply={total_supply} "
            f"base_price={base_price} royalty={royalty_rate}% admin={administrator}"
        )

    @classmethod
    def from_config(cls, event_cfg, ledger_cfg, administrator: str,
                    now: float | None = None) -> TicketLedger:
        """Build a ledger from ``EventConfig`` / ``LedgerConfig`` sections."""
        return cls(
            event_cfg.name,
            event_cfg.total_supply,
            event_cfg.event_timestamp,
            event_cfg.base_price,
            event_cfg.royalty_rate,
            administrator,
            check_invariants=ledger_cfg.check_invariants,
            single_use_admission=ledger_cfg.single_use_admission,
            now=now,
        )

    # ── immutable configuration ──────────────────────────────────

    @property
    def event_name(self) -> str:
        return self._event_name

    @property
    def total_supply(self) -> int:
        return self._total_supply

    @property
    def event_timestamp(self) -> float:
        return self._event_timestamp

    @property
    def base_price(self) -> int:
        return self._base_price

    @property
    def royalty_rate(self) -> int:
        return self._royalty_rate

    @property
    def administrator(self) -> str:
        return self._administrator

    @property
    def check_invariants(self) -> bool:
        return self._checker is not None

    # ── transactions ─────────────────────────────────────────────

    def _save_state(self) -> tuple:
        return (
            self.issued_count,
            {tid: dataclasses.replace(t) for tid, t in self.tickets.items()},
            self.holder_index.copy(),
            self.funds.copy(),
        )

    def _restore_state(self, saved: tuple) -> None:
        self.issued_count, self.tickets, self.holder_index, self.funds = saved

    @contextlib.contextmanager
    def _transaction(self, name: str):
        """Apply a mutation; roll it back if a post-condition fails."""
        with self._lock:
            if self._checker is None:
                yield
                return
            saved = self._save_state()
            self._checker.capture(self)
            try:
                yield
            except BaseException:
                self._restore_state(saved)
                raise
            ok, msg = self._checker.verify(self)
            if not ok:
                self._restore_state(saved)
                logger.error(f"{name} rolled back: {msg}")
                raise InvariantViolation(msg)

    def _live_ticket(self, ticket_id: int) -> Ticket:
        ticket = self.tickets.get(ticket_id) if _is_int(ticket_id) else None
        if ticket is None:
            raise UnknownTicket(f"Ticket {ticket_id} does not exist")
        return ticket

    # ── operations ───────────────────────────────────────────────

    @_operation("issue")
    def issue(
        self,
        buyer: str,
        category: str = "",
        resellable: bool = True,
        *,
        caller: str,
        payment: int | None = None,
        now: float | None = None,
    ) -> int:
        """
        Issue the next ticket to *buyer*. Returns the new ticket id.

        ``payment`` is the amount collected for the ticket (``base_price``
        unless given) and is credited to the reserve that funds refunds.
        Collecting less than ``base_price`` raises ``TransferFailed``.
        """
        with self._lock:
            require_administrator(self, caller)
            if self.issued_count >= self.total_supply:
                raise SoldOut(f"All {self.total_supply} tickets have been issued")
            if not is_valid_identity(buyer):
                raise InvalidRecipient(f"Invalid buyer {buyer!r}")
            if payment is None:
                payment = self.base_price
            require_amount(payment, "payment")
            if payment < self.base_price:
                raise TransferFailed(
                    f"Payment of {payment} does not cover base price {self.base_price}"
                )

            ticket_id = self.issued_count + 1
            ticket = Ticket(
                ticket_id=ticket_id,
                price=self.base_price,
                holder=buyer,
                resellable=bool(resellable),
                category=str(category),
                issued_at=now if now is not None else time.time(),
            )
            with self._transaction("issue"):
                self.funds.receive(payment)
                self.tickets[ticket_id] = ticket
                self.holder_index.add(buyer, ticket_id)
                self.issued_count = ticket_id

            self.events.emit(
                EventType.ISSUED, ticket_id, now=now,
                holder=buyer, price=ticket.price, payment=payment,
                category=ticket.category, resellable=ticket.resellable,
            )
            logger.info(f"Issued ticket {ticket_id} to {buyer} ({self.issued_count}/{self.total_supply})")
            return ticket_id

    @_operation("resell")
    def resell(
        self,
        ticket_id: int,
        resale_price: int,
        new_holder: str,
        *,
        caller: str,
        payment: int | None = None,
        now: float | None = None,
    ) -> int:
        """
        Transfer *ticket_id* from *caller* to *new_holder* at *resale_price*.

        ``payment`` is what the buyer tenders (``resale_price`` unless given).
        It is credited to the reserve, the royalty is paid from it to the
        administrator and the net proceeds (price minus royalty) to the
        seller.  Anything tendered above the price stays in the reserve.
        Tendering less than the price raises ``TransferFailed``.  Returns the
        royalty.
        """
        with self._lock:
            ticket = self._live_ticket(ticket_id)
            if caller != ticket.holder:
                raise NotOwner(f"{caller!r} does not hold ticket {ticket_id}")
            if not ticket.resellable:
                raise NotResellable(f"Ticket {ticket_id} is not resellable")
            if not is_valid_identity(new_holder):
                raise InvalidRecipient(f"Invalid recipient {new_holder!r}")
            require_amount(resale_price, "resale_price")
            if payment is None:
                payment = resale_price
            require_amount(payment, "payment")
            if payment < resale_price:
                raise TransferFailed(
                    f"Payment of {payment} does not cover resale price {resale_price} "
                    f"on ticket {ticket_id}"
                )

            royalty = resale_price * self.royalty_rate // 100
            proceeds = resale_price - royalty
            seller = ticket.holder
            with self._transaction("resell"):
                self.funds.receive(payment)
                self.funds.pay(self.administrator, royalty)
                self.funds.pay(seller, proceeds)
                self.holder_index.move(ticket_id, seller, new_holder)
                ticket.price = resale_price
                ticket.holder = new_holder

            self.events.emit(
                EventType.RESOLD, ticket_id, now=now,
                seller=seller, holder=new_holder, price=resale_price,
                royalty=royalty, proceeds=proceeds, payment=payment,
            )
            logger.info(
                f"Ticket {ticket_id} resold {seller} -> {new_holder} "
                f"at {resale_price} (royalty {royalty})"
            )
            return royalty

    @_operation("validate")
    def validate(self, ticket_id: int, *, caller: str, now: float | None = None) -> str:
        """Admission check. Returns the current holder; the ticket is not mutated."""
        with self._lock:
            require_administrator(self, caller)
            ticket = self._live_ticket(ticket_id)
            if self.single_use_admission and self.validation_count(ticket_id) > 0:
                raise AlreadyValidated(f"Ticket {ticket_id} has already been admitted")

            self.events.emit(EventType.VALIDATED, ticket_id, now=now, holder=ticket.holder)
            logger.info(f"Validated ticket {ticket_id} for {ticket.holder}")
            return ticket.holder

    @_operation("refund")
    def refund(self, ticket_id: int, *, caller: str, now: float | None = None) -> int:
        """Burn *ticket_id* and repay its stored price to the holder. Returns the amount."""
        with self._lock:
            require_administrator(self, caller)
            ticket = self._live_ticket(ticket_id)
            holder, amount = ticket.holder, ticket.price
            if not self.funds.can_pay(amount):
                raise TransferFailed(
                    f"Reserve of {self.funds.reserve} cannot cover refund of {amount}"
                )

            with self._transaction("refund"):
                self.funds.pay(holder, amount)
                self.holder_index.remove(holder, ticket_id)
                del self.tickets[ticket_id]

            self.events.emit(EventType.REFUNDED, ticket_id, now=now, holder=holder, amount=amount)
            logger.info(f"Refunded ticket {ticket_id}: {amount} to {holder}")
            return amount

    @_operation("receive")
    def receive(self, sender: str, amount: int, *, now: float | None = None) -> int:
        """Fallback receipt of funds into the reserve. Returns the new reserve."""
        with self._lock:
            require_amount(amount, "amount", allow_zero=False)
            with self._transaction("receive"):
                self.funds.receive(amount)
            self.events.emit(EventType.FUNDS_RECEIVED, None, now=now, sender=sender, amount=amount)
            logger.info(f"Received {amount} from {sender}; reserve {self.funds.reserve}")
            return self.funds.reserve

    # ── queries ──────────────────────────────────────────────────

    def dynamic_price(self) -> int:
        """Quoted price for the next issuance; rises as supply depletes."""
        return self.base_price + self.base_price * self.issued_count // self.total_supply

    def get_ticket(self, ticket_id: int) -> Ticket | None:
        """A copy of the live ticket record, or None."""
        with self._lock:
            ticket = self.tickets.get(ticket_id) if _is_int(ticket_id) else None
            return dataclasses.replace(ticket) if ticket is not None else None

    def ticket(self, ticket_id: int) -> Ticket:
        """Like ``get_ticket`` but raises ``UnknownTicket``."""
        with self._lock:
            return dataclasses.replace(self._live_ticket(ticket_id))

    def owner_of(self, ticket_id: int) -> str:
        with self._lock:
            return self._live_ticket(ticket_id).holder

    def tickets_of(self, holder: str) -> list[int]:
        with self._lock:
            return self.holder_index.tickets_of(holder)

    def holders(self) -> list[str]:
        with self._lock:
            return self.holder_index.holders()

    def validation_count(self, ticket_id: int) -> int:
        return self.events.count(ticket_id, EventType.VALIDATED)

    def balance_of(self, address: str) -> int:
        """Funds paid out to *address* (royalties and refunds)."""
        return self.funds.balance_of(address)

    @property
    def remaining(self) -> int:
        return self.total_supply - self.issued_count

    @property
    def sold_out(self) -> bool:
        return self.issued_count >= self.total_supply

    def status(self) -> dict:
        with self._lock:
            return {
                "event_name": self.event_name,
                "event_timestamp": self.event_timestamp,
                "administrator": self.administrator,
                "total_supply": self.total_supply,
                "issued_count": self.issued_count,
                "live_tickets": len(self.tickets),
                "remaining": self.remaining,
                "base_price": self.base_price,
                "royalty_rate": self.royalty_rate,
                "dynamic_price": self.dynamic_price(),
                "reserve": self.funds.reserve,
                "event_count": len(self.events),
                "single_use_admission": self.single_use_admission,
            }

    # ── persistence support ──────────────────────────────────────

    def load_state(
        self,
        issued_count: int,
        tickets: list[Ticket],
        funds: FundsLedger,
        events: list | None = None,
    ) -> None:
        """
        Replace the ledger's mutable state with previously persisted state.
        The holder index is rebuilt from the ticket records.  Raises
        ``InvariantViolation`` (and keeps the current state) if the loaded
        state is inconsistent.
        """
        with self._lock:
            saved = self._save_state()
            self.issued_count = issued_count
            self.tickets = {t.ticket_id: t for t in tickets}
            self.holder_index = HolderIndex()
            try:
                for t in sorted(tickets, key=lambda t: t.ticket_id):
                    self.holder_index.add(t.holder, t.ticket_id)
            except ValueError as exc:
                self._restore_state(saved)
                raise InvariantViolation(str(exc)) from exc
            self.funds = funds
            ok, msg = InvariantChecker().verify(self)
            if not ok:
                self._restore_state(saved)
                raise InvariantViolation(msg)
            if events is not None:
                self.events.restore(events)
