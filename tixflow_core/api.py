"""
REST / HTTP API for a TixFlow ledger.

Built on ``aiohttp``.  The server process holds the administrator identity;
administrator endpoints are unlocked with the ``X-Admin-Key`` header.

Endpoints
---------
GET  /health                          Liveness + basic counters
GET  /status                          Ledger summary
GET  /price                           Dynamic price for the next issuance
GET  /tickets/{ticket_id}             Ticket record (+ signing nonce)
GET  /holders/{address}/tickets       Ticket ids held by an address
GET  /balances/{address}              Funds paid out to an address
GET  /events?since=N&limit=M          Event log page
POST /tickets                         Issue a ticket            (admin)
POST /tickets/{ticket_id}/validate    Admission check           (admin)
POST /tickets/{ticket_id}/refund      Refund and burn a ticket  (admin)
POST /tickets/{ticket_id}/resell      Signed resale by the current holder
POST /funds                           Fallback receipt into the reserve (admin)
POST /admin/log_level                 Change log level at runtime (admin)

Resale requests are authenticated by signature: the caller is the address
derived from ``public_key`` and ``signature`` must cover
``resale_message(ticket_id, resale_price, new_holder, nonce)``, where
``nonce`` is the ticket's current event count (see GET /tickets/{id}).
The buyer tenders exactly ``resale_price``; the ledger splits it into the
royalty and the seller's proceeds.

Usage:
    api = APIServer(ledger, host="127.0.0.1", port=8080, api_config=cfg.api)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import sqlite3
import time
from typing import TYPE_CHECKING, Any

from aiohttp import web

from tixflow_core.errors import (
    AlreadyValidated,
    InvariantViolation,
    LedgerError,
    NotAdministrator,
    NotOwner,
    SoldOut,
    TransferFailed,
    UnknownTicket,
)
from tixflow_core.logging_config import set_level
from tixflow_core.wallet import derive_address, verify

if TYPE_CHECKING:
    from tixflow_core.config import APIConfig
    from tixflow_core.ledger import TicketLedger
    from tixflow_core.storage import LedgerStore

logger = logging.getLogger("tixflow.api")

_MAX_EVENT_PAGE = 1000

_ERROR_STATUS: dict[type, type[web.HTTPException]] = {
    NotAdministrator: web.HTTPForbidden,
    NotOwner: web.HTTPForbidden,
    UnknownTicket: web.HTTPNotFound,
    SoldOut: web.HTTPConflict,
    AlreadyValidated: web.HTTPConflict,
    TransferFailed: web.HTTPPaymentRequired,
    InvariantViolation: web.HTTPInternalServerError,
}


def resale_message(ticket_id: int, resale_price: int, new_holder: str, nonce: int) -> bytes:
    """Canonical bytes a holder signs to authorise a resale."""
    return json.dumps({
        "action": "resell",
        "ticket_id": ticket_id,
        "resale_price": resale_price,
        "new_holder": new_holder,
        "nonce": nonce,
    }, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _json_error(exc_cls: type[web.HTTPException], code: str, message: str) -> web.HTTPException:
    return exc_cls(
        text=json.dumps({"error": code, "message": message}),
        content_type="application/json",
    )


def _http_error(exc: LedgerError) -> web.HTTPException:
    exc_cls = _ERROR_STATUS.get(type(exc), web.HTTPBadRequest)
    return _json_error(exc_cls, exc.code, exc.message)


def _safe_int(value: Any, name: str) -> int:
    """Integers only: JSON ints or decimal strings. Booleans and floats are rejected."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
    raise _json_error(web.HTTPBadRequest, "BadRequest", f"{name} must be an integer")


def _safe_hex(value: Any, name: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except (TypeError, ValueError):
        raise _json_error(web.HTTPBadRequest, "BadRequest", f"{name} must be hex")


async def _read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise _json_error(web.HTTPBadRequest, "BadRequest", "Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise _json_error(web.HTTPBadRequest, "BadRequest", "JSON body must be an object")
    return body


# ═══════════════════════════════════════════════════════════════════
#  Rate limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """
    Per-IP allowance refilled at ``rpm`` requests per minute.

    A client idle for a whole refill window is back at a full allowance, so
    its entry carries no information and is dropped.  The sweep runs at most
    once per window, which bounds the table by the clients seen in the last
    two windows.
    """

    WINDOW = 60.0

    def __init__(self, rpm: int):
        self.rpm = rpm  # 0 = unlimited
        self._state: dict[str, tuple[float, float]] = {}  # ip -> (tokens, stamp)
        self._last_sweep: float | None = None

    def __len__(self) -> int:
        return len(self._state)

    def allow(self, ip: str, now: float | None = None) -> bool:
        if self.rpm <= 0:
            return True
        now = time.monotonic() if now is None else now
        self._sweep(now)
        tokens, stamp = self._state.get(ip, (float(self.rpm), now))
        tokens = min(float(self.rpm), tokens + (now - stamp) * self.rpm / self.WINDOW)
        allowed = tokens >= 1.0
        self._state[ip] = (tokens - 1.0 if allowed else tokens, now)
        return allowed

    def _sweep(self, now: float) -> None:
        if self._last_sweep is not None and now - self._last_sweep < self.WINDOW:
            return
        self._last_sweep = now
        idle = [ip for ip, (_, stamp) in self._state.items() if now - stamp >= self.WINDOW]
        for ip in idle:
            del self._state[ip]


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        if not bucket.allow(request.remote or "unknown"):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_cors_middleware(origins: list[str]):
    """CORS for an explicit origin allow-list; ``*`` is ignored."""
    allowed = frozenset(o for o in origins if o != "*")
    grant = {
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, X-Admin-Key",
        "Access-Control-Max-Age": "3600",
        "Vary": "Origin",
    }

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)
        if origin in allowed:
            resp.headers.update(grant)
            resp.headers["Access-Control-Allow-Origin"] = origin
        return resp

    return cors_middleware


class APIServer:
    """aiohttp front end for one ``TicketLedger``."""

    def __init__(
        self,
        ledger: TicketLedger,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
        store: LedgerStore | None = None,
    ):
        self.ledger = ledger
        self.host = host
        self.port = port
        self.store = store
        self._api_config = api_config
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536
        cfg = self._api_config
        if cfg is not None:
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/status", self._status)
        app.router.add_get("/price", self._price)
        app.router.add_get("/tickets/{ticket_id}", self._ticket_info)
        app.router.add_get("/holders/{address}/tickets", self._holder_tickets)
        app.router.add_get("/balances/{address}", self._balance)
        app.router.add_get("/events", self._events)
        app.router.add_post("/tickets", self._issue)
        app.router.add_post("/tickets/{ticket_id}/validate", self._validate)
        app.router.add_post("/tickets/{ticket_id}/refund", self._refund)
        app.router.add_post("/tickets/{ticket_id}/resell", self._resell)
        app.router.add_post("/funds", self._receive_funds)
        app.router.add_post("/admin/log_level", self._admin_log_level)

    # ── helpers ──────────────────────────────────────────────────

    def _check_admin_key(self, request: web.Request) -> None:
        admin_key = self._api_config.admin_key if self._api_config is not None else ""
        if not admin_key:
            raise _json_error(web.HTTPForbidden, "Forbidden", "Admin endpoints not configured")
        provided = request.headers.get("X-Admin-Key", "")
        if not hmac.compare_digest(provided, admin_key):
            raise _json_error(web.HTTPForbidden, "Forbidden", "Invalid admin key")

    def _persist(self) -> None:
        """
        Snapshot after a committed write.  A storage failure is logged and the
        response still reports the ledger outcome; the next successful
        snapshot rewrites the full state.
        """
        if self.store is None:
            return
        try:
            self.store.snapshot_ledger(self.ledger)
        except sqlite3.Error:
            logger.exception(f"Snapshot to {self.store.db_path} failed")

    def _ticket_id(self, request: web.Request) -> int:
        return _safe_int(request.match_info["ticket_id"], "ticket_id")

    # ── read handlers ────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "issued_count": self.ledger.issued_count,
            "event_count": len(self.ledger.events),
        })

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.ledger.status())

    async def _price(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "dynamic_price": self.ledger.dynamic_price(),
            "issued_count": self.ledger.issued_count,
            "total_supply": self.ledger.total_supply,
            "sold_out": self.ledger.sold_out,
        })

    async def _ticket_info(self, request: web.Request) -> web.Response:
        ticket_id = self._ticket_id(request)
        try:
            ticket = self.ledger.ticket(ticket_id)
        except LedgerError as exc:
            raise _http_error(exc) from exc
        d = ticket.to_dict()
        d["nonce"] = len(self.ledger.events.for_ticket(ticket_id))
        d["validations"] = self.ledger.validation_count(ticket_id)
        return web.json_response(d)

    async def _holder_tickets(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response({
            "address": address,
            "tickets": sorted(self.ledger.tickets_of(address)),
        })

    async def _balance(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response({"address": address, "balance": self.ledger.balance_of(address)})

    async def _events(self, request: web.Request) -> web.Response:
        since = _safe_int(request.query.get("since", "0"), "since")
        limit = _safe_int(request.query.get("limit", "100"), "limit")
        limit = max(1, min(limit, _MAX_EVENT_PAGE))
        events = self.ledger.events.since(since, limit)
        return web.json_response({
            "events": [e.to_dict() for e in events],
            "last_sequence": self.ledger.events.last_sequence,
        })

    # ── write handlers ───────────────────────────────────────────

    async def _issue(self, request: web.Request) -> web.Response:
        """
        POST /tickets
        Body: {"buyer": "tXXX", "category": "VIP", "resellable": true}
        """
        self._check_admin_key(request)
        body = await _read_json(request)
        resellable = body.get("resellable", True)
        if not isinstance(resellable, bool):
            raise _json_error(web.HTTPBadRequest, "BadRequest", "resellable must be a boolean")
        try:
            ticket_id = self.ledger.issue(
                body.get("buyer", ""),
                str(body.get("category", "")),
                resellable,
                caller=self.ledger.administrator,
            )
        except LedgerError as exc:
            raise _http_error(exc) from exc
        self._persist()
        return web.json_response(
            {"status": "issued", "ticket_id": ticket_id, "price": self.ledger.base_price},
            status=201,
        )

    async def _validate(self, request: web.Request) -> web.Response:
        self._check_admin_key(request)
        ticket_id = self._ticket_id(request)
        try:
            holder = self.ledger.validate(ticket_id, caller=self.ledger.administrator)
        except LedgerError as exc:
            raise _http_error(exc) from exc
        self._persist()
        return web.json_response({"status": "valid", "ticket_id": ticket_id, "holder": holder})

    async def _refund(self, request: web.Request) -> web.Response:
        self._check_admin_key(request)
        ticket_id = self._ticket_id(request)
        try:
            holder = self.ledger.owner_of(ticket_id)
            amount = self.ledger.refund(ticket_id, caller=self.ledger.administrator)
        except LedgerError as exc:
            raise _http_error(exc) from exc
        self._persist()
        return web.json_response({
            "status": "refunded", "ticket_id": ticket_id, "holder": holder, "amount": amount,
        })

    async def _resell(self, request: web.Request) -> web.Response:
        """
        POST /tickets/{ticket_id}/resell
        Body: {"resale_price": 200, "new_holder": "tBob",
               "public_key": "04..", "signature": ".."}
        """
        ticket_id = self._ticket_id(request)
        body = await _read_json(request)
        resale_price = _safe_int(body.get("resale_price"), "resale_price")
        new_holder = body.get("new_holder", "")
        public_key = _safe_hex(body.get("public_key"), "public_key")
        signature = _safe_hex(body.get("signature"), "signature")

        nonce = len(self.ledger.events.for_ticket(ticket_id))
        message = resale_message(ticket_id, resale_price, new_holder, nonce)
        if not verify(public_key, message, signature):
            raise _json_error(web.HTTPUnauthorized, "BadSignature", "Signature does not verify")
        caller = derive_address(public_key)

        try:
            royalty = self.ledger.resell(
                ticket_id, resale_price, new_holder, caller=caller,
            )
        except LedgerError as exc:
            raise _http_error(exc) from exc
        self._persist()
        return web.json_response({
            "status": "resold",
            "ticket_id": ticket_id,
            "seller": caller,
            "holder": new_holder,
            "price": resale_price,
            "royalty": royalty,
            "proceeds": resale_price - royalty,
        })

    async def _receive_funds(self, request: web.Request) -> web.Response:
        """
        POST /funds
        Body: {"sender": "tXXX", "amount": 500}
        """
        self._check_admin_key(request)
        body = await _read_json(request)
        amount = _safe_int(body.get("amount"), "amount")
        try:
            reserve = self.ledger.receive(str(body.get("sender", "")), amount)
        except LedgerError as exc:
            raise _http_error(exc) from exc
        self._persist()
        return web.json_response({"status": "received", "amount": amount, "reserve": reserve})

    async def _admin_log_level(self, request: web.Request) -> web.Response:
        self._check_admin_key(request)
        body = await _read_json(request)
        try:
            level = set_level(str(body.get("level", "INFO")))
        except ValueError as exc:
            raise _json_error(web.HTTPBadRequest, "BadRequest", str(exc)) from exc
        return web.json_response({"status": "ok", "level": level})
