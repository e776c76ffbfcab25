#!/usr/bin/env python3
"""
TixFlow ledger runner — hosts one event's ticket ledger with:
  - Administrator wallet (encrypted keystore, generated on first run)
  - SQLite persistence (restored on start, snapshotted on every change)
  - REST API for wallets, marketplaces and admission terminals
  - Interactive CLI for the administrator

Usage:
    python run_ledger.py --config tixflow.toml
    python run_ledger.py --event-name "Spring Gala" --total-supply 500 \\
                         --event-timestamp 1798761600 --base-price 100 \\
                         --royalty-rate 10 --api-port 8080 --no-cli

Environment variables (alternative to flags):
    TIXFLOW_* (see tixflow_core.config), TIXFLOW_ADMIN_PASSPHRASE
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from tixflow_core.api import APIServer  # noqa: E402
from tixflow_core.config import TixFlowConfig, load_config  # noqa: E402
from tixflow_core.errors import LedgerError  # noqa: E402
from tixflow_core.ledger import TicketLedger  # noqa: E402
from tixflow_core.logging_config import setup_logging  # noqa: E402
from tixflow_core.storage import LedgerStore  # noqa: E402
from tixflow_core.wallet import Wallet  # noqa: E402

logger = logging.getLogger("tixflow.runner")


# ===================================================================
#  Service
# ===================================================================

class TixFlowService:
    """Wires the ledger, its store, the API and the administrator wallet."""

    def __init__(self, cfg: TixFlowConfig, admin_wallet: Wallet):
        self.cfg = cfg
        self.wallet = admin_wallet
        self.store: LedgerStore | None = None
        self.api: APIServer | None = None
        self.ledger = self._open_ledger()

    def _open_ledger(self) -> TicketLedger:
        if self.cfg.storage.enabled:
            self.store = LedgerStore(self.cfg.storage.path)
            ledger = self.store.restore_ledger(self.cfg.ledger.check_invariants)
            if ledger is not None:
                if ledger.administrator != self.wallet.address:
                    raise SystemExit(
                        f"Stored ledger belongs to {ledger.administrator}, "
                        f"but the loaded wallet is {self.wallet.address}"
                    )
                wanted = self.cfg.ledger.single_use_admission
                if ledger.single_use_admission != wanted:
                    logger.warning(
                        f"Stored single_use_admission={ledger.single_use_admission} "
                        f"overridden by config value {wanted}"
                    )
                    ledger.single_use_admission = wanted
                return ledger
        ledger = TicketLedger.from_config(self.cfg.event, self.cfg.ledger, self.wallet.address)
        if self.store is not None:
            self.store.snapshot_ledger(ledger)
        return ledger

    async def start(self) -> None:
        if self.cfg.api.enabled:
            self.api = APIServer(
                self.ledger, self.cfg.api.host, self.cfg.api.port,
                api_config=self.cfg.api, store=self.store,
            )
            await self.api.start()
            if not self.cfg.api.admin_key:
                logger.warning("No admin_key configured: administrator endpoints are disabled")

    async def stop(self) -> None:
        if self.api is not None:
            await self.api.stop()
        if self.store is not None:
            self.store.snapshot_ledger(self.ledger)
            self.store.close()
            self.store = None
        logger.info("Ledger service stopped")

    def persist(self) -> None:
        if self.store is not None:
            self.store.snapshot_ledger(self.ledger)


# ===================================================================
#  Interactive CLI
# ===================================================================

async def interactive_cli(service: TixFlowService):
    loop = asyncio.get_event_loop()
    ledger = service.ledger
    admin = ledger.administrator

    def print_help():
        print("""
  status                     - Ledger summary
  price                      - Dynamic price for the next issuance
  issue <buyer> [category] [--no-resale]
  ticket <id>                - Show a ticket
  holder <address>           - Tickets held by an address
  validate <id>              - Admission check
  refund <id>                - Refund and burn a ticket
  fund <amount>              - Add funds to the reserve
  events [since]             - Show events after a sequence number
  help                       - Show this help
  quit                       - Shut down
""")

    print_help()

    while True:
        try:
            line = await loop.run_in_executor(None, lambda: input(f"\n[{ledger.event_name}] > "))
            parts = line.strip().split()
            if not parts:
                continue
            cmd = parts[0].lower()

            if cmd == "help":
                print_help()
            elif cmd == "status":
                print(json.dumps(ledger.status(), indent=2))
            elif cmd == "price":
                print(f"  {ledger.dynamic_price()}")
            elif cmd == "issue":
                if len(parts) < 2:
                    print("  Usage: issue <buyer> [category] [--no-resale]")
                    continue
                resellable = "--no-resale" not in parts
                rest = [p for p in parts[2:] if p != "--no-resale"]
                tid = ledger.issue(parts[1], " ".join(rest), resellable, caller=admin)
                service.persist()
                print(f"  Issued ticket {tid}")
            elif cmd == "ticket":
                print(json.dumps(ledger.ticket(int(parts[1])).to_dict(), indent=2))
            elif cmd == "holder":
                print(f"  {sorted(ledger.tickets_of(parts[1]))}")
            elif cmd == "validate":
                holder = ledger.validate(int(parts[1]), caller=admin)
                service.persist()
                print(f"  Valid, held by {holder}")
            elif cmd == "refund":
                amount = ledger.refund(int(parts[1]), caller=admin)
                service.persist()
                print(f"  Refunded {amount}")
            elif cmd == "fund":
                reserve = ledger.receive(admin, int(parts[1]))
                service.persist()
                print(f"  Reserve now {reserve}")
            elif cmd == "events":
                since = int(parts[1]) if len(parts) > 1 else 0
                for e in ledger.events.since(since):
                    print(f"  {json.dumps(e.to_dict(), default=str)}")
            elif cmd in ("quit", "exit", "q"):
                break
            else:
                print(f"  Unknown command: {cmd}. Type 'help'.")

        except (EOFError, KeyboardInterrupt):
            break
        except LedgerError as e:
            print(f"  Rejected: {e.code}: {e.message}")
        except (ValueError, IndexError):
            print("  Bad arguments. Type 'help'.")

    print("Shutting down...")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="TixFlow ticket ledger")
    p.add_argument("--config", default=None, help="Path to tixflow.toml config file")
    p.add_argument("--event-name", default=None)
    p.add_argument("--total-supply", type=int, default=None)
    p.add_argument("--event-timestamp", type=float, default=None,
                   help="Unix time of the event (must be in the future)")
    p.add_argument("--base-price", type=int, default=None)
    p.add_argument("--royalty-rate", type=int, default=None, help="Percent, 0-100")
    p.add_argument("--api-port", type=int, default=None, help="Enable the REST API on this port")
    p.add_argument("--db", default=None, help="Enable SQLite persistence at this path")
    p.add_argument("--no-cli", action="store_true", help="Run without interactive CLI")
    return p.parse_args(argv)


def apply_args(cfg: TixFlowConfig, args) -> TixFlowConfig:
    """CLI flags override file and environment settings."""
    if args.event_name is not None:
        cfg.event.name = args.event_name
    if args.total_supply is not None:
        cfg.event.total_supply = args.total_supply
    if args.event_timestamp is not None:
        cfg.event.event_timestamp = args.event_timestamp
    if args.base_price is not None:
        cfg.event.base_price = args.base_price
    if args.royalty_rate is not None:
        cfg.event.royalty_rate = args.royalty_rate
    if args.api_port is not None:
        cfg.api.port = args.api_port
        cfg.api.enabled = True
    if args.db is not None:
        cfg.storage.path = args.db
        cfg.storage.enabled = True
    return cfg


def load_admin_wallet(cfg: TixFlowConfig) -> Wallet:
    passphrase = os.environ.get("TIXFLOW_ADMIN_PASSPHRASE", "")
    if not passphrase:
        logger.warning("TIXFLOW_ADMIN_PASSPHRASE is empty; the admin keystore is weakly protected")
    if not cfg.admin.auto_generate and not os.path.exists(cfg.admin.wallet_file):
        raise SystemExit(f"Admin wallet {cfg.admin.wallet_file} not found")
    return Wallet.load_or_create(cfg.admin.wallet_file, passphrase)


async def main(argv: list[str] | None = None):
    args = parse_args(argv)
    cfg = apply_args(load_config(args.config), args)
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    try:
        service = TixFlowService(cfg, load_admin_wallet(cfg))
    except LedgerError as exc:
        logger.error(f"Cannot create ledger: {exc.code}: {exc.message}")
        raise SystemExit(2) from exc

    logger.info(f"Administrator: {service.ledger.administrator}")
    await service.start()
    try:
        if args.no_cli:
            while True:
                await asyncio.sleep(3600)
        else:
            await interactive_cli(service)
    finally:
        await service.stop()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
