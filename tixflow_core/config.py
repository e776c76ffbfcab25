"""
TOML-based configuration for TixFlow.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from tixflow_core.config import load_config
    cfg = load_config("tixflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class EventConfig:
    """Immutable ledger parameters fixed when the ledger is created."""
    name: str = "Untitled Event"
    total_supply: int = 100
    event_timestamp: float = 0.0     # Unix time; must be in the future at creation
    base_price: int = 100
    royalty_rate: int = 10           # percent, 0-100


@dataclass
class LedgerConfig:
    """Ledger behaviour switches."""
    # Snapshot + verify after every state change; costs O(tickets) per call.
    check_invariants: bool = False
    # Reject a second admission check of the same ticket.
    single_use_admission: bool = False


@dataclass
class AdminConfig:
    """Administrator keystore.

    On first run a secp256k1 wallet is generated and saved, encrypted, to
    ``wallet_file``.  The passphrase is read from ``TIXFLOW_ADMIN_PASSPHRASE``.
    """
    wallet_file: str = "data/admin_wallet.json"
    auto_generate: bool = True


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    admin_key: str = ""                # required for issue / validate / refund (empty = disabled)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/tixflow.db"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class TixFlowConfig:
    """Top-level configuration container."""
    event: EventConfig = field(default_factory=EventConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> TixFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        TIXFLOW_EVENT_NAME        -> event.name
        TIXFLOW_TOTAL_SUPPLY      -> event.total_supply
        TIXFLOW_EVENT_TIMESTAMP   -> event.event_timestamp
        TIXFLOW_BASE_PRICE        -> event.base_price
        TIXFLOW_ROYALTY_RATE      -> event.royalty_rate
        TIXFLOW_CHECK_INVARIANTS  -> ledger.check_invariants
        TIXFLOW_SINGLE_USE        -> ledger.single_use_admission
        TIXFLOW_ADMIN_WALLET      -> admin.wallet_file
        TIXFLOW_API_PORT          -> api.port (also enables the API)
        TIXFLOW_ADMIN_KEY         -> api.admin_key
        TIXFLOW_CORS_ORIGINS      -> api.cors_origins (comma-separated)
        TIXFLOW_DB_PATH           -> storage.path (also enables storage)
        TIXFLOW_LOG_LEVEL         -> logging.level
        TIXFLOW_LOG_FMT           -> logging.format
    """
    cfg = TixFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("event", cfg.event),
                ("ledger", cfg.ledger),
                ("admin", cfg.admin),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("TIXFLOW_EVENT_NAME"):
        cfg.event.name = v
    if v := os.environ.get("TIXFLOW_TOTAL_SUPPLY"):
        cfg.event.total_supply = int(v)
    if v := os.environ.get("TIXFLOW_EVENT_TIMESTAMP"):
        cfg.event.event_timestamp = float(v)
    if v := os.environ.get("TIXFLOW_BASE_PRICE"):
        cfg.event.base_price = int(v)
    if v := os.environ.get("TIXFLOW_ROYALTY_RATE"):
        cfg.event.royalty_rate = int(v)
    if v := os.environ.get("TIXFLOW_CHECK_INVARIANTS"):
        cfg.ledger.check_invariants = _env_bool(v)
    if v := os.environ.get("TIXFLOW_SINGLE_USE"):
        cfg.ledger.single_use_admission = _env_bool(v)
    if v := os.environ.get("TIXFLOW_ADMIN_WALLET"):
        cfg.admin.wallet_file = v
    if v := os.environ.get("TIXFLOW_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("TIXFLOW_ADMIN_KEY"):
        cfg.api.admin_key = v
    if v := os.environ.get("TIXFLOW_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("TIXFLOW_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("TIXFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("TIXFLOW_LOG_FMT"):
        cfg.logging.format = v

    return cfg
