"""
TixFlow - a ticket ledger with enforced scarcity and resale royalties.

Key features:
- Sequentially numbered tickets bound to exactly one holder
- Fixed total supply with a dynamic issuance price
- Royalty paid to the administrator on every resale
- Refunds that permanently burn the ticket id
- Append-only event log for external observers
- SQLite persistence and an aiohttp REST API
"""

__version__ = "0.1.0"
__all__ = [
    "api",
    "config",
    "errors",
    "events",
    "funds",
    "invariants",
    "ledger",
    "logging_config",
    "storage",
    "ticket",
    "wallet",
]
