"""
Ticket records and the per-holder ticket index for TixFlow.

A ticket is a sequentially numbered admission record bound to exactly one
holder.  The holder index is the reverse mapping (holder -> ticket ids) and
is an unordered collection: removal swaps the last id into the vacated slot
and truncates, so it costs O(1) regardless of how many tickets a holder has.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class Ticket:
    """A single issued ticket."""
    ticket_id: int          # 1-based, never reused
    price: int              # base price at issuance, then last resale price
    holder: str             # current owning identity
    resellable: bool        # fixed at issuance
    category: str = ""      # free-form label, e.g. "VIP"
    issued_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "price": self.price,
            "holder": self.holder,
            "resellable": self.resellable,
            "category": self.category,
            "issued_at": self.issued_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Ticket:
        return cls(
            ticket_id=int(d["ticket_id"]),
            price=int(d["price"]),
            holder=d["holder"],
            resellable=bool(d["resellable"]),
            category=d.get("category", ""),
            issued_at=float(d.get("issued_at", 0.0)),
        )


class HolderIndex:
    """Holder -> ticket ids, with swap-and-truncate removal."""

    def __init__(self):
        # holder -> list of ticket ids (order carries no meaning)
        self._by_holder: dict[str, list[int]] = {}
        # ticket id -> position inside its holder's list
        self._position: dict[int, int] = {}

    def add(self, holder: str, ticket_id: int) -> None:
        if ticket_id in self._position:
            raise ValueError(f"Ticket {ticket_id} is already indexed")
        ids = self._by_holder.setdefault(holder, [])
        self._position[ticket_id] = len(ids)
        ids.append(ticket_id)

    def remove(self, holder: str, ticket_id: int) -> None:
        ids = self._by_holder.get(holder)
        pos = self._position.get(ticket_id)
        if ids is None or pos is None or pos >= len(ids) or ids[pos] != ticket_id:
            raise KeyError(f"Ticket {ticket_id} is not held by {holder}")
        last = ids[-1]
        ids[pos] = last
        self._position[last] = pos
        ids.pop()
        del self._position[ticket_id]
        if not ids:
            del self._by_holder[holder]

    def move(self, ticket_id: int, old_holder: str, new_holder: str) -> None:
        self.remove(old_holder, ticket_id)
        self.add(new_holder, ticket_id)

    def tickets_of(self, holder: str) -> list[int]:
        return list(self._by_holder.get(holder, []))

    def count(self, holder: str) -> int:
        return len(self._by_holder.get(holder, []))

    def holders(self) -> list[str]:
        return list(self._by_holder)

    def __contains__(self, ticket_id: int) -> bool:
        return ticket_id in self._position

    def __len__(self) -> int:
        return len(self._position)

    def items(self):
        return ((h, list(ids)) for h, ids in self._by_holder.items())

    def copy(self) -> HolderIndex:
        clone = HolderIndex()
        clone._by_holder = {h: list(ids) for h, ids in self._by_holder.items()}
        clone._position = dict(self._position)
        return clone
