"""Local record of value moving in and out of the wallet."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

HistoryKind = Literal["mint", "melt", "send", "receive", "nutzap"]
HISTORY_KINDS = ("mint", "melt", "send", "receive", "nutzap")


@dataclass
class HistoryEntry:
    """One completed movement of value.

    ``amount`` is what the user sent or received; mint and Lightning fees
    are kept apart in ``fee``.
    """

    kind: HistoryKind
    direction: Literal["in", "out"]
    amount: int
    mint_url: str
    unit: str = "sat"
    fee: int = 0
    ref: str | None = None  # quote id or nutzap event id
    memo: str | None = None
    timestamp: int = field(default_factory=lambda: int(time.time()))
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class TransactionHistory:
    """Append-only list of ``HistoryEntry``, persisted with the wallet snapshot."""

    def __init__(self, on_change: Callable[[], None] | None = None) -> None:
        self.on_change = on_change
        self._entries: list[HistoryEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def record(
        self,
        kind: HistoryKind,
        direction: Literal["in", "out"],
        amount: int,
        mint_url: str,
        **extra: Any,
    ) -> HistoryEntry | None:
        """Append an entry. Zero amounts are not recorded."""
        if amount <= 0:
            return None
        entry = HistoryEntry(
            kind=kind, direction=direction, amount=amount, mint_url=mint_url, **extra
        )
        self._entries.append(entry)
        logger.debug("History: %s %s %d at %s", kind, direction, amount, mint_url)
        if self.on_change is not None:
            self.on_change()
        return entry

    def entries(
        self, *, limit: int | None = None, kind: HistoryKind | None = None
    ) -> list[HistoryEntry]:
        """Newest first, optionally filtered by kind."""
        selected = [e for e in reversed(self._entries) if kind is None or e.kind == kind]
        return selected[:limit] if limit is not None else selected

    def to_dict(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self._entries]

    def load(self, data: list[dict[str, Any]]) -> None:
        self._entries = [HistoryEntry.from_dict(e) for e in data]
