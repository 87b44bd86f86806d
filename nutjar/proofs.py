"""Proof Store: the wallet's set of unspent proofs per mint."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from .crypto import proof_y
from .denominations import calculate_input_fees
from .types import InsufficientBalance, Proof, UnknownMint

if TYPE_CHECKING:
    from .mint import Mint

logger = logging.getLogger(__name__)


@dataclass
class Reservation:
    """Proofs taken out of the spendable set for one in-flight operation."""

    mint_url: str
    proofs: list[Proof]
    amount: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    done: bool = False

    @property
    def total(self) -> int:
        return sum(p["amount"] for p in self.proofs)

    @property
    def secrets(self) -> list[str]:
        return [p["secret"] for p in self.proofs]


class ProofStore:
    """Authoritative proof set of one wallet.

    Proofs are kept per mint in insertion order. Every mutation happens under
    a single ``asyncio.Lock``; network calls are never awaited while it is
    held. Operations that spend proofs first ``reserve`` them, which marks
    them in flight so no concurrent selection can pick them, then either
    ``commit`` (mint confirmed) or ``release`` (mint refused, or cancelled).
    """

    def __init__(self, on_change: Callable[[], None] | None = None) -> None:
        self._proofs: dict[str, list[Proof]] = {}
        self._in_flight: set[str] = set()
        self._reservations: dict[str, Reservation] = {}
        self.lock = asyncio.Lock()
        self.on_change = on_change

    # ───────────────────────── Queries ─────────────────────────────────

    @property
    def mints(self) -> list[str]:
        return list(self._proofs)

    def has_mint(self, mint_url: str) -> bool:
        return mint_url in self._proofs

    def proofs(self, mint_url: str | None = None) -> list[Proof]:
        if mint_url is not None:
            return list(self._proofs.get(mint_url, []))
        return [p for proofs in self._proofs.values() for p in proofs]

    def available_proofs(self, mint_url: str) -> list[Proof]:
        return [
            p for p in self._proofs.get(mint_url, []) if p["secret"] not in self._in_flight
        ]

    def balance(self, mint_url: str | None = None) -> int:
        """Sum of every held proof, in-flight ones included."""
        return sum(p["amount"] for p in self.proofs(mint_url))

    def balance_by_mint(self) -> dict[str, int]:
        return {url: self.balance(url) for url in self._proofs}

    def available_balance(self, mint_url: str | None = None) -> int:
        urls = [mint_url] if mint_url is not None else list(self._proofs)
        return sum(p["amount"] for url in urls for p in self.available_proofs(url))

    def in_flight(self, secret: str) -> bool:
        return secret in self._in_flight

    @property
    def reservations(self) -> list[Reservation]:
        return list(self._reservations.values())

    # ───────────────────────── Mutations ─────────────────────────────────

    def add_mint(self, mint_url: str) -> None:
        if mint_url not in self._proofs:
            self._proofs[mint_url] = []
            self._changed()

    async def add_proofs(self, mint_url: str, proofs: list[Proof]) -> int:
        """Append proofs for a mint, skipping secrets already held.

        Returns:
            The new total wallet balance
        """
        async with self.lock:
            self._add(mint_url, proofs)
            self._changed()
            return self.balance()

    async def remove_proofs(self, mint_url: str, proofs: list[Proof]) -> int:
        """Remove proofs by secret. Unknown secrets are ignored."""
        async with self.lock:
            self._remove(mint_url, {p["secret"] for p in proofs})
            self._changed()
            return self.balance()

    def select_proofs(
        self,
        mint_url: str,
        amount: int,
        fee_ppk: int | dict[str, int] = 0,
    ) -> list[Proof]:
        """Pick available proofs covering ``amount`` plus their own input fee.

        Greedy in stored order; the store is not modified.

        Raises:
            UnknownMint: If the mint is not held
            InsufficientBalance: If available proofs fall short
        """
        if mint_url not in self._proofs:
            raise UnknownMint(f"Mint {mint_url} is not in this wallet")
        if amount <= 0:
            raise ValueError("Amount must be positive")

        selected: list[Proof] = []
        total = 0
        for proof in self.available_proofs(mint_url):
            if total >= amount + calculate_input_fees(selected, fee_ppk):
                break
            selected.append(proof)
            total += proof["amount"]

        needed = amount + calculate_input_fees(selected, fee_ppk)
        if total < needed:
            raise InsufficientBalance(
                needed, self.available_balance(mint_url), mint_url=mint_url
            )
        return selected

    async def reserve(
        self,
        mint_url: str,
        amount: int,
        fee_ppk: int | dict[str, int] = 0,
    ) -> Reservation:
        """Select proofs and mark them in flight in one locked step."""
        async with self.lock:
            selected = self.select_proofs(mint_url, amount, fee_ppk)
            return self._reserve(mint_url, selected, amount)

    async def reserve_exact(self, mint_url: str, secrets: list[str]) -> Reservation:
        """Reserve specific proofs by secret; secrets no longer held are skipped."""
        async with self.lock:
            wanted = set(secrets)
            selected = [
                p
                for p in self._proofs.get(mint_url, [])
                if p["secret"] in wanted and p["secret"] not in self._in_flight
            ]
            return self._reserve(mint_url, selected, sum(p["amount"] for p in selected))

    async def release(self, reservation: Reservation) -> None:
        """Return reserved proofs to the spendable set."""
        async with self.lock:
            if reservation.done:
                return
            self._finish(reservation)
            logger.debug(
                "Released %d proofs (%d sat) at %s",
                len(reservation.proofs),
                reservation.total,
                reservation.mint_url,
            )

    async def commit(
        self, reservation: Reservation, new_proofs: list[Proof] | None = None
    ) -> int:
        """The mint consumed the reserved proofs: drop them, keep ``new_proofs``."""
        async with self.lock:
            if not reservation.done:
                self._finish(reservation)
                self._remove(reservation.mint_url, set(reservation.secrets))
            if new_proofs:
                self._add(reservation.mint_url, new_proofs)
            self._changed()
            return self.balance()

    async def refresh_validity(self, mint_url: str, mint: Mint) -> list[Proof]:
        """Drop proofs the mint reports as spent. Returns the dropped proofs."""
        held = self.proofs(mint_url)
        if not held:
            return []
        states = await mint.check_state(Ys=[proof_y(p["secret"]) for p in held])
        spent_ys = {s["Y"] for s in states["states"] if s.get("state") == "SPENT"}
        spent = [p for p in held if proof_y(p["secret"]) in spent_ys]
        if spent:
            async with self.lock:
                secrets = {p["secret"] for p in spent}
                self._in_flight -= secrets
                self._remove(mint_url, secrets)
                self._changed()
            logger.info("Evicted %d spent proofs from %s", len(spent), mint_url)
        return spent

    # ───────────────────────── Internals (lock held) ─────────────────────────────

    def _add(self, mint_url: str, proofs: list[Proof]) -> None:
        bucket = self._proofs.setdefault(mint_url, [])
        known = {p["secret"] for p in bucket}
        added = 0
        for proof in proofs:
            if proof["secret"] in known:
                continue
            bucket.append(proof)
            known.add(proof["secret"])
            added += proof["amount"]
        logger.debug("Added %d sat at %s", added, mint_url)

    def _remove(self, mint_url: str, secrets: set[str]) -> None:
        if mint_url in self._proofs:
            self._proofs[mint_url] = [
                p for p in self._proofs[mint_url] if p["secret"] not in secrets
            ]

    def _reserve(self, mint_url: str, proofs: list[Proof], amount: int) -> Reservation:
        reservation = Reservation(mint_url=mint_url, proofs=proofs, amount=amount)
        self._in_flight.update(reservation.secrets)
        self._reservations[reservation.id] = reservation
        return reservation

    def _finish(self, reservation: Reservation) -> None:
        reservation.done = True
        self._in_flight.difference_update(reservation.secrets)
        self._reservations.pop(reservation.id, None)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # ───────────────────────── Serialization ─────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {url: [dict(p) for p in proofs] for url, proofs in self._proofs.items()}

    def load(self, data: dict[str, list[dict[str, Any]]]) -> None:
        self._proofs = {
            url: [Proof(**p) for p in proofs]  # type: ignore[typeddict-item]
            for url, proofs in data.items()
        }
        self._in_flight.clear()
        self._reservations.clear()
