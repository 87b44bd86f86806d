"""Write-ahead log of in-flight mint operations and startup reconciliation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from .crypto import proof_y
from .storage import JsonStore
from .types import (
    AmbiguousMeltState,
    MeltQuoteState,
    MintError,
    MintUnreachable,
    PendingTransaction,
    QuoteExpired,
)

if TYPE_CHECKING:
    from .history import TransactionHistory
    from .mint import Mint
    from .proofs import ProofStore, Reservation
    from .quotes import QuoteEngine

logger = logging.getLogger(__name__)


class PendingLog:
    """Durable set of ``PendingTransaction`` records.

    Every ``add``/``update`` is flushed to disk before returning so callers
    can issue the network request the record describes right afterwards.
    Without a store the log lives in memory only.
    """

    KEY = "pending"

    def __init__(self, store: JsonStore | None = None) -> None:
        self.store = store
        self._entries: dict[str, PendingTransaction] = {}
        self._held: dict[str, Reservation] = {}
        # ids of entries a live operation in this process is still driving
        self.active: set[str] = set()
        if store is not None:
            for raw in store.load(self.KEY, default=[]):
                tx = PendingTransaction.from_dict(raw)
                self._entries[tx.id] = tx

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tx_id: object) -> bool:
        return tx_id in self._entries

    def add(self, tx: PendingTransaction) -> None:
        self._entries[tx.id] = tx
        self._flush()
        logger.debug("Pending %s/%s %s logged (%d sat)", tx.direction, tx.kind, tx.id, tx.amount)

    def update(self, tx: PendingTransaction) -> None:
        if tx.id not in self._entries:
            raise KeyError(tx.id)
        self._entries[tx.id] = tx
        self._flush()

    def remove(self, tx_id: str) -> None:
        self._held.pop(tx_id, None)
        self.active.discard(tx_id)
        if self._entries.pop(tx_id, None) is not None:
            self._flush()
            logger.debug("Pending %s resolved", tx_id)

    def get(self, tx_id: str) -> PendingTransaction | None:
        return self._entries.get(tx_id)

    def by_quote(self, quote_id: str, kind: str | None = None) -> PendingTransaction | None:
        for tx in self._entries.values():
            if tx.quote_id == quote_id and (kind is None or tx.kind == kind):
                return tx
        return None

    def all(self) -> list[PendingTransaction]:
        return sorted(self._entries.values(), key=lambda tx: tx.created_at)

    # Reservations backing "out" entries, kept in memory only
    def hold(self, tx_id: str, reservation: Reservation) -> None:
        self._held[tx_id] = reservation

    def held(self, tx_id: str) -> Reservation | None:
        return self._held.get(tx_id)

    def _flush(self) -> None:
        if self.store is not None:
            self.store.save(self.KEY, [tx.to_dict() for tx in self._entries.values()])


@dataclass
class RecoveryReport:
    """Outcome of one ``recover_pending`` pass."""

    recovered_count: int = 0  # entries resolved with wallet state updated
    failed_count: int = 0  # entries dropped without credit, or that errored
    pending_count: int = 0  # entries still unresolved

    def __bool__(self) -> bool:
        return bool(self.recovered_count or self.failed_count)


class RecoveryManager:
    """Replays unresolved pending entries against their mints.

    - ``in``/``mint``: ``check_and_claim``; still unpaid stays, expiry drops
      the entry without credit.
    - ``out``/``melt``: re-check the melt quote; proofs are committed on PAID,
      released on UNPAID/FAILED and stay reserved while PENDING.
    - ``out``/``swap``: checkstate the inputs; if the mint consumed them the
      outputs are restored, otherwise the inputs are released.
    - ``in``/``swap``: same checkstate, but nothing of ours is reserved; a
      consumed receive is credited from the restored outputs.
    """

    def __init__(
        self,
        store: ProofStore,
        log: PendingLog,
        quotes: QuoteEngine,
        get_mint: Callable[[str], Mint],
        history: TransactionHistory | None = None,
    ) -> None:
        self.store = store
        self.log = log
        self.quotes = quotes
        self.get_mint = get_mint
        self.history = history

    async def restore_reservations(self) -> int:
        """Re-reserve the inputs of unresolved outgoing entries.

        Run once at load, before anything else can select those proofs.
        """
        count = 0
        for tx in self.log.all():
            if tx.direction != "out" or self.log.held(tx.id) is not None:
                continue
            reservation = await self.store.reserve_exact(tx.mint_url, tx.inputs)
            self.log.hold(tx.id, reservation)
            count += len(reservation.proofs)
        if count:
            logger.info("Re-reserved %d proofs of unresolved operations", count)
        return count

    async def recover_pending(self) -> RecoveryReport:
        """Resolve whatever pending entries the mints can now answer for."""
        await self.restore_reservations()
        report = RecoveryReport()
        for tx in self.log.all():
            if tx.id in self.log.active:
                report.pending_count += 1
                continue
            try:
                resolved = await self._recover_one(tx)
            except QuoteExpired:
                logger.info("Quote %s expired, dropping without credit", tx.quote_id)
                self.log.remove(tx.id)
                report.failed_count += 1
                continue
            except (MintUnreachable, AmbiguousMeltState) as e:
                logger.warning("Pending %s still unresolved: %s", tx.id, e)
                report.pending_count += 1
                continue
            except MintError as e:
                logger.error("Recovery of %s failed: %s", tx.id, e)
                report.pending_count += 1
                continue

            if resolved is None:
                report.pending_count += 1
            elif resolved:
                report.recovered_count += 1
            else:
                report.failed_count += 1

        logger.info(
            "Recovery: %d recovered, %d failed, %d pending",
            report.recovered_count,
            report.failed_count,
            report.pending_count,
        )
        return report

    async def _recover_one(self, tx: PendingTransaction) -> bool | None:
        """True when credited/committed, False when dropped, None when still open."""
        if tx.kind == "mint":
            # expired-but-paid quotes are still claimable, so always ask the mint
            claimed = await self.quotes.check_and_claim(tx.quote_id or "", mint_url=tx.mint_url)
            return True if claimed else None

        if tx.kind == "melt":
            quote = await self.quotes.check_melt(tx.quote_id or "")
            if quote.state == MeltQuoteState.PAID:
                return True
            if quote.state == MeltQuoteState.PENDING:
                return None
            return False

        return await self._recover_swap(tx)

    async def _recover_swap(self, tx: PendingTransaction) -> bool | None:
        mint = self.get_mint(tx.mint_url)
        # incoming swaps spend someone else's proofs, there is nothing to reserve
        reservation = None
        if tx.direction == "out":
            reservation = self.log.held(tx.id) or await self.store.reserve_exact(
                tx.mint_url, tx.inputs
            )
        if not tx.submitted:
            if reservation is not None:
                await self.store.release(reservation)
            self.log.remove(tx.id)
            return False

        states = await mint.check_state(Ys=[proof_y(s) for s in tx.inputs])
        found = {s.get("state") for s in states["states"]}
        if "PENDING" in found:
            return None
        spent = "SPENT" in found
        if not spent:
            logger.info("Swap %s never reached the mint, releasing inputs", tx.id)
            if reservation is not None:
                await self.store.release(reservation)
            self.log.remove(tx.id)
            return False

        proofs = await mint.restore_proofs(tx.outputs, self.quotes.unit)
        keep = {o.secret for o in tx.outputs if o.keep}
        kept = [p for p in proofs if p["secret"] in keep]
        if reservation is not None:
            await self.store.commit(reservation, kept)
        else:
            await self.store.add_proofs(tx.mint_url, kept)
            if self.history is not None:
                self.history.record(
                    "receive",
                    "in",
                    sum(p["amount"] for p in kept),
                    tx.mint_url,
                    unit=self.quotes.unit,
                )
        self.log.remove(tx.id)
        logger.info(
            "Swap %s recovered: %d sat restored", tx.id, sum(p["amount"] for p in kept)
        )
        return True
