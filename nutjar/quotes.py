"""Mint-quote and melt-quote state machines."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Callable

import bolt11

from .crypto import create_outputs, outputs_from_pending
from .denominations import blank_outputs_for, calculate_input_fees, split_amount
from .history import TransactionHistory
from .mint import ERROR_QUOTE_ALREADY_ISSUED, Mint
from .proofs import ProofStore, Reservation
from .recovery import PendingLog
from .types import (
    AmbiguousMeltState,
    CurrencyUnit,
    MeltQuote,
    MeltQuoteState,
    MintQuote,
    MintError,
    MintQuoteState,
    MintRejected,
    MintUnreachable,
    PendingTransaction,
    Proof,
    ProofAlreadySpent,
    ProtocolError,
    QuoteExpired,
    WalletError,
)

logger = logging.getLogger(__name__)


def parse_invoice_amount(invoice: str) -> int | None:
    """Amount of a BOLT11 invoice in sat, or None for amountless invoices.

    Raises:
        ValueError: If the invoice cannot be decoded
    """
    if invoice.lower().startswith("lightning:"):
        invoice = invoice[len("lightning:") :]
    try:
        decoded = bolt11.decode(invoice)
    except Exception as e:  # bolt11 raises its own and bech32/bitstring errors
        raise ValueError(f"Invalid Lightning invoice: {e}") from e
    if decoded.amount_msat is None:
        return None
    return int(decoded.amount_msat) // 1000


def _mint_state(response: dict[str, Any]) -> MintQuoteState:
    state = response.get("state")
    if state is None:
        # pre-state mints only report a paid flag
        return MintQuoteState.PAID if response.get("paid") else MintQuoteState.UNPAID
    try:
        return MintQuoteState(state)
    except ValueError as e:
        raise ProtocolError(f"Unknown mint quote state {state!r}") from e


def _melt_state(response: dict[str, Any]) -> MeltQuoteState:
    state = response.get("state")
    if state is None:
        return MeltQuoteState.PAID if response.get("paid") else MeltQuoteState.UNPAID
    try:
        return MeltQuoteState(state)
    except ValueError as e:
        raise ProtocolError(f"Unknown melt quote state {state!r}") from e


def _server_fault(error: MintRejected) -> bool:
    """5xx without a recognised mint error code."""
    if isinstance(error, (ProofAlreadySpent, QuoteExpired)):
        return False
    return error.status is not None and error.status >= 500


class QuoteEngine:
    """Drives mint quotes (Lightning -> ecash) and melt quotes (ecash -> Lightning).

    Polling is caller-driven: every ``check_and_claim`` / ``check_melt`` call
    is a single look at the mint. Each step that hands outputs or inputs to a
    mint is written to the pending log first.
    """

    def __init__(
        self,
        store: ProofStore,
        log: PendingLog,
        get_mint: Callable[[str], Mint],
        unit: CurrencyUnit = "sat",
        *,
        history: TransactionHistory | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.store = store
        self.log = log
        self.get_mint = get_mint
        self.unit = unit
        self.history = history
        self.on_change = on_change
        # quote ids already claimed, kept in the wallet snapshot
        self.issued: set[str] = set()
        self._claim_locks: dict[str, asyncio.Lock] = {}

    # ───────────────────────── Mint quotes ─────────────────────────────────

    async def create_mint_quote(self, mint_url: str, amount: int) -> MintQuote:
        """Ask the mint for an invoice and log the incoming payment."""
        if amount <= 0:
            raise ValueError("Amount must be positive")
        mint = self.get_mint(mint_url)
        response = await mint.create_mint_quote(amount=amount, unit=self.unit)
        quote = MintQuote(
            quote_id=response["quote"],
            mint_url=mint.url,
            amount=response.get("amount") or amount,
            request=response["request"],
            state=_mint_state(response),
            expires_at=response.get("expiry"),
        )
        self.log.add(
            PendingTransaction(
                id=uuid.uuid4().hex,
                direction="in",
                kind="mint",
                mint_url=mint.url,
                amount=quote.amount,
                quote_id=quote.quote_id,
                request=quote.request,
                expires_at=quote.expires_at,
            )
        )
        logger.info("Mint quote %s for %d sat at %s", quote.quote_id, amount, mint.url)
        return quote

    async def check_and_claim(self, quote_id: str, *, mint_url: str | None = None) -> bool:
        """Poll a mint quote once and claim the proofs if it is paid.

        Returns:
            True once the quote is issued (claiming again is a no-op),
            False while it is unpaid

        Raises:
            QuoteExpired: If the quote expired unpaid; the pending entry is dropped
        """
        if quote_id in self.issued:
            return True
        lock = self._claim_locks.setdefault(quote_id, asyncio.Lock())
        async with lock:
            if quote_id in self.issued:
                return True
            return await self._check_and_claim(quote_id, mint_url)

    async def _check_and_claim(self, quote_id: str, mint_url: str | None) -> bool:
        tx = self.log.by_quote(quote_id, kind="mint")
        if tx is None and mint_url is None:
            raise WalletError(f"Unknown mint quote {quote_id}")
        mint = self.get_mint(tx.mint_url if tx else mint_url)  # type: ignore[arg-type]
        response = await mint.get_mint_quote(quote_id)
        state = _mint_state(response)
        logger.debug("Mint quote %s is %s", quote_id, state.value)

        if state == MintQuoteState.ISSUED:
            self.issued.add(quote_id)
            if tx is not None:
                if tx.submitted and tx.outputs:
                    # our submission went through but the answer never arrived
                    proofs = await mint.restore_proofs(tx.outputs, self.unit)
                    await self.store.add_proofs(tx.mint_url, proofs)
                    logger.info("Restored %d proofs for quote %s", len(proofs), quote_id)
                    self._record_mint(tx, proofs)
                self.log.remove(tx.id)
            self._changed()
            return True

        if state == MintQuoteState.PAID:
            if tx is None:
                tx = PendingTransaction(
                    id=uuid.uuid4().hex,
                    direction="in",
                    kind="mint",
                    mint_url=mint.url,
                    amount=response["amount"],
                    quote_id=quote_id,
                    request=response.get("request"),
                )
                self.log.add(tx)
            await self._claim(mint, tx)
            return True

        expiry = response.get("expiry") or (tx.expires_at if tx else None)
        if state == MintQuoteState.EXPIRED or (expiry and time.time() >= expiry):
            if tx is not None:
                self.log.remove(tx.id)
            raise QuoteExpired(f"Quote {quote_id} expired unpaid")
        return False

    async def _claim(self, mint: Mint, tx: PendingTransaction) -> None:
        if not tx.outputs:
            keyset = await mint.get_active_keyset(self.unit)
            _, tx.outputs = create_outputs(
                split_amount(tx.amount, keyset.denominations), keyset.id
            )
        tx.submitted = True
        self.log.update(tx)

        try:
            response = await mint.mint(
                quote=tx.quote_id or "", outputs=outputs_from_pending(tx.outputs)
            )
        except QuoteExpired:
            self.log.remove(tx.id)
            raise
        except MintRejected as e:
            if e.code != ERROR_QUOTE_ALREADY_ISSUED:
                raise
            proofs = await mint.restore_proofs(tx.outputs, self.unit)
        else:
            proofs = await mint.unblind(response["signatures"], tx.outputs, self.unit)

        # saved together with the proofs
        self.issued.add(tx.quote_id or "")
        balance = await self.store.add_proofs(tx.mint_url, proofs)
        self.log.remove(tx.id)
        self._record_mint(tx, proofs)
        logger.info(
            "Claimed %d sat from quote %s (balance %d)",
            sum(p["amount"] for p in proofs),
            tx.quote_id,
            balance,
        )

    def _record_mint(self, tx: PendingTransaction, proofs: list[Proof]) -> None:
        if self.history is not None:
            self.history.record(
                "mint",
                "in",
                sum(p["amount"] for p in proofs),
                tx.mint_url,
                unit=self.unit,
                ref=tx.quote_id,
            )

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # ───────────────────────── Melt quotes ─────────────────────────────────

    async def create_melt_quote(self, mint_url: str, invoice: str) -> MeltQuote:
        mint = self.get_mint(mint_url)
        response = await mint.create_melt_quote(invoice, unit=self.unit)
        return MeltQuote(
            quote_id=response["quote"],
            mint_url=mint.url,
            amount=response["amount"],
            fee_reserve=response["fee_reserve"],
            request=invoice,
            state=_melt_state(response),
        )

    async def melt(self, quote: MeltQuote, reservation: Reservation) -> MeltQuote:
        """Pay a melt quote with reserved proofs.

        Args:
            quote: Quote from ``create_melt_quote``
            reservation: Proofs covering amount + fee_reserve + input fees

        Returns:
            The PAID quote with preimage and the fee actually paid

        Raises:
            MintRejected: Payment failed; the reserved proofs are spendable again
            AmbiguousMeltState: Outcome unknown; proofs stay reserved and the
                pending entry stays until ``check_melt`` resolves it
        """
        mint = self.get_mint(quote.mint_url)
        try:
            keyset = await mint.get_active_keyset(self.unit)
        except MintError:
            await self.store.release(reservation)
            raise
        fee = calculate_input_fees(reservation.proofs, mint.fee_ppk())
        overpaid = reservation.total - quote.amount - fee
        _, blanks = create_outputs([1] * blank_outputs_for(overpaid), keyset.id)

        tx = PendingTransaction(
            id=uuid.uuid4().hex,
            direction="out",
            kind="melt",
            mint_url=quote.mint_url,
            amount=quote.amount,
            quote_id=quote.quote_id,
            request=quote.request,
            inputs=reservation.secrets,
            outputs=blanks,
            submitted=True,
        )
        self.log.add(tx)
        self.log.hold(tx.id, reservation)
        self.log.active.add(tx.id)

        try:
            response = await mint.melt(
                quote=quote.quote_id,
                inputs=reservation.proofs,
                outputs=outputs_from_pending(blanks),
            )
        except (MintUnreachable, ProtocolError) as e:
            logger.warning("Melt %s outcome unknown: %s", quote.quote_id, e)
            raise AmbiguousMeltState(quote.quote_id) from e
        except MintRejected as e:
            if _server_fault(e):
                # a 5xx after submission says nothing about the payment
                logger.warning("Melt %s outcome unknown: %s", quote.quote_id, e)
                raise AmbiguousMeltState(quote.quote_id) from e
            await self.store.release(reservation)
            self.log.remove(tx.id)
            if isinstance(e, ProofAlreadySpent):
                await self.store.refresh_validity(quote.mint_url, mint)
            raise
        finally:
            self.log.active.discard(tx.id)

        result = await self._settle_melt(mint, tx, response, reservation)
        if result.state == MeltQuoteState.PENDING:
            raise AmbiguousMeltState(quote.quote_id)
        if result.state != MeltQuoteState.PAID:
            raise MintRejected(
                f"Lightning payment for quote {quote.quote_id} failed", proofs_intact=True
            )
        return result

    async def check_melt(self, quote_id: str) -> MeltQuote:
        """Re-check a pending melt and settle it if the mint has decided."""
        tx = self.log.by_quote(quote_id, kind="melt")
        if tx is None:
            raise WalletError(f"No pending melt for quote {quote_id}")
        mint = self.get_mint(tx.mint_url)
        response = await mint.get_melt_quote(quote_id)
        reservation = self.log.held(tx.id)
        if reservation is None:
            reservation = await self.store.reserve_exact(tx.mint_url, tx.inputs)
            self.log.hold(tx.id, reservation)
        return await self._settle_melt(mint, tx, response, reservation)

    async def _settle_melt(
        self,
        mint: Mint,
        tx: PendingTransaction,
        response: dict[str, Any],
        reservation: Reservation,
    ) -> MeltQuote:
        state = _melt_state(response)
        quote = MeltQuote(
            quote_id=tx.quote_id or "",
            mint_url=tx.mint_url,
            amount=response.get("amount", tx.amount),
            fee_reserve=response.get("fee_reserve", 0),
            request=tx.request or "",
            state=state,
            preimage=response.get("payment_preimage"),
        )

        if state == MeltQuoteState.PAID:
            change_sigs = response.get("change")
            if change_sigs:
                change = await mint.unblind(change_sigs, tx.outputs, self.unit)
            elif change_sigs is None and tx.outputs:
                change = await mint.restore_proofs(tx.outputs, self.unit)
            else:
                change = []
            await self.store.commit(reservation, change)
            self.log.remove(tx.id)
            quote.fee_paid = reservation.total - quote.amount - sum(
                p["amount"] for p in change
            )
            logger.info(
                "Melt %s paid %d sat (fee %d, change %d proofs)",
                quote.quote_id,
                quote.amount,
                quote.fee_paid,
                len(change),
            )
            if self.history is not None:
                self.history.record(
                    "melt",
                    "out",
                    quote.amount,
                    tx.mint_url,
                    unit=self.unit,
                    fee=quote.fee_paid,
                    ref=quote.quote_id,
                )
        elif state in (MeltQuoteState.UNPAID, MeltQuoteState.FAILED):
            await self.store.release(reservation)
            self.log.remove(tx.id)
            logger.info("Melt %s %s, proofs returned", quote.quote_id, state.value)
        return quote
