"""Swaps: splitting our proofs for a send, and redeeming proofs we were given."""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from coincurve import PrivateKey

from .crypto import (
    create_outputs,
    p2pk_pubkey,
    parse_p2pk_secret,
    sign_p2pk_witness,
)
from .denominations import calculate_input_fees, split_amount
from .mint import Mint
from .proofs import ProofStore, Reservation
from .recovery import PendingLog
from .types import (
    CurrencyUnit,
    MintError,
    MintRejected,
    PendingTransaction,
    Proof,
    ProofAlreadySpent,
    WalletError,
)

logger = logging.getLogger(__name__)


class Swapper:
    """Runs NUT-03 swaps against the write-ahead log."""

    def __init__(
        self,
        store: ProofStore,
        log: PendingLog,
        get_mint: Callable[[str], Mint],
        unit: CurrencyUnit = "sat",
    ) -> None:
        self.store = store
        self.log = log
        self.get_mint = get_mint
        self.unit = unit

    async def split(
        self,
        reservation: Reservation,
        amount: int,
        *,
        lock_pubkey: str | None = None,
    ) -> tuple[list[Proof], list[Proof]]:
        """Swap reserved proofs into ``amount`` to send plus change to keep.

        With ``lock_pubkey`` the send outputs are P2PK-locked to that key.
        The reservation is committed on success and released when the mint
        rejects the swap. If the mint cannot be reached the proofs stay
        reserved under a pending entry for recovery.

        Returns:
            (send_proofs, keep_proofs)
        """
        mint = self.get_mint(reservation.mint_url)
        try:
            keyset = await mint.get_active_keyset(self.unit)
        except MintError:
            # nothing was logged yet
            await self.store.release(reservation)
            raise
        fee = calculate_input_fees(reservation.proofs, mint.fee_ppk())
        change = reservation.total - amount - fee
        if change < 0:
            await self.store.release(reservation)
            raise WalletError(
                f"Reserved {reservation.total} sat cannot cover {amount} + fee {fee}"
            )

        send_outputs, send_pending = create_outputs(
            split_amount(amount, keyset.denominations), keyset.id, lock_pubkey=lock_pubkey
        )
        keep_outputs, keep_pending = create_outputs(
            split_amount(change, keyset.denominations), keyset.id
        )
        pending = send_pending + keep_pending

        tx = PendingTransaction(
            id=uuid.uuid4().hex,
            direction="out",
            kind="swap",
            mint_url=reservation.mint_url,
            amount=amount,
            inputs=reservation.secrets,
            outputs=pending,
            submitted=True,
        )
        self.log.add(tx)
        self.log.hold(tx.id, reservation)
        self.log.active.add(tx.id)
        try:
            response = await mint.swap(
                inputs=reservation.proofs, outputs=send_outputs + keep_outputs
            )
        except MintRejected as e:
            await self.store.release(reservation)
            self.log.remove(tx.id)
            if isinstance(e, ProofAlreadySpent):
                await self.store.refresh_validity(reservation.mint_url, mint)
            raise
        finally:
            self.log.active.discard(tx.id)

        proofs = await mint.unblind(response["signatures"], pending, self.unit)
        send_secrets = {o.secret for o in send_pending}
        send = [p for p in proofs if p["secret"] in send_secrets]
        keep = [p for p in proofs if p["secret"] not in send_secrets]
        await self.store.commit(reservation, keep)
        self.log.remove(tx.id)
        logger.info(
            "Swapped %d sat at %s: %d to send, %d change, fee %d",
            reservation.total,
            reservation.mint_url,
            amount,
            change,
            fee,
        )
        return send, keep

    async def redeem(
        self,
        mint_url: str,
        proofs: list[Proof],
        *,
        privkey: PrivateKey | None = None,
    ) -> int:
        """Swap foreign proofs for fresh ones owned by this wallet.

        P2PK-locked proofs are signed with ``privkey``; proofs locked to any
        other key are refused before contacting the mint.

        Returns:
            Amount credited (token value minus input fees)
        """
        mint = self.get_mint(mint_url)
        inputs = self._unlock(proofs, privkey)
        keyset = await mint.get_active_keyset(self.unit)
        fee = calculate_input_fees(inputs, mint.fee_ppk())
        amount = sum(p["amount"] for p in inputs) - fee
        if amount <= 0:
            raise WalletError(f"Token value does not cover the mint's input fee of {fee}")

        outputs, pending = create_outputs(
            split_amount(amount, keyset.denominations), keyset.id
        )
        tx = PendingTransaction(
            id=uuid.uuid4().hex,
            direction="in",
            kind="swap",
            mint_url=mint.url,
            amount=amount,
            inputs=[p["secret"] for p in inputs],
            outputs=pending,
            submitted=True,
        )
        self.log.add(tx)
        self.log.active.add(tx.id)
        try:
            response = await mint.swap(inputs=inputs, outputs=outputs)
        except MintRejected:
            self.log.remove(tx.id)
            raise
        finally:
            self.log.active.discard(tx.id)

        new_proofs = await mint.unblind(response["signatures"], pending, self.unit)
        await self.store.add_proofs(mint.url, new_proofs)
        self.log.remove(tx.id)
        logger.info("Redeemed %d sat at %s (fee %d)", amount, mint.url, fee)
        return amount

    @staticmethod
    def _unlock(proofs: list[Proof], privkey: PrivateKey | None) -> list[Proof]:
        # BIP-340 signatures only commit to the x coordinate
        ours = p2pk_pubkey(privkey)[2:] if privkey is not None else None
        unlocked: list[Proof] = []
        for proof in proofs:
            lock = parse_p2pk_secret(proof["secret"])
            if lock is None:
                unlocked.append(proof)
                continue
            if privkey is None or lock.lower()[2:] != ours:
                raise WalletError("Token is locked to a key this wallet does not hold")
            signed = Proof(**proof)  # type: ignore[typeddict-item]
            signed["witness"] = sign_p2pk_witness(proof["secret"], privkey)
            unlocked.append(signed)
        return unlocked
