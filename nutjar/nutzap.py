"""NIP-61 nutzaps: P2PK-locked ecash delivered through an event transport."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol

from coincurve import PrivateKey

from .crypto import p2pk_pubkey
from .history import TransactionHistory
from .mint import Mint, normalize_mint_url
from .proofs import ProofStore
from .signer import Signer
from .swap import Swapper
from .types import (
    IncomingNutzap,
    InsufficientBalance,
    InvalidMintUrl,
    NoCompatibleMint,
    Nutzap,
    NutzapInfo,
    ProofAlreadySpent,
    RecipientHasNoWallet,
    WalletError,
)

logger = logging.getLogger(__name__)


class EventTransport(Protocol):
    """Publish/fetch boundary to the relay network."""

    async def publish_wallet_backup(self, data: dict[str, Any]) -> str:
        """Store an encrypted copy of the wallet snapshot, returns event id."""
        ...

    async def fetch_wallet_backup(self) -> dict[str, Any] | None: ...

    async def publish_nutzap(self, nutzap: Nutzap) -> str:
        """Publish a nutzap event, returns its id."""
        ...

    async def fetch_nutzap_info(self, pubkey: str) -> NutzapInfo | None: ...

    async def publish_nutzap_info(self, info: NutzapInfo) -> str: ...

    async def fetch_incoming_nutzaps(
        self, pubkey: str, mints: list[str], since: int | None = None
    ) -> list[IncomingNutzap]: ...


def _normalized(urls: list[str]) -> list[str]:
    result = []
    for url in urls:
        try:
            result.append(normalize_mint_url(url))
        except InvalidMintUrl:
            logger.debug("Ignoring invalid mint URL %r", url)
    return result


class NutzapHandler:
    """Sends nutzaps to other users and redeems the ones sent to us."""

    def __init__(
        self,
        store: ProofStore,
        swapper: Swapper,
        get_mint: Callable[[str], Mint],
        transport: EventTransport | None,
        signer: Signer | None,
        p2pk_privkey: PrivateKey,
        on_change: Callable[[], None] | None = None,
        history: TransactionHistory | None = None,
    ) -> None:
        self.store = store
        self.history = history
        self.swapper = swapper
        self.get_mint = get_mint
        self.transport = transport
        self.signer = signer
        self.p2pk_privkey = p2pk_privkey
        self.on_change = on_change
        self.claimed: set[str] = set()
        self.sent: list[Nutzap] = []
        self.redeemed: list[dict[str, Any]] = []

    @property
    def p2pk_pubkey(self) -> str:
        return p2pk_pubkey(self.p2pk_privkey)

    def _transport(self) -> EventTransport:
        if self.transport is None:
            raise WalletError("No event transport configured")
        return self.transport

    def _signer(self) -> Signer:
        if self.signer is None:
            raise WalletError("No signer configured")
        return self.signer

    # ───────────────────────── Send ─────────────────────────────────

    async def send(
        self,
        recipient_pubkey: str,
        amount: int,
        *,
        ref: str | None = None,
        comment: str = "",
    ) -> Nutzap:
        """Lock ``amount`` to the recipient's P2PK key and publish it.

        Raises:
            RecipientHasNoWallet: Recipient has no NutzapInfo
            NoCompatibleMint: No mint of ours is trusted by the recipient
                (or none of those can lock P2PK)
            InsufficientBalance: Compatible mints hold too little
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")
        info = await self._transport().fetch_nutzap_info(recipient_pubkey)
        if info is None:
            raise RecipientHasNoWallet(f"{recipient_pubkey} has not published nutzap info")

        trusted = set(_normalized(info.trusted_mints))
        compatible = [url for url in self.store.mints if url in trusted]
        if not compatible:
            raise NoCompatibleMint(
                f"None of our mints is trusted by {recipient_pubkey[:12]}..."
            )

        funded = [url for url in compatible if self.store.available_balance(url) >= amount]
        if not funded:
            best = max(self.store.available_balance(url) for url in compatible)
            raise InsufficientBalance(amount, best)

        for mint_url in funded:
            mint = self.get_mint(mint_url)
            if not await mint.supports_p2pk():
                logger.info("Mint %s does not support P2PK, skipping", mint_url)
                continue
            await mint.get_active_keyset(self.swapper.unit)
            reservation = await self.store.reserve(mint_url, amount, mint.fee_ppk())
            locked, _ = await self.swapper.split(
                reservation, amount, lock_pubkey=info.p2pk_pubkey
            )
            nutzap = Nutzap(
                event_id="",
                recipient_pubkey=recipient_pubkey,
                mint_url=mint_url,
                amount=amount,
                proofs=locked,
                ref=ref,
                comment=comment,
            )
            # the locked proofs left the wallet; keep them republishable
            self.sent.append(nutzap)
            if self.history is not None:
                self.history.record(
                    "nutzap",
                    "out",
                    amount,
                    mint_url,
                    unit=self.swapper.unit,
                    memo=comment or None,
                )
            self._changed()
            nutzap.event_id = await self._transport().publish_nutzap(nutzap)
            self._changed()
            logger.info("Nutzapped %d sat to %s via %s", amount, recipient_pubkey, mint_url)
            return nutzap

        raise NoCompatibleMint("No shared mint supports P2PK locking")

    async def republish(self, nutzap: Nutzap) -> str:
        """Retry delivery of a sent nutzap whose publish failed."""
        nutzap.event_id = await self._transport().publish_nutzap(nutzap)
        self._changed()
        return nutzap.event_id

    async def publish_info(self, relays: list[str] | None = None) -> NutzapInfo:
        """Announce which mints and P2PK key we accept nutzaps with."""
        info = NutzapInfo(
            pubkey=await self._signer().get_public_key(),
            p2pk_pubkey=self.p2pk_pubkey,
            trusted_mints=self.store.mints,
            relays=list(relays or []),
        )
        await self._transport().publish_nutzap_info(info)
        return info

    # ───────────────────────── Receive ─────────────────────────────────

    async def fetch_incoming(self, since: int | None = None) -> list[IncomingNutzap]:
        """Nutzaps addressed to us that we have not claimed yet."""
        pubkey = await self._signer().get_public_key()
        incoming = await self._transport().fetch_incoming_nutzaps(
            pubkey, self.store.mints, since=since
        )
        return [n for n in incoming if n.event_id not in self.claimed]

    async def redeem(self, nutzap: IncomingNutzap) -> int:
        """Swap a nutzap's locked proofs into our own. Returns amount credited."""
        if nutzap.event_id in self.claimed:
            return 0
        try:
            mint_url = normalize_mint_url(nutzap.mint_url)
        except InvalidMintUrl:
            logger.warning("Nutzap %s names an invalid mint", nutzap.event_id)
            return 0
        if not self.store.has_mint(mint_url):
            # cross-mint redemption is not attempted
            logger.info("Skipping nutzap %s from untrusted mint %s", nutzap.event_id, mint_url)
            return 0

        try:
            amount = await self.swapper.redeem(
                mint_url, nutzap.proofs, privkey=self.p2pk_privkey
            )
        except ProofAlreadySpent:
            logger.info("Nutzap %s was already redeemed", nutzap.event_id)
            amount = 0

        self.claimed.add(nutzap.event_id)
        self.redeemed.append(
            {
                "event_id": nutzap.event_id,
                "sender": nutzap.sender_pubkey,
                "mint": mint_url,
                "amount": amount,
                "comment": nutzap.comment,
                "redeemed_at": int(time.time()),
            }
        )
        if self.history is not None:
            self.history.record(
                "nutzap",
                "in",
                amount,
                mint_url,
                unit=self.swapper.unit,
                ref=nutzap.event_id,
                memo=nutzap.comment or None,
            )
        self._changed()
        return amount

    async def redeem_all(self, since: int | None = None) -> int:
        """Redeem every pending nutzap. A failing nutzap does not stop the rest."""
        total = 0
        for nutzap in await self.fetch_incoming(since=since):
            try:
                total += await self.redeem(nutzap)
            except WalletError as e:
                logger.warning("Could not redeem nutzap %s: %s", nutzap.event_id, e)
        return total

    # ───────────────────────── Persistence ─────────────────────────────────

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def to_dict(self) -> dict[str, Any]:
        return {
            "claimed": sorted(self.claimed),
            "sent": [
                {
                    "event_id": n.event_id,
                    "recipient": n.recipient_pubkey,
                    "mint": n.mint_url,
                    "amount": n.amount,
                    "proofs": [dict(p) for p in n.proofs],
                    "ref": n.ref,
                    "comment": n.comment,
                }
                for n in self.sent
            ],
            "redeemed": list(self.redeemed),
        }

    def load(self, data: dict[str, Any]) -> None:
        self.claimed = set(data.get("claimed", []))
        self.sent = [
            Nutzap(
                event_id=n["event_id"],
                recipient_pubkey=n["recipient"],
                mint_url=n["mint"],
                amount=n["amount"],
                proofs=n.get("proofs", []),
                ref=n.get("ref"),
                comment=n.get("comment", ""),
            )
            for n in data.get("sent", [])
        ]
        self.redeemed = list(data.get("redeemed", []))
