from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from coincurve import PrivateKey

from .config import Settings
from .history import HistoryEntry, HistoryKind, TransactionHistory
from .mint import Mint, normalize_mint_url
from .nutzap import EventTransport, NutzapHandler
from .proofs import ProofStore, Reservation
from .quotes import QuoteEngine, parse_invoice_amount
from .recovery import PendingLog, RecoveryManager, RecoveryReport
from .signer import Signer
from .storage import JsonStore
from .swap import Swapper
from .token import decode, encode
from .types import (
    AlreadyCompleted,
    CurrencyUnit,
    InsufficientBalance,
    InvalidMintUrl,
    KeysetInfo,
    MintRejected,
    Nutzap,
    Proof,
    ProtocolError,
    Token,
    UnknownMint,
    WalletError,
)

logger = logging.getLogger(__name__)


@dataclass
class Invoice:
    """Lightning invoice that mints ecash once paid."""

    invoice: str
    quote_id: str
    mint_url: str
    amount: int
    expires_at: int | None = None


@dataclass
class PaymentResult:
    preimage: str | None
    fee_paid: int = 0
    amount: int = 0
    quote_id: str | None = None


# ──────────────────────────────────────────────────────────────────────────────
# Cancellable send
# ──────────────────────────────────────────────────────────────────────────────


class SendOperation:
    """A send whose proofs are reserved but not yet swapped.

    ``token()`` performs the swap (at most once) and returns the encoded
    token. ``cancel()`` before the mint has answered puts the proofs back;
    after the mint acknowledged the swap it raises ``AlreadyCompleted``.
    """

    def __init__(
        self,
        wallet: Wallet,
        reservation: Reservation,
        amount: int,
        *,
        memo: str | None = None,
        version: int = 4,
    ) -> None:
        self.wallet = wallet
        self.reservation = reservation
        self.amount = amount
        self.memo = memo
        self.version = version
        self.cancelled = False
        self._task: asyncio.Task[str] | None = None

    @property
    def mint_url(self) -> str:
        return self.reservation.mint_url

    @property
    def completed(self) -> bool:
        return (
            self._task is not None
            and self._task.done()
            and not self._task.cancelled()
            and self._task.exception() is None
        )

    async def token(self) -> str:
        if self.cancelled:
            raise WalletError("Send was cancelled")
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        # the swap must finish even if our caller is cancelled
        return await asyncio.shield(self._task)

    async def _run(self) -> str:
        wallet = self.wallet
        fee = 0
        if self.reservation.total == self.amount:
            # exact match, hand the proofs over as they are
            await wallet.store.commit(self.reservation)
            proofs = self.reservation.proofs
        else:
            proofs, change = await wallet.swapper.split(self.reservation, self.amount)
            fee = self.reservation.total - self.amount - sum(p["amount"] for p in change)
        wallet.transactions.record(
            "send", "out", self.amount, self.mint_url, unit=wallet.unit, fee=fee, memo=self.memo
        )
        token = Token(mint_url=self.mint_url, proofs=proofs, memo=self.memo, unit=wallet.unit)
        logger.info("Created %d sat token from %s", self.amount, self.mint_url)
        return encode(token, version=self.version)

    async def cancel(self) -> bool:
        """Roll the send back.

        Returns:
            True when the reserved proofs are spendable again

        Raises:
            AlreadyCompleted: The mint already consumed the proofs
        """
        if self.cancelled:
            return True
        if self._task is None:
            await self.wallet.store.release(self.reservation)
            self.cancelled = True
            return True
        try:
            # a request is in flight; its answer decides
            await asyncio.shield(self._task)
        except MintRejected:
            self.cancelled = True
            return True
        raise AlreadyCompleted(f"Send of {self.amount} sat already completed at the mint")


# ──────────────────────────────────────────────────────────────────────────────
# Wallet implementation
# ──────────────────────────────────────────────────────────────────────────────


class Wallet:
    """Multi-mint Cashu wallet.

    All proof mutations go through one ``ProofStore``; every operation that
    talks to a mint is recorded in the pending log before the request is
    sent, so ``recover_pending`` can finish it after a crash.
    """

    SNAPSHOT_KEY = "wallet"

    def __init__(
        self,
        *,
        data_dir: str | Path | None = None,
        signer: Signer | None = None,
        transport: EventTransport | None = None,
        settings: Settings | None = None,
        p2pk_privkey: PrivateKey | None = None,
        unit: CurrencyUnit = "sat",
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Set up an empty wallet.

        Args:
            data_dir: Directory for the wallet snapshot and pending log.
                ``None`` keeps everything in memory.
            signer: Nostr identity used for nutzaps and backups
            transport: Event transport used for nutzaps and backups
            settings: Mint timeouts/retries (defaults to the environment)
            p2pk_privkey: Key nutzaps are locked to (generated if omitted)
            unit: Currency unit of every proof this wallet holds
            http_transport: Custom httpx transport for all mint clients
        """
        self.settings = settings or Settings.from_env()
        self.signer = signer
        self.transport = transport
        self.unit: CurrencyUnit = unit
        self.http_transport = http_transport
        self.p2pk_privkey = p2pk_privkey or PrivateKey()
        self.active_mint_url: str | None = None
        self.mints: dict[str, Mint] = {}

        self._json = JsonStore(data_dir) if data_dir is not None else None
        self._loading = False
        self.store = ProofStore(on_change=self._save)
        self.log = PendingLog(self._json)
        self.transactions = TransactionHistory(on_change=self._save)
        self.quotes = QuoteEngine(
            self.store,
            self.log,
            self._get_mint,
            unit,
            history=self.transactions,
            on_change=self._save,
        )
        self.swapper = Swapper(self.store, self.log, self._get_mint, unit)
        self.recovery = RecoveryManager(
            self.store, self.log, self.quotes, self._get_mint, history=self.transactions
        )
        self.nutzaps = NutzapHandler(
            self.store,
            self.swapper,
            self._get_mint,
            transport,
            signer,
            self.p2pk_privkey,
            on_change=self._save,
            history=self.transactions,
        )

    # ───────────────────────── Construction ─────────────────────────────────

    @classmethod
    async def create_wallet(cls, mints: list[str], **kwargs: Any) -> Wallet:
        """Create a wallet holding the given mints.

        Raises:
            InvalidMintUrl: If a URL is malformed or not a Cashu mint
        """
        wallet = cls(**kwargs)
        for url in mints:
            await wallet.add_mint(url)
        wallet._save()
        return wallet

    @classmethod
    async def load(cls, data_dir: str | Path, **kwargs: Any) -> Wallet:
        """Open a persisted wallet and re-reserve proofs of unresolved operations."""
        json_store = JsonStore(data_dir)
        snapshot = json_store.load(cls.SNAPSHOT_KEY)
        if snapshot is None:
            raise WalletError(f"No wallet found in {data_dir}")
        wallet = cls.from_dict(snapshot, data_dir=data_dir, **kwargs)
        await wallet.recovery.restore_reservations()
        return wallet

    @classmethod
    async def open(cls, data_dir: str | Path, mints: list[str], **kwargs: Any) -> Wallet:
        """Load the wallet in ``data_dir``, creating it with ``mints`` if absent."""
        if JsonStore(data_dir).exists(cls.SNAPSHOT_KEY):
            wallet = await cls.load(data_dir, **kwargs)
            for url in mints:
                await wallet.add_mint(url)
            return wallet
        return await cls.create_wallet(mints, data_dir=data_dir, **kwargs)

    # ───────────────────────── Mints ─────────────────────────────────

    def _get_mint(self, mint_url: str) -> Mint:
        url = normalize_mint_url(mint_url)
        if url not in self.mints:
            self.mints[url] = Mint(
                url,
                timeout=self.settings.mint_timeout,
                retries=self.settings.mint_retries,
                transport=self.http_transport,
                debug=self.settings.mint_debug,
            )
        return self.mints[url]

    async def add_mint(self, url: str, *, verify: bool = True) -> str:
        """Add a mint to the wallet and return its normalized URL.

        With ``verify`` the mint's keysets are fetched first so a URL that
        does not serve the Cashu API is refused.
        """
        mint_url = normalize_mint_url(url)
        if self.store.has_mint(mint_url):
            return mint_url
        if verify:
            try:
                await self._get_mint(mint_url).get_active_keyset(self.unit)
            except (ProtocolError, MintRejected) as e:
                raise InvalidMintUrl(f"{mint_url} is not a usable Cashu mint: {e}") from e
        if self.active_mint_url is None:
            self.active_mint_url = mint_url
        self.store.add_mint(mint_url)
        logger.info("Added mint %s", mint_url)
        return mint_url

    def _held_mint(self, mint_url: str | None) -> str:
        if mint_url is None:
            if self.active_mint_url is None:
                raise UnknownMint("Wallet has no mints")
            return self.active_mint_url
        url = normalize_mint_url(mint_url)
        if not self.store.has_mint(url):
            raise UnknownMint(f"Mint {url} is not in this wallet")
        return url

    def _mint_for_amount(self, amount: int, mint_url: str | None = None) -> str:
        """Pick a mint whose spendable balance covers ``amount``. No network."""
        if amount <= 0:
            raise ValueError("Amount must be positive")
        if mint_url is not None:
            url = self._held_mint(mint_url)
            available = self.store.available_balance(url)
            if available < amount:
                raise InsufficientBalance(amount, available, mint_url=url)
            return url

        balances = {url: self.store.available_balance(url) for url in self.store.mints}
        if self.active_mint_url and balances.get(self.active_mint_url, 0) >= amount:
            return self.active_mint_url
        suitable = [url for url, bal in balances.items() if bal >= amount]
        if not suitable:
            raise InsufficientBalance(amount, max(balances.values(), default=0))
        return max(suitable, key=lambda url: balances[url])

    # ───────────────────────── Balance ─────────────────────────────────

    def balance(self) -> int:
        """Sum of all proofs held, across every mint."""
        return self.store.balance()

    def balance_by_mint(self) -> dict[str, int]:
        return self.store.balance_by_mint()

    def history(
        self, *, limit: int | None = None, kind: HistoryKind | None = None
    ) -> list[HistoryEntry]:
        """Completed mints, melts, sends, receives and nutzaps, newest first."""
        return self.transactions.entries(limit=limit, kind=kind)

    async def refresh(self, mint_url: str | None = None) -> list[Proof]:
        """Ask the mints which proofs are spent and drop those."""
        urls = [self._held_mint(mint_url)] if mint_url else self.store.mints
        removed: list[Proof] = []
        for url in urls:
            removed.extend(await self.store.refresh_validity(url, self._get_mint(url)))
        return removed

    # ───────────────────────── Lightning ─────────────────────────────────

    async def create_invoice(self, amount: int, *, mint_url: str | None = None) -> Invoice:
        """Request a Lightning invoice; pay it, then call ``check_and_claim``."""
        quote = await self.quotes.create_mint_quote(self._held_mint(mint_url), amount)
        return Invoice(
            invoice=quote.request,
            quote_id=quote.quote_id,
            mint_url=quote.mint_url,
            amount=quote.amount,
            expires_at=quote.expires_at,
        )

    async def check_and_claim(self, quote_id: str) -> bool:
        """Single poll of a mint quote; True once its proofs are in the wallet."""
        return await self.quotes.check_and_claim(quote_id)

    async def pay_invoice(self, invoice: str, *, mint_url: str | None = None) -> PaymentResult:
        """Pay a BOLT11 invoice.

        Uses the signer's Lightning bridge when it has one, otherwise melts
        ecash. The balance is checked against the invoice amount before any
        request is made.

        Raises:
            InsufficientBalance: No mint holds enough for the invoice
            MintRejected: Payment failed; proofs are intact
            AmbiguousMeltState: Payment outcome unknown; see ``recover_pending``
        """
        try:
            amount = parse_invoice_amount(invoice)
        except ValueError as e:
            raise WalletError(str(e)) from e
        if amount is None:
            raise WalletError("Invoices without an amount are not supported")

        bridge = self.signer.lightning_bridge if self.signer is not None else None
        if bridge is not None:
            preimage = await bridge.send_payment(invoice)
            logger.info("Paid %d sat through the Lightning bridge", amount)
            return PaymentResult(preimage=preimage, amount=amount)

        url = self._mint_for_amount(amount, mint_url)
        quote = await self.quotes.create_melt_quote(url, invoice)
        mint = self._get_mint(url)
        await mint.get_active_keyset(self.unit)
        reservation = await self.store.reserve(
            url, quote.amount + quote.fee_reserve, mint.fee_ppk()
        )
        result = await self.quotes.melt(quote, reservation)
        return PaymentResult(
            preimage=result.preimage,
            fee_paid=result.fee_paid,
            amount=result.amount,
            quote_id=result.quote_id,
        )

    # ───────────────────────── Tokens ─────────────────────────────────

    async def start_send(
        self,
        amount: int,
        *,
        memo: str | None = None,
        mint_url: str | None = None,
        version: int = 4,
    ) -> SendOperation:
        """Reserve proofs for a send without contacting the mint yet."""
        url = self._mint_for_amount(amount, mint_url)
        mint = self._get_mint(url)
        await mint.get_active_keyset(self.unit)
        reservation = await self.store.reserve(url, amount, mint.fee_ppk())
        return SendOperation(self, reservation, amount, memo=memo, version=version)

    async def send_token(
        self,
        amount: int,
        *,
        memo: str | None = None,
        mint_url: str | None = None,
        version: int = 4,
    ) -> str:
        """Take ``amount`` out of the wallet as a token string."""
        operation = await self.start_send(amount, memo=memo, mint_url=mint_url, version=version)
        return await operation.token()

    async def receive_token(self, token: str, *, trust_mint: bool = False) -> int:
        """Swap a token's proofs into the wallet.

        Args:
            token: cashuA/cashuB string
            trust_mint: Add the token's mint if the wallet does not hold it

        Returns:
            Amount credited after the mint's input fees
        """
        parsed = decode(token)
        if parsed.unit != self.unit:
            raise WalletError(f"Token unit {parsed.unit} does not match wallet unit {self.unit}")
        mint_url = normalize_mint_url(parsed.mint_url)
        if not self.store.has_mint(mint_url):
            if not trust_mint:
                raise UnknownMint(f"Token is from {mint_url}, which this wallet does not trust")
            await self.add_mint(mint_url)
        amount = await self.swapper.redeem(mint_url, parsed.proofs, privkey=self.p2pk_privkey)
        self.transactions.record(
            "receive",
            "in",
            amount,
            mint_url,
            unit=self.unit,
            fee=sum(p["amount"] for p in parsed.proofs) - amount,
            memo=parsed.memo,
        )
        return amount

    # ───────────────────────── Nutzaps ─────────────────────────────────

    async def send_nutzap(
        self,
        recipient_pubkey: str,
        amount: int,
        ref: str | None = None,
        comment: str = "",
    ) -> Nutzap:
        return await self.nutzaps.send(recipient_pubkey, amount, ref=ref, comment=comment)

    async def claim_nutzaps(self) -> int:
        """Redeem every nutzap addressed to us. Returns the total credited."""
        return await self.nutzaps.redeem_all()

    async def publish_nutzap_info(self, relays: list[str] | None = None) -> None:
        await self.nutzaps.publish_info(relays)

    # ───────────────────────── Recovery ─────────────────────────────────

    async def recover_pending(self) -> RecoveryReport:
        return await self.recovery.recover_pending()

    # ───────────────────────── Persistence ─────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        proofs = self.store.to_dict()
        return {
            "version": 1,
            "unit": self.unit,
            "active_mint": self.active_mint_url,
            "p2pk_privkey": self.p2pk_privkey.secret.hex(),
            "mints": {
                url: {
                    "proofs": proofs.get(url, []),
                    "keysets": [
                        ks.to_dict() for ks in self.mints[url].cached_keysets()
                    ]
                    if url in self.mints
                    else [],
                }
                for url in self.store.mints
            },
            "nutzaps": self.nutzaps.to_dict(),
            "issued_quotes": sorted(self.quotes.issued),
            "history": self.transactions.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], **kwargs: Any) -> Wallet:
        """Rebuild a wallet from ``to_dict`` output."""
        kwargs.setdefault("p2pk_privkey", PrivateKey(bytes.fromhex(data["p2pk_privkey"])))
        kwargs.setdefault("unit", data.get("unit", "sat"))
        wallet = cls(**kwargs)
        wallet._loading = True
        try:
            wallet.store.load(
                {url: entry.get("proofs", []) for url, entry in data["mints"].items()}
            )
            for url, entry in data["mints"].items():
                keysets = [KeysetInfo.from_dict(ks) for ks in entry.get("keysets", [])]
                if keysets:
                    wallet._get_mint(url).seed_keysets(keysets)
            wallet.active_mint_url = data.get("active_mint") or next(
                iter(data["mints"]), None
            )
            wallet.nutzaps.load(data.get("nutzaps", {}))
            wallet.quotes.issued = set(data.get("issued_quotes", []))
            wallet.transactions.load(data.get("history", []))
        finally:
            wallet._loading = False
        return wallet

    def _save(self) -> None:
        if self._json is None or self._loading:
            return
        self._json.save(self.SNAPSHOT_KEY, self.to_dict())

    async def backup(self) -> str:
        """Publish an encrypted wallet snapshot through the event transport."""
        if self.transport is None:
            raise WalletError("No event transport configured")
        return await self.transport.publish_wallet_backup(self.to_dict())

    async def restore_backup(self) -> bool:
        """Merge the latest published snapshot into this wallet.

        Proofs from the backup are added (known secrets are skipped); run
        ``refresh`` afterwards to drop any that were spent since. The
        backup's P2PK key replaces ours so nutzaps locked to it stay
        claimable.
        """
        if self.transport is None:
            raise WalletError("No event transport configured")
        data = await self.transport.fetch_wallet_backup()
        if data is None:
            return False
        if data.get("p2pk_privkey"):
            self.p2pk_privkey = PrivateKey(bytes.fromhex(data["p2pk_privkey"]))
            self.nutzaps.p2pk_privkey = self.p2pk_privkey
        for url, entry in data.get("mints", {}).items():
            mint_url = await self.add_mint(url, verify=False)
            await self.store.add_proofs(mint_url, entry.get("proofs", []))
        self.nutzaps.claimed |= set(data.get("nutzaps", {}).get("claimed", []))
        self._save()
        logger.info("Restored wallet backup (%d mints)", len(data.get("mints", {})))
        return True

    # ───────────────────────── Cleanup ─────────────────────────────────

    async def aclose(self) -> None:
        """Close mint HTTP clients."""
        for mint in self.mints.values():
            await mint.aclose()

    async def __aenter__(self) -> Wallet:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
