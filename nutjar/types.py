"""Data model and errors shared across nutjar (NUT-00 proof shapes and friends)."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, NotRequired, TypedDict


class Proof(TypedDict):
    """Proof structure with mint URL tracking for multi-mint support."""

    id: str  # keyset id
    amount: int
    secret: str
    C: str  # unblinded signature (hex)
    mint: str
    unit: CurrencyUnit
    witness: NotRequired[str]
    dleq: NotRequired[dict[str, str]]


CurrencyUnit = Literal["sat", "msat", "usd", "eur"]


class BlindedMessage(TypedDict):
    """Blinded message for mint operations."""

    amount: int
    B_: str  # hex encoded blinded message
    id: str  # keyset ID


class BlindedSignature(TypedDict):
    """Blinded signature response from mint."""

    amount: int
    C_: str  # hex encoded blinded signature
    id: str  # keyset ID
    dleq: NotRequired[dict[str, str]]


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class WalletError(Exception):
    """Base class for wallet errors."""


class InvalidMintUrl(WalletError):
    """Mint URL is malformed or does not point at a Cashu mint."""


class UnknownMint(WalletError):
    """Operation refers to a mint the wallet does not hold."""


class InsufficientBalance(WalletError):
    """Not enough spendable proofs to cover an amount."""

    def __init__(self, needed: int, available: int, mint_url: str | None = None):
        self.needed = needed
        self.available = available
        self.mint_url = mint_url
        where = f" at {mint_url}" if mint_url else ""
        super().__init__(
            f"Insufficient balance{where}: need {needed} sat, have {available} sat"
        )


class NoCompatibleMint(WalletError):
    """Sender and recipient share no mint."""


class RecipientHasNoWallet(WalletError):
    """Recipient has not published nutzap information."""


class DecodeError(WalletError):
    """Malformed token string."""


class AlreadyCompleted(WalletError):
    """Cancel requested after the mint acknowledged the operation."""


class SignerError(WalletError):
    """Signer could not perform the requested operation."""


class MintError(WalletError):
    """Base exception for mint errors."""

    proofs_intact: bool = True


class MintUnreachable(MintError):
    """Connection failure or timeout talking to a mint. Retryable."""


class ProtocolError(MintError):
    """Mint answered with a response we cannot interpret."""


class MintRejected(MintError):
    """Mint refused the request with an error body. Not retryable."""

    def __init__(
        self,
        reason: str,
        code: int | None = None,
        *,
        proofs_intact: bool = True,
        status: int | None = None,
    ) -> None:
        self.reason = reason
        self.code = code
        self.status = status  # HTTP status, when the mint answered with one
        self.proofs_intact = proofs_intact
        super().__init__(f"Mint rejected request: {reason}")


class ProofAlreadySpent(MintRejected):
    """Mint reports one of the inputs as already spent."""


class QuoteExpired(MintRejected):
    """Quote passed its expiry before it could be used."""


class AmbiguousMeltState(MintError):
    """Melt outcome unknown. Proofs stay reserved until recovery resolves it."""

    proofs_intact = False

    def __init__(self, quote_id: str, message: str | None = None) -> None:
        self.quote_id = quote_id
        super().__init__(
            message or f"Payment for quote {quote_id} is pending, check again later"
        )


class RelayError(WalletError):
    """Base exception for relay errors."""


# ──────────────────────────────────────────────────────────────────────────────
# Keysets and quotes
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class KeysetInfo:
    """Complete keyset information."""

    id: str
    mint_url: str
    unit: CurrencyUnit
    active: bool
    input_fee_ppk: int = 0
    keys: dict[str, str] = field(default_factory=dict)  # amount -> pubkey
    denominations: list[int] = field(default_factory=list)

    def __post_init__(self):
        if not self.denominations and self.keys:
            self.denominations = sorted(int(amount) for amount in self.keys)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mint_url": self.mint_url,
            "unit": self.unit,
            "active": self.active,
            "input_fee_ppk": self.input_fee_ppk,
            "keys": self.keys,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeysetInfo:
        return cls(
            id=data["id"],
            mint_url=data["mint_url"],
            unit=data.get("unit", "sat"),
            active=data.get("active", True),
            input_fee_ppk=data.get("input_fee_ppk", 0),
            keys=data.get("keys", {}),
        )


class MintQuoteState(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    ISSUED = "ISSUED"
    EXPIRED = "EXPIRED"


class MeltQuoteState(str, Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


@dataclass
class MintQuote:
    """Lightning -> ecash quote."""

    quote_id: str
    mint_url: str
    amount: int
    request: str
    state: MintQuoteState = MintQuoteState.UNPAID
    expires_at: int | None = None

    def expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or time.time()) >= self.expires_at


@dataclass
class MeltQuote:
    """Ecash -> Lightning quote."""

    quote_id: str
    mint_url: str
    amount: int
    fee_reserve: int
    request: str = ""
    state: MeltQuoteState = MeltQuoteState.UNPAID
    preimage: str | None = None
    fee_paid: int = 0


# ──────────────────────────────────────────────────────────────────────────────
# Tokens, pending log and nutzaps
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class Token:
    """Portable token: proofs from a single mint plus an optional memo."""

    mint_url: str
    proofs: list[Proof]
    memo: str | None = None
    unit: CurrencyUnit = "sat"

    @property
    def amount(self) -> int:
        return sum(p["amount"] for p in self.proofs)


@dataclass
class PendingOutput:
    """Blinding data needed to rebuild a proof from a mint signature."""

    amount: int
    secret: str
    r: str
    keyset_id: str
    B_: str
    keep: bool = True  # False for outputs that belong to someone else

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "secret": self.secret,
            "r": self.r,
            "keyset_id": self.keyset_id,
            "B_": self.B_,
            "keep": self.keep,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingOutput:
        return cls(**data)


@dataclass
class PendingTransaction:
    """Write-ahead record of a mint operation that has not reached a terminal state."""

    id: str
    direction: Literal["in", "out"]
    kind: Literal["mint", "melt", "swap"]
    mint_url: str
    amount: int
    quote_id: str | None = None
    created_at: int = field(default_factory=lambda: int(time.time()))
    request: str | None = None
    expires_at: int | None = None
    inputs: list[str] = field(default_factory=list)  # secrets of proofs in flight
    outputs: list[PendingOutput] = field(default_factory=list)
    submitted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction,
            "kind": self.kind,
            "mint_url": self.mint_url,
            "amount": self.amount,
            "quote_id": self.quote_id,
            "created_at": self.created_at,
            "request": self.request,
            "expires_at": self.expires_at,
            "inputs": list(self.inputs),
            "outputs": [o.to_dict() for o in self.outputs],
            "submitted": self.submitted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingTransaction:
        return cls(
            id=data["id"],
            direction=data["direction"],
            kind=data["kind"],
            mint_url=data["mint_url"],
            amount=data["amount"],
            quote_id=data.get("quote_id"),
            created_at=data.get("created_at", 0),
            request=data.get("request"),
            expires_at=data.get("expires_at"),
            inputs=list(data.get("inputs", [])),
            outputs=[PendingOutput.from_dict(o) for o in data.get("outputs", [])],
            submitted=data.get("submitted", False),
        )


@dataclass
class NutzapInfo:
    """Recipient-published nutzap preferences (kind 10019)."""

    pubkey: str
    p2pk_pubkey: str
    trusted_mints: list[str]
    relays: list[str] = field(default_factory=list)


@dataclass
class Nutzap:
    """A sent nutzap."""

    event_id: str
    recipient_pubkey: str
    mint_url: str
    amount: int
    proofs: list[Proof]
    ref: str | None = None
    comment: str = ""


@dataclass
class IncomingNutzap:
    """A nutzap addressed to this wallet, found through the event transport."""

    event_id: str
    sender_pubkey: str
    mint_url: str
    proofs: list[Proof]
    comment: str = ""
    ref: str | None = None
    created_at: int = 0

    @property
    def amount(self) -> int:
        return sum(p["amount"] for p in self.proofs)


class EventKind:
    """Nostr event kinds used by the wallet."""

    Wallet = 17375  # NIP-60 encrypted wallet backup (replaceable)
    NutzapInfo = 10019  # NIP-61 nutzap informational event
    Nutzap = 9321  # NIP-61 nutzap


# Event type definitions
EventDict = dict[str, Any]  # Generic Nostr event dictionary
