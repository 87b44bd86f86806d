"""nutjar - multi-mint Cashu wallet with nutzaps.

Custodies ecash proofs across several mints, moves value between Lightning
and ecash, exchanges portable tokens and sends/receives NIP-61 nutzaps.
"""

from .history import HistoryEntry
from .mint import Mint
from .signer import BunkerSigner, ExtensionSigner, LocalKeySigner, Signer
from .token import decode, encode
from .types import (
    AlreadyCompleted,
    AmbiguousMeltState,
    DecodeError,
    InsufficientBalance,
    InvalidMintUrl,
    MintError,
    MintRejected,
    MintUnreachable,
    NoCompatibleMint,
    ProofAlreadySpent,
    ProtocolError,
    QuoteExpired,
    RecipientHasNoWallet,
    Token,
    UnknownMint,
    WalletError,
)
from .wallet import Invoice, PaymentResult, SendOperation, Wallet

__all__ = [
    # Main wallet classes
    "Wallet",
    "SendOperation",
    "Invoice",
    "PaymentResult",
    "HistoryEntry",
    "Mint",
    # Tokens
    "Token",
    "encode",
    "decode",
    # Signers
    "Signer",
    "LocalKeySigner",
    "BunkerSigner",
    "ExtensionSigner",
    # Errors
    "WalletError",
    "InvalidMintUrl",
    "UnknownMint",
    "InsufficientBalance",
    "NoCompatibleMint",
    "RecipientHasNoWallet",
    "DecodeError",
    "AlreadyCompleted",
    "MintError",
    "MintUnreachable",
    "ProtocolError",
    "MintRejected",
    "ProofAlreadySpent",
    "QuoteExpired",
    "AmbiguousMeltState",
]
