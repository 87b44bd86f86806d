"""Nostr signers: one interface, chosen once at login and injected."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Protocol

from coincurve import PrivateKey

from .crypto import decode_nsec, get_pubkey, nip44_decrypt, nip44_encrypt, sign_event
from .types import SignerError

logger = logging.getLogger(__name__)


class LightningBridge(Protocol):
    """Alternate payment rail exposed by browser-extension style signers."""

    async def send_payment(self, invoice: str) -> str:
        """Pay ``invoice`` and return the preimage."""
        ...


class Signer(ABC):
    """Signs Nostr events and handles NIP-44 for the wallet's identity."""

    @abstractmethod
    async def get_public_key(self) -> str:
        """x-only public key, hex."""

    @abstractmethod
    async def sign_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Return ``event`` with ``pubkey``, ``id`` and ``sig`` filled in."""

    @abstractmethod
    async def nip44_encrypt(self, plaintext: str, pubkey: str) -> str: ...

    @abstractmethod
    async def nip44_decrypt(self, ciphertext: str, pubkey: str) -> str: ...

    @property
    def lightning_bridge(self) -> LightningBridge | None:
        """Payment rail that replaces melting, if this signer has one."""
        return None


class LocalKeySigner(Signer):
    """Signer holding the private key in process."""

    def __init__(self, privkey: PrivateKey | str) -> None:
        self.privkey = decode_nsec(privkey) if isinstance(privkey, str) else privkey
        self.pubkey = get_pubkey(self.privkey)

    async def get_public_key(self) -> str:
        return self.pubkey

    async def sign_event(self, event: dict[str, Any]) -> dict[str, Any]:
        return sign_event(event, self.privkey)

    async def nip44_encrypt(self, plaintext: str, pubkey: str) -> str:
        return nip44_encrypt(plaintext, self.privkey, pubkey)

    async def nip44_decrypt(self, ciphertext: str, pubkey: str) -> str:
        return nip44_decrypt(ciphertext, self.privkey, pubkey)


class BunkerConnection(Protocol):
    """NIP-46 remote-signer RPC channel."""

    async def request(self, method: str, params: list[str]) -> str: ...


class BunkerSigner(Signer):
    """NIP-46 remote signer ("bunker")."""

    def __init__(self, connection: BunkerConnection) -> None:
        self.connection = connection
        self._pubkey: str | None = None

    async def _call(self, method: str, *params: str) -> str:
        try:
            return await self.connection.request(method, list(params))
        except SignerError:
            raise
        except Exception as e:
            raise SignerError(f"Bunker {method} failed: {e}") from e

    async def get_public_key(self) -> str:
        if self._pubkey is None:
            self._pubkey = await self._call("get_public_key")
        return self._pubkey

    async def sign_event(self, event: dict[str, Any]) -> dict[str, Any]:
        unsigned = dict(event)
        unsigned.setdefault("pubkey", await self.get_public_key())
        raw = await self._call("sign_event", json.dumps(unsigned))
        try:
            return json.loads(raw)
        except ValueError as e:
            raise SignerError("Bunker returned an invalid signed event") from e

    async def nip44_encrypt(self, plaintext: str, pubkey: str) -> str:
        return await self._call("nip44_encrypt", pubkey, plaintext)

    async def nip44_decrypt(self, ciphertext: str, pubkey: str) -> str:
        return await self._call("nip44_decrypt", pubkey, ciphertext)


class ExtensionBridge(LightningBridge, Protocol):
    """Browser-extension style API (NIP-07 signing plus WebLN payments)."""

    async def get_public_key(self) -> str: ...

    async def sign_event(self, event: dict[str, Any]) -> dict[str, Any]: ...

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> str: ...

    async def nip44_decrypt(self, pubkey: str, ciphertext: str) -> str: ...


class ExtensionSigner(Signer):
    """Signer backed by an extension; its Lightning rail pays invoices directly."""

    def __init__(self, bridge: ExtensionBridge) -> None:
        self.bridge = bridge

    async def get_public_key(self) -> str:
        return await self.bridge.get_public_key()

    async def sign_event(self, event: dict[str, Any]) -> dict[str, Any]:
        return await self.bridge.sign_event(event)

    async def nip44_encrypt(self, plaintext: str, pubkey: str) -> str:
        return await self.bridge.nip44_encrypt(pubkey, plaintext)

    async def nip44_decrypt(self, ciphertext: str, pubkey: str) -> str:
        return await self.bridge.nip44_decrypt(pubkey, ciphertext)

    @property
    def lightning_bridge(self) -> LightningBridge:
        return self.bridge
