"""Unit tests for the signer implementations."""

import json
from unittest.mock import AsyncMock

import pytest
from coincurve import PrivateKey

from nutjar.crypto import encode_bech32, get_pubkey, sign_event, verify_event
from nutjar.signer import BunkerSigner, ExtensionSigner, LocalKeySigner
from nutjar.types import SignerError

UNSIGNED = {"kind": 1, "created_at": 1700000000, "tags": [], "content": "gm"}


class TestLocalKeySigner:
    async def test_accepts_nsec(self):
        key = PrivateKey()
        signer = LocalKeySigner(encode_bech32("nsec", key.secret.hex()))
        assert await signer.get_public_key() == get_pubkey(key)

    async def test_signs_events(self):
        signer = LocalKeySigner(PrivateKey())
        event = await signer.sign_event(dict(UNSIGNED))
        assert verify_event(event)
        assert event["pubkey"] == await signer.get_public_key()

    async def test_nip44_between_signers(self):
        alice, bob = LocalKeySigner(PrivateKey()), LocalKeySigner(PrivateKey())
        ciphertext = await alice.nip44_encrypt("hi", await bob.get_public_key())
        assert await bob.nip44_decrypt(ciphertext, await alice.get_public_key()) == "hi"

    def test_no_lightning_bridge(self):
        assert LocalKeySigner(PrivateKey()).lightning_bridge is None


class TestBunkerSigner:
    async def test_delegates_to_connection(self):
        key = PrivateKey()
        connection = AsyncMock()

        async def request(method, params):
            if method == "get_public_key":
                return get_pubkey(key)
            if method == "sign_event":
                return json.dumps(sign_event(json.loads(params[0]), key))
            raise AssertionError(method)

        connection.request.side_effect = request
        signer = BunkerSigner(connection)

        event = await signer.sign_event(dict(UNSIGNED))
        assert verify_event(event)
        await signer.get_public_key()
        # the pubkey is fetched once
        methods = [c.args[0] for c in connection.request.call_args_list]
        assert methods.count("get_public_key") == 1

    async def test_connection_failures_become_signer_errors(self):
        connection = AsyncMock()
        connection.request.side_effect = ConnectionError("bunker offline")
        with pytest.raises(SignerError, match="bunker offline"):
            await BunkerSigner(connection).get_public_key()

    async def test_garbage_signed_event(self):
        connection = AsyncMock()
        connection.request.return_value = "not json"
        with pytest.raises(SignerError):
            await BunkerSigner(connection).sign_event(dict(UNSIGNED, pubkey="ab" * 32))


class TestExtensionSigner:
    async def test_exposes_lightning_bridge(self):
        bridge = AsyncMock()
        bridge.get_public_key.return_value = "ab" * 32
        bridge.nip44_encrypt.return_value = "cipher"
        signer = ExtensionSigner(bridge)

        assert signer.lightning_bridge is bridge
        assert await signer.get_public_key() == "ab" * 32
        assert await signer.nip44_encrypt("plain", "cd" * 32) == "cipher"
        bridge.nip44_encrypt.assert_awaited_once_with("cd" * 32, "plain")
