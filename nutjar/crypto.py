"""Cashu client-side cryptography (BDHKE, DLEQ, P2PK) and Nostr keys/NIP-44."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import secrets
import struct
from typing import Any

import bech32
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .types import (
    BlindedMessage,
    BlindedSignature,
    CurrencyUnit,
    PendingOutput,
    Proof,
    ProtocolError,
    SignerError,
)

# secp256k1 field prime and group order
_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"


# ──────────────────────────────────────────────────────────────────────────────
# BDHKE (NUT-00)
# ──────────────────────────────────────────────────────────────────────────────


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a message to a secp256k1 point as defined in NUT-00."""
    msg_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(2**16):
        candidate = hashlib.sha256(msg_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            continue
    raise ValueError("No valid point found")


def negate(point: PublicKey) -> PublicKey:
    """Return -P by flipping the y coordinate."""
    raw = point.format(compressed=False)
    y = int.from_bytes(raw[33:65], "big")
    return PublicKey(b"\x04" + raw[1:33] + ((_P - y) % _P).to_bytes(32, "big"))


def blind_message(secret: str, r: bytes | None = None) -> tuple[PublicKey, bytes]:
    """B_ = Y + r*G where Y = hash_to_curve(secret)."""
    Y = hash_to_curve(secret.encode("utf-8"))
    if r is None:
        r = secrets.token_bytes(32)
    B_ = PublicKey.combine_keys([Y, PrivateKey(r).public_key])
    return B_, r


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """C = C_ - r*K."""
    return PublicKey.combine_keys([C_, negate(K.multiply(r))])


def proof_y(secret: str) -> str:
    """Y value of a secret, as used by /v1/checkstate."""
    return hash_to_curve(secret.encode("utf-8")).format(compressed=True).hex()


def derive_keyset_id(keys: dict[str, str]) -> str:
    """Version 00 keyset id: first 7 bytes of sha256 over the sorted public keys."""
    ordered = sorted(keys.items(), key=lambda kv: int(kv[0]))
    joined = b"".join(bytes.fromhex(pubkey) for _, pubkey in ordered)
    return "00" + hashlib.sha256(joined).hexdigest()[:14]


def validate_keyset_id(keyset_id: str, keys: dict[str, str]) -> bool:
    if not keyset_id.startswith("00"):
        # legacy base64 ids cannot be re-derived
        return True
    return derive_keyset_id(keys) == keyset_id


# ──────────────────────────────────────────────────────────────────────────────
# DLEQ (NUT-12)
# ──────────────────────────────────────────────────────────────────────────────


def _hash_e(*points: PublicKey) -> bytes:
    joined = "".join(p.format(compressed=False).hex() for p in points)
    return hashlib.sha256(joined.encode("utf-8")).digest()


def _sub(a: PublicKey, b: PublicKey) -> PublicKey:
    return PublicKey.combine_keys([a, negate(b)])


def verify_dleq(B_: PublicKey, C_: PublicKey, e: bytes, s: bytes, A: PublicKey) -> bool:
    """Check the mint's proof that C_ was signed with the key behind A."""
    try:
        R1 = _sub(PrivateKey(s).public_key, A.multiply(e))
        R2 = _sub(B_.multiply(s), C_.multiply(e))
    except ValueError:
        return False
    return hmac.compare_digest(_hash_e(R1, R2, A, C_), e)


def verify_proof_dleq(proof: Proof, A: PublicKey) -> bool:
    """Carol-side DLEQ check on a proof that carries {e, s, r}."""
    dleq = proof.get("dleq")
    if not dleq:
        return False
    r = bytes.fromhex(dleq["r"])
    C = PublicKey(bytes.fromhex(proof["C"]))
    Y = hash_to_curve(proof["secret"].encode("utf-8"))
    C_ = PublicKey.combine_keys([C, A.multiply(r)])
    B_ = PublicKey.combine_keys([Y, PrivateKey(r).public_key])
    return verify_dleq(B_, C_, bytes.fromhex(dleq["e"]), bytes.fromhex(dleq["s"]), A)


# ──────────────────────────────────────────────────────────────────────────────
# Outputs and proofs
# ──────────────────────────────────────────────────────────────────────────────


def random_secret() -> str:
    return secrets.token_hex(32)


def create_outputs(
    amounts: list[int],
    keyset_id: str,
    *,
    lock_pubkey: str | None = None,
) -> tuple[list[BlindedMessage], list[PendingOutput]]:
    """Blind fresh secrets for each amount.

    When ``lock_pubkey`` is given the secrets are NUT-11 P2PK secrets and the
    resulting outputs are marked as not ours to keep.
    """
    outputs: list[BlindedMessage] = []
    pending: list[PendingOutput] = []
    for amount in amounts:
        secret = create_p2pk_secret(lock_pubkey) if lock_pubkey else random_secret()
        B_, r = blind_message(secret)
        B_hex = B_.format(compressed=True).hex()
        outputs.append(BlindedMessage(amount=amount, B_=B_hex, id=keyset_id))
        pending.append(
            PendingOutput(
                amount=amount,
                secret=secret,
                r=r.hex(),
                keyset_id=keyset_id,
                B_=B_hex,
                keep=lock_pubkey is None,
            )
        )
    return outputs, pending


def outputs_from_pending(pending: list[PendingOutput]) -> list[BlindedMessage]:
    return [BlindedMessage(amount=o.amount, B_=o.B_, id=o.keyset_id) for o in pending]


def get_mint_pubkey_for_amount(keys: dict[str, str], amount: int) -> PublicKey | None:
    pubkey_hex = keys.get(str(amount))
    if pubkey_hex is None:
        return None
    return PublicKey(bytes.fromhex(pubkey_hex))


def construct_proofs(
    signatures: list[BlindedSignature],
    pending: list[PendingOutput],
    keys: dict[str, str],
    *,
    mint_url: str,
    unit: CurrencyUnit = "sat",
) -> list[Proof]:
    """Unblind mint signatures into proofs.

    A DLEQ proof is verified when the mint includes one; a failing DLEQ
    means the mint signed with a key other than the one it advertises.
    """
    if len(signatures) > len(pending):
        raise ProtocolError(
            f"Mint returned {len(signatures)} signatures for {len(pending)} outputs"
        )
    proofs: list[Proof] = []
    for sig, out in zip(signatures, pending):
        K = get_mint_pubkey_for_amount(keys, sig["amount"])
        if K is None:
            raise ProtocolError(f"No mint key for amount {sig['amount']}")
        C_ = PublicKey(bytes.fromhex(sig["C_"]))
        r = bytes.fromhex(out.r)
        dleq = sig.get("dleq")
        if dleq and not verify_dleq(
            PublicKey(bytes.fromhex(out.B_)),
            C_,
            bytes.fromhex(dleq["e"]),
            bytes.fromhex(dleq["s"]),
            K,
        ):
            raise ProtocolError(f"Invalid DLEQ proof for amount {sig['amount']}")
        C = unblind_signature(C_, r, K)
        proof = Proof(
            id=sig["id"],
            amount=sig["amount"],
            secret=out.secret,
            C=C.format(compressed=True).hex(),
            mint=mint_url,
            unit=unit,
        )
        if dleq:
            proof["dleq"] = {"e": dleq["e"], "s": dleq["s"], "r": out.r}
        proofs.append(proof)
    return proofs


# ──────────────────────────────────────────────────────────────────────────────
# P2PK (NUT-10 / NUT-11)
# ──────────────────────────────────────────────────────────────────────────────


def normalize_p2pk_pubkey(pubkey: str) -> str:
    """Nostr-style 32-byte keys get the 02 prefix NIP-61 prescribes."""
    pubkey = pubkey.lower()
    if len(pubkey) == 64:
        return "02" + pubkey
    if len(pubkey) == 66 and pubkey[:2] in ("02", "03"):
        return pubkey
    raise ValueError(f"Invalid P2PK public key: {pubkey}")


def create_p2pk_secret(pubkey: str) -> str:
    secret = [
        "P2PK",
        {
            "nonce": secrets.token_hex(32),
            "data": normalize_p2pk_pubkey(pubkey),
            "tags": [["sigflag", "SIG_INPUTS"]],
        },
    ]
    return json.dumps(secret, separators=(",", ":"))


def parse_p2pk_secret(secret: str) -> str | None:
    """Return the locking pubkey of a P2PK secret, None for plain secrets."""
    if not secret.startswith("["):
        return None
    try:
        kind, body = json.loads(secret)
    except (ValueError, TypeError):
        return None
    if kind != "P2PK" or not isinstance(body, dict):
        return None
    return body.get("data")


def sign_p2pk_witness(secret: str, privkey: PrivateKey) -> str:
    msg = hashlib.sha256(secret.encode("utf-8")).digest()
    signature = privkey.sign_schnorr(msg, secrets.token_bytes(32))
    return json.dumps({"signatures": [signature.hex()]})


def verify_p2pk_witness(secret: str, witness: str) -> bool:
    pubkey = parse_p2pk_secret(secret)
    if pubkey is None:
        return True
    try:
        signatures = json.loads(witness)["signatures"]
    except (ValueError, KeyError, TypeError):
        return False
    msg = hashlib.sha256(secret.encode("utf-8")).digest()
    xonly = PublicKeyXOnly(bytes.fromhex(pubkey)[1:])
    return any(xonly.verify(bytes.fromhex(sig), msg) for sig in signatures)


def p2pk_pubkey(privkey: PrivateKey) -> str:
    return privkey.public_key.format(compressed=True).hex()


# ──────────────────────────────────────────────────────────────────────────────
# Nostr keys and events
# ──────────────────────────────────────────────────────────────────────────────


def generate_privkey() -> str:
    """Generate a new private key as hex."""
    return PrivateKey().secret.hex()


def decode_nsec(nsec: str) -> PrivateKey:
    """Accept bech32 nsec or 64-char hex."""
    nsec = nsec.strip()
    if nsec.startswith("nsec1"):
        hrp, data = bech32.bech32_decode(nsec)
        if hrp != "nsec" or data is None:
            raise SignerError("Invalid nsec")
        raw = bech32.convertbits(data, 5, 8, False)
        if raw is None:
            raise SignerError("Invalid nsec")
        return PrivateKey(bytes(raw))
    try:
        return PrivateKey(bytes.fromhex(nsec))
    except ValueError as e:
        raise SignerError(f"Invalid private key: {e}") from e


def encode_bech32(hrp: str, key_hex: str) -> str:
    data = bech32.convertbits(bytes.fromhex(key_hex), 8, 5)
    return bech32.bech32_encode(hrp, data)


def decode_npub(npub: str) -> str:
    """npub1... or hex -> 32-byte hex pubkey."""
    if not npub.startswith("npub1"):
        return npub.lower()
    hrp, data = bech32.bech32_decode(npub)
    raw = bech32.convertbits(data, 5, 8, False) if data else None
    if hrp != "npub" or raw is None:
        raise ValueError(f"Invalid npub: {npub}")
    return bytes(raw).hex()


def get_pubkey(privkey: PrivateKey) -> str:
    """x-only public key (hex) of a Nostr private key."""
    return privkey.public_key.format(compressed=True)[1:].hex()


def compute_event_id(event: dict[str, Any]) -> str:
    serialized = json.dumps(
        [
            0,
            event["pubkey"],
            event["created_at"],
            event["kind"],
            event["tags"],
            event["content"],
        ],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event(event: dict[str, Any], privkey: PrivateKey) -> dict[str, Any]:
    signed = dict(event)
    signed["pubkey"] = get_pubkey(privkey)
    signed["id"] = compute_event_id(signed)
    signed["sig"] = privkey.sign_schnorr(
        bytes.fromhex(signed["id"]), secrets.token_bytes(32)
    ).hex()
    return signed


def verify_event(event: dict[str, Any]) -> bool:
    try:
        if compute_event_id(event) != event.get("id"):
            return False
        xonly = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return xonly.verify(bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]))
    except (KeyError, ValueError):
        return False


# ──────────────────────────────────────────────────────────────────────────────
# NIP-44 v2
# ──────────────────────────────────────────────────────────────────────────────


class NIP44Error(SignerError):
    """Base exception for NIP-44 encryption errors."""


class NIP44Encrypt:
    """NIP-44 v2 encryption implementation."""

    VERSION = 2
    MIN_PLAINTEXT_SIZE = 1
    MAX_PLAINTEXT_SIZE = 65535
    SALT = b"nip44-v2"

    @staticmethod
    def calc_padded_len(unpadded_len: int) -> int:
        if unpadded_len <= 0:
            raise ValueError("Invalid unpadded length")
        if unpadded_len <= 32:
            return 32
        next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
        chunk = 32 if next_power <= 256 else next_power // 8
        return chunk * ((unpadded_len - 1) // chunk + 1)

    @staticmethod
    def pad(plaintext: bytes) -> bytes:
        size = len(plaintext)
        if not NIP44Encrypt.MIN_PLAINTEXT_SIZE <= size <= NIP44Encrypt.MAX_PLAINTEXT_SIZE:
            raise NIP44Error(f"Invalid plaintext length: {size}")
        padded_len = NIP44Encrypt.calc_padded_len(size)
        return struct.pack(">H", size) + plaintext + bytes(padded_len - size)

    @staticmethod
    def unpad(padded: bytes) -> bytes:
        if len(padded) < 2:
            raise NIP44Error("Invalid padded data")
        size = struct.unpack(">H", padded[:2])[0]
        if size == 0 or len(padded) != 2 + NIP44Encrypt.calc_padded_len(size):
            raise NIP44Error("Invalid padding")
        return padded[2 : 2 + size]

    @staticmethod
    def get_conversation_key(privkey: PrivateKey, pubkey_hex: str) -> bytes:
        """ECDH shared x coordinate run through HKDF-extract."""
        if len(pubkey_hex) == 64:
            pubkey_hex = "02" + pubkey_hex
        shared = PublicKey(bytes.fromhex(pubkey_hex)).multiply(privkey.secret)
        shared_x = shared.format(compressed=False)[1:33]
        return hmac.new(NIP44Encrypt.SALT, shared_x, hashlib.sha256).digest()

    @staticmethod
    def get_message_keys(
        conversation_key: bytes, nonce: bytes
    ) -> tuple[bytes, bytes, bytes]:
        if len(conversation_key) != 32 or len(nonce) != 32:
            raise NIP44Error("Invalid key or nonce length")
        expanded = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(
            conversation_key
        )
        return expanded[0:32], expanded[32:44], expanded[44:76]

    @staticmethod
    def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
        # cryptography wants a 16-byte nonce: 4-byte counter (0) + 12-byte nonce
        cipher = Cipher(algorithms.ChaCha20(key, b"\x00" * 4 + nonce), mode=None)
        encryptor = cipher.encryptor()
        return encryptor.update(data) + encryptor.finalize()

    @staticmethod
    def _mac(key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        return hmac.new(key, nonce + ciphertext, hashlib.sha256).digest()

    @staticmethod
    def encrypt(plaintext: str, sender_privkey: PrivateKey, recipient_pubkey: str) -> str:
        nonce = secrets.token_bytes(32)
        conversation_key = NIP44Encrypt.get_conversation_key(sender_privkey, recipient_pubkey)
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )
        padded = NIP44Encrypt.pad(plaintext.encode("utf-8"))
        ciphertext = NIP44Encrypt._chacha20(chacha_key, chacha_nonce, padded)
        mac = NIP44Encrypt._mac(hmac_key, nonce, ciphertext)
        payload = bytes([NIP44Encrypt.VERSION]) + nonce + ciphertext + mac
        return base64.b64encode(payload).decode("ascii")

    @staticmethod
    def decrypt(ciphertext: str, recipient_privkey: PrivateKey, sender_pubkey: str) -> str:
        if ciphertext.startswith("#"):
            raise NIP44Error("Unsupported encryption version")
        try:
            payload = base64.b64decode(ciphertext, validate=True)
        except ValueError as e:
            raise NIP44Error(f"Invalid base64: {e}") from e
        if len(payload) < 99 or len(payload) > 65603:
            raise NIP44Error(f"Invalid payload size: {len(payload)}")
        if payload[0] != NIP44Encrypt.VERSION:
            raise NIP44Error(f"Unknown version: {payload[0]}")

        nonce, encrypted, mac = payload[1:33], payload[33:-32], payload[-32:]
        conversation_key = NIP44Encrypt.get_conversation_key(recipient_privkey, sender_pubkey)
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )
        if not hmac.compare_digest(NIP44Encrypt._mac(hmac_key, nonce, encrypted), mac):
            raise NIP44Error("Invalid MAC")
        padded = NIP44Encrypt._chacha20(chacha_key, chacha_nonce, encrypted)
        return NIP44Encrypt.unpad(padded).decode("utf-8")


def nip44_encrypt(plaintext: str, privkey: PrivateKey, pubkey: str | None = None) -> str:
    """Encrypt to ``pubkey`` (defaults to ourselves, as for wallet backups)."""
    return NIP44Encrypt.encrypt(plaintext, privkey, pubkey or get_pubkey(privkey))


def nip44_decrypt(ciphertext: str, privkey: PrivateKey, pubkey: str | None = None) -> str:
    return NIP44Encrypt.decrypt(ciphertext, privkey, pubkey or get_pubkey(privkey))
