"""Cashu token serialization: cashuA (V3, JSON) and cashuB (V4, CBOR)."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

import cbor2

from .mint import validate_mint_url
from .types import DecodeError, Proof, Token

PREFIX_V3 = "cashuA"
PREFIX_V4 = "cashuB"


def _is_hex(value: str) -> bool:
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return len(value) % 2 == 0


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64decode(data: str) -> bytes:
    # accept both alphabets, with or without padding
    data = data.replace("+", "-").replace("/", "_").rstrip("=")
    data += "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(data)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 payload: {e}") from e


# ──────────────────────────────────────────────────────────────────────────────
# Encoding
# ──────────────────────────────────────────────────────────────────────────────


def encode(token: Token, version: int = 4) -> str:
    """Serialize a token.

    V4 needs hex keyset ids; tokens carrying legacy base64 ids are written
    as V3 whatever ``version`` says.
    """
    if not token.proofs:
        raise ValueError("Cannot encode a token without proofs")
    if version == 4 and all(_is_hex(p["id"]) for p in token.proofs):
        return encode_v4(token)
    return encode_v3(token)


def encode_v3(token: Token) -> str:
    payload: dict[str, Any] = {
        "token": [
            {"mint": token.mint_url, "proofs": [_v3_proof(p) for p in token.proofs]}
        ],
        "unit": token.unit,
    }
    if token.memo:
        payload["memo"] = token.memo
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return PREFIX_V3 + _b64encode(raw)


def encode_v4(token: Token) -> str:
    groups: list[dict[str, Any]] = []
    # consecutive runs of one keyset id, so decoding restores proof order
    for proof in token.proofs:
        keyset_id = bytes.fromhex(proof["id"])
        if not groups or groups[-1]["i"] != keyset_id:
            groups.append({"i": keyset_id, "p": []})
        groups[-1]["p"].append(_v4_proof(proof))

    payload: dict[str, Any] = {"m": token.mint_url, "u": token.unit, "t": groups}
    if token.memo:
        payload["d"] = token.memo
    return PREFIX_V4 + _b64encode(cbor2.dumps(payload))


def _v3_proof(proof: Proof) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "id": proof["id"],
        "amount": proof["amount"],
        "secret": proof["secret"],
        "C": proof["C"],
    }
    if proof.get("witness"):
        entry["witness"] = proof["witness"]
    if proof.get("dleq"):
        entry["dleq"] = dict(proof["dleq"])
    return entry


def _v4_proof(proof: Proof) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "a": proof["amount"],
        "s": proof["secret"],
        "c": bytes.fromhex(proof["C"]),
    }
    if proof.get("witness"):
        entry["w"] = proof["witness"]
    dleq = proof.get("dleq")
    if dleq:
        entry["d"] = {k: bytes.fromhex(dleq[k]) for k in ("e", "s", "r") if k in dleq}
    return entry


# ──────────────────────────────────────────────────────────────────────────────
# Decoding
# ──────────────────────────────────────────────────────────────────────────────


def decode(serialized: str) -> Token:
    """Parse a cashuA/cashuB string.

    Raises:
        DecodeError: On any malformed input; never returns an empty token
    """
    if not isinstance(serialized, str):
        raise DecodeError("Token must be a string")
    text = serialized.strip()
    if text.lower().startswith("cashu:"):
        text = text[len("cashu:") :]

    if text.startswith(PREFIX_V4):
        token = _decode_v4(_b64decode(text[len(PREFIX_V4) :]))
    elif text.startswith(PREFIX_V3):
        token = _decode_v3(_b64decode(text[len(PREFIX_V3) :]))
    else:
        raise DecodeError("Unknown token prefix, expected cashuA or cashuB")

    if not token.proofs:
        raise DecodeError("Token contains no proofs")
    if not validate_mint_url(token.mint_url):
        raise DecodeError(f"Token has an invalid mint URL: {token.mint_url!r}")
    return token


def _decode_v3(raw: bytes) -> Token:
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise DecodeError(f"Invalid token JSON: {e}") from e
    try:
        entries = payload["token"]
        if not isinstance(entries, list) or not entries:
            raise DecodeError("Token has no mint entries")
        mints = {entry["mint"] for entry in entries}
        if len(mints) != 1:
            raise DecodeError("Tokens spanning several mints are not supported")
        mint_url = _str_field(entries[0]["mint"], "mint")
        unit = _str_field(payload.get("unit") or "sat", "unit")
        memo = payload.get("memo")
        proofs = [
            _proof(
                keyset_id=p["id"],
                amount=p["amount"],
                secret=p["secret"],
                C=p["C"],
                witness=p.get("witness"),
                dleq=p.get("dleq"),
                mint_url=mint_url,
                unit=unit,
            )
            for entry in entries
            for p in entry["proofs"]
        ]
    except (KeyError, TypeError, AttributeError) as e:
        raise DecodeError(f"Malformed V3 token: {e!r}") from e
    return Token(mint_url=mint_url, proofs=proofs, memo=memo, unit=unit)  # type: ignore[arg-type]


def _decode_v4(raw: bytes) -> Token:
    try:
        payload = cbor2.loads(raw)
    except (cbor2.CBORDecodeError, ValueError, EOFError) as e:
        raise DecodeError(f"Invalid token CBOR: {e}") from e
    try:
        mint_url = _str_field(payload["m"], "mint")
        unit = _str_field(payload["u"], "unit")
        memo = payload.get("d")
        proofs = []
        for group in payload["t"]:
            keyset_id = _bytes_field(group["i"], "keyset id").hex()
            for p in group["p"]:
                dleq = p.get("d")
                proofs.append(
                    _proof(
                        keyset_id=keyset_id,
                        amount=p["a"],
                        secret=p["s"],
                        C=_bytes_field(p["c"], "signature").hex(),
                        witness=p.get("w"),
                        dleq=(
                            {k: _bytes_field(v, "dleq").hex() for k, v in dleq.items()}
                            if dleq
                            else None
                        ),
                        mint_url=mint_url,
                        unit=unit,
                    )
                )
    except (KeyError, TypeError, AttributeError) as e:
        raise DecodeError(f"Malformed V4 token: {e!r}") from e
    return Token(mint_url=mint_url, proofs=proofs, memo=memo, unit=unit)  # type: ignore[arg-type]


def _str_field(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise DecodeError(f"Token {name} must be a non-empty string")
    return value


def _bytes_field(value: Any, name: str) -> bytes:
    if not isinstance(value, bytes) or not value:
        raise DecodeError(f"Token {name} must be bytes")
    return value


def _proof(
    *,
    keyset_id: Any,
    amount: Any,
    secret: Any,
    C: Any,
    witness: Any,
    dleq: Any,
    mint_url: str,
    unit: str,
) -> Proof:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise DecodeError(f"Invalid proof amount: {amount!r}")
    _str_field(keyset_id, "keyset id")
    _str_field(secret, "secret")
    if not isinstance(C, str) or len(C) != 66 or not _is_hex(C):
        raise DecodeError("Proof signature must be a 33-byte hex point")

    proof = Proof(
        id=keyset_id,
        amount=amount,
        secret=secret,
        C=C,
        mint=mint_url,
        unit=unit,  # type: ignore[typeddict-item]
    )
    if witness:
        proof["witness"] = (
            witness if isinstance(witness, str) else json.dumps(witness)
        )
    if dleq:
        if not isinstance(dleq, dict):
            raise DecodeError("Proof DLEQ must be a mapping")
        proof["dleq"] = {str(k): str(v) for k, v in dleq.items()}
    return proof
