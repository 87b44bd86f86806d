"""Cashu Mint API client wrapper."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, TypedDict, cast
from urllib.parse import urlparse

import httpx

from .config import get_mints_from_env
from .crypto import construct_proofs, derive_keyset_id, outputs_from_pending
from .types import (
    BlindedMessage,
    BlindedSignature,
    CurrencyUnit,
    InvalidMintUrl,
    KeysetInfo,
    MintRejected,
    MintUnreachable,
    PendingOutput,
    ProofAlreadySpent,
    Proof,
    ProtocolError,
    QuoteExpired,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Mint",
    "get_mints_from_env",
    "normalize_mint_url",
    "validate_mint_url",
]

# Mint error codes we map onto dedicated exceptions
ERROR_PROOF_ALREADY_SPENT = 11001
ERROR_QUOTE_ALREADY_ISSUED = 20002
ERROR_QUOTE_EXPIRED = 20007

# Gateway errors carry no mint error body and usually clear up on retry
_TRANSIENT_STATUS = {502, 503, 504}


# ──────────────────────────────────────────────────────────────────────────────
# Mint API client
# ──────────────────────────────────────────────────────────────────────────────


class Mint:
    """Client for a single mint.

    Lookups (info, keys, quote status, checkstate, restore) are retried with
    exponential backoff on ``MintUnreachable``. Submissions (mint, melt, swap)
    are sent exactly once; callers resolve their outcome through quote state
    or checkstate.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float | None = None,
        retries: int | None = None,
        backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
        debug: bool | None = None,
    ) -> None:
        self.url = normalize_mint_url(url)
        self.timeout = timeout if timeout is not None else float(os.getenv("MINT_TIMEOUT", "10"))
        self.retries = retries if retries is not None else int(os.getenv("MINT_RETRIES", "3"))
        self.backoff = backoff
        self.debug = (
            debug
            if debug is not None
            else os.getenv("MINT_DEBUG", "false").lower() == "true"
        )
        self.client = httpx.AsyncClient(timeout=self.timeout, transport=transport)
        self._keysets: dict[str, KeysetInfo] = {}
        self._fees: dict[str, int] = {}
        self._info: MintInfo | None = None

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> Mint:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    # ───────────────────────── Transport ─────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotent: bool = False,
    ) -> dict[str, Any]:
        """Make HTTP request to mint, retrying lookups on connection errors."""
        retries = self.retries if idempotent else 0
        attempt = 0
        while True:
            try:
                return await self._send(method, path, json=json, params=params)
            except MintUnreachable as e:
                if attempt >= retries:
                    raise
                delay = self.backoff * 2**attempt
                logger.warning(
                    "%s %s%s failed (%s), retrying in %.1fs",
                    method,
                    self.url,
                    path,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if self.debug:
            logger.debug("MINT_DEBUG %s %s%s %s", method, self.url, path, json)
        try:
            response = await self.client.request(
                method, f"{self.url}{path}", json=json, params=params
            )
        except httpx.TransportError as e:
            raise MintUnreachable(f"{self.url}{path}: {e!r}") from e

        if self.debug:
            logger.debug("MINT_DEBUG %s -> %s %s", path, response.status_code, response.text)

        if response.status_code >= 400:
            raise self._error_from_response(response)

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Mint returned invalid JSON for {path}") from e
        if not isinstance(data, dict):
            raise ProtocolError(f"Mint returned {type(data).__name__} for {path}")
        return data

    def _error_from_response(self, response: httpx.Response) -> Exception:
        if response.status_code in _TRANSIENT_STATUS:
            return MintUnreachable(f"Mint returned {response.status_code}")
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return MintRejected(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status=response.status_code,
            )

        code = body.get("code")
        reason = str(body.get("detail") or body.get("error") or response.text[:200])
        status = response.status_code
        if code == ERROR_PROOF_ALREADY_SPENT:
            return ProofAlreadySpent(reason, code, status=status)
        if code == ERROR_QUOTE_EXPIRED:
            return QuoteExpired(reason, code, status=status)
        return MintRejected(reason, code, status=status)

    @staticmethod
    def _require(data: dict[str, Any], *fields: str) -> None:
        missing = [f for f in fields if f not in data]
        if missing:
            raise ProtocolError(f"Mint response missing {', '.join(missing)}")

    # ───────────────────────── Info & Keys ─────────────────────────────────

    async def get_info(self) -> MintInfo:
        """Get mint information."""
        if self._info is None:
            self._info = cast(MintInfo, await self._request("GET", "/v1/info", idempotent=True))
        return self._info

    async def supports_nut(self, nut: int) -> bool:
        nuts = (await self.get_info()).get("nuts", {})
        return bool(nuts.get(str(nut), {}).get("supported"))

    async def supports_p2pk(self) -> bool:
        """NUT-10 spending conditions with NUT-11 P2PK."""
        return await self.supports_nut(10) and await self.supports_nut(11)

    async def get_keys(self, keyset_id: str | None = None) -> list[Keyset]:
        """Get mint public keys for a keyset (or all active ones)."""
        path = f"/v1/keys/{keyset_id}" if keyset_id else "/v1/keys"
        response = await self._request("GET", path, idempotent=True)
        self._require(response, "keysets")
        keysets = response["keysets"]
        if not isinstance(keysets, list):
            raise ProtocolError("'keysets' must be a list")
        for i, keyset in enumerate(keysets):
            if not _valid_keyset(keyset):
                raise ProtocolError(f"Invalid keyset at index {i}")
        return cast(list[Keyset], keysets)

    async def get_keysets(self) -> list[KeysetEntry]:
        """Get all keyset ids with unit, active flag and input fee."""
        response = await self._request("GET", "/v1/keysets", idempotent=True)
        self._require(response, "keysets")
        keysets = cast(list[KeysetEntry], response["keysets"])
        for ks in keysets:
            self._fees[ks["id"]] = ks.get("input_fee_ppk", 0)
        return keysets

    async def get_keyset(self, keyset_id: str) -> KeysetInfo:
        """Keys for one keyset, cached for the life of the client."""
        if keyset_id in self._keysets:
            return self._keysets[keyset_id]
        if not self._fees:
            await self.get_keysets()
        keysets = await self.get_keys(keyset_id)
        if not keysets:
            raise ProtocolError(f"Mint returned no keys for keyset {keyset_id}")
        keyset = keysets[0]
        if keyset["id"].startswith("00") and derive_keyset_id(keyset["keys"]) != keyset["id"]:
            raise ProtocolError(f"Keyset id {keyset['id']} does not match its keys")
        info = KeysetInfo(
            id=keyset["id"],
            mint_url=self.url,
            unit=keyset["unit"],
            active=True,
            input_fee_ppk=self._fees.get(keyset["id"], 0),
            keys=keyset["keys"],
        )
        self._keysets[keyset_id] = info
        return info

    async def get_active_keyset(self, unit: CurrencyUnit = "sat") -> KeysetInfo:
        """The active keyset for ``unit``, preferring hex ids and lower fees."""
        candidates = [
            ks for ks in await self.get_keysets() if ks["unit"] == unit and ks["active"]
        ]
        if not candidates:
            raise ProtocolError(f"Mint {self.url} has no active keyset for unit {unit}")
        candidates.sort(
            key=lambda ks: (not _is_hex(ks["id"]), ks.get("input_fee_ppk", 0))
        )
        return await self.get_keyset(candidates[0]["id"])

    def fee_ppk(self) -> dict[str, int]:
        """Known keyset id -> input_fee_ppk (populated by ``get_keysets``)."""
        return dict(self._fees)

    def cached_keysets(self) -> list[KeysetInfo]:
        return list(self._keysets.values())

    def seed_keysets(self, keysets: list[KeysetInfo]) -> None:
        """Prime the cache from a persisted wallet snapshot."""
        for ks in keysets:
            self._keysets[ks.id] = ks
            self._fees.setdefault(ks.id, ks.input_fee_ppk)

    # ───────────────────────── Minting (receive) ─────────────────────────────────

    async def create_mint_quote(
        self,
        *,
        amount: int,
        unit: CurrencyUnit = "sat",
        description: str | None = None,
    ) -> PostMintQuoteResponse:
        """Request a Lightning invoice to mint tokens."""
        body: dict[str, Any] = {"unit": unit, "amount": amount}
        if description is not None:
            body["description"] = description
        response = await self._request("POST", "/v1/mint/quote/bolt11", json=body)
        self._require(response, "quote", "request")
        return cast(PostMintQuoteResponse, response)

    async def get_mint_quote(self, quote_id: str) -> PostMintQuoteResponse:
        """Check status of a mint quote."""
        response = await self._request(
            "GET", f"/v1/mint/quote/bolt11/{quote_id}", idempotent=True
        )
        self._require(response, "quote")
        return cast(PostMintQuoteResponse, response)

    async def mint(
        self, *, quote: str, outputs: list[BlindedMessage]
    ) -> PostMintResponse:
        """Mint tokens after paying the Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "outputs": outputs}
        response = await self._request("POST", "/v1/mint/bolt11", json=body)
        self._require(response, "signatures")
        return cast(PostMintResponse, response)

    # ───────────────────────── Melting (send) ─────────────────────────────────

    async def create_melt_quote(
        self, request: str, *, unit: CurrencyUnit = "sat"
    ) -> PostMeltQuoteResponse:
        """Get a quote for paying a Lightning invoice."""
        body: dict[str, Any] = {"unit": unit, "request": request}
        response = await self._request("POST", "/v1/melt/quote/bolt11", json=body)
        self._require(response, "quote", "amount", "fee_reserve")
        return cast(PostMeltQuoteResponse, response)

    async def get_melt_quote(self, quote_id: str) -> PostMeltQuoteResponse:
        """Check status of a melt quote."""
        response = await self._request(
            "GET", f"/v1/melt/quote/bolt11/{quote_id}", idempotent=True
        )
        self._require(response, "quote")
        return cast(PostMeltQuoteResponse, response)

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[Proof],
        outputs: list[BlindedMessage] | None = None,
    ) -> PostMeltQuoteResponse:
        """Melt tokens to pay a Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "inputs": _wire_proofs(inputs)}
        if outputs:
            body["outputs"] = outputs
        response = await self._request("POST", "/v1/melt/bolt11", json=body)
        return cast(PostMeltQuoteResponse, response)

    # ───────────────────────── Token Management ─────────────────────────────────

    async def swap(
        self, *, inputs: list[Proof], outputs: list[BlindedMessage]
    ) -> PostSwapResponse:
        """Swap proofs for new blinded signatures."""
        body: dict[str, Any] = {"inputs": _wire_proofs(inputs), "outputs": outputs}
        response = await self._request("POST", "/v1/swap", json=body)
        self._require(response, "signatures")
        return cast(PostSwapResponse, response)

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse:
        """Check if proofs are spent or pending."""
        response = await self._request(
            "POST", "/v1/checkstate", json={"Ys": Ys}, idempotent=True
        )
        self._require(response, "states")
        return cast(PostCheckStateResponse, response)

    async def restore(self, *, outputs: list[BlindedMessage]) -> PostRestoreResponse:
        """Ask the mint for signatures it already issued on these outputs (NUT-09)."""
        response = await self._request(
            "POST", "/v1/restore", json={"outputs": outputs}, idempotent=True
        )
        if "signatures" not in response and "promises" in response:
            response["signatures"] = response["promises"]
        response.setdefault("outputs", [])
        response.setdefault("signatures", [])
        return cast(PostRestoreResponse, response)

    # ───────────────────────── Proof construction ─────────────────────────────────

    async def unblind(
        self,
        signatures: list[BlindedSignature],
        outputs: list[PendingOutput],
        unit: CurrencyUnit = "sat",
    ) -> list[Proof]:
        """Build proofs from signatures on ``outputs`` (paired positionally)."""
        pairs = list(zip(signatures, outputs))
        proofs: list[Proof] = []
        for keyset_id in dict.fromkeys(o.keyset_id for _, o in pairs):
            keyset = await self.get_keyset(keyset_id)
            group = [(s, o) for s, o in pairs if o.keyset_id == keyset_id]
            proofs.extend(
                construct_proofs(
                    [s for s, _ in group],
                    [o for _, o in group],
                    keyset.keys,
                    mint_url=self.url,
                    unit=unit,
                )
            )
        return proofs

    async def restore_proofs(
        self, outputs: list[PendingOutput], unit: CurrencyUnit = "sat"
    ) -> list[Proof]:
        """Rebuild proofs for whichever of ``outputs`` the mint already signed."""
        if not outputs:
            return []
        response = await self.restore(outputs=outputs_from_pending(outputs))
        signed = {
            o["B_"]: sig for o, sig in zip(response["outputs"], response["signatures"])
        }
        matched = [o for o in outputs if o.B_ in signed]
        logger.debug(
            "Mint %s restored %d of %d outputs", self.url, len(matched), len(outputs)
        )
        return await self.unblind([signed[o.B_] for o in matched], matched, unit)


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────


def _wire_proofs(proofs: list[Proof]) -> list[dict[str, Any]]:
    """Strip wallet bookkeeping fields before sending proofs to a mint."""
    wire = []
    for p in proofs:
        entry: dict[str, Any] = {
            "id": p["id"],
            "amount": p["amount"],
            "secret": p["secret"],
            "C": p["C"],
        }
        if p.get("witness"):
            entry["witness"] = p["witness"]
        wire.append(entry)
    return wire


def _is_hex(value: str) -> bool:
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


def _is_valid_compressed_pubkey(pubkey: str) -> bool:
    return (
        isinstance(pubkey, str)
        and len(pubkey) == 66
        and pubkey.startswith(("02", "03"))
        and _is_hex(pubkey)
    )


def _valid_keyset(keyset: Any) -> bool:
    """NUT-01 keyset shape: id, unit and amount -> compressed pubkey."""
    if not isinstance(keyset, dict):
        return False
    if not all(field in keyset for field in ("id", "unit", "keys")):
        return False
    keys = keyset["keys"]
    if not isinstance(keys, dict):
        return False
    return all(
        str(amount).isdigit() and _is_valid_compressed_pubkey(pubkey)
        for amount, pubkey in keys.items()
    )


def normalize_mint_url(url: str) -> str:
    """Lowercase scheme and host, drop trailing slashes.

    Raises:
        InvalidMintUrl: If the URL is not http(s) with a host
    """
    if not isinstance(url, str):
        raise InvalidMintUrl(f"Mint URL must be a string, got {type(url).__name__}")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidMintUrl(f"Invalid mint URL: {url!r}")
    if parsed.query or parsed.fragment:
        raise InvalidMintUrl(f"Mint URL must not carry a query or fragment: {url!r}")
    path = parsed.path.rstrip("/")
    return f"{parsed.scheme}://{parsed.netloc.lower()}{path}"


def validate_mint_url(url: str) -> bool:
    """Validate that a mint URL has the correct format.

    Args:
        url: Mint URL to validate

    Returns:
        True if URL appears valid, False otherwise
    """
    try:
        normalize_mint_url(url)
    except InvalidMintUrl:
        return False
    return True


# ──────────────────────────────────────────────────────────────────────────────
# Response types from NUT-01 and the mint OpenAPI schema
# ──────────────────────────────────────────────────────────────────────────────


class MintInfo(TypedDict, total=False):
    """Mint information response."""

    name: str
    pubkey: str
    version: str
    description: str
    contact: list[dict[str, str]]
    motd: str
    nuts: dict[str, dict[str, Any]]


class Keyset(TypedDict):
    """Individual keyset per NUT-01."""

    id: str
    unit: CurrencyUnit
    keys: dict[str, str]  # amount -> compressed secp256k1 pubkey


class KeysetEntryOptional(TypedDict, total=False):
    input_fee_ppk: int  # input fee in parts per thousand


class KeysetEntry(KeysetEntryOptional):
    """Entry of GET /v1/keysets."""

    id: str
    unit: CurrencyUnit
    active: bool


class PostMintQuoteResponse(TypedDict, total=False):
    """Mint quote response."""

    quote: str  # quote id
    request: str  # bolt11 invoice
    amount: int
    unit: CurrencyUnit
    state: str  # "UNPAID", "PAID", "ISSUED"
    expiry: int | None
    paid: bool


class PostMintResponse(TypedDict):
    """Mint response with signatures."""

    signatures: list[BlindedSignature]


class PostMeltQuoteResponse(TypedDict, total=False):
    """Melt quote response."""

    quote: str
    amount: int
    fee_reserve: int
    unit: CurrencyUnit
    request: str
    paid: bool
    state: str
    expiry: int | None
    payment_preimage: str | None
    change: list[BlindedSignature] | None


class PostSwapResponse(TypedDict):
    """Swap response."""

    signatures: list[BlindedSignature]


class PostCheckStateResponse(TypedDict):
    """Check state response."""

    states: list[dict[str, Any]]  # {"Y", "state", "witness"}


class PostRestoreResponse(TypedDict, total=False):
    """Restore response."""

    outputs: list[BlindedMessage]
    signatures: list[BlindedSignature]
