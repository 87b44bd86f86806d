"""Shared fixtures: an in-process Cashu mint and an in-memory relay pool."""

from __future__ import annotations

import json
import secrets
import time
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx
import pytest
from coincurve import PrivateKey, PublicKey

from nutjar.config import Settings
from nutjar.crypto import (
    _hash_e,
    derive_keyset_id,
    hash_to_curve,
    parse_p2pk_secret,
    verify_p2pk_witness,
)
from nutjar.denominations import split_amount
from nutjar.relay import NostrTransport
from nutjar.signer import LocalKeySigner
from nutjar.wallet import Wallet

_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

MINT_URL = "https://mint.test"
OTHER_MINT_URL = "https://other.mint.test"


# ──────────────────────────────────────────────────────────────────────────────
# Fake mint
# ──────────────────────────────────────────────────────────────────────────────


class FakeMint:
    """Cashu mint speaking the v1 REST API over ``httpx.MockTransport``.

    Signatures are real BDHKE signatures (with DLEQ proofs), inputs are
    verified against the mint keys, P2PK witnesses are checked and spent
    secrets are tracked, so wallet-side crypto is exercised end to end.

    Fault injection:
        down: every request fails with a connection error
        drop_response: paths whose request is processed but whose response
            is lost (raises ``httpx.ReadTimeout`` after the state change)
        fail_status: path -> (status, body) returned instead of processing
        melt_outcome: "PAID", "FAILED" or "PENDING"
    """

    def __init__(
        self,
        url: str = MINT_URL,
        *,
        input_fee_ppk: int = 0,
        p2pk: bool = True,
        dleq: bool = True,
        lightning_fee: int = 0,
        fee_reserve: int = 2,
    ) -> None:
        self.url = url
        self.input_fee_ppk = input_fee_ppk
        self.p2pk = p2pk
        self.dleq = dleq
        self.lightning_fee = lightning_fee
        self.fee_reserve = fee_reserve

        self.privkeys = {2**i: PrivateKey() for i in range(21)}
        self.keys = {
            str(amount): k.public_key.format(compressed=True).hex()
            for amount, k in self.privkeys.items()
        }
        self.keyset_id = derive_keyset_id(self.keys)

        self.spent: set[str] = set()  # Y values
        self.pending: set[str] = set()
        self.signed: dict[str, dict[str, Any]] = {}  # B_ -> signature
        self.mint_quotes: dict[str, dict[str, Any]] = {}
        self.melt_quotes: dict[str, dict[str, Any]] = {}
        self.invoices: dict[str, int] = {}  # bolt11 -> amount for melt quotes

        self.requests: list[tuple[str, str]] = []
        self.down = False
        self.drop_response: set[str] = set()
        self.fail_status: dict[str, tuple[int, dict[str, Any]]] = {}
        self.melt_outcome = "PAID"

    # ───────────────────────── Test controls ─────────────────────────────────

    def pay(self, quote_id: str) -> None:
        """Simulate the Lightning invoice of a mint quote being paid."""
        self.mint_quotes[quote_id]["state"] = "PAID"

    def expire(self, quote_id: str) -> None:
        self.mint_quotes[quote_id]["expiry"] = int(time.time()) - 1

    def settle_melt(self, quote_id: str, outcome: str) -> None:
        """Resolve a PENDING melt to PAID or FAILED."""
        quote = self.melt_quotes[quote_id]
        inputs, outputs = quote.pop("_inputs"), quote.pop("_outputs")
        ys = {self._y(p["secret"]) for p in inputs}
        self.pending -= ys
        if outcome == "PAID":
            self._complete_melt(quote, inputs, outputs)
        else:
            quote["state"] = "UNPAID"

    def count(self, method: str, path_prefix: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p.startswith(path_prefix))

    # ───────────────────────── Crypto ─────────────────────────────────

    @staticmethod
    def _y(secret: str) -> str:
        return hash_to_curve(secret.encode("utf-8")).format(compressed=True).hex()

    def _sign(self, output: dict[str, Any], amount: int | None = None) -> dict[str, Any]:
        amount = output["amount"] if amount is None else amount
        k = self.privkeys[amount]
        B_ = PublicKey(bytes.fromhex(output["B_"]))
        C_ = B_.multiply(k.secret)
        signature: dict[str, Any] = {
            "id": self.keyset_id,
            "amount": amount,
            "C_": C_.format(compressed=True).hex(),
        }
        if self.dleq:
            p = PrivateKey()
            e = _hash_e(p.public_key, B_.multiply(p.secret), k.public_key, C_)
            p_int = int.from_bytes(p.secret, "big")
            k_int = int.from_bytes(k.secret, "big")
            s = (p_int + int.from_bytes(e, "big") * k_int) % _N
            signature["dleq"] = {"e": e.hex(), "s": s.to_bytes(32, "big").hex()}
        self.signed[output["B_"]] = signature
        return signature

    def _check_inputs(self, inputs: list[dict[str, Any]]) -> httpx.Response | None:
        seen: set[str] = set()
        for proof in inputs:
            y = self._y(proof["secret"])
            if y in self.spent or y in seen:
                return self._error(11001, "Token already spent.")
            if y in self.pending:
                return self._error(11002, "Token is pending.")
            seen.add(y)
            k = self.privkeys.get(proof["amount"])
            expected = (
                hash_to_curve(proof["secret"].encode("utf-8")).multiply(k.secret)
                if k is not None
                else None
            )
            if expected is None or expected.format(compressed=True).hex() != proof["C"]:
                return self._error(10003, "Proof could not be verified.")
            if parse_p2pk_secret(proof["secret"]) is not None and not verify_p2pk_witness(
                proof["secret"], proof.get("witness", "")
            ):
                return self._error(20008, "Witness is missing or invalid for P2PK proof.")
        return None

    def _input_fee(self, inputs: list[dict[str, Any]]) -> int:
        return (self.input_fee_ppk * len(inputs) + 999) // 1000

    @staticmethod
    def _error(code: int, detail: str, status: int = 400) -> httpx.Response:
        return httpx.Response(status, json={"code": code, "detail": detail})

    # ───────────────────────── Routing ─────────────────────────────────

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if self.down:
            raise httpx.ConnectError("mint is down", request=request)
        for prefix, (status, body) in self.fail_status.items():
            if path.startswith(prefix):
                return httpx.Response(status, json=body)

        body = json.loads(request.content) if request.content else {}
        response = self._route(request.method, path, body)
        if any(path.startswith(p) for p in self.drop_response):
            raise httpx.ReadTimeout("response lost", request=request)
        return response

    def _route(self, method: str, path: str, body: dict[str, Any]) -> httpx.Response:
        if path == "/v1/info":
            nuts: dict[str, Any] = {str(n): {"supported": True} for n in (7, 8, 9, 12)}
            if self.p2pk:
                nuts.update({"10": {"supported": True}, "11": {"supported": True}})
            return httpx.Response(200, json={"name": "Fake Mint", "version": "test/0", "nuts": nuts})
        if path == "/v1/keysets":
            return httpx.Response(
                200,
                json={
                    "keysets": [
                        {
                            "id": self.keyset_id,
                            "unit": "sat",
                            "active": True,
                            "input_fee_ppk": self.input_fee_ppk,
                        }
                    ]
                },
            )
        if path in ("/v1/keys", f"/v1/keys/{self.keyset_id}"):
            return httpx.Response(
                200, json={"keysets": [{"id": self.keyset_id, "unit": "sat", "keys": self.keys}]}
            )
        if path.startswith("/v1/keys/"):
            return self._error(12001, "Keyset not found.")

        if path == "/v1/mint/quote/bolt11" and method == "POST":
            return self._create_mint_quote(body)
        if path.startswith("/v1/mint/quote/bolt11/"):
            quote = self.mint_quotes.get(path.rsplit("/", 1)[1])
            if quote is None:
                return self._error(20005, "Quote not found.")
            return httpx.Response(200, json=self._mint_quote_view(quote))
        if path == "/v1/mint/bolt11":
            return self._mint(body)

        if path == "/v1/melt/quote/bolt11" and method == "POST":
            return self._create_melt_quote(body)
        if path.startswith("/v1/melt/quote/bolt11/"):
            quote = self.melt_quotes.get(path.rsplit("/", 1)[1])
            if quote is None:
                return self._error(20005, "Quote not found.")
            return httpx.Response(200, json=self._melt_quote_view(quote))
        if path == "/v1/melt/bolt11":
            return self._melt(body)

        if path == "/v1/swap":
            return self._swap(body)
        if path == "/v1/checkstate":
            return httpx.Response(200, json={"states": [self._state(y) for y in body["Ys"]]})
        if path == "/v1/restore":
            found = [o for o in body["outputs"] if o["B_"] in self.signed]
            return httpx.Response(
                200,
                json={"outputs": found, "signatures": [self.signed[o["B_"]] for o in found]},
            )
        return httpx.Response(404, json={"detail": "Not found"})

    def _state(self, y: str) -> dict[str, Any]:
        if y in self.spent:
            state = "SPENT"
        elif y in self.pending:
            state = "PENDING"
        else:
            state = "UNSPENT"
        return {"Y": y, "state": state, "witness": None}

    # ───────────────────────── Mint (NUT-04) ─────────────────────────────────

    def _create_mint_quote(self, body: dict[str, Any]) -> httpx.Response:
        quote_id = secrets.token_hex(8)
        self.mint_quotes[quote_id] = {
            "quote": quote_id,
            "request": f"lnbc{body['amount']}n1fake{quote_id}",
            "amount": body["amount"],
            "unit": body.get("unit", "sat"),
            "state": "UNPAID",
            "expiry": int(time.time()) + 3600,
        }
        return httpx.Response(200, json=self._mint_quote_view(self.mint_quotes[quote_id]))

    @staticmethod
    def _mint_quote_view(quote: dict[str, Any]) -> dict[str, Any]:
        return dict(quote)

    def _mint(self, body: dict[str, Any]) -> httpx.Response:
        quote = self.mint_quotes.get(body["quote"])
        if quote is None:
            return self._error(20005, "Quote not found.")
        if quote["state"] == "ISSUED":
            return self._error(20002, "Tokens have already been issued for quote.")
        if quote["state"] != "PAID":
            if quote["expiry"] < time.time():
                return self._error(20007, "Quote is expired.")
            return self._error(20001, "Quote request is not paid.")
        if sum(o["amount"] for o in body["outputs"]) != quote["amount"]:
            return self._error(11002, "Outputs do not match quote amount.")
        signatures = [self._sign(o) for o in body["outputs"]]
        quote["state"] = "ISSUED"
        return httpx.Response(200, json={"signatures": signatures})

    # ───────────────────────── Melt (NUT-05 / NUT-08) ─────────────────────────

    def _create_melt_quote(self, body: dict[str, Any]) -> httpx.Response:
        amount = self.invoices.get(body["request"])
        if amount is None:
            return self._error(20000, "Invoice not recognised.")
        quote_id = secrets.token_hex(8)
        self.melt_quotes[quote_id] = {
            "quote": quote_id,
            "request": body["request"],
            "amount": amount,
            "fee_reserve": self.fee_reserve,
            "unit": "sat",
            "state": "UNPAID",
            "payment_preimage": None,
            "change": None,
            "expiry": int(time.time()) + 3600,
        }
        return httpx.Response(200, json=self._melt_quote_view(self.melt_quotes[quote_id]))

    @staticmethod
    def _melt_quote_view(quote: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in quote.items() if not k.startswith("_")}

    def _melt(self, body: dict[str, Any]) -> httpx.Response:
        quote = self.melt_quotes.get(body["quote"])
        if quote is None:
            return self._error(20005, "Quote not found.")
        if quote["state"] == "PAID":
            return self._error(20006, "Quote already paid.")
        inputs = body["inputs"]
        error = self._check_inputs(inputs)
        if error is not None:
            return error
        total = sum(p["amount"] for p in inputs)
        if total < quote["amount"] + quote["fee_reserve"] + self._input_fee(inputs):
            return self._error(11005, "Provided inputs are insufficient.")

        outputs = body.get("outputs") or []
        if self.melt_outcome == "FAILED":
            quote["state"] = "UNPAID"
        elif self.melt_outcome == "PENDING":
            quote["state"] = "PENDING"
            quote["_inputs"], quote["_outputs"] = inputs, outputs
            self.pending |= {self._y(p["secret"]) for p in inputs}
        else:
            self._complete_melt(quote, inputs, outputs)
        return httpx.Response(200, json=self._melt_quote_view(quote))

    def _complete_melt(
        self, quote: dict[str, Any], inputs: list[dict[str, Any]], outputs: list[dict[str, Any]]
    ) -> None:
        self.spent |= {self._y(p["secret"]) for p in inputs}
        overpaid = (
            sum(p["amount"] for p in inputs)
            - quote["amount"]
            - self._input_fee(inputs)
            - self.lightning_fee
        )
        change_amounts = split_amount(max(overpaid, 0))[: len(outputs)]
        quote["change"] = [self._sign(o, a) for o, a in zip(outputs, change_amounts)]
        quote["state"] = "PAID"
        quote["payment_preimage"] = "ab" * 32

    # ───────────────────────── Swap (NUT-03) ─────────────────────────────────

    def _swap(self, body: dict[str, Any]) -> httpx.Response:
        inputs, outputs = body["inputs"], body["outputs"]
        error = self._check_inputs(inputs)
        if error is not None:
            return error
        if any(o["B_"] in self.signed for o in outputs):
            return self._error(10002, "Blinded message of output already signed.")
        expected = sum(p["amount"] for p in inputs) - self._input_fee(inputs)
        if sum(o["amount"] for o in outputs) != expected:
            return self._error(11002, "Transaction is not balanced.")
        self.spent |= {self._y(p["secret"]) for p in inputs}
        return httpx.Response(200, json={"signatures": [self._sign(o) for o in outputs]})


class MintNetwork:
    """Routes requests to fake mints by host."""

    def __init__(self) -> None:
        self.mints: dict[str, FakeMint] = {}

    def add(self, url: str = MINT_URL, **kwargs: Any) -> FakeMint:
        mint = FakeMint(url, **kwargs)
        self.mints[urlparse(url).netloc] = mint
        return mint

    def handler(self, request: httpx.Request) -> httpx.Response:
        mint = self.mints.get(request.url.netloc.decode("ascii"))
        if mint is None:
            raise httpx.ConnectError(f"no route to {request.url.host}", request=request)
        return mint.handler(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ──────────────────────────────────────────────────────────────────────────────
# Fake relay pool
# ──────────────────────────────────────────────────────────────────────────────


def _matches(event: dict[str, Any], filt: dict[str, Any]) -> bool:
    if "ids" in filt and event["id"] not in filt["ids"]:
        return False
    if "authors" in filt and event["pubkey"] not in filt["authors"]:
        return False
    if "kinds" in filt and event["kind"] not in filt["kinds"]:
        return False
    if "since" in filt and event["created_at"] < filt["since"]:
        return False
    for key, values in filt.items():
        if key.startswith("#"):
            name = key[1:]
            if not any(t[0] == name and t[1] in values for t in event["tags"] if len(t) > 1):
                return False
    return True


class FakeRelayPool:
    """In-memory stand-in for ``RelayPool``, shared by every wallet in a test."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.accept = True

    async def publish_event(self, event: dict[str, Any]) -> bool:
        if self.accept:
            self.events.append(event)
        return self.accept

    async def fetch_events(
        self, filters: list[dict[str, Any]], *, timeout: float = 5.0
    ) -> list[dict[str, Any]]:
        found: dict[str, dict[str, Any]] = {}
        for filt in filters:
            matched = sorted(
                (e for e in self.events if _matches(e, filt)),
                key=lambda e: e["created_at"],
                reverse=True,
            )
            if "limit" in filt:
                matched = matched[: filt["limit"]]
            for event in matched:
                found.setdefault(event["id"], event)
        return sorted(found.values(), key=lambda e: e["created_at"], reverse=True)

    async def disconnect_all(self) -> None:
        pass


# ──────────────────────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def network() -> MintNetwork:
    return MintNetwork()


@pytest.fixture
def fake_mint(network: MintNetwork) -> FakeMint:
    return network.add(MINT_URL)


@pytest.fixture
def relays() -> FakeRelayPool:
    return FakeRelayPool()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path / "wallet", mint_timeout=5.0, mint_retries=0)


@pytest.fixture
async def make_wallet(network: MintNetwork, relays: FakeRelayPool, tmp_path: Path):
    """Factory for wallets sharing the fake mints and relays."""
    wallets: list[Wallet] = []

    async def _make(
        name: str = "alice",
        mints: tuple[str, ...] = (MINT_URL,),
        *,
        nostr: bool = True,
        persist: bool = False,
        privkey: PrivateKey | None = None,
    ) -> Wallet:
        signer = LocalKeySigner(privkey or PrivateKey()) if nostr else None
        wallet = await Wallet.create_wallet(
            list(mints),
            data_dir=tmp_path / name if persist else None,
            signer=signer,
            transport=NostrTransport(relays, signer) if signer else None,  # type: ignore[arg-type]
            settings=Settings(data_dir=tmp_path / name, mint_retries=0),
            http_transport=network.transport(),
        )
        wallets.append(wallet)
        return wallet

    yield _make

    for wallet in wallets:
        await wallet.aclose()


async def fund(wallet: Wallet, mint: FakeMint, amount: int) -> None:
    """Mint ``amount`` into ``wallet`` through a paid Lightning quote."""
    invoice = await wallet.create_invoice(amount, mint_url=mint.url)
    mint.pay(invoice.quote_id)
    assert await wallet.check_and_claim(invoice.quote_id)
