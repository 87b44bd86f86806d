"""Nostr relay websocket client and the relay-backed event transport."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, TypedDict
from uuid import uuid4

import websockets

from .crypto import verify_event
from .signer import Signer
from .types import (
    EventKind,
    IncomingNutzap,
    Nutzap,
    NutzapInfo,
    Proof,
    RelayError,
)

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Nostr protocol types
# ──────────────────────────────────────────────────────────────────────────────


class NostrEvent(TypedDict):
    """Nostr event structure."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]]
    content: str
    sig: str


class NostrFilter(TypedDict, total=False):
    """Filter for REQ subscriptions."""

    ids: list[str]
    authors: list[str]
    kinds: list[int]
    since: int
    until: int
    limit: int
    # Tags filters use #<tag> format


# ──────────────────────────────────────────────────────────────────────────────
# Relay client
# ──────────────────────────────────────────────────────────────────────────────


class NostrRelay:
    """Minimal Nostr relay client."""

    def __init__(self, url: str, *, timeout: float = 10.0) -> None:
        """Initialize relay client.

        Args:
            url: Relay websocket URL (e.g. "wss://relay.damus.io")
            timeout: Seconds to wait for connection and for OK responses
        """
        self.url = url
        self.timeout = timeout
        self.ws: Any = None

    async def connect(self) -> None:
        """Connect to the relay."""
        if self.ws is not None and self.ws.close_code is None:
            return
        try:
            async with asyncio.timeout(self.timeout):
                self.ws = await websockets.connect(
                    self.url, ping_interval=20, ping_timeout=10, close_timeout=10
                )
        except TimeoutError as e:
            raise RelayError(f"Connection timeout: {self.url}") from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise RelayError(f"Connection to {self.url} failed: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from the relay."""
        if self.ws is not None and self.ws.close_code is None:
            await self.ws.close()

    async def _send(self, message: list[Any]) -> None:
        if self.ws is None or self.ws.close_code is not None:
            raise RelayError("Not connected to relay")
        await self.ws.send(json.dumps(message))

    async def _recv(self) -> list[Any]:
        if self.ws is None or self.ws.close_code is not None:
            raise RelayError("Not connected to relay")
        return json.loads(await self.ws.recv())

    # ───────────────────────── Publishing Events ─────────────────────────────────

    async def publish_event(self, event: NostrEvent) -> bool:
        """Publish an event to the relay.

        Returns True if accepted, False if rejected or unanswered.
        """
        try:
            await self.connect()
            await self._send(["EVENT", event])
            async with asyncio.timeout(self.timeout):
                while True:
                    msg = await self._recv()
                    if msg[0] == "OK" and msg[1] == event["id"]:
                        if not msg[2]:
                            logger.warning(
                                "Relay %s rejected event: %s",
                                self.url,
                                msg[3] if len(msg) > 3 else "",
                            )
                        return bool(msg[2])
                    if msg[0] == "NOTICE":
                        logger.info("Relay %s notice: %s", self.url, msg[1])
        except TimeoutError:
            logger.warning("Timeout waiting for OK response from %s", self.url)
            return False
        except (RelayError, websockets.exceptions.WebSocketException) as e:
            logger.warning("Error publishing to %s: %s", self.url, e)
            return False

    # ───────────────────────── Fetching Events ─────────────────────────────────

    async def fetch_events(
        self,
        filters: list[NostrFilter],
        *,
        timeout: float = 5.0,
    ) -> list[NostrEvent]:
        """Fetch stored events matching filters, until EOSE or timeout."""
        await self.connect()
        sub_id = str(uuid4())
        events: list[NostrEvent] = []
        await self._send(["REQ", sub_id, *filters])
        try:
            async with asyncio.timeout(timeout):
                while True:
                    msg = await self._recv()
                    if msg[0] == "EVENT" and msg[1] == sub_id:
                        events.append(msg[2])
                    elif msg[0] == "EOSE" and msg[1] == sub_id:
                        break
        except TimeoutError:
            logger.debug("No EOSE from %s within %.1fs", self.url, timeout)
        finally:
            await self._send(["CLOSE", sub_id])
        return events


class RelayPool:
    """Fan-out over several relays."""

    def __init__(self, urls: list[str], *, timeout: float = 10.0) -> None:
        self.relays = [NostrRelay(url, timeout=timeout) for url in urls]

    async def publish_event(self, event: NostrEvent) -> bool:
        """Publish to every relay; True if at least one accepted."""
        if not self.relays:
            return False
        results = await asyncio.gather(
            *(relay.publish_event(event) for relay in self.relays)
        )
        return any(results)

    async def fetch_events(
        self, filters: list[NostrFilter], *, timeout: float = 5.0
    ) -> list[NostrEvent]:
        """Union of every reachable relay's results, newest first, deduplicated."""
        results = await asyncio.gather(
            *(relay.fetch_events(filters, timeout=timeout) for relay in self.relays),
            return_exceptions=True,
        )
        seen: dict[str, NostrEvent] = {}
        for relay, result in zip(self.relays, results):
            if isinstance(result, BaseException):
                logger.warning("Fetch from %s failed: %s", relay.url, result)
                continue
            for event in result:
                seen.setdefault(event["id"], event)
        return sorted(seen.values(), key=lambda e: e["created_at"], reverse=True)

    async def disconnect_all(self) -> None:
        for relay in self.relays:
            await relay.disconnect()


# ──────────────────────────────────────────────────────────────────────────────
# Event <-> model conversion
# ──────────────────────────────────────────────────────────────────────────────


def nutzap_info_tags(info: NutzapInfo, unit: str = "sat") -> list[list[str]]:
    tags = [["relay", relay] for relay in info.relays]
    tags += [["mint", mint, unit] for mint in info.trusted_mints]
    tags.append(["pubkey", info.p2pk_pubkey])
    return tags


def nutzap_info_from_event(event: dict[str, Any]) -> NutzapInfo | None:
    """Parse a kind 10019 event; None when it names no P2PK key."""
    relays: list[str] = []
    mints: list[str] = []
    p2pk: str | None = None
    for tag in event.get("tags", []):
        if len(tag) < 2:
            continue
        if tag[0] == "relay":
            relays.append(tag[1])
        elif tag[0] == "mint":
            mints.append(tag[1])
        elif tag[0] == "pubkey":
            p2pk = tag[1]
    if not p2pk:
        return None
    return NutzapInfo(
        pubkey=event["pubkey"], p2pk_pubkey=p2pk, trusted_mints=mints, relays=relays
    )


def nutzap_tags(nutzap: Nutzap, unit: str = "sat") -> list[list[str]]:
    tags = [
        [
            "proof",
            json.dumps(
                {k: p[k] for k in ("id", "amount", "secret", "C") if k in p}  # type: ignore[literal-required]
            ),
        ]
        for p in nutzap.proofs
    ]
    tags.append(["u", nutzap.mint_url])
    tags.append(["unit", unit])
    tags.append(["p", nutzap.recipient_pubkey])
    if nutzap.ref:
        tags.append(["e", nutzap.ref])
    return tags


def _nutzap_proof(raw: Any, mint_url: str, unit: str) -> Proof | None:
    if not isinstance(raw, dict):
        return None
    amount = raw.get("amount")
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        return None
    fields = [raw.get(k) for k in ("id", "secret", "C")]
    if not all(isinstance(v, str) and v for v in fields):
        return None
    keyset_id, secret, signature = fields
    return Proof(
        id=keyset_id,
        amount=amount,
        secret=secret,
        C=signature,
        mint=mint_url,
        unit=unit,  # type: ignore[typeddict-item]
    )


def incoming_nutzap_from_event(event: dict[str, Any]) -> IncomingNutzap | None:
    """Parse a kind 9321 event.

    Proofs that are not well-formed ``{id, amount, secret, C}`` objects are
    dropped. Returns None when no mint or no usable proof remains.
    """
    mint_url: str | None = None
    unit = "sat"
    ref: str | None = None
    raw_proofs: list[Any] = []
    for tag in event.get("tags", []):
        if not isinstance(tag, list) or len(tag) < 2 or not isinstance(tag[1], str):
            continue
        if tag[0] == "u":
            mint_url = tag[1]
        elif tag[0] == "unit":
            unit = tag[1]
        elif tag[0] == "e":
            ref = tag[1]
        elif tag[0] == "proof":
            try:
                raw_proofs.append(json.loads(tag[1]))
            except ValueError:
                logger.debug("Bad proof tag in nutzap %s", event.get("id"))
    if not mint_url or not raw_proofs:
        return None
    parsed = [_nutzap_proof(p, mint_url, unit) for p in raw_proofs]
    proofs = [p for p in parsed if p is not None]
    if len(proofs) != len(parsed):
        logger.warning(
            "Dropped %d malformed proofs from nutzap %s", len(parsed) - len(proofs), event.get("id")
        )
    if not proofs:
        return None
    return IncomingNutzap(
        event_id=event["id"],
        sender_pubkey=event["pubkey"],
        mint_url=mint_url,
        proofs=proofs,
        comment=event.get("content", ""),
        ref=ref,
        created_at=event.get("created_at", 0),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Relay-backed event transport
# ──────────────────────────────────────────────────────────────────────────────


class NostrTransport:
    """Publishes and fetches wallet events through a relay pool."""

    def __init__(self, pool: RelayPool, signer: Signer, *, unit: str = "sat") -> None:
        self.pool = pool
        self.signer = signer
        self.unit = unit

    async def _publish(self, kind: int, tags: list[list[str]], content: str) -> str:
        unsigned = {
            "kind": kind,
            "created_at": int(time.time()),
            "tags": tags,
            "content": content,
            "pubkey": await self.signer.get_public_key(),
        }
        event = await self.signer.sign_event(unsigned)
        if not await self.pool.publish_event(event):  # type: ignore[arg-type]
            raise RelayError(f"No relay accepted kind {kind} event {event['id']}")
        return event["id"]

    async def publish_wallet_backup(self, data: dict[str, Any]) -> str:
        pubkey = await self.signer.get_public_key()
        content = await self.signer.nip44_encrypt(json.dumps(data), pubkey)
        return await self._publish(EventKind.Wallet, [], content)

    async def fetch_wallet_backup(self) -> dict[str, Any] | None:
        pubkey = await self.signer.get_public_key()
        events = await self.pool.fetch_events(
            [{"authors": [pubkey], "kinds": [EventKind.Wallet], "limit": 1}]
        )
        if not events:
            return None
        plaintext = await self.signer.nip44_decrypt(events[0]["content"], pubkey)
        return json.loads(plaintext)

    async def publish_nutzap(self, nutzap: Nutzap) -> str:
        return await self._publish(
            EventKind.Nutzap, nutzap_tags(nutzap, self.unit), nutzap.comment
        )

    async def fetch_nutzap_info(self, pubkey: str) -> NutzapInfo | None:
        events = await self.pool.fetch_events(
            [{"authors": [pubkey], "kinds": [EventKind.NutzapInfo], "limit": 1}]
        )
        for event in events:
            info = nutzap_info_from_event(event)
            if info is not None:
                return info
        return None

    async def publish_nutzap_info(self, info: NutzapInfo) -> str:
        return await self._publish(EventKind.NutzapInfo, nutzap_info_tags(info, self.unit), "")

    async def fetch_incoming_nutzaps(
        self, pubkey: str, mints: list[str], since: int | None = None
    ) -> list[IncomingNutzap]:
        filt: dict[str, Any] = {"kinds": [EventKind.Nutzap], "#p": [pubkey]}
        if mints:
            filt["#u"] = mints
        if since is not None:
            filt["since"] = since
        nutzaps = []
        for event in await self.pool.fetch_events([filt]):  # type: ignore[list-item]
            if not verify_event(event):
                logger.warning("Dropping nutzap %s with a bad signature", event.get("id"))
                continue
            nutzap = incoming_nutzap_from_event(event)
            if nutzap is not None:
                nutzaps.append(nutzap)
        return nutzaps
