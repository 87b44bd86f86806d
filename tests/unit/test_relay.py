"""Unit tests for nutzap event encoding and relay fan-out."""

import json

import pytest
from coincurve import PrivateKey

from nutjar.crypto import sign_event
from nutjar.relay import (
    RelayPool,
    incoming_nutzap_from_event,
    nutzap_info_from_event,
    nutzap_info_tags,
    nutzap_tags,
)
from nutjar.types import Nutzap, NutzapInfo, Proof


def proof(amount: int, secret: str) -> Proof:
    return Proof(
        id="00aabbccddeeff00",
        amount=amount,
        secret=secret,
        C="02" + "33" * 32,
        mint="https://mint.test",
        unit="sat",
    )


class TestNutzapInfoEvents:
    def test_tags_roundtrip(self):
        info = NutzapInfo(
            pubkey="aa" * 32,
            p2pk_pubkey="02" + "bb" * 32,
            trusted_mints=["https://mint.test", "https://other.test"],
            relays=["wss://relay.test"],
        )
        tags = nutzap_info_tags(info)
        assert ["mint", "https://mint.test", "sat"] in tags
        assert ["pubkey", "02" + "bb" * 32] in tags

        parsed = nutzap_info_from_event({"pubkey": "aa" * 32, "tags": tags})
        assert parsed == info

    def test_event_without_pubkey_tag(self):
        event = {"pubkey": "aa" * 32, "tags": [["mint", "https://mint.test"]]}
        assert nutzap_info_from_event(event) is None


class TestNutzapEvents:
    def test_tags_roundtrip(self):
        nutzap = Nutzap(
            event_id="",
            recipient_pubkey="cc" * 32,
            mint_url="https://mint.test",
            amount=3,
            proofs=[proof(1, "a"), proof(2, "b")],
            ref="ee" * 32,
            comment="great post",
        )
        event = sign_event(
            {
                "kind": 9321,
                "created_at": 1700000000,
                "tags": nutzap_tags(nutzap),
                "content": nutzap.comment,
            },
            PrivateKey(),
        )

        incoming = incoming_nutzap_from_event(event)

        assert incoming is not None
        assert incoming.event_id == event["id"]
        assert incoming.sender_pubkey == event["pubkey"]
        assert incoming.amount == 3
        assert incoming.ref == "ee" * 32
        assert incoming.comment == "great post"
        assert [p["secret"] for p in incoming.proofs] == ["a", "b"]
        # wallet bookkeeping fields never go on the wire
        raw = json.loads(next(t[1] for t in event["tags"] if t[0] == "proof"))
        assert set(raw) == {"id", "amount", "secret", "C"}

    def test_event_without_proofs(self):
        event = {"id": "x", "pubkey": "y", "tags": [["u", "https://mint.test"]]}
        assert incoming_nutzap_from_event(event) is None

    def test_bad_proof_tag_skipped(self):
        good = json.dumps({"id": "00aa", "amount": 1, "secret": "s", "C": "02" + "11" * 32})
        event = {
            "id": "x",
            "pubkey": "y",
            "tags": [["u", "https://mint.test"], ["proof", "{broken"], ["proof", good]],
        }
        incoming = incoming_nutzap_from_event(event)
        assert incoming is not None
        assert incoming.amount == 1

    @pytest.mark.parametrize(
        "bad",
        [
            {"amount": 1},
            [1, 2],
            "proof",
            {"id": "00aa", "amount": "1", "secret": "s", "C": "02" + "11" * 32},
            {"id": "00aa", "amount": True, "secret": "s", "C": "02" + "11" * 32},
            {"id": "00aa", "amount": 0, "secret": "s", "C": "02" + "11" * 32},
            {"id": 7, "amount": 1, "secret": "s", "C": "02" + "11" * 32},
        ],
    )
    def test_malformed_proof_dropped(self, bad):
        good = {"id": "00aa", "amount": 2, "secret": "s", "C": "02" + "11" * 32}
        event = {
            "id": "x",
            "pubkey": "y",
            "tags": [
                ["u", "https://mint.test"],
                ["proof", json.dumps(bad)],
                ["proof", json.dumps(good)],
            ],
        }
        incoming = incoming_nutzap_from_event(event)
        assert incoming is not None
        assert [p["secret"] for p in incoming.proofs] == ["s"]

        event["tags"].pop()
        assert incoming_nutzap_from_event(event) is None


class StubRelay:
    def __init__(self, url, events=None, error=None):
        self.url = url
        self.events = events or []
        self.error = error
        self.published = []

    async def fetch_events(self, filters, *, timeout=5.0):
        if self.error:
            raise self.error
        return list(self.events)

    async def publish_event(self, event):
        self.published.append(event)
        return self.error is None

    async def disconnect(self):
        pass


class TestRelayPool:
    async def test_fetch_merges_and_deduplicates(self):
        old = {"id": "1", "created_at": 10}
        new = {"id": "2", "created_at": 20}
        pool = RelayPool([])
        pool.relays = [
            StubRelay("wss://a", [old, new]),
            StubRelay("wss://b", [new]),
            StubRelay("wss://c", error=OSError("down")),
        ]

        events = await pool.fetch_events([{"kinds": [1]}])

        assert [e["id"] for e in events] == ["2", "1"]

    async def test_publish_succeeds_if_any_relay_accepts(self):
        pool = RelayPool([])
        pool.relays = [StubRelay("wss://a", error=OSError("down")), StubRelay("wss://b")]
        assert await pool.publish_event({"id": "1"})

    async def test_publish_without_relays(self):
        assert not await RelayPool([]).publish_event({"id": "1"})
