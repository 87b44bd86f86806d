"""Unit tests for durable JSON storage and the pending log."""

import json

import pytest

from nutjar.proofs import Reservation
from nutjar.recovery import PendingLog, RecoveryReport
from nutjar.storage import JsonStore
from nutjar.types import PendingOutput, PendingTransaction


def make_tx(tx_id: str = "tx1", **kwargs) -> PendingTransaction:
    defaults = dict(
        id=tx_id,
        direction="in",
        kind="mint",
        mint_url="https://mint.test",
        amount=100,
        quote_id=f"quote-{tx_id}",
    )
    defaults.update(kwargs)
    return PendingTransaction(**defaults)


class TestJsonStore:
    def test_save_and_load(self, tmp_path):
        store = JsonStore(tmp_path / "data")
        store.save("wallet", {"a": [1, 2]})
        assert store.exists("wallet")
        assert store.load("wallet") == {"a": [1, 2]}
        assert json.loads(store.path("wallet").read_text()) == {"a": [1, 2]}

    def test_missing_key_default(self, tmp_path):
        store = JsonStore(tmp_path)
        assert store.load("nothing") is None
        assert store.load("nothing", default=[]) == []

    def test_no_temp_files_left(self, tmp_path):
        store = JsonStore(tmp_path)
        store.save("k", {"v": 1})
        store.save("k", {"v": 2})
        assert [p.name for p in tmp_path.iterdir()] == ["k.json"]
        assert store.load("k") == {"v": 2}

    def test_delete(self, tmp_path):
        store = JsonStore(tmp_path)
        store.save("k", 1)
        store.delete("k")
        store.delete("k")
        assert not store.exists("k")


class TestPendingLog:
    def test_entries_survive_restart(self, tmp_path):
        store = JsonStore(tmp_path)
        log = PendingLog(store)
        outputs = [
            PendingOutput(
                amount=2, secret="s", r="11" * 32, keyset_id="00aa", B_="02" + "22" * 32
            )
        ]
        log.add(make_tx("a", outputs=outputs, submitted=True))

        reloaded = PendingLog(store)
        tx = reloaded.get("a")
        assert tx is not None
        assert tx.submitted
        assert tx.outputs == outputs
        assert len(reloaded) == 1

    def test_update_and_remove(self, tmp_path):
        log = PendingLog(JsonStore(tmp_path))
        tx = make_tx("a")
        log.add(tx)
        tx.submitted = True
        log.update(tx)
        assert PendingLog(JsonStore(tmp_path)).get("a").submitted

        log.remove("a")
        assert "a" not in log
        assert len(PendingLog(JsonStore(tmp_path))) == 0

    def test_update_unknown_raises(self):
        with pytest.raises(KeyError):
            PendingLog().update(make_tx("ghost"))

    def test_by_quote(self):
        log = PendingLog()
        log.add(make_tx("a", quote_id="q1"))
        log.add(make_tx("b", quote_id="q1", kind="melt", direction="out"))
        assert log.by_quote("q1", kind="melt").id == "b"
        assert log.by_quote("q1", kind="mint").id == "a"
        assert log.by_quote("q2") is None

    def test_ordering_by_creation(self):
        log = PendingLog()
        log.add(make_tx("late", created_at=200))
        log.add(make_tx("early", created_at=100))
        assert [tx.id for tx in log.all()] == ["early", "late"]

    def test_held_reservations_are_dropped_on_remove(self):
        log = PendingLog()
        log.add(make_tx("a"))
        reservation = Reservation(mint_url="https://mint.test", proofs=[], amount=0)
        log.hold("a", reservation)
        log.active.add("a")
        assert log.held("a") is reservation

        log.remove("a")
        assert log.held("a") is None
        assert "a" not in log.active


def test_recovery_report_truthiness():
    assert not RecoveryReport()
    assert not RecoveryReport(pending_count=2)
    assert RecoveryReport(recovered_count=1)
    assert RecoveryReport(failed_count=1)
