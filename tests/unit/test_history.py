"""Unit tests for the local transaction history."""

from nutjar.history import HistoryEntry, TransactionHistory

MINT = "https://mint.test"


class TestTransactionHistory:
    def test_newest_first(self):
        history = TransactionHistory()
        history.record("mint", "in", 100, MINT)
        history.record("send", "out", 30, MINT, fee=1, memo="coffee")

        entries = history.entries()

        assert [e.kind for e in entries] == ["send", "mint"]
        assert entries[0].fee == 1
        assert entries[0].memo == "coffee"
        assert len(history) == 2

    def test_zero_amount_skipped(self):
        history = TransactionHistory()
        assert history.record("nutzap", "in", 0, MINT) is None
        assert len(history) == 0

    def test_on_change(self):
        calls = []
        history = TransactionHistory(on_change=lambda: calls.append(1))
        history.record("receive", "in", 5, MINT)
        assert calls == [1]

    def test_filter_and_limit(self):
        history = TransactionHistory()
        for amount in (1, 2, 3):
            history.record("send", "out", amount, MINT)
        history.record("mint", "in", 10, MINT)

        assert [e.amount for e in history.entries(kind="send")] == [3, 2, 1]
        assert [e.amount for e in history.entries(kind="send", limit=2)] == [3, 2]
        assert history.entries(kind="melt") == []

    def test_load_roundtrip(self):
        history = TransactionHistory()
        history.record("melt", "out", 300, MINT, fee=2, ref="q1")

        restored = TransactionHistory()
        restored.load(history.to_dict())

        assert restored.entries() == history.entries()

    def test_unknown_fields_ignored(self):
        entry = HistoryEntry.from_dict(
            {"kind": "mint", "direction": "in", "amount": 8, "mint_url": MINT, "extra": 1}
        )
        assert entry.amount == 8
        assert entry.unit == "sat"
