"""Unit tests for quote state parsing and invoice amounts."""

from types import SimpleNamespace

import pytest

from nutjar import quotes
from nutjar.quotes import _melt_state, _mint_state, parse_invoice_amount
from nutjar.types import MeltQuoteState, MintQuoteState, ProtocolError


class TestInvoiceAmount:
    def test_garbage_is_rejected(self):
        with pytest.raises(ValueError, match="Invalid Lightning invoice"):
            parse_invoice_amount("definitely not an invoice")

    def test_msat_rounded_down_and_prefix_stripped(self, monkeypatch):
        seen = []

        def decode(invoice):
            seen.append(invoice)
            return SimpleNamespace(amount_msat=21_999)

        monkeypatch.setattr(quotes.bolt11, "decode", decode)
        assert parse_invoice_amount("lightning:lnbc1fake") == 21
        assert seen == ["lnbc1fake"]

    def test_amountless(self, monkeypatch):
        monkeypatch.setattr(
            quotes.bolt11, "decode", lambda invoice: SimpleNamespace(amount_msat=None)
        )
        assert parse_invoice_amount("lnbc1fake") is None


class TestQuoteStates:
    def test_mint_states(self):
        assert _mint_state({"state": "ISSUED"}) == MintQuoteState.ISSUED
        assert _mint_state({"state": "UNPAID"}) == MintQuoteState.UNPAID

    def test_legacy_paid_flag(self):
        assert _mint_state({"paid": True}) == MintQuoteState.PAID
        assert _mint_state({"paid": False}) == MintQuoteState.UNPAID
        assert _melt_state({"paid": True}) == MeltQuoteState.PAID
        assert _melt_state({}) == MeltQuoteState.UNPAID

    def test_unknown_state(self):
        with pytest.raises(ProtocolError):
            _mint_state({"state": "LOST"})
        with pytest.raises(ProtocolError):
            _melt_state({"state": "MAYBE"})
