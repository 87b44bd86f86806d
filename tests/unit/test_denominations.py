"""Unit tests for amount splitting and fee math."""

import pytest

from nutjar.denominations import (
    blank_outputs_for,
    calculate_input_fees,
    get_keyset_denominations,
    split_amount,
)
from nutjar.types import KeysetInfo


class TestSplitAmount:
    @pytest.mark.parametrize(
        "amount,expected",
        [
            (1, [1]),
            (13, [1, 4, 8]),
            (64, [64]),
            (1000, [8, 32, 64, 128, 256, 512]),
        ],
    )
    def test_binary_split(self, amount, expected):
        assert split_amount(amount) == expected

    def test_zero_is_empty(self):
        assert split_amount(0) == []

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            split_amount(-1)

    def test_custom_denominations(self):
        assert split_amount(30, [1, 5, 10]) == [10, 10, 10]
        assert sum(split_amount(7, [1, 5, 10])) == 7

    def test_unrepresentable(self):
        with pytest.raises(ValueError):
            split_amount(3, [2, 4])


class TestBlankOutputs:
    @pytest.mark.parametrize(
        "overpaid,count", [(0, 0), (-5, 0), (1, 1), (2, 1), (3, 2), (188, 8), (1000, 10)]
    )
    def test_count(self, overpaid, count):
        assert blank_outputs_for(overpaid) == count


class TestInputFees:
    proofs = [
        {"id": "00aa", "amount": 1},
        {"id": "00aa", "amount": 2},
        {"id": "00bb", "amount": 4},
    ]

    def test_flat_rate(self):
        assert calculate_input_fees(self.proofs, 0) == 0
        assert calculate_input_fees(self.proofs, 1000) == 3
        # 3 * 100 ppk rounds up to one sat
        assert calculate_input_fees(self.proofs, 100) == 1

    def test_per_keyset_rate(self):
        assert calculate_input_fees(self.proofs, {"00aa": 500, "00bb": 0}) == 1
        assert calculate_input_fees(self.proofs, {"00aa": 1000, "00bb": 1000}) == 3

    def test_unknown_keyset_is_free(self):
        assert calculate_input_fees(self.proofs, {}) == 0

    def test_empty(self):
        assert calculate_input_fees([], 1000) == 0


def test_keyset_denominations_sorted():
    keyset = KeysetInfo(
        id="00aa", mint_url="https://m", unit="sat", active=True, keys={"8": "x", "1": "y", "2": "z"}
    )
    assert get_keyset_denominations(keyset) == [1, 2, 8]
    assert keyset.denominations == [1, 2, 8]
