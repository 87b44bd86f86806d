"""Amount splitting over keyset denominations."""

from __future__ import annotations

import math

from .types import KeysetInfo

# Powers of two up to 2^20, used when a keyset does not list its amounts
DEFAULT_DENOMINATIONS = [2**i for i in range(21)]


def get_keyset_denominations(keyset_info: KeysetInfo) -> list[int]:
    """Extract denominations from keyset keys, ascending."""
    denominations = []
    for amount_str in keyset_info.keys:
        try:
            denominations.append(int(amount_str))
        except (ValueError, TypeError):
            continue
    return sorted(denominations)


def split_amount(amount: int, denominations: list[int] | None = None) -> list[int]:
    """Split an amount into denominations, smallest first.

    Greedy over the available denominations (largest first), so with the
    usual powers-of-two keysets every amount maps to its binary digits.

    Args:
        amount: Total amount to split
        denominations: Amounts the keyset can sign (defaults to powers of two)

    Returns:
        Ascending list of amounts summing to ``amount``

    Raises:
        ValueError: If the amount cannot be represented exactly
    """
    if amount < 0:
        raise ValueError(f"Cannot split negative amount {amount}")
    if amount == 0:
        return []

    remaining = amount
    parts: list[int] = []
    for denom in sorted(denominations or DEFAULT_DENOMINATIONS, reverse=True):
        while remaining >= denom:
            parts.append(denom)
            remaining -= denom

    if remaining:
        raise ValueError(f"Amount {amount} cannot be split into {denominations}")
    return sorted(parts)


def blank_outputs_for(overpaid: int) -> int:
    """Number of blank outputs needed to receive ``overpaid`` back (NUT-08)."""
    if overpaid <= 0:
        return 0
    return max(math.ceil(math.log2(overpaid)), 1)


def calculate_input_fees(proofs: list[dict], fee_ppk: int | dict[str, int]) -> int:
    """Input fee for spending ``proofs``: ceil(sum(ppk) / 1000).

    ``fee_ppk`` is either a flat per-proof rate or a keyset id -> rate map.
    """
    if isinstance(fee_ppk, int):
        total = fee_ppk * len(proofs)
    else:
        total = sum(fee_ppk.get(p["id"], 0) for p in proofs)
    return (total + 999) // 1000
