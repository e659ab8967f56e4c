"""
Order Pipeline — 税額・合計の計算

tax   = round(amount * TAX_RATE, 4)
total = round(amount + tax, 4)

すべて Decimal で計算するので total - amount - tax は常に 0 になる。
"""

from decimal import Decimal
from typing import NamedTuple

from .events import quantize

DEFAULT_TAX_RATE = Decimal("0.18")


class Charges(NamedTuple):
    amount: Decimal
    tax: Decimal
    total: Decimal


def calculate_charges(amount: Decimal, tax_rate: Decimal = DEFAULT_TAX_RATE) -> Charges:
    amount = quantize(amount)
    tax = quantize(amount * tax_rate)
    total = quantize(amount + tax)
    return Charges(amount, tax, total)
