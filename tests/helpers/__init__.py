"""Test helpers for perptrader test suite"""

from tests.helpers.exchange_stubs import (
    FakeExchange,
    make_candles,
    make_snapshot,
    make_stop,
)

__all__ = [
    "FakeExchange",
    "make_candles",
    "make_snapshot",
    "make_stop",
]
