"""
perptrader Core: Indicators

Scalar indicators derived from a candle sequence (oldest first).
Pure functions; insufficient history yields None for that indicator.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

from core.exchange_kraken import Candle


@dataclass(frozen=True)
class Indicators:
    last_price: Optional[float]
    rsi: Optional[float]
    sma: Optional[float]
    change_pct: Optional[float]   # last close vs first close in the window

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Wilder-smoothed RSI of the last close."""
    if period <= 0 or len(closes) < period + 1:
        return None

    gains: List[float] = []
    losses: List[float] = []
    for i in range(1, len(closes)):
        delta = closes[i] - closes[i - 1]
        gains.append(max(delta, 0.0))
        losses.append(abs(min(delta, 0.0)))

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    for idx in range(period, len(gains)):
        avg_gain = ((avg_gain * (period - 1)) + gains[idx]) / period
        avg_loss = ((avg_loss * (period - 1)) + losses[idx]) / period

    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def calculate_sma(values: Sequence[float], period: int = 20) -> Optional[float]:
    if period <= 0 or len(values) < period:
        return None
    window = values[-period:]
    return sum(window) / period


def compute_indicators(candles: Sequence[Candle], rsi_period: int = 14,
                       sma_period: int = 20) -> Indicators:
    closes = [c.close for c in candles]
    if not closes:
        return Indicators(last_price=None, rsi=None, sma=None, change_pct=None)

    change_pct = None
    if closes[0] > 0:
        change_pct = (closes[-1] - closes[0]) / closes[0] * 100.0

    return Indicators(
        last_price=closes[-1],
        rsi=calculate_rsi(closes, rsi_period),
        sma=calculate_sma(closes, sma_period),
        change_pct=change_pct,
    )
