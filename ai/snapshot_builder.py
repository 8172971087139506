"""
Snapshot Builder - Construct the market/account context sent to the oracle.

Builds structured snapshots containing:
- Instrument identifiers (trading vs pricing instrument)
- Recent candles and indicators
- Account margin, position and protective stop
- Derived lifecycle state
- Trade memory (advisory)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from core.exchange_kraken import AccountSnapshot, Candle
from core.indicators import Indicators
from infra.state_store import TradeMemory

PROMPT_CANDLES = 10


def build_oracle_snapshot(
    symbol: str,
    pricing_symbol: str,
    candles: Sequence[Candle],
    indicators: Indicators,
    account: AccountSnapshot,
    lifecycle_state: str,
    memory: TradeMemory,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build the oracle snapshot.

    Returns:
        JSON-serialisable dict ready for prompt formatting
    """
    snapshot = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "symbol": symbol,
        "pricing_symbol": pricing_symbol,
        "candles": _format_candles(candles[-PROMPT_CANDLES:]),
        "indicators": indicators.to_dict(),
        "account": _format_account(account),
        "lifecycle_state": lifecycle_state,
        "memory": memory.to_dict(),
    }
    if metadata:
        snapshot["metadata"] = metadata
    return snapshot


def _format_candles(candles: Sequence[Candle]) -> List[Dict[str, Any]]:
    return [
        {
            "time": c.open_time.isoformat(),
            "open": c.open,
            "high": c.high,
            "low": c.low,
            "close": c.close,
            "volume": c.volume,
        }
        for c in candles
    ]


def _format_account(account: AccountSnapshot) -> Dict[str, Any]:
    position = account.position
    stop = account.protective_order
    return {
        "available_margin": round(account.available_margin, 2),
        "has_open_position": account.has_open_position,
        "position": (
            {"side": position.side, "size": position.size, "entry_price": position.price}
            if account.has_open_position else None
        ),
        "protective_stop": (
            {"order_id": stop.order_id, "stop_price": stop.stop_price, "size": stop.size}
            if stop else None
        ),
        "pending_entries": len(account.entry_orders),
    }
