"""
perptrader Infrastructure: State Store

Durable trade memory carried between cycles, with atomic writes.

Memory is advisory context for the oracle and a human-readable audit trail.
It never gates correctness-critical decisions; those are derived from live
exchange state every cycle.
"""

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

RESULT_NONE = "none"
RESULT_OPEN = "open"
RESULT_CLOSED = "closed"
TRADE_RESULTS = (RESULT_NONE, RESULT_OPEN, RESULT_CLOSED)

FLAG_UNPROTECTED = "POSITION_UNPROTECTED"
FLAG_STOP_CANCEL_FAILED = "STOP_CANCEL_FAILED"


@dataclass
class LastTrade:
    action: str = "HOLD"
    result: str = RESULT_NONE
    rationale: str = ""
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    stop_price: Optional[float] = None
    size: Optional[float] = None
    filled: bool = False   # a position was seen (or a market entry acked) for this trade

    def __post_init__(self):
        if self.result not in TRADE_RESULTS:
            raise ValueError(f"Unknown trade result: {self.result}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "result": self.result,
            "rationale": self.rationale,
            "entryPrice": self.entry_price,
            "exitPrice": self.exit_price,
            "stopPrice": self.stop_price,
            "size": self.size,
            "filled": self.filled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastTrade":
        result = data.get("result", RESULT_NONE)
        if result not in TRADE_RESULTS:
            logger.warning(f"Unknown lastTrade.result '{result}' in memory, using '{RESULT_NONE}'")
            result = RESULT_NONE
        return cls(
            action=str(data.get("action", "HOLD")),
            result=result,
            rationale=str(data.get("rationale", "")),
            entry_price=data.get("entryPrice"),
            exit_price=data.get("exitPrice"),
            stop_price=data.get("stopPrice"),
            size=data.get("size"),
            filled=bool(data.get("filled", False)),
        )


@dataclass
class TradeMemory:
    """Cross-cycle memory: last trade outcome, free-form observations and open flags."""
    last_trade: LastTrade = field(default_factory=LastTrade)
    observations: str = ""
    flags: List[str] = field(default_factory=list)
    anomalies: List[str] = field(default_factory=list)
    updated_at: Optional[str] = None

    MAX_ANOMALIES = 20

    def set_flag(self, flag: str) -> None:
        if flag not in self.flags:
            self.flags.append(flag)

    def clear_flag(self, flag: str) -> None:
        if flag in self.flags:
            self.flags.remove(flag)

    def has_flag(self, flag: str) -> bool:
        return flag in self.flags

    def record_anomaly(self, message: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        self.anomalies.append(f"{stamp} {message}")
        if len(self.anomalies) > self.MAX_ANOMALIES:
            self.anomalies = self.anomalies[-self.MAX_ANOMALIES:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastTrade": self.last_trade.to_dict(),
            "observations": self.observations,
            "flags": list(self.flags),
            "anomalies": list(self.anomalies),
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeMemory":
        return cls(
            last_trade=LastTrade.from_dict(data.get("lastTrade") or {}),
            observations=str(data.get("observations") or ""),
            flags=[str(f) for f in data.get("flags") or []],
            anomalies=[str(a) for a in data.get("anomalies") or []],
            updated_at=data.get("updatedAt"),
        )


def default_memory() -> TradeMemory:
    return TradeMemory()


class TradeMemoryStore:
    """
    Trade memory persisted as a JSON file.

    Features:
    - Default memory on first run (no file is not an error)
    - Atomic writes (temp file + rename)
    """

    def __init__(self, memory_file: Optional[str] = None):
        """
        Args:
            memory_file: Path to memory JSON file (default: $TRADE_MEMORY_FILE or data/trade_memory.json)
        """
        path = memory_file or os.getenv("TRADE_MEMORY_FILE", "data/trade_memory.json")
        self.memory_file = Path(path)
        self.memory_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized TradeMemoryStore at {self.memory_file}")

    def load(self) -> TradeMemory:
        if not self.memory_file.exists():
            logger.debug("No trade memory file found, using defaults")
            return default_memory()

        try:
            with open(self.memory_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load trade memory: {e}; using defaults")
            return default_memory()

        if not isinstance(data, dict):
            logger.warning("Invalid trade memory format, using defaults")
            return default_memory()

        return TradeMemory.from_dict(data)

    def save(self, memory: TradeMemory) -> None:
        """Overwrite the stored memory atomically."""
        memory.updated_at = datetime.now(timezone.utc).isoformat()
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.memory_file.parent,
            prefix=".memory_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(memory.to_dict(), f, indent=2)
            os.replace(temp_path, self.memory_file)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug("Saved trade memory")
