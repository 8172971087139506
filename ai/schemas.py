"""
Recommendation oracle schemas.

Defines the contract between the decision cycle and the external oracle.
Oracle output is loosely typed JSON; everything is normalised into a closed
TradePlan variant here, and anything unrecognised becomes HOLD plus a
recorded anomaly.
"""

import json
import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

OrderType = Literal["market", "limit"]


class PlanAction(Enum):
    HOLD = "HOLD"
    ENTER_LONG = "ENTER_LONG"
    ENTER_SHORT = "ENTER_SHORT"
    EXIT_POSITION = "EXIT_POSITION"
    ADJUST_STOP = "ADJUST_STOP"

    @property
    def is_entry(self) -> bool:
        return self in (PlanAction.ENTER_LONG, PlanAction.ENTER_SHORT)


# Vocabulary of the earlier buy/sell/hold oracle prompt
LEGACY_ACTIONS = {
    "BUY": PlanAction.ENTER_LONG,
    "SELL": PlanAction.ENTER_SHORT,
    "LONG": PlanAction.ENTER_LONG,
    "SHORT": PlanAction.ENTER_SHORT,
    "EXIT": PlanAction.EXIT_POSITION,
    "CLOSE": PlanAction.EXIT_POSITION,
}

MAX_REASON_CHARS = 500
MAX_NOTES_CHARS = 2000


@dataclass(frozen=True)
class TradePlan:
    """Validated oracle recommendation."""
    action: PlanAction
    order_type: OrderType = "market"
    price: Optional[float] = None
    reason: str = ""
    notes: Optional[str] = None   # free-text observations to carry into trade memory

    @classmethod
    def hold(cls, reason: str) -> "TradePlan":
        return cls(action=PlanAction.HOLD, reason=reason)

    @property
    def entry_side(self) -> str:
        """Order side of an entry plan."""
        if self.action == PlanAction.ENTER_LONG:
            return "buy"
        if self.action == PlanAction.ENTER_SHORT:
            return "sell"
        raise ValueError(f"{self.action.value} is not an entry")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return data


def _strip_fences(content: str) -> str:
    if "```json" in content:
        return content.split("```json")[1].split("```")[0]
    if "```" in content:
        return content.split("```")[1].split("```")[0]
    return content


def _positive_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) and number > 0 else None


def parse_recommendation(raw: Union[str, Dict[str, Any], None]) -> Tuple[TradePlan, List[str]]:
    """
    Normalise oracle output into a TradePlan.

    Returns:
        (plan, anomalies) - anomalies is empty for a clean recommendation
    """
    anomalies: List[str] = []

    if isinstance(raw, str):
        try:
            raw = json.loads(_strip_fences(raw))
        except (ValueError, TypeError) as e:
            return TradePlan.hold("malformed oracle output"), [f"oracle output is not valid JSON: {e}"]

    if not isinstance(raw, dict):
        return TradePlan.hold("malformed oracle output"), ["oracle output is not a JSON object"]

    reason = str(raw.get("reason") or raw.get("rationale") or "")[:MAX_REASON_CHARS]
    notes = raw.get("notes")
    notes = str(notes)[:MAX_NOTES_CHARS] if notes else None

    action_raw = str(raw.get("action") or "").strip().upper()
    if not action_raw:
        return TradePlan(action=PlanAction.HOLD, reason=reason, notes=notes), ["oracle output has no action"]

    try:
        action = PlanAction(action_raw)
    except ValueError:
        action = LEGACY_ACTIONS.get(action_raw)
        if action is None:
            return (
                TradePlan(action=PlanAction.HOLD, reason=reason, notes=notes),
                [f"unrecognised oracle action '{action_raw}'"],
            )

    order_type = str(raw.get("orderType") or raw.get("order_type") or "market").strip().lower()
    if order_type not in ("market", "limit"):
        anomalies.append(f"unknown orderType '{order_type}', using market")
        order_type = "market"

    price = _positive_float(raw.get("price"))

    if action.is_entry and order_type == "limit" and price is None:
        anomalies.append("limit entry without a positive price")
        return TradePlan(action=PlanAction.HOLD, reason=reason, notes=notes), anomalies

    if action == PlanAction.ADJUST_STOP and price is None:
        anomalies.append("ADJUST_STOP without a positive price")
        return TradePlan(action=PlanAction.HOLD, reason=reason, notes=notes), anomalies

    if action.is_entry and order_type == "market":
        price = None

    return TradePlan(action=action, order_type=order_type, price=price, reason=reason, notes=notes), anomalies
