"""
perptrader Core: Risk

Risk-bounded position sizing and protective stop pricing, from policy.yaml.

A zero quantity means "do not trade"; it is an expected outcome, not an error.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, Tuple
import logging

logger = logging.getLogger(__name__)

# float arithmetic residue is cleared at this scale before flooring to lot precision
FLOAT_NOISE = Decimal("1e-12")


@dataclass(frozen=True)
class RiskParams:
    """Sizing parameters for one instrument"""
    leverage: float
    leverage_safety_factor: float
    risk_percent: float
    stop_loss_percent: float
    minimum_notional_usd: float
    quantity_precision: int = 4

    def __post_init__(self):
        if self.leverage <= 0:
            raise ValueError("leverage must be positive")
        if not 0 < self.leverage_safety_factor <= 1:
            raise ValueError("leverage_safety_factor must be in (0, 1]")
        if self.risk_percent <= 0:
            raise ValueError("risk_percent must be positive")
        if not 0 < self.stop_loss_percent < 100:
            raise ValueError("stop_loss_percent must be in (0, 100)")
        if self.minimum_notional_usd < 0:
            raise ValueError("minimum_notional_usd must be non-negative")

    @classmethod
    def from_policy(cls, policy: Dict[str, Any]) -> "RiskParams":
        risk = policy.get("risk", {}) or {}
        instrument = policy.get("instrument", {}) or {}
        return cls(
            leverage=float(risk.get("leverage", 10)),
            leverage_safety_factor=float(risk.get("leverage_safety_factor", 0.9)),
            risk_percent=float(risk.get("risk_percent", 1.0)),
            stop_loss_percent=float(risk.get("stop_loss_percent", 2.0)),
            minimum_notional_usd=float(risk.get("minimum_notional_usd", 10.0)),
            quantity_precision=int(instrument.get("quantity_precision", 4)),
        )


def size_position(available_margin: float, current_price: float, params: RiskParams) -> float:
    """
    Trade size in instrument units.

    target = min(margin * leverage * safety, risk budget / stop distance),
    raised to the minimum notional; if that exceeds the leveraged cap the
    trade is not viable and 0 is returned.
    """
    if available_margin <= 0 or current_price <= 0:
        return 0.0

    max_leveraged_usd = available_margin * params.leverage * params.leverage_safety_factor
    risk_budget_usd = available_margin * (params.risk_percent / 100.0)
    risk_defined_usd = risk_budget_usd / (params.stop_loss_percent / 100.0)

    target_usd = min(max_leveraged_usd, risk_defined_usd)
    if target_usd < params.minimum_notional_usd:
        target_usd = params.minimum_notional_usd

    if target_usd > max_leveraged_usd:
        logger.info(
            f"Sizing: min notional ${params.minimum_notional_usd:.2f} exceeds leveraged cap "
            f"${max_leveraged_usd:.2f}; no trade"
        )
        return 0.0

    step = Decimal(1).scaleb(-params.quantity_precision)
    raw = (Decimal(str(target_usd)) / Decimal(str(current_price))).quantize(FLOAT_NOISE, rounding=ROUND_HALF_UP)
    quantity = raw.quantize(step, rounding=ROUND_DOWN)

    logger.debug(
        f"Sizing: margin=${available_margin:.2f} cap=${max_leveraged_usd:.2f} "
        f"risk_defined=${risk_defined_usd:.2f} target=${target_usd:.2f} qty={quantity}"
    )
    return float(quantity)


def round_to_tick(price: float, tick_size: float) -> float:
    if tick_size <= 0:
        return price
    tick = Decimal(str(tick_size))
    ticks = (Decimal(str(price)) / tick).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(ticks * tick)


def stop_prices(position_side: str, reference_price: float, stop_loss_percent: float,
                tick_size: float) -> Tuple[float, float]:
    """
    Protective stop trigger and limit for a position.

    The trigger sits stop_loss_percent against the reference price; the limit
    is one tick beyond the trigger so the stop still executes.
    """
    offset = stop_loss_percent / 100.0
    if position_side == "long":
        trigger = round_to_tick(reference_price * (1.0 - offset), tick_size)
        limit = trigger - tick_size
    elif position_side == "short":
        trigger = round_to_tick(reference_price * (1.0 + offset), tick_size)
        limit = trigger + tick_size
    else:
        raise ValueError(f"Unknown position side: {position_side}")
    return trigger, round_to_tick(limit, tick_size)


def protective_limit(position_side: str, trigger: float, tick_size: float) -> float:
    """Limit price one tick beyond an explicit stop trigger."""
    if position_side == "long":
        return round_to_tick(trigger - tick_size, tick_size)
    return round_to_tick(trigger + tick_size, tick_size)
