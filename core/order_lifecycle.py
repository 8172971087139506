"""
perptrader Core: Order Lifecycle

Keeps an entry order and its protective stop consistent across cycles.

States: NO_POSITION → ENTRY_SUBMITTED → POSITION_OPEN_UNPROTECTED →
        POSITION_OPEN_PROTECTED → (EXIT_SUBMITTED | ADJUSTING_STOP)

The starting state is always derived from exchange truth (position + open
orders), never from local memory. Exchange calls are not retried within a
cycle; a failure aborts the rest of the action chain and is recorded so the
next cycle can re-derive state and try again.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
import logging

from ai.schemas import PlanAction, TradePlan
from core.exceptions import ExchangeError
from core.exchange_kraken import AccountSnapshot, OpenOrder, OrderAck, OrderRequest
from core.risk import RiskParams, protective_limit, round_to_tick, size_position, stop_prices
from infra.alerting import AlertSeverity
from infra.state_store import (
    FLAG_STOP_CANCEL_FAILED,
    FLAG_UNPROTECTED,
    RESULT_CLOSED,
    RESULT_NONE,
    RESULT_OPEN,
    LastTrade,
    TradeMemory,
)

logger = logging.getLogger(__name__)


class LifecycleState(Enum):
    NO_POSITION = "NO_POSITION"
    ENTRY_SUBMITTED = "ENTRY_SUBMITTED"
    POSITION_OPEN_UNPROTECTED = "POSITION_OPEN_UNPROTECTED"
    POSITION_OPEN_PROTECTED = "POSITION_OPEN_PROTECTED"
    EXIT_SUBMITTED = "EXIT_SUBMITTED"
    ADJUSTING_STOP = "ADJUSTING_STOP"


def derive_state(snapshot: AccountSnapshot) -> LifecycleState:
    """Lifecycle state from a fresh exchange snapshot."""
    if snapshot.has_open_position:
        if snapshot.protective_orders:
            return LifecycleState.POSITION_OPEN_PROTECTED
        return LifecycleState.POSITION_OPEN_UNPROTECTED
    if snapshot.entry_orders:
        return LifecycleState.ENTRY_SUBMITTED
    return LifecycleState.NO_POSITION


@dataclass
class LifecycleOutcome:
    """What one plan did to the exchange this cycle."""
    action: str
    start_state: LifecycleState
    end_state: LifecycleState
    submitted: List[OrderAck] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    anomalies: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.end_state == LifecycleState.POSITION_OPEN_UNPROTECTED

    def to_dict(self):
        return {
            "action": self.action,
            "start_state": self.start_state.value,
            "end_state": self.end_state.value,
            "submitted": [
                {"order_id": a.order_id, "status": a.status, "simulated": a.simulated}
                for a in self.submitted
            ],
            "cancelled": list(self.cancelled),
            "anomalies": list(self.anomalies),
            "error": self.error,
        }


class OrderLifecycleManager:
    """
    Applies a validated TradePlan against the current exchange state.

    Responsibilities:
    - Entry + protective stop placement (stray stops cancelled first)
    - Exit (cancel resting entries and stops, then reduce-only market close)
    - Stop adjustment (cancel, then replace)
    - Recording outcomes, anomalies and degraded conditions in trade memory
    """

    def __init__(self, exchange, symbol: str, params: RiskParams,
                 tick_size: float = 0.5, auto_protect: bool = False,
                 alerts=None, metrics=None):
        self.exchange = exchange
        self.symbol = symbol
        self.params = params
        self.tick_size = float(tick_size)
        self.auto_protect = bool(auto_protect)
        self.alerts = alerts
        self.metrics = metrics

    def apply(self, plan: TradePlan, snapshot: AccountSnapshot,
              current_price: float, memory: TradeMemory) -> LifecycleOutcome:
        state = derive_state(snapshot)
        outcome = LifecycleOutcome(action=plan.action.value, start_state=state, end_state=state)
        logger.info(f"Lifecycle: state={state.value} plan={plan.action.value} ({plan.reason or 'no reason'})")

        self._reconcile_memory(state, snapshot, memory)

        if plan.action.is_entry:
            self._enter(plan, snapshot, current_price, memory, outcome)
        elif plan.action == PlanAction.EXIT_POSITION:
            self._exit(plan, snapshot, current_price, memory, outcome)
        elif plan.action == PlanAction.ADJUST_STOP:
            self._adjust_stop(plan, snapshot, current_price, memory, outcome)
        elif state == LifecycleState.POSITION_OPEN_UNPROTECTED and self.auto_protect:
            self._protect_existing(snapshot, memory, outcome)

        if outcome.end_state == LifecycleState.POSITION_OPEN_UNPROTECTED:
            self._escalate_unprotected(snapshot, memory, outcome)

        if self.metrics is not None:
            self.metrics.record_lifecycle_state(outcome.end_state.value)
        logger.info(f"Lifecycle: {state.value} -> {outcome.end_state.value}")
        return outcome

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _enter(self, plan: TradePlan, snapshot: AccountSnapshot, current_price: float,
               memory: TradeMemory, outcome: LifecycleOutcome) -> None:
        if outcome.start_state != LifecycleState.NO_POSITION:
            self._anomaly(
                memory, outcome,
                f"{plan.action.value} refused: exchange reports {outcome.start_state.value}",
            )
            return

        # leftover stops (cancelled limit entry, liquidation) must go before a new stop is placed
        if not self._cancel_orders(snapshot.stop_orders, memory, outcome):
            return

        if plan.order_type == "limit" and plan.price:
            reference_price = round_to_tick(plan.price, self.tick_size)
        else:
            reference_price = current_price
        if not reference_price or reference_price <= 0:
            self._anomaly(memory, outcome, f"{plan.action.value} skipped: no valid reference price")
            return

        size = size_position(snapshot.available_margin, reference_price, self.params)
        if size <= 0:
            memory.last_trade = LastTrade(
                action=plan.action.value,
                result=RESULT_NONE,
                rationale=f"no trade: size not viable for margin ${snapshot.available_margin:.2f}",
            )
            logger.info("Lifecycle: position size is zero, not trading")
            return

        side = plan.entry_side
        entry = OrderRequest(
            symbol=self.symbol,
            order_type=plan.order_type,
            side=side,
            size=size,
            limit_price=reference_price if plan.order_type == "limit" else None,
        )
        ack = self._submit(entry, "entry", outcome)
        if ack is None:
            memory.last_trade = LastTrade(
                action=plan.action.value,
                result=RESULT_NONE,
                rationale=f"entry failed: {outcome.error}",
            )
            memory.record_anomaly(f"entry order failed: {outcome.error}")
            return

        outcome.end_state = LifecycleState.POSITION_OPEN_UNPROTECTED
        memory.last_trade = LastTrade(
            action=plan.action.value,
            result=RESULT_OPEN,
            rationale=plan.reason,
            entry_price=reference_price,
            size=size,
            filled=plan.order_type == "market",
        )

        position_side = "long" if side == "buy" else "short"
        trigger, limit = stop_prices(position_side, reference_price, self.params.stop_loss_percent, self.tick_size)
        stop = OrderRequest(
            symbol=self.symbol,
            order_type="stop",
            side="sell" if side == "buy" else "buy",
            size=size,
            limit_price=limit,
            stop_price=trigger,
        )
        if self._submit(stop, "stop", outcome) is None:
            memory.record_anomaly(f"protective stop failed after entry: {outcome.error}")
            return

        outcome.end_state = LifecycleState.POSITION_OPEN_PROTECTED
        memory.last_trade.stop_price = trigger
        memory.clear_flag(FLAG_UNPROTECTED)

    def _exit(self, plan: TradePlan, snapshot: AccountSnapshot, current_price: float,
              memory: TradeMemory, outcome: LifecycleOutcome) -> None:
        if not snapshot.has_open_position:
            logger.info("Lifecycle: EXIT_POSITION with no open position, nothing to do")
            return

        position = snapshot.position
        # a partially filled entry still resting would reopen the position after the close
        if not self._cancel_orders(snapshot.entry_orders + snapshot.stop_orders, memory, outcome):
            return

        outcome.end_state = LifecycleState.EXIT_SUBMITTED
        close = OrderRequest(
            symbol=self.symbol,
            order_type="market",
            side=position.closing_side,
            size=position.size,
            reduce_only=True,
        )
        if self._submit(close, "exit", outcome) is None:
            outcome.end_state = LifecycleState.POSITION_OPEN_UNPROTECTED
            memory.record_anomaly(f"exit order failed: {outcome.error}")
            return

        outcome.end_state = LifecycleState.NO_POSITION
        memory.last_trade = LastTrade(
            action=plan.action.value,
            result=RESULT_CLOSED,
            rationale=plan.reason,
            entry_price=position.price or memory.last_trade.entry_price,
            exit_price=current_price,
            size=position.size,
            filled=True,
        )
        memory.clear_flag(FLAG_UNPROTECTED)
        memory.clear_flag(FLAG_STOP_CANCEL_FAILED)

    def _adjust_stop(self, plan: TradePlan, snapshot: AccountSnapshot, current_price: float,
                     memory: TradeMemory, outcome: LifecycleOutcome) -> None:
        if not snapshot.has_open_position:
            logger.info("Lifecycle: ADJUST_STOP with no open position, nothing to do")
            return
        if outcome.start_state == LifecycleState.POSITION_OPEN_UNPROTECTED and not self.auto_protect:
            logger.info("Lifecycle: ADJUST_STOP with no stop to adjust, nothing to do (auto_protect off)")
            return

        position = snapshot.position
        trigger = round_to_tick(plan.price, self.tick_size)
        if current_price and (
            (position.is_long and trigger >= current_price)
            or (not position.is_long and trigger <= current_price)
        ):
            self._anomaly(
                memory, outcome,
                f"ADJUST_STOP refused: stop {trigger} is on the wrong side of price {current_price} "
                f"for a {position.side} position",
            )
            return

        prior = snapshot.protective_order
        size = prior.size if prior and prior.size > 0 else position.size
        side = prior.side if prior else position.closing_side

        if not self._cancel_orders(snapshot.protective_orders, memory, outcome):
            return

        outcome.end_state = LifecycleState.ADJUSTING_STOP
        stop = OrderRequest(
            symbol=self.symbol,
            order_type="stop",
            side=side,
            size=size,
            limit_price=protective_limit(position.side, trigger, self.tick_size),
            stop_price=trigger,
        )
        if self._submit(stop, "stop", outcome) is None:
            outcome.end_state = LifecycleState.POSITION_OPEN_UNPROTECTED
            memory.record_anomaly(f"replacement stop failed: {outcome.error}")
            return

        outcome.end_state = LifecycleState.POSITION_OPEN_PROTECTED
        memory.last_trade.stop_price = trigger
        memory.clear_flag(FLAG_UNPROTECTED)

    def _protect_existing(self, snapshot: AccountSnapshot, memory: TradeMemory,
                          outcome: LifecycleOutcome) -> None:
        """Re-place the missing stop at the default offset from the position's entry."""
        position = snapshot.position
        trigger, limit = stop_prices(position.side, position.price, self.params.stop_loss_percent, self.tick_size)
        stop = OrderRequest(
            symbol=self.symbol,
            order_type="stop",
            side=position.closing_side,
            size=position.size,
            limit_price=limit,
            stop_price=trigger,
        )
        logger.warning(f"Lifecycle: re-protecting {position.side} position with stop @ {trigger}")
        if self._submit(stop, "stop", outcome) is None:
            memory.record_anomaly(f"protective stop retry failed: {outcome.error}")
            return

        outcome.end_state = LifecycleState.POSITION_OPEN_PROTECTED
        memory.last_trade.stop_price = trigger
        memory.clear_flag(FLAG_UNPROTECTED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reconcile_memory(self, state: LifecycleState, snapshot: AccountSnapshot,
                          memory: TradeMemory) -> None:
        """Bring advisory flags and the last trade in line with what the exchange reports."""
        if state != LifecycleState.POSITION_OPEN_UNPROTECTED:
            memory.clear_flag(FLAG_UNPROTECTED)
        last = memory.last_trade
        if last.result != RESULT_OPEN:
            return

        if snapshot.has_open_position:
            last.filled = True
        elif state == LifecycleState.NO_POSITION and last.filled:
            # closed outside this loop, e.g. the stop triggered
            last.result = RESULT_CLOSED
            last.exit_price = last.stop_price
            last.rationale = f"{last.rationale} | position no longer open on exchange".strip(" |")
            memory.clear_flag(FLAG_STOP_CANCEL_FAILED)
        elif state == LifecycleState.NO_POSITION:
            # limit entry gone without a fill
            last.result = RESULT_NONE
            last.rationale = f"{last.rationale} | entry never filled".strip(" |")

    def _cancel_orders(self, orders: List[OpenOrder], memory: TradeMemory,
                       outcome: LifecycleOutcome) -> bool:
        """Cancel the given resting orders; False aborts the dependent action."""
        for order in orders:
            kind = "stop" if order.is_stop else "entry"
            try:
                self.exchange.cancel_order(order.order_id)
            except ExchangeError as e:
                outcome.error = str(e)
                self._record_order_metric("cancel", "rejected")
                if order.is_stop:
                    memory.set_flag(FLAG_STOP_CANCEL_FAILED)
                self._anomaly(
                    memory, outcome,
                    f"cancel of {kind} {order.order_id} failed, {outcome.action} aborted: {e}",
                )
                self._alert(
                    AlertSeverity.WARNING,
                    f"{kind.capitalize()} cancellation failed",
                    f"{outcome.action} aborted for {self.symbol}: {e}",
                    {"order_id": order.order_id},
                )
                return False
            outcome.cancelled.append(order.order_id)
            self._record_order_metric("cancel", "ok")

        memory.clear_flag(FLAG_STOP_CANCEL_FAILED)
        return True

    def _submit(self, order: OrderRequest, kind: str, outcome: LifecycleOutcome) -> Optional[OrderAck]:
        try:
            ack = self.exchange.send_order(order)
        except (ExchangeError, ValueError) as e:
            outcome.error = str(e)
            logger.error(f"Lifecycle: {kind} order failed: {e}")
            self._record_order_metric(kind, "rejected")
            return None
        outcome.submitted.append(ack)
        self._record_order_metric(kind, "simulated" if ack.simulated else "placed")
        return ack

    def _escalate_unprotected(self, snapshot: AccountSnapshot, memory: TradeMemory,
                              outcome: LifecycleOutcome) -> None:
        memory.set_flag(FLAG_UNPROTECTED)
        position = snapshot.position
        detail = f"{position.side} {position.size} @ {position.price}" if position else "new entry"
        logger.error(f"Lifecycle: position on {self.symbol} is UNPROTECTED ({detail})")
        self._alert(
            AlertSeverity.CRITICAL,
            "Position without protective stop",
            f"{self.symbol} position has no stop-loss order ({detail})",
            {"action": outcome.action, "error": outcome.error},
        )

    def _anomaly(self, memory: TradeMemory, outcome: LifecycleOutcome, message: str) -> None:
        logger.warning(f"Lifecycle anomaly: {message}")
        outcome.anomalies.append(message)
        memory.record_anomaly(message)

    def _alert(self, severity, title: str, message: str, context=None) -> None:
        if self.alerts is not None:
            self.alerts.notify(severity, title, message, context)

    def _record_order_metric(self, kind: str, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record_order(kind, result)
