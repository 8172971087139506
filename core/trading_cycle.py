"""
Trading Cycle - one decision cycle for a single instrument.

Flow:
1. Load trade memory
2. Read exchange truth (margin, position, open orders) and candles
3. Compute indicators
4. Ask the oracle for a plan (HOLD on any oracle fault)
5. Apply the plan through the order lifecycle
6. Persist memory, audit the cycle, record metrics

A cycle never raises for per-cycle faults; the outcome is reported in
CycleResult and the next cycle starts again from exchange truth.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging
import time

from ai.schemas import TradePlan, parse_recommendation
from ai.snapshot_builder import build_oracle_snapshot
from core.exceptions import CriticalDataUnavailable, ExchangeError
from core.exchange_kraken import AccountSnapshot
from core.indicators import Indicators, compute_indicators
from core.order_lifecycle import LifecycleOutcome, OrderLifecycleManager, derive_state
from infra.alerting import AlertSeverity
from infra.metrics import CycleStats
from infra.state_store import TradeMemory, TradeMemoryStore

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_ABORTED = "aborted"
STATUS_ERROR = "error"

# consecutive aborted/errored cycles before an alert goes out
FAILURE_ALERT_THRESHOLD = 3


@dataclass
class CycleResult:
    """Result of one decision cycle"""
    status: str
    plan: Optional[TradePlan] = None
    outcome: Optional[LifecycleOutcome] = None
    indicators: Optional[Indicators] = None
    anomalies: List[str] = field(default_factory=list)
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def orders(self) -> int:
        return len(self.outcome.submitted) if self.outcome else 0


class TradingCycle:
    """
    Single-instrument decision cycle.

    Collaborators are injected so tests can drive the cycle with stubs.
    """

    def __init__(self,
                 exchange,
                 lifecycle: OrderLifecycleManager,
                 memory_store: TradeMemoryStore,
                 symbol: str,
                 pricing_symbol: Optional[str] = None,
                 venue: str = "futures",
                 interval_minutes: int = 1,
                 candle_limit: int = 100,
                 oracle=None,
                 audit=None,
                 metrics=None,
                 alerts=None,
                 mode: str = "DRY_RUN",
                 parallel_reads: bool = False):
        self.exchange = exchange
        self.lifecycle = lifecycle
        self.memory_store = memory_store
        self.symbol = symbol
        self.pricing_symbol = pricing_symbol or symbol
        self.venue = venue
        self.interval_minutes = interval_minutes
        self.candle_limit = candle_limit
        self.oracle = oracle
        self.audit = audit
        self.metrics = metrics
        self.alerts = alerts
        self.mode = mode
        self.parallel_reads = parallel_reads
        self._consecutive_failures = 0

        logger.info(
            f"Initialized TradingCycle for {self.symbol} "
            f"(pricing={self.venue}:{self.pricing_symbol}, mode={self.mode}, parallel_reads={self.parallel_reads})"
        )

    def run(self) -> CycleResult:
        started = time.monotonic()
        ts = datetime.now(timezone.utc)
        memory = self.memory_store.load()

        try:
            result = self._run(memory)
        except CriticalDataUnavailable as e:
            logger.error(f"Cycle aborted: {e}")
            message = f"cycle aborted: {e}"
            memory.record_anomaly(message)
            result = CycleResult(status=STATUS_ABORTED, anomalies=[message], error=str(e))
        except Exception as e:
            logger.exception(f"Cycle failed: {e}")
            memory.record_anomaly(f"cycle error: {e}")
            result = CycleResult(status=STATUS_ERROR, error=str(e))

        result.duration_seconds = time.monotonic() - started
        self._persist(memory)
        self._audit(ts, result)
        self._record(result)
        self._track_failures(result)

        logger.info(
            f"Cycle {result.status}: action={result.plan.action.value if result.plan else 'none'} "
            f"orders={result.orders} duration={result.duration_seconds:.2f}s"
        )
        return result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, memory: TradeMemory) -> CycleResult:
        snapshot, candles = self._read_market_state()

        indicators = compute_indicators(candles)
        current_price = indicators.last_price
        if not current_price or current_price <= 0:
            raise CriticalDataUnavailable("candles")

        state = derive_state(snapshot)
        oracle_snapshot = build_oracle_snapshot(
            symbol=self.symbol,
            pricing_symbol=self.pricing_symbol,
            candles=candles,
            indicators=indicators,
            account=snapshot,
            lifecycle_state=state.value,
            memory=memory,
        )

        plan, anomalies = self._recommend(oracle_snapshot)
        for message in anomalies:
            logger.warning(f"Oracle anomaly: {message}")
            memory.record_anomaly(message)
        if plan.notes:
            memory.observations = plan.notes

        outcome = self.lifecycle.apply(plan, snapshot, current_price, memory)
        return CycleResult(
            status=STATUS_OK,
            plan=plan,
            outcome=outcome,
            indicators=indicators,
            anomalies=anomalies + outcome.anomalies,
            error=outcome.error,
        )

    def _read_market_state(self):
        """Exchange truth and candles. Any failed read aborts the cycle."""
        reads: Dict[str, Callable[[], Any]] = {
            "margin": self.exchange.get_available_margin,
            "positions": lambda: self.exchange.get_open_positions(self.symbol),
            "orders": lambda: self.exchange.get_open_orders(self.symbol),
            "candles": lambda: self.exchange.get_candles(
                self.pricing_symbol,
                interval_minutes=self.interval_minutes,
                limit=self.candle_limit,
                venue=self.venue,
            ),
        }

        results: Dict[str, Any] = {}
        if self.parallel_reads:
            with ThreadPoolExecutor(max_workers=len(reads), thread_name_prefix="cycle-read") as pool:
                futures = {name: pool.submit(fn) for name, fn in reads.items()}
                for name, future in futures.items():
                    results[name] = self._resolve(name, future.result)
        else:
            for name, fn in reads.items():
                results[name] = self._resolve(name, fn)

        positions = results["positions"]
        snapshot = AccountSnapshot(
            symbol=self.symbol,
            available_margin=results["margin"],
            position=positions[0] if positions else None,
            open_orders=results["orders"],
        )
        return snapshot, results["candles"]

    @staticmethod
    def _resolve(name: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except (ExchangeError, ValueError) as e:
            raise CriticalDataUnavailable(name, e) from e

    def _recommend(self, oracle_snapshot: Dict[str, Any]):
        if self.oracle is None:
            return TradePlan.hold("no oracle configured"), ["no oracle configured, holding"]

        try:
            raw = self.oracle.recommend(oracle_snapshot)
        except Exception as e:
            logger.error(f"Oracle call failed: {e}")
            return TradePlan.hold("oracle unavailable"), [f"oracle call failed: {e}"]

        plan, anomalies = parse_recommendation(raw)
        logger.info(f"Oracle plan: {plan.action.value} {plan.order_type} price={plan.price} ({plan.reason})")
        return plan, anomalies

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _persist(self, memory: TradeMemory) -> None:
        try:
            self.memory_store.save(memory)
        except OSError as e:
            logger.error(f"Failed to save trade memory: {e}")

    def _audit(self, ts: datetime, result: CycleResult) -> None:
        if self.audit is None:
            return
        self.audit.log_cycle(
            ts=ts,
            mode=self.mode,
            status=result.status,
            plan=result.plan.to_dict() if result.plan else None,
            lifecycle=result.outcome.to_dict() if result.outcome else None,
            indicators=result.indicators.to_dict() if result.indicators else None,
            anomalies=result.anomalies,
            error=result.error,
        )

    def _record(self, result: CycleResult) -> None:
        if self.metrics is None:
            return
        self.metrics.observe_cycle(CycleStats(
            status=result.status,
            action=result.plan.action.value if result.plan else "NONE",
            orders=result.orders,
            duration_seconds=result.duration_seconds,
        ))

    def _track_failures(self, result: CycleResult) -> None:
        if result.status == STATUS_OK:
            self._consecutive_failures = 0
            return

        self._consecutive_failures += 1
        if self._consecutive_failures >= FAILURE_ALERT_THRESHOLD and self.alerts is not None:
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Repeated cycle failures",
                f"{self.symbol}: {self._consecutive_failures} consecutive cycles did not complete",
                {"last_error": result.error},
            )
