"""Prometheus-backed metrics hooks for the decision cycle and exchange calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

LIFECYCLE_STATES = (
    "NO_POSITION",
    "ENTRY_SUBMITTED",
    "POSITION_OPEN_UNPROTECTED",
    "POSITION_OPEN_PROTECTED",
    "EXIT_SUBMITTED",
    "ADJUSTING_STOP",
)


@dataclass
class CycleStats:
    status: str          # "ok" | "aborted" | "error"
    action: str
    orders: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose decision-cycle stats via Prometheus.

    Collectors live in a private registry so several recorders (tests,
    restarts) never collide on metric names. When disabled, calls only
    update the in-memory snapshot.
    """

    def __init__(self, enabled: bool = False, port: int = 9100) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = CollectorRegistry()

        self._last_cycle: Optional[CycleStats] = None
        self._order_counts: Dict[str, int] = {}
        self._last_state: Optional[str] = None

        self._cycle_summary = Summary(
            "trader_cycle_duration_seconds",
            "Duration of a full decision cycle",
            registry=self.registry,
        )
        self._cycle_counter = Counter(
            "trader_cycle_total",
            "Decision cycles by status and plan action",
            labelnames=("status", "action"),
            registry=self.registry,
        )
        self._orders_counter = Counter(
            "trader_orders_total",
            "Order submissions and cancellations by kind and result",
            labelnames=("kind", "result"),
            registry=self.registry,
        )
        self._api_latency_summary = Summary(
            "exchange_api_latency_seconds",
            "Latency of exchange API calls",
            labelnames=("endpoint", "status"),
            registry=self.registry,
        )
        self._state_gauge = Gauge(
            "trader_lifecycle_state",
            "Current order lifecycle state (1 for the active state)",
            labelnames=("state",),
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        self._last_cycle = stats
        self._cycle_summary.observe(stats.duration_seconds)
        self._cycle_counter.labels(status=stats.status, action=stats.action).inc()

    def record_order(self, kind: str, result: str) -> None:
        key = f"{kind}:{result}"
        self._order_counts[key] = self._order_counts.get(key, 0) + 1
        self._orders_counter.labels(kind=kind, result=result).inc()

    def record_api_call(self, endpoint: str, status: str, duration: float) -> None:
        self._api_latency_summary.labels(endpoint=endpoint, status=status).observe(max(duration, 0.0))

    def record_lifecycle_state(self, state: str) -> None:
        self._last_state = state
        for name in LIFECYCLE_STATES:
            self._state_gauge.labels(state=name).set(1 if name == state else 0)

    @property
    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle

    @property
    def last_state(self) -> Optional[str]:
        return self._last_state

    def order_count(self, kind: str, result: str) -> int:
        return self._order_counts.get(f"{kind}:{result}", 0)
