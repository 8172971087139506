"""
Decision cycle tests with a fake exchange and a mock oracle.
"""

import json
from unittest.mock import Mock

import pytest

from ai.llm_client import MockRecommendationClient
from core.audit_log import AuditLogger
from core.exceptions import ExchangeUnavailable
from core.order_lifecycle import LifecycleState, OrderLifecycleManager
from core.trading_cycle import FAILURE_ALERT_THRESHOLD, TradingCycle
from infra.alerting import AlertSeverity
from infra.metrics import MetricsRecorder
from infra.state_store import RESULT_OPEN, TradeMemoryStore
from tests.helpers import FakeExchange, make_candles, make_snapshot


@pytest.fixture
def memory_store(tmp_path):
    return TradeMemoryStore(str(tmp_path / "trade_memory.json"))


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(audit_file=str(tmp_path / "audit.jsonl"))


def _cycle(exchange, risk_params, memory_store, oracle=None, **kwargs):
    lifecycle = OrderLifecycleManager(exchange, "PF_XBTUSD", risk_params, tick_size=0.5,
                                      metrics=kwargs.get("metrics"), alerts=kwargs.get("alerts"))
    return TradingCycle(
        exchange=exchange,
        lifecycle=lifecycle,
        memory_store=memory_store,
        symbol="PF_XBTUSD",
        oracle=oracle,
        **kwargs,
    )


def test_entry_cycle_places_protected_position(risk_params, memory_store, audit):
    exchange = FakeExchange(make_snapshot(margin=1000.0), candles=make_candles([50000.0] * 30))
    oracle = MockRecommendationClient([{"action": "ENTER_LONG", "reason": "trend", "notes": "watch funding"}])
    metrics = MetricsRecorder(enabled=False)

    result = _cycle(exchange, risk_params, memory_store, oracle, audit=audit, metrics=metrics).run()

    assert result.status == "ok"
    assert result.outcome.end_state == LifecycleState.POSITION_OPEN_PROTECTED
    assert result.orders == 2
    assert [o.order_type for o in exchange.sent] == ["market", "stop"]

    memory = memory_store.load()
    assert memory.last_trade.result == RESULT_OPEN
    assert memory.observations == "watch funding"

    record = json.loads(audit.audit_file.read_text().splitlines()[-1])
    assert record["status"] == "ok"
    assert record["plan"]["action"] == "ENTER_LONG"
    assert record["lifecycle"]["end_state"] == "POSITION_OPEN_PROTECTED"

    assert metrics.last_cycle.status == "ok"
    assert metrics.last_cycle.orders == 2


def test_oracle_sees_snapshot_context(risk_params, memory_store):
    exchange = FakeExchange(make_snapshot(position_side="long", stop_price=49000.0))
    oracle = MockRecommendationClient([{"action": "HOLD"}])

    _cycle(exchange, risk_params, memory_store, oracle,
           pricing_symbol="XBTUSD", venue="spot", interval_minutes=5).run()

    snapshot = oracle.snapshots[0]
    assert snapshot["symbol"] == "PF_XBTUSD"
    assert snapshot["pricing_symbol"] == "XBTUSD"
    assert snapshot["lifecycle_state"] == "POSITION_OPEN_PROTECTED"
    assert len(snapshot["candles"]) == 10
    assert snapshot["account"]["protective_stop"]["stop_price"] == 49000.0
    assert exchange.candle_calls[0] == {"symbol": "XBTUSD", "interval_minutes": 5, "limit": 100, "venue": "spot"}


@pytest.mark.parametrize("failing", ["margin", "positions", "orders", "candles"])
def test_read_failure_aborts_without_orders(risk_params, memory_store, failing):
    exchange = FakeExchange(
        make_snapshot(),
        fail_reads={failing: ExchangeUnavailable("/derivatives/api/v3/x", TimeoutError("timed out"))},
    )
    oracle = MockRecommendationClient([{"action": "ENTER_LONG"}])

    result = _cycle(exchange, risk_params, memory_store, oracle).run()

    assert result.status == "aborted"
    assert exchange.sent == []
    assert oracle.call_count == 0
    assert any(failing in a for a in memory_store.load().anomalies)


def test_parallel_reads_match_sequential(risk_params, memory_store):
    exchange = FakeExchange(make_snapshot(position_side="short", stop_price=51000.0))
    oracle = MockRecommendationClient([{"action": "HOLD"}])

    result = _cycle(exchange, risk_params, memory_store, oracle, parallel_reads=True).run()

    assert result.status == "ok"
    assert result.outcome.start_state == LifecycleState.POSITION_OPEN_PROTECTED


def test_parallel_read_failure_aborts(risk_params, memory_store):
    exchange = FakeExchange(
        make_snapshot(),
        fail_reads={"orders": ExchangeUnavailable("/derivatives/api/v3/openorders")},
    )

    result = _cycle(exchange, risk_params, memory_store, MockRecommendationClient(), parallel_reads=True).run()

    assert result.status == "aborted"


def test_empty_candles_abort(risk_params, memory_store):
    exchange = FakeExchange(make_snapshot(), candles=[])

    result = _cycle(exchange, risk_params, memory_store, MockRecommendationClient()).run()

    assert result.status == "aborted"
    assert "candles" in result.error


def test_oracle_failure_holds(risk_params, memory_store):
    exchange = FakeExchange(make_snapshot())
    oracle = MockRecommendationClient(error=TimeoutError("oracle timed out"))

    result = _cycle(exchange, risk_params, memory_store, oracle).run()

    assert result.status == "ok"
    assert result.plan.action.value == "HOLD"
    assert exchange.sent == []
    assert any("oracle call failed" in a for a in result.anomalies)


def test_malformed_oracle_output_holds(risk_params, memory_store):
    exchange = FakeExchange(make_snapshot())
    oracle = MockRecommendationClient([{"action": "ENTER_LONG", "orderType": "limit"}])

    result = _cycle(exchange, risk_params, memory_store, oracle).run()

    assert result.plan.action.value == "HOLD"
    assert exchange.sent == []
    assert any("limit entry" in a for a in memory_store.load().anomalies)


def test_no_oracle_configured_holds(risk_params, memory_store):
    exchange = FakeExchange(make_snapshot())

    result = _cycle(exchange, risk_params, memory_store, oracle=None).run()

    assert result.plan.action.value == "HOLD"
    assert result.anomalies == ["no oracle configured, holding"]


def test_memory_carried_across_cycles(risk_params, memory_store):
    exchange = FakeExchange(make_snapshot(margin=1000.0))
    oracle = MockRecommendationClient([{"action": "ENTER_LONG"}, {"action": "HOLD"}])
    cycle = _cycle(exchange, risk_params, memory_store, oracle)

    cycle.run()
    cycle.run()

    second_snapshot = oracle.snapshots[1]
    assert second_snapshot["memory"]["lastTrade"]["action"] == "ENTER_LONG"
    assert second_snapshot["memory"]["lastTrade"]["result"] == "open"


def test_repeated_failures_alert(risk_params, memory_store):
    exchange = FakeExchange(make_snapshot(), fail_reads={"margin": ExchangeUnavailable("/x")})
    alerts = Mock()
    cycle = _cycle(exchange, risk_params, memory_store, MockRecommendationClient(), alerts=alerts)

    for _ in range(FAILURE_ALERT_THRESHOLD - 1):
        cycle.run()
    alerts.notify.assert_not_called()

    cycle.run()
    severity, title = alerts.notify.call_args[0][:2]
    assert severity == AlertSeverity.WARNING
    assert title == "Repeated cycle failures"


def test_unexpected_fault_reported_as_error(risk_params, memory_store):
    exchange = FakeExchange(make_snapshot())
    lifecycle = Mock()
    lifecycle.apply.side_effect = RuntimeError("lifecycle bug")
    cycle = TradingCycle(exchange=exchange, lifecycle=lifecycle, memory_store=memory_store,
                         symbol="PF_XBTUSD", oracle=MockRecommendationClient())

    result = cycle.run()

    assert result.status == "error"
    assert "lifecycle bug" in result.error
    assert any("cycle error" in a for a in memory_store.load().anomalies)
