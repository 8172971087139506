"""
Pytest configuration and fixtures for perptrader tests.

This conftest.py provides shared fixtures for all tests.
"""
import pytest

from core.risk import RiskParams


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch, tmp_path):
    """
    Keep tests away from real credentials and the working tree.

    Applied automatically to all tests (autouse=True).
    """
    for name in (
        "KRAKEN_FUTURES_API_KEY",
        "KRAKEN_FUTURES_API_SECRET",
        "KRAKEN_API_KEY",
        "KRAKEN_API_SECRET",
        "DEEPSEEK_API_KEY",
        "ALERT_WEBHOOK_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TRADE_MEMORY_FILE", str(tmp_path / "trade_memory.json"))
    yield


@pytest.fixture
def risk_params():
    return RiskParams(
        leverage=10,
        leverage_safety_factor=0.9,
        risk_percent=1.0,
        stop_loss_percent=2.0,
        minimum_notional_usd=10.0,
    )
