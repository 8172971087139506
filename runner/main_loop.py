"""
perptrader Runner: Main Loop

Schedules the single-instrument decision cycle.

Flow per cycle (see core/trading_cycle.py):
1. Read exchange truth and candles
2. Ask the recommendation oracle for a plan
3. Apply the plan through the order lifecycle (entry + protective stop)
4. Persist trade memory, audit, metrics

Cycles run sequentially and never overlap; a slow cycle delays the next one.
"""

import os
import signal
import sys
import threading
import time
import yaml
from pathlib import Path
from typing import Optional
import logging

from ai.llm_client import create_recommendation_client
from core.audit_log import AuditLogger
from core.exceptions import ConfigurationError
from core.exchange_kraken import KrakenFuturesExchange, load_credentials_from_env
from core.order_lifecycle import OrderLifecycleManager
from core.risk import RiskParams
from core.trading_cycle import CycleResult, TradingCycle
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.state_store import TradeMemoryStore

logger = logging.getLogger(__name__)


class TradingLoop:
    """
    Main trading loop orchestrator.

    Responsibilities:
    - Load and validate config
    - Load credentials (fatal when missing)
    - Wire exchange, oracle, lifecycle, memory, audit, alerts, metrics
    - Run periodic cycles until stopped
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        # Logging setup
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/perptrader.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

        # Mode & safety: real orders need both LIVE mode and exchange.live_trading
        self.mode = self.app_config.get("app", {}).get("mode", "DRY_RUN").upper()
        exchange_cfg = self.app_config.get("exchange", {}) or {}
        self.live_trading = self.mode == "LIVE" and bool(exchange_cfg.get("live_trading", False))
        logger.info(f"Starting perptrader in mode={self.mode}, live_trading={self.live_trading}")

        loop_cfg = self.app_config.get("loop", {}) or {}
        self.loop_interval_seconds = float(loop_cfg.get("interval_seconds", 60.0))

        credentials = load_credentials_from_env()

        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=monitoring_cfg.get("metrics_enabled", False),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()
        self.alerts = AlertService.from_config(
            monitoring_cfg.get("alerts_enabled", False),
            monitoring_cfg.get("alerts"),
        )
        if self.alerts.is_enabled():
            logger.info(
                "Alerting enabled (min_severity=%s)",
                (monitoring_cfg.get("alerts") or {}).get("min_severity", "warning"),
            )

        self.symbol = exchange_cfg["symbol"]
        self.exchange = KrakenFuturesExchange(
            credentials,
            base_url=exchange_cfg.get("base_url", "https://futures.kraken.com"),
            spot_url=exchange_cfg.get("spot_url", "https://api.kraken.com"),
            live_trading=self.live_trading,
            margin_account=exchange_cfg.get("margin_account", "flex"),
            timeout=float(exchange_cfg.get("timeout_seconds", 10.0)),
            read_retries=int(exchange_cfg.get("read_retries", 1)),
            metrics=self.metrics,
        )

        instrument_cfg = self.policy_config.get("instrument", {}) or {}
        lifecycle_cfg = self.policy_config.get("lifecycle", {}) or {}
        self.risk_params = RiskParams.from_policy(self.policy_config)
        self.lifecycle = OrderLifecycleManager(
            self.exchange,
            self.symbol,
            self.risk_params,
            tick_size=float(instrument_cfg.get("tick_size", 0.5)),
            auto_protect=bool(lifecycle_cfg.get("auto_protect", False)),
            alerts=self.alerts,
            metrics=self.metrics,
        )

        memory_cfg = self.app_config.get("memory", {}) or {}
        self.memory_store = TradeMemoryStore(memory_cfg.get("path"))
        self.audit = AuditLogger(audit_file=log_file.replace(".log", "_audit.jsonl"))
        self.oracle = self._build_oracle(self.app_config.get("oracle", {}) or {})

        market_cfg = self.app_config.get("market_data", {}) or {}
        self.cycle = TradingCycle(
            exchange=self.exchange,
            lifecycle=self.lifecycle,
            memory_store=self.memory_store,
            symbol=self.symbol,
            pricing_symbol=market_cfg.get("symbol") or self.symbol,
            venue=market_cfg.get("venue", "futures"),
            interval_minutes=int(market_cfg.get("interval_minutes", 1)),
            candle_limit=int(market_cfg.get("limit", 100)),
            oracle=self.oracle,
            audit=self.audit,
            metrics=self.metrics,
            alerts=self.alerts,
            mode=self.mode,
            parallel_reads=bool(exchange_cfg.get("parallel_reads", False)),
        )

        # Shutdown flag
        self._running = True
        self._stop_event = threading.Event()
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized TradingLoop in {self.mode} mode for {self.symbol}")

    def _handle_stop(self, *_):
        """Stop after the current cycle; an in-flight cycle is never interrupted."""
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping after current cycle")
        logger.warning("=" * 80)
        self._running = False
        self._stop_event.set()

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def _build_oracle(oracle_cfg: dict):
        provider = (oracle_cfg.get("provider") or "none").lower()
        if provider == "none":
            logger.warning("No recommendation oracle configured; every cycle will HOLD")
            return None
        if provider == "mock":
            return create_recommendation_client("mock", api_key="")

        key_env = oracle_cfg.get("api_key_env") or ""
        api_key = os.getenv(key_env, "").strip() if key_env else ""
        if not api_key:
            raise ConfigurationError(f"Missing oracle API key: {key_env or 'oracle.api_key_env'} is not set")
        return create_recommendation_client(
            provider,
            api_key=api_key,
            model=oracle_cfg.get("model"),
            timeout_s=float(oracle_cfg.get("timeout_seconds", 30.0)),
        )

    def run_cycle(self) -> Optional[CycleResult]:
        """Run one cycle; unexpected faults are logged and never escape the loop."""
        try:
            return self.cycle.run()
        except Exception as e:
            logger.exception(f"Unhandled error in trading cycle: {e}")
            return None

    def run_forever(self, interval_seconds: Optional[float] = None):
        """
        Run trading loop continuously with time-aware sleep.

        Args:
            interval_seconds: Seconds between cycle starts (config value when omitted)
        """
        configured_interval = float(interval_seconds) if interval_seconds else self.loop_interval_seconds
        configured_interval = max(configured_interval, 1.0)

        logger.info(f"Starting continuous loop (interval={configured_interval}s)")

        while self._running:
            start = time.monotonic()
            self.run_cycle()
            elapsed = time.monotonic() - start

            sleep_for = max(0.0, configured_interval - elapsed)
            if elapsed > configured_interval:
                logger.warning(
                    f"Cycle overran its interval ({elapsed:.2f}s > {configured_interval:.0f}s); starting next cycle now"
                )
            else:
                logger.info(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")

            if not self._running:
                break
            self._stop_event.wait(sleep_for)

        logger.info("Trading loop stopped cleanly.")


def main(argv=None):
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="perptrader - single-instrument perpetual futures bot")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=float, default=None,
                        help="Seconds between cycles (default: loop.interval_seconds from app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args(argv)

    try:
        # Create loop (logging configured in __init__)
        loop = TradingLoop(config_dir=args.config_dir)
    except (ConfigurationError, ValueError) as e:
        logger.critical(f"Startup failed: {e}")
        if not logging.getLogger().handlers:
            print(f"Startup failed: {e}", file=sys.stderr)
        return 2

    if args.once:
        result = loop.run_cycle()
        return 0 if result is not None and result.status == "ok" else 1

    loop.run_forever(interval_seconds=args.interval)
    return 0


if __name__ == "__main__":
    sys.exit(main())
