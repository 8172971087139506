"""
Tests for configuration validation.

Validates that config_validator correctly identifies invalid configs
and accepts valid configs.
"""
from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    AppSchema,
    PolicySchema,
    validate_all_configs,
    validate_policy,
)

REPO_CONFIG = Path(__file__).resolve().parents[1] / "config"


def _app_config(**overrides):
    config = {
        "app": {"mode": "DRY_RUN"},
        "exchange": {"symbol": "PF_XBTUSD", "live_trading": False},
        "market_data": {"venue": "spot", "symbol": "XBTUSD", "interval_minutes": 1, "limit": 100},
        "oracle": {"provider": "mock"},
        "loop": {"interval_seconds": 60},
        "logging": {"level": "INFO", "file": "logs/perptrader.log"},
        "memory": {"path": "data/trade_memory.json"},
    }
    for section, values in overrides.items():
        config[section] = {**config.get(section, {}), **values}
    return config


def _policy_config(**risk_overrides):
    risk = {
        "leverage": 10,
        "leverage_safety_factor": 0.9,
        "risk_percent": 1.0,
        "stop_loss_percent": 2.0,
        "minimum_notional_usd": 10,
    }
    risk.update(risk_overrides)
    return {"risk": risk, "instrument": {"tick_size": 0.5, "quantity_precision": 4}}


def _write(config_dir: Path, app=None, policy=None) -> Path:
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "app.yaml").write_text(yaml.safe_dump(app if app is not None else _app_config()))
    (config_dir / "policy.yaml").write_text(yaml.safe_dump(policy if policy is not None else _policy_config()))
    return config_dir


class TestSchemas:

    def test_valid_app_config(self):
        app = AppSchema(**_app_config())
        assert app.exchange.read_retries == 1
        assert app.exchange.parallel_reads is False
        assert app.oracle.timeout_seconds == 30.0

    def test_valid_policy_defaults_auto_protect_off(self):
        policy = PolicySchema(**_policy_config())
        assert policy.lifecycle.auto_protect is False

    def test_invalid_mode_rejected(self):
        with pytest.raises(Exception):
            AppSchema(**_app_config(app={"mode": "PAPER"}))

    def test_safety_factor_above_one_rejected(self):
        with pytest.raises(Exception):
            PolicySchema(**_policy_config(leverage_safety_factor=1.2))


class TestValidateFiles:

    def test_repository_configs_are_valid(self):
        assert validate_all_configs(str(REPO_CONFIG)) == []

    def test_valid_files_pass(self, tmp_path):
        assert validate_all_configs(str(_write(tmp_path / "config"))) == []

    def test_missing_file_reported(self, tmp_path):
        tmp_path.joinpath("config").mkdir()
        errors = validate_all_configs(str(tmp_path / "config"))
        assert any("app.yaml" in e and "not found" in e for e in errors)
        assert any("policy.yaml" in e for e in errors)

    def test_field_errors_carry_location(self, tmp_path):
        config_dir = _write(tmp_path / "config", policy=_policy_config(risk_percent=-1))

        errors = validate_policy(config_dir)

        assert len(errors) == 1
        assert errors[0].startswith("policy.yaml: risk -> risk_percent:")

    def test_malformed_yaml_reported(self, tmp_path):
        config_dir = _write(tmp_path / "config")
        (config_dir / "policy.yaml").write_text("risk: [unclosed\n")

        errors = validate_all_configs(str(config_dir))

        assert any("Invalid YAML" in e for e in errors)


class TestSanityChecks:

    def test_live_trading_requires_live_mode(self, tmp_path):
        app = _app_config(exchange={"live_trading": True})
        errors = validate_all_configs(str(_write(tmp_path / "config", app=app)))
        assert any("live_trading" in e for e in errors)

    def test_live_mode_with_live_trading_is_valid(self, tmp_path):
        app = _app_config(app={"mode": "LIVE"}, exchange={"live_trading": True})
        assert validate_all_configs(str(_write(tmp_path / "config", app=app))) == []

    def test_stop_beyond_liquidation_distance(self, tmp_path):
        policy = _policy_config(leverage=50, stop_loss_percent=2.5)
        errors = validate_all_configs(str(_write(tmp_path / "config", policy=policy)))
        assert any("liquidation" in e for e in errors)

    def test_interval_not_served_by_venue(self, tmp_path):
        app = _app_config(market_data={"venue": "futures", "interval_minutes": 3})
        errors = validate_all_configs(str(_write(tmp_path / "config", app=app)))
        assert any("interval_minutes=3" in e for e in errors)

    def test_real_provider_needs_key_env(self, tmp_path):
        app = _app_config(oracle={"provider": "deepseek"})
        errors = validate_all_configs(str(_write(tmp_path / "config", app=app)))
        assert any("api_key_env" in e for e in errors)
