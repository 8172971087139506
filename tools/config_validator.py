"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)

# Candle widths (minutes) accepted by each market data venue
FUTURES_INTERVALS = {1, 5, 15, 30, 60, 240, 720, 1440, 10080}
SPOT_INTERVALS = {1, 5, 15, 30, 60, 240, 1440, 10080, 21600}


# ===== App Schema =====
class AppSection(BaseModel):
    mode: str = Field(pattern="^(DRY_RUN|LIVE)$", description="Run mode")


class ExchangeConfig(BaseModel):
    """Kraken Futures connection settings"""
    base_url: str = Field(default="https://futures.kraken.com", min_length=1)
    spot_url: str = Field(default="https://api.kraken.com", min_length=1)
    symbol: str = Field(min_length=1, description="Traded perpetual (e.g. PF_XBTUSD)")
    margin_account: str = Field(default="flex", min_length=1)
    live_trading: bool = Field(default=False, description="Send real orders")
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    read_retries: int = Field(default=1, ge=1, le=5, description="Attempts for read-only calls")
    parallel_reads: bool = Field(default=False)


class MarketDataConfig(BaseModel):
    venue: str = Field(default="futures", pattern="^(futures|spot)$")
    symbol: Optional[str] = Field(default=None, description="Pricing instrument (defaults to exchange.symbol)")
    interval_minutes: int = Field(default=1, gt=0)
    limit: int = Field(default=100, gt=0, le=720)


class OracleConfig(BaseModel):
    provider: str = Field(default="deepseek", pattern="^(deepseek|openai|anthropic|mock|none)$")
    model: Optional[str] = None
    api_key_env: Optional[str] = Field(default=None, description="Env var holding the oracle API key")
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)


class LoopConfig(BaseModel):
    interval_seconds: float = Field(default=60.0, ge=1)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    file: str = Field(default="logs/perptrader.log", min_length=1)

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()


class MemoryConfig(BaseModel):
    path: str = Field(default="data/trade_memory.json", min_length=1)


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    alerts_enabled: bool = False
    alerts: Dict[str, Any] = Field(default_factory=dict)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection
    exchange: ExchangeConfig
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


# ===== Policy Schema =====
class RiskConfig(BaseModel):
    """Risk management parameters"""
    leverage: float = Field(gt=0, le=100, description="Account leverage")
    leverage_safety_factor: float = Field(gt=0, le=1, description="Fraction of leveraged capacity usable")
    risk_percent: float = Field(gt=0, le=100, description="Margin % risked per trade")
    stop_loss_percent: float = Field(gt=0, lt=100, description="Stop distance from entry %")
    minimum_notional_usd: float = Field(ge=0, description="Exchange minimum order notional")


class InstrumentConfig(BaseModel):
    tick_size: float = Field(gt=0, description="Price increment")
    quantity_precision: int = Field(default=4, ge=0, le=8, description="Decimal places of order size")


class LifecycleConfig(BaseModel):
    auto_protect: bool = Field(default=False, description="Re-place a missing stop on non-exit plans")


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    risk: RiskConfig
    instrument: InstrumentConfig
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_schema(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping - {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_schema(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_schema(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks across app.yaml and policy.yaml.

    Detects:
    - live_trading enabled while the app runs in DRY_RUN
    - a stop distance at or beyond the liquidation distance implied by leverage
    - candle intervals the selected venue does not serve
    """
    errors = []
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    if app.exchange.live_trading and app.app.mode != "LIVE":
        errors.append(
            "app.yaml: exchange.live_trading is true but app.mode is "
            f"{app.app.mode}; set app.mode: LIVE to trade for real"
        )

    liquidation_pct = 100.0 / policy.risk.leverage
    if policy.risk.stop_loss_percent >= liquidation_pct:
        errors.append(
            f"policy.yaml: risk.stop_loss_percent ({policy.risk.stop_loss_percent}%) is at or beyond "
            f"the ~{liquidation_pct:.2f}% liquidation distance at {policy.risk.leverage}x leverage"
        )

    allowed = FUTURES_INTERVALS if app.market_data.venue == "futures" else SPOT_INTERVALS
    if app.market_data.interval_minutes not in allowed:
        errors.append(
            f"app.yaml: market_data.interval_minutes={app.market_data.interval_minutes} is not served by "
            f"the {app.market_data.venue} venue (allowed: {sorted(allowed)})"
        )

    if app.oracle.provider not in ("mock", "none") and not app.oracle.api_key_env:
        errors.append(f"app.yaml: oracle.api_key_env is required for provider '{app.oracle.provider}'")

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
