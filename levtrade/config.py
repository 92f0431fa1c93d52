"""Configuration loader for the position engine.

Supports YAML format with environment variable interpolation. Percent-valued
settings are expressed in percent (``0.35`` means 0.35 %).
"""
import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class ConfigurationError(ValueError):
    """Fatal configuration problem (missing credentials, invalid symbol, bad values).

    Raised at startup; not a runtime-recoverable condition.
    """


@dataclass(frozen=True)
class RiskTier:
    """Stop/target distances active for one risk phase (all in percent)."""
    stop_loss_pct: Decimal
    take_profit_pct: Decimal
    trailing_activation_pct: Decimal
    trailing_stop_pct: Decimal


def _default_tiers() -> Dict[str, RiskTier]:
    return {
        "initial": RiskTier(Decimal("0.35"), Decimal("1.05"), Decimal("0.64"), Decimal("0.2")),
        "break_even": RiskTier(Decimal("0.14"), Decimal("0.7"), Decimal("0.32"), Decimal("0.088")),
        "trailing_aggressive": RiskTier(Decimal("0.25"), Decimal("0.84"), Decimal("0.4"), Decimal("0.12")),
    }


@dataclass
class ExchangeConfig:
    """Exchange connectivity settings."""
    exchange_id: str = "binanceusdm"
    symbol: str = "SOL/USDT:USDT"
    quote_asset: str = "USDT"
    leverage: int = 20
    margin_mode: str = "isolated"
    testnet: bool = True
    timeout: int = 30


@dataclass
class RiskConfig:
    """Risk-phase thresholds and the per-phase tier table."""
    tiers: Dict[str, RiskTier] = field(default_factory=_default_tiers)
    break_even_trigger_pct: Decimal = Decimal("1.05")
    commission_pct: Decimal = Decimal("0.04")  # round-trip estimate
    min_stop_distance_pct: Decimal = Decimal("0.2")
    min_level_distance_pct: Decimal = Decimal("0.1")
    trailing_floor_pct: Decimal = Decimal("0.08")
    trailing_damping: Decimal = Decimal("0.03")
    target_damping: Decimal = Decimal("0.05")
    max_target_reduction: Decimal = Decimal("0.4")
    min_ratchet_pct: Decimal = Decimal("0")


@dataclass
class DcaConfig:
    """Averaging-in settings."""
    enabled: bool = True
    max_dca_count: int = 3
    step_pct: Decimal = Decimal("1.0")
    multiplier: Decimal = Decimal("1.5")


@dataclass
class RetryConfig:
    """Bounded retry and request budget for gateway calls."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0
    call_timeout: float = 30.0
    jitter: float = 0.25
    order_attempts: int = 3
    safety_rounds: int = 3
    max_requests_per_minute: int = 50


@dataclass
class ScheduleConfig:
    """Timer intervals and delayed-retry delays, in seconds."""
    position_check_interval: float = 30.0
    order_update_interval: float = 90.0
    reconcile_interval: float = 30.0
    reconcile_retry_delay: float = 5.0
    safety_retry_delay: float = 5.0
    signal_retry_delay: float = 10.0
    close_poll_attempts: int = 5
    close_poll_delay: float = 1.0


@dataclass
class NotifierConfig:
    """Telegram alert settings."""
    enabled: bool = True
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None


@dataclass
class LoggingConfig:
    log_file: str = "levtrade.log"
    log_level: str = "INFO"


@dataclass
class EngineConfig:
    """Complete engine configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    dca: DcaConfig = field(default_factory=DcaConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "EngineConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            EngineConfig instance

        Example YAML:
            exchange:
              symbol: SOL/USDT:USDT
              leverage: 20
            risk:
              break_even_trigger_pct: 1.05
              tiers:
                initial: {stop_loss_pct: 0.35, take_profit_pct: 1.05,
                          trailing_activation_pct: 0.64, trailing_stop_pct: 0.2}
            notifier:
              telegram_token: "${TELEGRAM_BOT_TOKEN}"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        risk_data = dict(data.get("risk") or {})
        tiers = _default_tiers()
        for name, tier in (risk_data.pop("tiers", None) or {}).items():
            tiers[name] = RiskTier(**{k: Decimal(str(v)) for k, v in tier.items()})

        return cls(
            exchange=ExchangeConfig(**(data.get("exchange") or {})),
            risk=RiskConfig(tiers=tiers, **_decimals(RiskConfig, risk_data)),
            dca=DcaConfig(**_decimals(DcaConfig, data.get("dca") or {})),
            retry=RetryConfig(**(data.get("retry") or {})),
            schedule=ScheduleConfig(**(data.get("schedule") or {})),
            notifier=NotifierConfig(**(data.get("notifier") or {})),
            logging=LoggingConfig(**(data.get("logging") or {})),
        )

    def validate(self) -> "EngineConfig":
        """Check values that would make the engine unsafe to start.

        Raises:
            ConfigurationError: On the first invalid setting found
        """
        if not self.exchange.symbol:
            raise ConfigurationError("exchange.symbol must be set")
        if self.exchange.leverage <= 0:
            raise ConfigurationError(f"exchange.leverage must be positive, got {self.exchange.leverage}")
        for name in ("initial", "break_even", "trailing_aggressive"):
            tier = self.risk.tiers.get(name)
            if tier is None:
                raise ConfigurationError(f"risk.tiers.{name} is missing")
            for f in fields(tier):
                if getattr(tier, f.name) <= 0:
                    raise ConfigurationError(f"risk.tiers.{name}.{f.name} must be positive")
        for f in fields(self.risk):
            value = getattr(self.risk, f.name)
            if isinstance(value, Decimal) and value < 0:
                raise ConfigurationError(f"risk.{f.name} must not be negative")
        if self.dca.max_dca_count < 0:
            raise ConfigurationError("dca.max_dca_count must not be negative")
        if self.dca.step_pct <= 0:
            raise ConfigurationError("dca.step_pct must be positive")
        if self.dca.multiplier < 1:
            raise ConfigurationError("dca.multiplier must be >= 1")
        if self.retry.max_attempts < 1 or self.retry.order_attempts < 1:
            raise ConfigurationError("retry attempts must be at least 1")
        for name in ("position_check_interval", "order_update_interval", "reconcile_interval"):
            if getattr(self.schedule, name) <= 0:
                raise ConfigurationError(f"schedule.{name} must be positive")
        if self.schedule.close_poll_attempts < 1:
            raise ConfigurationError("schedule.close_poll_attempts must be at least 1")
        return self

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        risk = {
            f.name: str(getattr(self.risk, f.name))
            for f in fields(self.risk)
            if f.name != "tiers"
        }
        risk["tiers"] = {
            name: {f.name: str(getattr(tier, f.name)) for f in fields(tier)}
            for name, tier in self.risk.tiers.items()
        }
        data = {
            "exchange": _plain(self.exchange),
            "risk": risk,
            "dca": _plain(self.dca),
            "retry": _plain(self.retry),
            "schedule": _plain(self.schedule),
            "notifier": _plain(self.notifier),
            "logging": _plain(self.logging),
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def _decimals(klass, values: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce values for the Decimal-typed fields of ``klass``."""
    decimal_fields = {f.name for f in fields(klass) if f.type is Decimal}
    return {
        k: Decimal(str(v)) if k in decimal_fields else v
        for k, v in values.items()
    }


def _plain(section) -> Dict[str, Any]:
    out = {}
    for f in fields(section):
        value = getattr(section, f.name)
        out[f.name] = str(value) if isinstance(value, Decimal) else value
    return out
