"""
Configuration Validation Module

Loads app.yaml and validates it against Pydantic schemas before the follow
loop starts. Every problem is collected and reported at once.

Usage:
    from tools.config_validator import load_config

    config = load_config("config/app.yaml", overrides={"follow": {"risk_only": True}})
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class FollowConfig(BaseModel):
    """What to follow and how to size it"""
    agent: Optional[str] = Field(default=None, description="Agent (model) id to mirror")
    marker: Optional[int] = Field(default=None, description="Hourly marker for historical snapshots")
    interval_seconds: Optional[float] = Field(default=None, gt=0, description="Tick period; unset = run once")
    risk_only: bool = Field(default=False, description="Suppress all exchange-mutating calls")
    total_margin: Optional[float] = Field(default=None, gt=0, description="Proportional mode budget")
    fixed_amount_per_coin: Optional[float] = Field(default=None, gt=0, description="Fixed mode margin per symbol")
    weighting: str = Field(default="equal", pattern="^(equal|agent_margin)$", description="Proportional weighting")
    profit_target_percent: Optional[float] = Field(default=None, gt=0, description="Leveraged PnL % that triggers an exit")
    auto_refollow: bool = Field(default=False, description="Detect manual closes and re-follow after exits")
    margin_type: str = Field(default="ISOLATED", pattern="^(ISOLATED|CROSSED)$", description="Futures margin type")
    price_tolerance_percent: Optional[float] = Field(default=1.0, ge=0, description="Max mark vs agent entry deviation %")

    @field_validator("margin_type", mode="before")
    @classmethod
    def normalize_margin_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().upper()
            if v == "CROSS":
                v = "CROSSED"
        return v

    @model_validator(mode="after")
    def validate_funding_mode(self) -> "FollowConfig":
        """Exactly one funding mode must be set"""
        if self.total_margin is not None and self.fixed_amount_per_coin is not None:
            raise ValueError("total_margin and fixed_amount_per_coin are mutually exclusive")
        if self.total_margin is None and self.fixed_amount_per_coin is None:
            raise ValueError("one of total_margin or fixed_amount_per_coin is required")
        return self


class SignalSourceConfig(BaseModel):
    base_url: str = Field(default="https://nof1.ai/api", min_length=1)
    timeout_seconds: float = Field(default=10.0, gt=0)
    cache_ttl_seconds: float = Field(default=0.0, ge=0)


class ExchangeConfig(BaseModel):
    base_url: str = Field(default="https://fapi.binance.com", min_length=1)
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    api_key_env: str = Field(default="BINANCE_API_KEY")
    api_secret_env: str = Field(default="BINANCE_API_SECRET")


class StateConfig(BaseModel):
    history_file: str = Field(default="data/order_history.json")
    events_file: str = Field(default="logs/follow_events.jsonl")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/agent-mirror.log")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class AlertsConfig(BaseModel):
    webhook_url: Optional[str] = None
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL")
    min_severity: str = Field(default="info", pattern="^(info|warning|critical)$")
    timeout_seconds: float = Field(default=5.0, gt=0)
    dry_run: bool = False


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    alerts_enabled: bool = False
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


class FollowerConfig(BaseModel):
    follow: FollowConfig
    signal_source: SignalSourceConfig = Field(default_factory=SignalSourceConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    mark = getattr(error, "problem_mark", None)
    if mark is not None:
        return f"{file_path}: YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {getattr(error, 'problem', error)}"
    return f"{file_path}: YAML syntax error: {error}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """Load a YAML file, raising ConfigurationError on missing/invalid files"""
    if not file_path.exists():
        raise ConfigurationError(f"Config file not found: {file_path}")
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(_format_yaml_error(file_path, e)) from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{file_path}: top level must be a mapping")
    return data


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        elif value is not None:
            merged[key] = value
    return merged


def validate_config(raw: Dict[str, Any]) -> List[str]:
    """Return a list of human-readable problems (empty when valid)"""
    try:
        FollowerConfig.model_validate(raw)
    except ValidationError as e:
        errors = []
        for err in e.errors():
            location = ".".join(str(part) for part in err.get("loc", ())) or "config"
            errors.append(f"{location}: {err.get('msg')}")
        return errors
    return []


def build_config(raw: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> FollowerConfig:
    """Validate a raw mapping (plus overrides) into a FollowerConfig"""
    merged = _deep_merge(raw, overrides or {})
    merged.setdefault("follow", {})
    errors = validate_config(merged)
    if errors:
        for idx, error in enumerate(errors, start=1):
            logger.error(f"{idx:>2}. {error}")
        raise ConfigurationError(errors)
    return FollowerConfig.model_validate(merged)


def load_config(path: str = "config/app.yaml", overrides: Optional[Dict[str, Any]] = None) -> FollowerConfig:
    return build_config(load_yaml_file(Path(path)), overrides)
