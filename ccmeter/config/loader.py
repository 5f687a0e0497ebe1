"""
Configuration management and loading.

Collects every knob the engine accepts (cost mode, block duration, limits,
heuristics and thresholds) into one validated, immutable structure that is
passed by value into each stage.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ccmeter.core.pricing import DEFAULT_MODEL, CostMode
from ccmeter.utils.timezone import resolve_timezone

TOKEN_LIMIT_MAX = "max"


@dataclass(frozen=True)
class Limits:
    """Caller-supplied quotas. None or 0 means no limit is configured.

    token_limit may be the literal "max", meaning the largest token total of
    any completed billing block.
    """
    token_limit: Union[int, str, None] = None
    context_window: Optional[int] = 200_000
    block_cost_baseline: Optional[float] = 140.0
    monthly_cost_limit: Optional[float] = None
    monthly_token_limit: Optional[int] = None
    message_quota: Optional[int] = None

    def __post_init__(self):
        """Validate limit values."""
        if isinstance(self.token_limit, str):
            if self.token_limit != TOKEN_LIMIT_MAX:
                raise ValueError(f"token_limit must be an integer or '{TOKEN_LIMIT_MAX}'")
        elif self.token_limit is not None and self.token_limit < 0:
            raise ValueError("token_limit cannot be negative")
        for name in ("context_window", "block_cost_baseline", "monthly_cost_limit",
                     "monthly_token_limit", "message_quota"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class ForecastThresholds:
    """Hours-to-limit boundaries for forecast severity."""
    imminent_hours: float = 0.5
    soon_hours: float = 2.0

    def __post_init__(self):
        if self.imminent_hours <= 0:
            raise ValueError("imminent_hours must be > 0")
        if self.soon_hours < self.imminent_hours:
            raise ValueError("soon_hours must be >= imminent_hours")


@dataclass(frozen=True)
class RateUnitThresholds:
    """Per-hour rate boundaries for choosing a display unit."""
    per_day_below: float = 1.0
    per_minute_from: float = 6000.0

    def __post_init__(self):
        if self.per_day_below < 0:
            raise ValueError("per_day_below cannot be negative")
        if self.per_minute_from < self.per_day_below:
            raise ValueError("per_minute_from must be >= per_day_below")


@dataclass(frozen=True)
class UsageLevelThresholds:
    """Percentage boundaries for usage levels."""
    warning: float = 70.0
    critical: float = 85.0
    exceeded: float = 100.0

    def __post_init__(self):
        if not 0 < self.warning <= self.critical <= self.exceeded:
            raise ValueError("usage levels must satisfy 0 < warning <= critical <= exceeded")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration with documented defaults."""
    cost_mode: CostMode = CostMode.AUTO
    block_duration_hours: float = 5.0
    default_model: str = DEFAULT_MODEL
    timezone: Optional[str] = None  # None = system local zone
    limits: Limits = field(default_factory=Limits)
    context_growth_fraction: float = 0.2
    min_elapsed_hours: float = 1 / 60
    forecast: ForecastThresholds = field(default_factory=ForecastThresholds)
    rate_units: RateUnitThresholds = field(default_factory=RateUnitThresholds)
    usage_levels: UsageLevelThresholds = field(default_factory=UsageLevelThresholds)
    recent_block_days: int = 3

    def __post_init__(self):
        """Validate engine settings."""
        if self.block_duration_hours <= 0:
            raise ValueError("block_duration_hours must be > 0")
        if not self.default_model:
            raise ValueError("default_model cannot be empty")
        if not 0 <= self.context_growth_fraction <= 1:
            raise ValueError("context_growth_fraction must be between 0 and 1")
        if self.min_elapsed_hours <= 0:
            raise ValueError("min_elapsed_hours must be > 0")
        if self.recent_block_days < 0:
            raise ValueError("recent_block_days cannot be negative")
        if self.timezone is not None:
            resolve_timezone(self.timezone)

    @property
    def block_duration(self) -> timedelta:
        return timedelta(hours=self.block_duration_hours)


_SECTIONS = {
    "limits": (Limits, {"token_limit", "context_window", "block_cost_baseline",
                        "monthly_cost_limit", "monthly_token_limit", "message_quota"}),
    "forecast": (ForecastThresholds, {"imminent_hours", "soon_hours"}),
    "rate_units": (RateUnitThresholds, {"per_day_below", "per_minute_from"}),
    "usage_levels": (UsageLevelThresholds, {"warning", "critical", "exceeded"}),
}

_SCALARS = {
    "block_duration_hours": float,
    "default_model": str,
    "timezone": str,
    "context_growth_fraction": float,
    "min_elapsed_hours": float,
    "recent_block_days": int,
}


def load_engine_config(path: Union[str, Path]) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return EngineConfig()
    return engine_config_from_dict(raw_config)


def engine_config_from_dict(data: Dict[str, Any]) -> EngineConfig:
    """Build an EngineConfig from plain data, rejecting unknown keys.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_keys = {"cost_mode"} | set(_SCALARS) | set(_SECTIONS)
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown_keys)}")

    kwargs: Dict[str, Any] = {}

    if "cost_mode" in data:
        mode = data["cost_mode"]
        try:
            kwargs["cost_mode"] = CostMode(str(mode).lower())
        except ValueError:
            valid_modes = [m.value for m in CostMode]
            raise ValueError(f"'cost_mode' must be one of: {valid_modes}")

    for key, kind in _SCALARS.items():
        if key not in data or data[key] is None:
            continue
        kwargs[key] = _coerce(data[key], kind, key)

    for key, (section_cls, allowed) in _SECTIONS.items():
        if key not in data or data[key] is None:
            continue
        kwargs[key] = _parse_section(data[key], section_cls, allowed, key)

    return EngineConfig(**kwargs)


def _parse_section(data: Any, section_cls: type, allowed: set, path: str) -> Any:
    """Parse and validate one nested configuration section."""
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {sorted(unknown_keys)}")

    values = {}
    for key, value in data.items():
        if key == "token_limit" and isinstance(value, str):
            if value.lower() != TOKEN_LIMIT_MAX:
                raise ValueError(f"'{path}.token_limit' must be an integer or '{TOKEN_LIMIT_MAX}'")
            values[key] = TOKEN_LIMIT_MAX
        elif value is None:
            values[key] = None
        elif key in ("token_limit", "context_window", "monthly_token_limit", "message_quota"):
            values[key] = _coerce(value, int, f"{path}.{key}")
        else:
            values[key] = _coerce(value, float, f"{path}.{key}")
    return section_cls(**values)


def _coerce(value: Any, kind: type, path: str) -> Any:
    if kind is str:
        if not isinstance(value, str):
            raise ValueError(f"'{path}' must be a string")
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    if kind is int:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"'{path}' must be an integer")
        return int(value)
    return float(value)
