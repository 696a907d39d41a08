"""Configuration loading: defaults, then config.toml, then MARKET_* environment."""

from __future__ import annotations

import os
import random
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from marketplace.errors import ConfigError
from marketplace.models import RequestStatus

DEFAULT_DATA_DIR = Path.home() / ".marketplace"

# Environment overrides: variable name -> (section, key)
ENV_OVERRIDES = {
    "MARKET_PLATFORM_FEE_PERCENT": ("settlement", "platform_fee_percent"),
    "MARKET_WITHHOLDING_RATE_PERCENT": ("settlement", "withholding_rate_percent"),
    "MARKET_CURRENCY": ("settlement", "currency"),
    "MARKET_GATEWAY_URL": ("gateway", "base_url"),
    "MARKET_GATEWAY_API_KEY": ("gateway", "api_key"),
}


def _percent(name: str, value: Decimal, *, lower_open: bool = False, upper_open: bool = False) -> None:
    low_ok = value > 0 if lower_open else value >= 0
    high_ok = value < 100 if upper_open else value <= 100
    if not (low_ok and high_ok):
        raise ConfigError(f"{name} out of range: {value}")


@dataclass(frozen=True)
class SettlementConfig:
    platform_fee_percent: Decimal = Decimal("15")
    withholding_rate_percent: Decimal = Decimal("10")
    money_quantum: Decimal = Decimal("0.01")
    currency: str = "INR"

    def __post_init__(self) -> None:
        _percent("platform_fee_percent", self.platform_fee_percent)
        _percent("withholding_rate_percent", self.withholding_rate_percent)
        if self.money_quantum <= 0:
            raise ConfigError(f"money_quantum must be positive, got {self.money_quantum}")


@dataclass(frozen=True)
class RefundConfig:
    pending_refund_percent: Decimal = Decimal("100")
    accepted_refund_percent: Decimal = Decimal("95")
    in_progress_refund_percent: Decimal = Decimal("50")
    processing_fee_percent: Decimal = Decimal("0")
    waive_fee_on_abandonment: bool = True

    def __post_init__(self) -> None:
        _percent("pending_refund_percent", self.pending_refund_percent)
        _percent("accepted_refund_percent", self.accepted_refund_percent)
        _percent(
            "in_progress_refund_percent",
            self.in_progress_refund_percent,
            lower_open=True,
            upper_open=True,
        )
        _percent("processing_fee_percent", self.processing_fee_percent)


@dataclass(frozen=True)
class ReputationConfig:
    penalties: Mapping[RequestStatus, float] = field(
        default_factory=lambda: {RequestStatus.ACCEPTED: 0.2, RequestStatus.IN_PROGRESS: 0.3}
    )
    initial_score: float = 5.0

    def __post_init__(self) -> None:
        for status, magnitude in self.penalties.items():
            if status not in (RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS):
                raise ConfigError(f"penalty defined for a status that cannot be abandoned: {status}")
            if not 0.0 <= magnitude <= 5.0:
                raise ConfigError(f"penalty magnitude must be in [0.0, 5.0], got {magnitude}")
        missing = {RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS} - set(self.penalties)
        if missing:
            raise ConfigError(f"no penalty for: {', '.join(sorted(s.value for s in missing))}")
        if not 0.0 <= self.initial_score <= 5.0:
            raise ConfigError(f"initial_score must be in [0.0, 5.0], got {self.initial_score}")

    def penalty_for(self, status: RequestStatus) -> float:
        """Negative delta applied when a provider abandons from ``status``."""
        return -self.penalties[status]


@dataclass(frozen=True)
class AssignmentConfig:
    specialization_points: float = 20.0
    points_per_year: float = 2.0
    max_experience_years: int = 20
    rating_weight: float = 0.3
    capacity_weight: float = 0.2
    budget_points: float = 10.0
    recommendation_limit: int = 5

    def __post_init__(self) -> None:
        if self.max_experience_years < 0:
            raise ConfigError("max_experience_years must be >= 0")
        if self.recommendation_limit < 1:
            raise ConfigError("recommendation_limit must be >= 1")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff shared by every settlement job kind."""

    max_attempts: int = 5
    initial_delay_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 300.0
    jitter: float = 0.25
    dead_letter_queue: str = "settlement.dead_letter"

    def __post_init__(self) -> None:
        if not 1 <= self.max_attempts <= 10:
            raise ConfigError(f"max_attempts must be in [1, 10], got {self.max_attempts}")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < self.initial_delay_seconds:
            raise ConfigError("retry delays must satisfy 0 <= initial <= max")
        if self.backoff_multiplier < 1:
            raise ConfigError("backoff_multiplier must be >= 1")
        if not 0.0 <= self.jitter < 1.0:
            raise ConfigError("jitter must be in [0.0, 1.0)")

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay before retry number ``attempt`` (1-based), capped, with +/- jitter."""
        base = self.initial_delay_seconds * self.backoff_multiplier ** max(0, attempt - 1)
        capped = min(base, self.max_delay_seconds)
        if not self.jitter:
            return capped
        spread = capped * self.jitter * (rand() * 2 - 1)
        return max(0.0, min(capped + spread, self.max_delay_seconds))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str = "http://127.0.0.1:8089"
    api_key: str = ""
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class MarketplaceConfig:
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    refunds: RefundConfig = field(default_factory=RefundConfig)
    reputation: ReputationConfig = field(default_factory=ReputationConfig)
    assignment: AssignmentConfig = field(default_factory=AssignmentConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)


_SECTIONS: dict[str, type] = {
    "settlement": SettlementConfig,
    "refunds": RefundConfig,
    "reputation": ReputationConfig,
    "assignment": AssignmentConfig,
    "retry": RetryPolicy,
    "gateway": GatewayConfig,
}


def _coerce(section_cls: type, key: str, value: Any) -> Any:
    """Convert a raw TOML/env value to the type of the dataclass default."""
    default = getattr(section_cls(), key)
    try:
        if key == "penalties":
            parsed = {RequestStatus(status.upper()): float(v) for status, v in dict(value).items()}
            return {**default, **parsed}
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, Decimal):
            return Decimal(str(value))
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (ValueError, TypeError, InvalidOperation) as exc:
        raise ConfigError(f"invalid value for {key}: {value!r}") from exc


def _build_section(section_cls: type, raw: Mapping[str, Any]) -> Any:
    known = {f.name for f in fields(section_cls)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"unknown keys in [{section_cls.__name__}]: {', '.join(sorted(unknown))}")
    return section_cls(**{key: _coerce(section_cls, key, value) for key, value in raw.items()})


def config_path(data_dir: Path | None = None) -> Path:
    return (data_dir or DEFAULT_DATA_DIR) / "config.toml"


def load_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> MarketplaceConfig:
    """
    Load configuration.

    Args:
        path: config.toml to read; a missing file means built-in defaults
        env: environment mapping (defaults to os.environ)

    Raises:
        ConfigError: unreadable TOML, unknown keys or out-of-range values
    """
    raw: dict[str, Any] = {}
    if path is not None and path.exists():
        try:
            raw = tomllib.loads(path.read_text())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"cannot parse {path}: {exc}") from exc

    unknown_sections = set(raw) - set(_SECTIONS)
    if unknown_sections:
        raise ConfigError(f"unknown config sections: {', '.join(sorted(unknown_sections))}")

    env = os.environ if env is None else env
    for var, (section, key) in ENV_OVERRIDES.items():
        if var in env:
            raw.setdefault(section, {})[key] = env[var]

    config = MarketplaceConfig()
    for section, section_cls in _SECTIONS.items():
        if section in raw:
            config = replace(config, **{section: _build_section(section_cls, raw[section])})
    return config
