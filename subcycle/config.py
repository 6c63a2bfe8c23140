"""Engine configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

from .app.errors import ConfigurationError


@dataclass(frozen=True)
class EngineConfig:
    """Every tunable of the settlement engine and webhook delivery."""

    batch_size: int = 50
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0
    batch_delay_seconds: float = 0.1
    settlement_timeout_seconds: float = 30.0
    grace_period_seconds: int = 3600
    cancellation_threshold: int = 3
    store_write_attempts: int = 3
    cycle_interval_seconds: float = 300.0
    maintenance_interval_seconds: float = 86400.0
    scheduler_enabled: bool = True
    endpoint_disable_threshold: int = 5
    delivery_drain_interval_seconds: float = 5.0
    delivery_timeout_seconds: float = 10.0
    signature_tolerance_seconds: int = 300
    settlement_url: Optional[str] = None
    db_config: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        positive = (
            "batch_size",
            "retry_attempts",
            "cancellation_threshold",
            "store_write_attempts",
            "endpoint_disable_threshold",
            "settlement_timeout_seconds",
            "cycle_interval_seconds",
            "maintenance_interval_seconds",
            "delivery_drain_interval_seconds",
            "delivery_timeout_seconds",
            "grace_period_seconds",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0, got {getattr(self, name)!r}")

        non_negative = (
            "retry_base_delay_seconds",
            "retry_max_delay_seconds",
            "batch_delay_seconds",
            "signature_tolerance_seconds",
        )
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {getattr(self, name)!r}")

        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ConfigurationError("retry_max_delay_seconds must be >= retry_base_delay_seconds")

    def retry_delay(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (``base * 2**attempt``)."""

        return min(self.retry_base_delay_seconds * (2 ** attempt), self.retry_max_delay_seconds)

    def describe(self) -> Dict[str, Any]:
        """Loggable view without credentials."""

        summary = {field.name: getattr(self, field.name) for field in fields(self)}
        summary.pop("db_config", None)
        summary["persistence"] = "postgres" if self.db_config else "memory"
        return summary


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Expected float value, got {value!r}") from exc


def _db_config(env_mapping: Mapping[str, str]) -> Optional[Dict[str, Any]]:
    if not env_mapping.get("DB_HOST") and not env_mapping.get("DB_NAME"):
        return None
    return {
        "host": env_mapping.get("DB_HOST", "127.0.0.1"),
        "port": _to_int(env_mapping.get("DB_PORT"), default=5432),
        "dbname": env_mapping.get("DB_NAME", "subcycle"),
        "user": env_mapping.get("DB_USER", "subcycle"),
        "password": env_mapping.get("DB_PASSWORD", ""),
    }


def load_engine_config(env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Load :class:`EngineConfig` from environment variables."""

    env_mapping = os.environ if env is None else env
    defaults = EngineConfig()

    return EngineConfig(
        batch_size=_to_int(env_mapping.get("PAYMENT_BATCH_SIZE"), default=defaults.batch_size),
        retry_attempts=_to_int(env_mapping.get("PAYMENT_RETRY_ATTEMPTS"), default=defaults.retry_attempts),
        retry_base_delay_seconds=_to_float(
            env_mapping.get("PAYMENT_RETRY_BASE_DELAY"), default=defaults.retry_base_delay_seconds
        ),
        retry_max_delay_seconds=_to_float(
            env_mapping.get("PAYMENT_RETRY_MAX_DELAY"), default=defaults.retry_max_delay_seconds
        ),
        batch_delay_seconds=_to_float(env_mapping.get("PAYMENT_BATCH_DELAY"), default=defaults.batch_delay_seconds),
        settlement_timeout_seconds=_to_float(
            env_mapping.get("SETTLEMENT_TIMEOUT"), default=defaults.settlement_timeout_seconds
        ),
        grace_period_seconds=_to_int(env_mapping.get("PAYMENT_GRACE_PERIOD"), default=defaults.grace_period_seconds),
        cancellation_threshold=_to_int(
            env_mapping.get("PAYMENT_CANCELLATION_THRESHOLD"), default=defaults.cancellation_threshold
        ),
        store_write_attempts=_to_int(env_mapping.get("STORE_WRITE_ATTEMPTS"), default=defaults.store_write_attempts),
        cycle_interval_seconds=_to_float(
            env_mapping.get("PAYMENT_PROCESSING_INTERVAL"), default=defaults.cycle_interval_seconds
        ),
        maintenance_interval_seconds=_to_float(
            env_mapping.get("MAINTENANCE_INTERVAL"), default=defaults.maintenance_interval_seconds
        ),
        scheduler_enabled=_to_bool(env_mapping.get("PAYMENT_SCHEDULER_ENABLED"), default=defaults.scheduler_enabled),
        endpoint_disable_threshold=_to_int(
            env_mapping.get("WEBHOOK_DISABLE_THRESHOLD"), default=defaults.endpoint_disable_threshold
        ),
        delivery_drain_interval_seconds=_to_float(
            env_mapping.get("WEBHOOK_DRAIN_INTERVAL"), default=defaults.delivery_drain_interval_seconds
        ),
        delivery_timeout_seconds=_to_float(
            env_mapping.get("WEBHOOK_TIMEOUT"), default=defaults.delivery_timeout_seconds
        ),
        signature_tolerance_seconds=_to_int(
            env_mapping.get("WEBHOOK_SIGNATURE_TOLERANCE"), default=defaults.signature_tolerance_seconds
        ),
        settlement_url=(env_mapping.get("SETTLEMENT_URL") or None),
        db_config=_db_config(env_mapping),
    )


__all__ = ["EngineConfig", "load_engine_config"]
