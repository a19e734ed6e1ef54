"""Configuration helpers for the billing webhook, reconciliation and sweep."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
import math
import os


@dataclass(frozen=True)
class BillingConfig:
    """Runtime settings for the reconciliation core."""

    webhook_secret: str
    webhook_secret_header: str
    reconcile_max_attempts: int
    reconcile_backoff_seconds: float
    side_effect_max_attempts: int
    side_effect_backoff_seconds: float
    sweep_enabled: bool
    sweep_interval_seconds: float
    sweep_initial_delay_seconds: float
    stale_payment_minutes: int
    lock_timeout_ms: int
    db: Dict[str, Any]


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
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _connect_timeout(value: Optional[str]) -> int:
    timeout = _to_float(value, default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    webhook_secret = (env_mapping.get("WEBHOOK_SECRET") or "").strip()
    webhook_secret_header = (
        env_mapping.get("WEBHOOK_SECRET_HEADER") or "X-Telegram-Bot-Api-Secret-Token"
    ).strip()

    reconcile_max_attempts = max(1, _to_int(env_mapping.get("RECONCILE_MAX_ATTEMPTS"), default=5))
    reconcile_backoff_seconds = max(0.0, _to_float(env_mapping.get("RECONCILE_RETRY_BACKOFF"), default=0.5))
    side_effect_max_attempts = max(1, _to_int(env_mapping.get("SIDE_EFFECT_MAX_ATTEMPTS"), default=3))
    side_effect_backoff_seconds = max(0.0, _to_float(env_mapping.get("SIDE_EFFECT_RETRY_BACKOFF"), default=1.0))

    sweep_enabled = _to_bool(env_mapping.get("SWEEP_ENABLED"), default=True)
    sweep_interval_seconds = max(1.0, _to_float(env_mapping.get("SWEEP_INTERVAL_SECONDS"), default=3600.0))
    sweep_initial_delay_seconds = max(0.0, _to_float(env_mapping.get("SWEEP_INITIAL_DELAY_SECONDS"), default=0.0))

    stale_payment_minutes = max(1, _to_int(env_mapping.get("STALE_PAYMENT_MINUTES"), default=60))
    lock_timeout_ms = max(0, _to_int(env_mapping.get("DB_LOCK_TIMEOUT_MS"), default=5000))

    db = {
        "host": env_mapping.get("DB_HOST", "127.0.0.1"),
        "port": _to_int(env_mapping.get("DB_PORT"), default=5432),
        "dbname": env_mapping.get("DB_NAME", "subledger"),
        "user": env_mapping.get("DB_USER", "subledger"),
        "password": env_mapping.get("DB_PASSWORD", "subledger"),
        "connect_timeout": _connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
    }

    return BillingConfig(
        webhook_secret=webhook_secret,
        webhook_secret_header=webhook_secret_header,
        reconcile_max_attempts=reconcile_max_attempts,
        reconcile_backoff_seconds=reconcile_backoff_seconds,
        side_effect_max_attempts=side_effect_max_attempts,
        side_effect_backoff_seconds=side_effect_backoff_seconds,
        sweep_enabled=sweep_enabled,
        sweep_interval_seconds=sweep_interval_seconds,
        sweep_initial_delay_seconds=sweep_initial_delay_seconds,
        stale_payment_minutes=stale_payment_minutes,
        lock_timeout_ms=lock_timeout_ms,
        db=db,
    )


__all__ = ["BillingConfig", "load_billing_config"]
