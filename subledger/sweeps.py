"""Scheduler integration for the subscription expiration sweep."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from dotenv import load_dotenv
import psycopg2

from subledger import app_context
from subledger.app.billing import SweepResult
from subledger.app.services.billing import get_billing_config, get_reconciliation_service
from subledger.billing_config import BillingConfig

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_SweepWorker"] = None

_SWEEP_METRICS: Dict[str, object] = {
    "runs": 0,
    "expired_total": 0,
    "failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["runs"] = int(_SWEEP_METRICS.get("runs", 0)) + 1
        _SWEEP_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, result: SweepResult) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["expired_total"] = int(_SWEEP_METRICS.get("expired_total", 0)) + result.expired_count
        _SWEEP_METRICS["last_success_at"] = completed_at
        _SWEEP_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["failures"] = int(_SWEEP_METRICS.get("failures", 0)) + 1
        _SWEEP_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_expiration_sweep(*, now: Optional[datetime] = None) -> SweepResult:
    if now is not None and now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    _record_run_start(now or datetime.now(timezone.utc))
    try:
        result = get_reconciliation_service().sweep(now)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Expiration sweep failed")
        raise
    else:
        _record_run_success(result.ran_at, result)
        logger.info(
            "Expiration sweep completed",
            extra={"expired_count": result.expired_count},
        )
        return result


class _SweepWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="expiration-sweep")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop_event.wait(self._initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                run_expiration_sweep()
            except Exception:
                # Logged inside run_expiration_sweep; the next tick retries.
                pass
            if self._stop_event.wait(self._interval):
                break


def start_sweep_scheduler(config: Optional[BillingConfig] = None) -> None:
    global _worker

    settings = config or get_billing_config()
    with _scheduler_lock:
        if _worker is not None:
            return
        if not settings.sweep_enabled:
            logger.info("Expiration sweep scheduler disabled")
            return
        _worker = _SweepWorker(
            initial_delay=settings.sweep_initial_delay_seconds,
            interval=settings.sweep_interval_seconds,
        )
        _worker.start()
        logger.info(
            "Expiration sweep scheduler started",
            extra={
                "initial_delay_seconds": round(settings.sweep_initial_delay_seconds, 2),
                "interval_seconds": round(settings.sweep_interval_seconds, 2),
            },
        )


def shutdown_sweep_scheduler() -> None:
    global _worker

    with _scheduler_lock:
        if _worker is None:
            return
        _worker.stop()
        _worker.join(timeout=1.0)
        _worker = None
        logger.info("Expiration sweep scheduler stopped")


def get_sweep_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_SWEEP_METRICS,
            "last_run_at": _SWEEP_METRICS["last_run_at"].isoformat() if _SWEEP_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _SWEEP_METRICS["last_success_at"].isoformat() if _SWEEP_METRICS.get("last_success_at") else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _SWEEP_METRICS.update(
            {
                "runs": 0,
                "expired_total": 0,
                "failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


def main() -> None:
    """Run one sweep against the configured database, for cron-style deployments."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    config = get_billing_config()
    app_context.configure(get_conn=lambda: psycopg2.connect(**config.db))
    result = run_expiration_sweep()
    logger.info("Expired %s subscriptions", result.expired_count)


__all__ = [
    "start_sweep_scheduler",
    "shutdown_sweep_scheduler",
    "get_sweep_metrics",
    "run_expiration_sweep",
]


if __name__ == "__main__":
    main()
