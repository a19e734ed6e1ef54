"""Persistence layer for subscriptions, payments and service tiers."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .exceptions import StoreConflictError, TransientStoreError
from .models import (
    IntervalUnit,
    Payment,
    PaymentStatus,
    ServiceTier,
    Subscription,
    SubscriptionStatus,
    TierType,
)
from ...app_context import get_conn

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Map driver failures onto the retryable store error types."""

    try:
        yield
    except psycopg2.errors.UniqueViolation as exc:
        raise StoreConflictError(
            "Unique constraint rejected a concurrent write",
            {"constraint": getattr(exc.diag, "constraint_name", None)},
        ) from exc
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
        raise TransientStoreError(f"{type(exc).__name__}: {exc}".strip()) from exc


def apply_schema(conn: PgConnection) -> None:
    """Create billing tables, constraints and indexes when missing."""

    with conn.cursor() as cursor:
        cursor.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
    conn.commit()


def _row_to_tier(row: dict) -> ServiceTier:
    return ServiceTier(
        tier_id=row["tier_id"],
        service_id=row["service_id"],
        merchant_id=row["merchant_id"],
        interval=IntervalUnit(row["interval_unit"]),
        interval_count=int(row["interval_count"]),
        tier_type=TierType(row["tier_type"]),
        price=row["price"],
        currency=row["currency"],
    )


def _row_to_payment(row: dict) -> Payment:
    return Payment(
        payment_id=row["payment_id"],
        subscriber_id=row["subscriber_id"],
        merchant_id=row["merchant_id"],
        service_id=row["service_id"],
        tier_id=row["tier_id"],
        amount=row["amount"],
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        gateway_reference=row.get("gateway_reference"),
        failure_reason=row.get("failure_reason"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        subscriber_id=row["subscriber_id"],
        service_id=row["service_id"],
        merchant_id=row["merchant_id"],
        current_tier_id=row["current_tier_id"],
        status=SubscriptionStatus(row["status"]),
        starts_at=row["starts_at"],
        expires_at=row.get("expires_at"),
        renewal_count=int(row["renewal_count"]),
        access_token=row.get("access_token"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


_SELECT_TIER = "SELECT * FROM billing_service_tiers WHERE tier_id = %s LIMIT 1"
_SELECT_SUBSCRIPTION = """
    SELECT *
    FROM billing_subscriptions
    WHERE subscriber_id = %s AND service_id = %s
    LIMIT 1
"""


class PostgresStoreTransaction:
    """Reconciliation operations bound to one open transaction cursor."""

    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def get_payment_by_reference(self, gateway_reference: str) -> Optional[Payment]:
        self._cursor.execute(
            "SELECT * FROM billing_payments WHERE gateway_reference = %s LIMIT 1",
            (gateway_reference,),
        )
        row = self._cursor.fetchone()
        return _row_to_payment(row) if row else None

    def lock_pending_payment(self, subscriber_id: str, tier_id: str) -> Optional[Payment]:
        self._cursor.execute(
            """
            SELECT *
            FROM billing_payments
            WHERE subscriber_id = %s AND tier_id = %s AND status = %s
            ORDER BY created_at
            LIMIT 1
            FOR UPDATE
            """,
            (subscriber_id, tier_id, PaymentStatus.PENDING.value),
        )
        row = self._cursor.fetchone()
        return _row_to_payment(row) if row else None

    def settle_payment(self, payment_id: str, gateway_reference: str) -> Optional[Payment]:
        self._cursor.execute(
            """
            UPDATE billing_payments
            SET status = %s,
                gateway_reference = %s,
                updated_at = NOW()
            WHERE payment_id = %s AND status = %s
            RETURNING *
            """,
            (PaymentStatus.SUCCESS.value, gateway_reference, payment_id, PaymentStatus.PENDING.value),
        )
        row = self._cursor.fetchone()
        return _row_to_payment(row) if row else None

    def get_tier(self, tier_id: str) -> Optional[ServiceTier]:
        self._cursor.execute(_SELECT_TIER, (tier_id,))
        row = self._cursor.fetchone()
        return _row_to_tier(row) if row else None

    def get_subscription(self, subscriber_id: str, service_id: str) -> Optional[Subscription]:
        self._cursor.execute(_SELECT_SUBSCRIPTION, (subscriber_id, service_id))
        row = self._cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def lock_subscription(self, subscriber_id: str, service_id: str) -> Optional[Subscription]:
        self._cursor.execute(_SELECT_SUBSCRIPTION + " FOR UPDATE", (subscriber_id, service_id))
        row = self._cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        # No ON CONFLICT: a concurrent first grant must fail and be retried as an extension.
        self._cursor.execute(
            """
            INSERT INTO billing_subscriptions (
                subscription_id,
                subscriber_id,
                service_id,
                merchant_id,
                current_tier_id,
                status,
                starts_at,
                expires_at,
                renewal_count,
                access_token,
                created_at,
                updated_at
            )
            VALUES (%(subscription_id)s, %(subscriber_id)s, %(service_id)s, %(merchant_id)s,
                    %(current_tier_id)s, %(status)s, %(starts_at)s, %(expires_at)s,
                    %(renewal_count)s, %(access_token)s, %(created_at)s, %(updated_at)s)
            RETURNING *
            """,
            {
                "subscription_id": subscription.subscription_id,
                "subscriber_id": subscription.subscriber_id,
                "service_id": subscription.service_id,
                "merchant_id": subscription.merchant_id,
                "current_tier_id": subscription.current_tier_id,
                "status": subscription.status.value,
                "starts_at": subscription.starts_at,
                "expires_at": subscription.expires_at,
                "renewal_count": subscription.renewal_count,
                "access_token": subscription.access_token,
                "created_at": subscription.created_at,
                "updated_at": subscription.updated_at,
            },
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist subscription")
        return _row_to_subscription(row)

    def update_subscription(self, subscription: Subscription) -> Subscription:
        # merchant_id and starts_at are immutable once inserted.
        self._cursor.execute(
            """
            UPDATE billing_subscriptions
            SET status = %(status)s,
                expires_at = %(expires_at)s,
                current_tier_id = %(current_tier_id)s,
                renewal_count = %(renewal_count)s,
                access_token = %(access_token)s,
                updated_at = %(updated_at)s
            WHERE subscription_id = %(subscription_id)s
              AND renewal_count <= %(renewal_count)s
            RETURNING *
            """,
            {
                "subscription_id": subscription.subscription_id,
                "status": subscription.status.value,
                "expires_at": subscription.expires_at,
                "current_tier_id": subscription.current_tier_id,
                "renewal_count": subscription.renewal_count,
                "access_token": subscription.access_token,
                "updated_at": subscription.updated_at,
            },
        )
        row = self._cursor.fetchone()
        if not row:
            raise StoreConflictError(
                "Subscription changed underneath the reconciliation transaction",
                {"subscription_id": subscription.subscription_id},
            )
        return _row_to_subscription(row)


class PostgresSubscriptionStore:
    """Concrete store persisting billing records in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None, lock_timeout_ms: int = 5000) -> None:
        self._conn = conn
        self._lock_timeout_ms = max(0, int(lock_timeout_ms))

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with translate_store_errors(), managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    @contextmanager
    def transaction(self) -> Iterator[PostgresStoreTransaction]:
        """Open one store transaction with the configured lock timeout.

        A connection opened by the store commits on success and rolls back on
        any error. An injected ``conn`` is left to its owner, who decides when
        to commit or roll back.
        """

        with self._cursor() as cursor:
            if self._lock_timeout_ms:
                cursor.execute("SET LOCAL lock_timeout = %s", (f"{self._lock_timeout_ms}ms",))
            yield PostgresStoreTransaction(cursor)

    def get_tier(self, tier_id: str) -> Optional[ServiceTier]:
        with self._cursor() as cursor:
            cursor.execute(_SELECT_TIER, (tier_id,))
            row = cursor.fetchone()
            return _row_to_tier(row) if row else None

    def save_tier(self, tier: ServiceTier) -> ServiceTier:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_service_tiers (
                    tier_id,
                    service_id,
                    merchant_id,
                    interval_unit,
                    interval_count,
                    tier_type,
                    price,
                    currency
                )
                VALUES (%(tier_id)s, %(service_id)s, %(merchant_id)s, %(interval_unit)s,
                        %(interval_count)s, %(tier_type)s, %(price)s, %(currency)s)
                ON CONFLICT (tier_id) DO NOTHING
                RETURNING *
                """,
                {
                    "tier_id": tier.tier_id,
                    "service_id": tier.service_id,
                    "merchant_id": tier.merchant_id,
                    "interval_unit": tier.interval.value,
                    "interval_count": tier.interval_count,
                    "tier_type": tier.tier_type.value,
                    "price": tier.price,
                    "currency": tier.currency,
                },
            )
            row = cursor.fetchone()
            if row:
                return _row_to_tier(row)
            cursor.execute(_SELECT_TIER, (tier.tier_id,))
            return _row_to_tier(cursor.fetchone())

    def save_payment(self, payment: Payment) -> Payment:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_payments (
                    payment_id,
                    subscriber_id,
                    merchant_id,
                    service_id,
                    tier_id,
                    amount,
                    currency,
                    status,
                    created_at,
                    updated_at
                )
                VALUES (%(payment_id)s, %(subscriber_id)s, %(merchant_id)s, %(service_id)s,
                        %(tier_id)s, %(amount)s, %(currency)s, %(status)s,
                        %(created_at)s, %(updated_at)s)
                RETURNING *
                """,
                {
                    "payment_id": payment.payment_id,
                    "subscriber_id": payment.subscriber_id,
                    "merchant_id": payment.merchant_id,
                    "service_id": payment.service_id,
                    "tier_id": payment.tier_id,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "status": payment.status.value,
                    "created_at": payment.created_at,
                    "updated_at": payment.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment")
            return _row_to_payment(row)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_payments WHERE payment_id = %s LIMIT 1", (payment_id,))
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def find_pending_payment(self, subscriber_id: str, tier_id: str) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payments
                WHERE subscriber_id = %s AND tier_id = %s AND status = %s
                ORDER BY created_at
                LIMIT 1
                """,
                (subscriber_id, tier_id, PaymentStatus.PENDING.value),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def fail_payment(self, payment_id: str, reason: Optional[str]) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_payments
                SET status = %s,
                    failure_reason = %s,
                    updated_at = NOW()
                WHERE payment_id = %s AND status = %s
                RETURNING *
                """,
                (PaymentStatus.FAILED.value, reason, payment_id, PaymentStatus.PENDING.value),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def list_pending_payments(self, *, created_before: datetime, limit: int = 100) -> Sequence[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payments
                WHERE status = %s AND created_at < %s
                ORDER BY created_at
                LIMIT %s
                """,
                (PaymentStatus.PENDING.value, created_before, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_payment(row) for row in rows]

    def get_subscription(self, subscriber_id: str, service_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(_SELECT_SUBSCRIPTION, (subscriber_id, service_id))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def expire_overdue(self, now: datetime) -> int:
        """Single conditional bulk update; safe to run concurrently or repeatedly."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = %s, updated_at = NOW()
                WHERE status = %s
                  AND expires_at IS NOT NULL
                  AND expires_at < %s
                """,
                (SubscriptionStatus.EXPIRED.value, SubscriptionStatus.ACTIVE.value, now),
            )
            return cursor.rowcount


__all__ = [
    "PostgresStoreTransaction",
    "PostgresSubscriptionStore",
    "apply_schema",
    "managed_connection",
    "translate_store_errors",
]
