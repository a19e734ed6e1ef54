"""Fixtures wiring the reconciliation service to in-memory fakes."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from subledger.app.billing import IntervalUnit, ReconciliationService, ServiceTier, TierType
from subledger.tests.fakes import FakeAccessGranter, FakeEventLogger, InMemorySubscriptionStore, MutableClock


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    store = InMemorySubscriptionStore()
    store.save_tier(
        ServiceTier(
            tier_id="tier-month",
            service_id="svc-1",
            merchant_id="m-1",
            interval=IntervalUnit.MONTH,
            interval_count=1,
            price=Decimal("9.99"),
            currency="USD",
        )
    )
    store.save_tier(
        ServiceTier(
            tier_id="tier-year",
            service_id="svc-1",
            merchant_id="m-1",
            interval=IntervalUnit.YEAR,
            interval_count=1,
            price=Decimal("99.00"),
            currency="USD",
        )
    )
    store.save_tier(
        ServiceTier(
            tier_id="tier-lifetime",
            service_id="svc-1",
            merchant_id="m-1",
            tier_type=TierType.LIFETIME,
            price=Decimal("249.00"),
            currency="USD",
        )
    )
    return store


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def billing_components(store, clock):
    access_granter = FakeAccessGranter()
    event_logger = FakeEventLogger()
    service = ReconciliationService(
        store=store,
        access_granter=access_granter,
        event_logger=event_logger,
        clock=clock,
    )
    return store, access_granter, event_logger, clock, service
