"""
Tests for usage recording and aggregation
"""
from datetime import datetime, timedelta

import pytest

from credibill.db.models import UsageEvent
from credibill.exceptions import AuthorizationError, BillingValidationError, NotFoundError
from credibill.services.usage_service import UsageService


T0 = datetime(2026, 5, 1)


@pytest.fixture
def usage(db_session):
    return UsageService(db_session)


@pytest.fixture
def subscription(app_record, make_customer, make_plan, make_subscription):
    plan = make_plan(app_record, pricing_model="usage", base_amount=None, usage_metric="api_calls", unit_price=10)
    return make_subscription(make_customer(app_record), plan)


class TestRecordUsage:

    def test_records_event(self, usage, app_record, subscription):
        event, duplicate = usage.record_usage(app_record.id, subscription.id, "api_calls", 25, timestamp=T0, metadata={"endpoint": "/v1/search"})

        assert duplicate is False
        assert event.id is not None
        assert event.customer_id == subscription.customer_id
        assert event.extra_metadata == {"endpoint": "/v1/search"}

    def test_duplicate_event_id_returns_original(self, usage, db_session, app_record, subscription):
        first, _ = usage.record_usage(app_record.id, subscription.id, "api_calls", 25, event_id="evt_1")
        second, duplicate = usage.record_usage(app_record.id, subscription.id, "api_calls", 99, event_id="evt_1")

        assert duplicate is True
        assert second.id == first.id
        assert second.quantity == 25
        assert db_session.query(UsageEvent).count() == 1

    def test_events_without_id_are_not_deduplicated(self, usage, db_session, app_record, subscription):
        usage.record_usage(app_record.id, subscription.id, "api_calls", 1)
        usage.record_usage(app_record.id, subscription.id, "api_calls", 1)

        assert db_session.query(UsageEvent).count() == 2

    @pytest.mark.parametrize("quantity", [0, -5])
    def test_non_positive_quantity_rejected(self, usage, app_record, subscription, quantity):
        with pytest.raises(BillingValidationError) as exc_info:
            usage.record_usage(app_record.id, subscription.id, "api_calls", quantity)
        assert exc_info.value.message == "Quantity must be greater than 0"

    def test_unknown_subscription(self, usage, app_record):
        with pytest.raises(NotFoundError):
            usage.record_usage(app_record.id, 4242, "api_calls", 1)

    def test_subscription_of_another_app(self, usage, make_app, subscription):
        other = make_app(name="Other")

        with pytest.raises(AuthorizationError):
            usage.record_usage(other.id, subscription.id, "api_calls", 1)


class TestSumUsage:

    def test_sum_is_inclusive_and_per_metric(self, usage, app_record, subscription):
        start, end = T0, T0 + timedelta(days=30)
        usage.record_usage(app_record.id, subscription.id, "api_calls", 5, timestamp=start)
        usage.record_usage(app_record.id, subscription.id, "api_calls", 7, timestamp=end)
        usage.record_usage(app_record.id, subscription.id, "api_calls", 100, timestamp=end + timedelta(seconds=1))
        usage.record_usage(app_record.id, subscription.id, "storage_gb", 3, timestamp=start + timedelta(days=1))

        assert usage.sum_usage(subscription.id, "api_calls", start, end) == 12
        assert usage.sum_usage(subscription.id, None, start, end) == 15

    def test_no_events(self, usage, subscription):
        assert usage.sum_usage(subscription.id, "api_calls", T0, T0 + timedelta(days=30)) == 0
