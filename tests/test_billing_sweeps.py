"""
Tests for scheduled billing sweeps
"""
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from credibill.db.models import (
    Invoice,
    PaymentStatus,
    PaymentTransaction,
    SubscriptionStatus,
    WebhookDelivery,
)
from credibill.services.billing_sweeps import BillingSweeps


NOW = datetime(2026, 9, 15, 3, 0, 0)


@pytest.fixture
def payment_service():
    return Mock()


@pytest.fixture
def sweeps(db_session, payment_service):
    return BillingSweeps(db_session, payment_service=payment_service)


@pytest.fixture
def merchant_app(make_app):
    return make_app(webhook_url="https://merchant.example/hooks", webhook_secret="whsec", grace_period_days=3)


@pytest.fixture
def ended_period():
    return {
        "current_period_start": NOW - timedelta(days=31),
        "current_period_end": NOW - timedelta(days=1),
    }


class TestScheduledCancellations:

    def test_cancels_after_period_end(self, sweeps, merchant_app, make_customer, make_plan, make_subscription, ended_period):
        due = make_subscription(make_customer(merchant_app), make_plan(merchant_app), cancel_at_period_end=True, **ended_period)
        running = make_subscription(make_customer(merchant_app), make_plan(merchant_app), cancel_at_period_end=True)

        stats = sweeps.process_scheduled_cancellations(now=NOW)

        assert stats == {"processed": 1, "cancelled": 1, "errors": 0}
        assert due.status == SubscriptionStatus.CANCELLED.value
        assert running.status == SubscriptionStatus.ACTIVE.value

    def test_error_isolation(self, sweeps, merchant_app, make_customer, make_plan, make_subscription, ended_period, monkeypatch):
        first = make_subscription(make_customer(merchant_app), make_plan(merchant_app), cancel_at_period_end=True, **ended_period)
        second = make_subscription(make_customer(merchant_app), make_plan(merchant_app), cancel_at_period_end=True, **ended_period)
        original = sweeps.lifecycle.process_scheduled_cancellation

        def flaky(subscription, now):
            if subscription.id == first.id:
                raise RuntimeError("database hiccup")
            return original(subscription, now)
        monkeypatch.setattr(sweeps.lifecycle, "process_scheduled_cancellation", flaky)

        stats = sweeps.process_scheduled_cancellations(now=NOW)

        assert stats == {"processed": 1, "cancelled": 1, "errors": 1}
        assert first.status == SubscriptionStatus.ACTIVE.value
        assert second.status == SubscriptionStatus.CANCELLED.value


class TestTrialExpirations:

    def test_invoices_ended_trials_once(self, sweeps, db_session, merchant_app, make_customer, make_plan, make_subscription):
        trial = make_subscription(
            make_customer(merchant_app), make_plan(merchant_app), status="trialing",
            trial_ends_at=NOW - timedelta(hours=2),
        )
        make_subscription(
            make_customer(merchant_app), make_plan(merchant_app), status="trialing",
            trial_ends_at=NOW + timedelta(days=2),
        )

        assert sweeps.process_trial_expirations(now=NOW)["invoiced"] == 1
        assert sweeps.process_trial_expirations(now=NOW)["invoiced"] == 0

        assert db_session.query(Invoice).filter(Invoice.subscription_id == trial.id).count() == 1
        assert trial.status == SubscriptionStatus.TRIALING.value


class TestRecurringPayments:

    def test_invoices_ended_period_and_emits_payment_due(
        self, sweeps, db_session, merchant_app, make_customer, make_plan, make_subscription, ended_period
    ):
        subscription = make_subscription(make_customer(merchant_app), make_plan(merchant_app), **ended_period)

        stats = sweeps.process_recurring_payments(now=NOW)

        assert stats["renewals"] == 1
        invoice = db_session.query(Invoice).filter(Invoice.subscription_id == subscription.id).one()
        assert invoice.period_start == ended_period["current_period_start"]
        assert invoice.period_end == ended_period["current_period_end"]
        events = [d.event for d in db_session.query(WebhookDelivery)]
        assert "payment.due" in events

        assert sweeps.process_recurring_payments(now=NOW)["renewals"] == 0

    def test_skips_subscriptions_cancelling_at_period_end(
        self, sweeps, merchant_app, make_customer, make_plan, make_subscription, ended_period
    ):
        make_subscription(make_customer(merchant_app), make_plan(merchant_app), cancel_at_period_end=True, **ended_period)

        assert sweeps.process_recurring_payments(now=NOW)["processed"] == 0

    def test_one_time_plan_expires(self, sweeps, merchant_app, make_customer, make_plan, make_subscription, ended_period):
        subscription = make_subscription(
            make_customer(merchant_app), make_plan(merchant_app, interval="one-time"), **ended_period
        )

        sweeps.process_recurring_payments(now=NOW)

        assert subscription.status == SubscriptionStatus.EXPIRED.value


class TestRetryFailedPayments:

    @pytest.fixture
    def failed_transaction(self, db_session, merchant_app, make_customer, make_plan, make_subscription, sweeps):
        subscription = make_subscription(make_customer(merchant_app), make_plan(merchant_app))
        invoice = sweeps.invoice_generator.generate_invoice(
            subscription, subscription.current_period_start, subscription.current_period_end, now=NOW
        )
        transaction = PaymentTransaction(
            app_id=merchant_app.id,
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            invoice_id=invoice.id,
            amount=invoice.amount_due,
            currency="UGX",
            provider="flutterwave",
            payment_method="mobile_money_mtn",
            status=PaymentStatus.FAILED.value,
            reference="txn_retry_me",
            attempt_number=1,
            initiated_at=NOW - timedelta(days=1),
        )
        db_session.add(transaction)
        db_session.commit()
        return transaction

    def test_retries_unpaid(self, sweeps, payment_service, failed_transaction):
        stats = sweeps.retry_failed_payments(now=NOW)

        assert stats["retried"] == 1
        payment_service.retry_failed_payment.assert_called_once_with(failed_transaction, now=NOW)

    def test_skips_paid_invoice(self, sweeps, db_session, payment_service, failed_transaction):
        sweeps.invoice_generator.mark_invoice_paid(failed_transaction.invoice)
        db_session.commit()

        assert sweeps.retry_failed_payments(now=NOW)["retried"] == 0
        payment_service.retry_failed_payment.assert_not_called()

    def test_skips_when_later_attempt_exists(self, sweeps, db_session, payment_service, failed_transaction):
        db_session.add(PaymentTransaction(
            app_id=failed_transaction.app_id,
            customer_id=failed_transaction.customer_id,
            subscription_id=failed_transaction.subscription_id,
            invoice_id=failed_transaction.invoice_id,
            amount=failed_transaction.amount,
            currency="UGX",
            provider="flutterwave",
            payment_method="mobile_money_mtn",
            status=PaymentStatus.PENDING.value,
            reference=f"txn_{failed_transaction.id}_retry1",
            attempt_number=2,
            is_retry=True,
            original_transaction_id=failed_transaction.id,
            initiated_at=NOW,
        ))
        db_session.commit()

        sweeps.retry_failed_payments(now=NOW)

        payment_service.retry_failed_payment.assert_not_called()

    def test_skips_old_failures(self, sweeps, db_session, payment_service, failed_transaction):
        failed_transaction.initiated_at = NOW - timedelta(days=8)
        db_session.commit()

        assert sweeps.retry_failed_payments(now=NOW)["processed"] == 0


class TestExpiredTransactions:

    def test_stale_pending_transactions_fail(self, sweeps, db_session, merchant_app, make_customer):
        customer = make_customer(merchant_app)

        def transaction(reference, expires_at, status=PaymentStatus.PENDING.value):
            txn = PaymentTransaction(
                app_id=merchant_app.id, customer_id=customer.id, amount=1000, currency="UGX",
                provider="pawapay", payment_method="mobile_money_mtn", status=status,
                reference=reference, expires_at=expires_at, initiated_at=NOW - timedelta(days=2),
            )
            db_session.add(txn)
            return txn

        stale = transaction("txn_stale", NOW - timedelta(minutes=1))
        fresh = transaction("txn_fresh", NOW + timedelta(hours=1))
        settled = transaction("txn_done", NOW - timedelta(days=1), status=PaymentStatus.SUCCESS.value)
        db_session.commit()

        stats = sweeps.cleanup_expired_transactions(now=NOW)

        assert stats["expired"] == 1
        assert stale.status == PaymentStatus.FAILED.value
        assert stale.failure_code == "EXPIRED"
        assert stale.completed_at == NOW
        assert fresh.status == PaymentStatus.PENDING.value
        assert settled.status == PaymentStatus.SUCCESS.value


class TestGracePeriod:

    def test_unpaid_past_grace_becomes_past_due(self, sweeps, merchant_app, make_customer, make_plan, make_subscription):
        lapsed = make_subscription(
            make_customer(merchant_app), make_plan(merchant_app),
            current_period_start=NOW - timedelta(days=35),
            current_period_end=NOW - timedelta(days=5),
        )
        sweeps.invoice_generator.generate_invoice(lapsed, lapsed.current_period_start, lapsed.current_period_end, now=NOW)
        within_grace = make_subscription(
            make_customer(merchant_app), make_plan(merchant_app),
            current_period_start=NOW - timedelta(days=32),
            current_period_end=NOW - timedelta(days=2),
        )
        sweeps.invoice_generator.generate_invoice(
            within_grace, within_grace.current_period_start, within_grace.current_period_end, now=NOW
        )

        stats = sweeps.process_grace_period_expirations(now=NOW)

        assert stats["past_due"] == 1
        assert lapsed.status == SubscriptionStatus.PAST_DUE.value
        assert within_grace.status == SubscriptionStatus.ACTIVE.value


class TestPendingInvoices:

    def test_backfills_missing_invoices(self, sweeps, db_session, merchant_app, make_customer, make_plan, make_subscription, ended_period):
        subscription = make_subscription(make_customer(merchant_app), make_plan(merchant_app), status="past_due", **ended_period)

        assert sweeps.generate_pending_invoices(now=NOW)["generated"] == 1
        assert sweeps.generate_pending_invoices(now=NOW)["generated"] == 0
        assert db_session.query(Invoice).filter(Invoice.subscription_id == subscription.id).count() == 1
