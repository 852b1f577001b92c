"""
Tests for inbound webhook reconciliation
"""
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from credibill.db import Base
from credibill.db.models import (
    App,
    Customer,
    Invoice,
    InvoiceStatus,
    PaymentStatus,
    PaymentTransaction,
    Plan,
    Subscription,
    SubscriptionStatus,
    WebhookDelivery,
    WebhookLog,
    WebhookLogStatus,
)
from credibill.exceptions import BillingValidationError, NotFoundError, WebhookVerificationError
from credibill.services.credential_vault import CredentialVault
from credibill.services.metrics import get_metrics_collector
from credibill.services.payment_adapters.base import WebhookEvent
from credibill.services.subscription_lifecycle import SubscriptionLifecycle
from credibill.services.webhook_reconciler import WebhookReconciler

from conftest import FLUTTERWAVE_WEBHOOK_SECRET


PAID_AT = datetime(2026, 6, 1, 10, 0, 0)


def flutterwave_body(reference, status="successful", flw_id=285959875, amount=500):
    return json.dumps({
        "event": "charge.completed",
        "data": {
            "id": flw_id,
            "tx_ref": reference,
            "flw_ref": f"FLW-{flw_id}",
            "amount": amount,
            "currency": "UGX",
            "status": status,
            "processor_response": "Declined" if status == "failed" else "Approved",
            "created_at": PAID_AT.isoformat() + ".000Z",
        },
    }).encode()


@pytest.fixture
def reconciler(db_session, vault):
    return WebhookReconciler(db_session, vault)


@pytest.fixture
def make_transaction(db_session):
    def _make(subscription, invoice=None, **overrides):
        values = {
            "app_id": subscription.app_id,
            "customer_id": subscription.customer_id,
            "subscription_id": subscription.id,
            "invoice_id": invoice.id if invoice else None,
            "amount": invoice.amount_due if invoice else 50000,
            "currency": "UGX",
            "provider": "flutterwave",
            "payment_method": "mobile_money_mtn",
            "status": PaymentStatus.PENDING.value,
        }
        values.update(overrides)
        transaction = PaymentTransaction(**values)
        db_session.add(transaction)
        db_session.flush()
        if "reference" not in overrides:
            transaction.reference = f"txn_{transaction.id}"
        db_session.commit()
        return transaction
    return _make


@pytest.fixture
def pending_payment(db_session, flutterwave_app, make_customer, make_plan, make_transaction):
    """A new subscription awaiting its first payment, with an open invoice and a pending transaction"""
    lifecycle = SubscriptionLifecycle(db_session)
    subscription = lifecycle.create_subscription(
        flutterwave_app.id, make_customer(flutterwave_app).id, make_plan(flutterwave_app).id,
        now=PAID_AT - timedelta(hours=1),
    )
    db_session.commit()
    invoice = db_session.query(Invoice).filter(Invoice.subscription_id == subscription.id).one()
    transaction = make_transaction(subscription, invoice)
    return subscription, invoice, transaction


def webhook_count(result):
    return get_metrics_collector().get_counter("webhooks_received_total", {"provider": "flutterwave", "result": result})


class TestSuccessfulPayment:

    def test_activates_subscription(self, reconciler, db_session, flutterwave_app, pending_payment):
        subscription, invoice, transaction = pending_payment

        result = reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id, flutterwave_body(transaction.reference), FLUTTERWAVE_WEBHOOK_SECRET
        )

        assert result.status == "processed"
        assert result.transaction_id == transaction.id

        db_session.expire_all()
        assert transaction.status == PaymentStatus.SUCCESS.value
        assert transaction.provider_transaction_id == "285959875"
        assert transaction.completed_at == PAID_AT
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.amount_paid == 50000
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.current_period_start == PAID_AT
        assert subscription.current_period_end == PAID_AT + timedelta(days=30)

        log = db_session.get(WebhookLog, result.webhook_log_id)
        assert log.status == WebhookLogStatus.PROCESSED.value
        assert log.event == "payment.success"
        assert log.signature_valid is True
        assert log.payment_transaction_id == transaction.id
        assert webhook_count("processed") == 1

    def test_matches_by_provider_transaction_id(self, reconciler, db_session, flutterwave_app, pending_payment):
        _, _, transaction = pending_payment
        transaction.provider_transaction_id = "777"
        db_session.commit()

        result = reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id, flutterwave_body("unknown-ref", flw_id=777), FLUTTERWAVE_WEBHOOK_SECRET
        )

        assert result.transaction_id == transaction.id

    def test_duplicate_is_ignored(self, reconciler, db_session, flutterwave_app, pending_payment):
        subscription, _, transaction = pending_payment
        body = flutterwave_body(transaction.reference)

        reconciler.handle_webhook("flutterwave", flutterwave_app.id, body, FLUTTERWAVE_WEBHOOK_SECRET)
        db_session.expire_all()
        period_end = subscription.current_period_end

        result = reconciler.handle_webhook("flutterwave", flutterwave_app.id, body, FLUTTERWAVE_WEBHOOK_SECRET)

        assert result.status == "ignored"
        db_session.expire_all()
        assert subscription.current_period_end == period_end
        statuses = sorted(log.status for log in db_session.query(WebhookLog))
        assert statuses == ["ignored", "processed"]
        assert webhook_count("duplicate") == 1

    def test_late_failure_after_success_is_dropped(self, reconciler, db_session, flutterwave_app, pending_payment):
        subscription, _, transaction = pending_payment
        reconciler.handle_webhook("flutterwave", flutterwave_app.id, flutterwave_body(transaction.reference), FLUTTERWAVE_WEBHOOK_SECRET)

        result = reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id,
            flutterwave_body(transaction.reference, status="failed"), FLUTTERWAVE_WEBHOOK_SECRET,
        )

        assert result.status == "processed"
        assert result.message == "Transaction already success"
        db_session.expire_all()
        assert transaction.status == PaymentStatus.SUCCESS.value
        assert subscription.failed_payment_attempts == 0


class TestFailedPayment:

    def test_failure_counts_against_subscription(self, reconciler, db_session, flutterwave_app, pending_payment):
        subscription, invoice, transaction = pending_payment

        reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id,
            flutterwave_body(transaction.reference, status="failed"), FLUTTERWAVE_WEBHOOK_SECRET,
        )

        db_session.expire_all()
        assert transaction.status == PaymentStatus.FAILED.value
        assert transaction.failure_reason == "Declined"
        assert subscription.failed_payment_attempts == 1
        assert subscription.status == SubscriptionStatus.PENDING_PAYMENT.value
        assert invoice.status == InvoiceStatus.OPEN.value

    def test_third_failure_moves_active_to_past_due(
        self, reconciler, db_session, flutterwave_app, make_customer, make_plan, make_subscription, make_transaction
    ):
        subscription = make_subscription(make_customer(flutterwave_app), make_plan(flutterwave_app), failed_payment_attempts=2)
        invoice = SubscriptionLifecycle(db_session).invoice_generator.generate_invoice(
            subscription, subscription.current_period_end, subscription.current_period_end + timedelta(days=30)
        )
        db_session.commit()
        transaction = make_transaction(subscription, invoice)

        reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id,
            flutterwave_body(transaction.reference, status="failed", flw_id=9001), FLUTTERWAVE_WEBHOOK_SECRET,
        )

        db_session.expire_all()
        assert subscription.status == SubscriptionStatus.PAST_DUE.value
        assert invoice.status == InvoiceStatus.FAILED.value

    def test_success_after_failure_recovers(self, reconciler, db_session, flutterwave_app, pending_payment):
        subscription, invoice, transaction = pending_payment
        reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id,
            flutterwave_body(transaction.reference, status="failed"), FLUTTERWAVE_WEBHOOK_SECRET,
        )

        reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id, flutterwave_body(transaction.reference), FLUTTERWAVE_WEBHOOK_SECRET
        )

        db_session.expire_all()
        assert transaction.status == PaymentStatus.SUCCESS.value
        assert invoice.status == InvoiceStatus.PAID.value
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.failed_payment_attempts == 0


class TestPaidInvoiceGuards:
    """Callbacks for a second transaction on an invoice that is already paid"""

    @pytest.fixture
    def paid_with_retry(self, reconciler, db_session, flutterwave_app, pending_payment, make_transaction):
        flutterwave_app.webhook_url = "https://merchant.example/hooks"
        flutterwave_app.webhook_secret = "whsec"
        db_session.commit()
        subscription, invoice, transaction = pending_payment
        reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id, flutterwave_body(transaction.reference), FLUTTERWAVE_WEBHOOK_SECRET
        )
        retry = make_transaction(
            subscription, invoice, reference=f"{transaction.reference}_retry1",
            is_retry=True, attempt_number=2, original_transaction_id=transaction.id,
        )
        db_session.expire_all()
        return subscription, invoice, retry

    def events(self, db_session, name):
        return db_session.query(WebhookDelivery).filter(WebhookDelivery.event == name).count()

    def test_failure_does_not_count_against_subscription(self, reconciler, db_session, flutterwave_app, paid_with_retry):
        subscription, invoice, retry = paid_with_retry
        period_end = subscription.current_period_end

        result = reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id,
            flutterwave_body(retry.reference, status="failed", flw_id=285959876), FLUTTERWAVE_WEBHOOK_SECRET,
        )

        assert result.status == "processed"
        assert result.transaction_id == retry.id
        db_session.expire_all()
        assert retry.status == PaymentStatus.FAILED.value
        assert invoice.status == InvoiceStatus.PAID.value
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.failed_payment_attempts == 0
        assert subscription.current_period_end == period_end

    def test_second_success_does_not_renew(self, reconciler, db_session, flutterwave_app, paid_with_retry):
        subscription, invoice, retry = paid_with_retry
        amount_paid = invoice.amount_paid

        result = reconciler.handle_webhook(
            "flutterwave", flutterwave_app.id,
            flutterwave_body(retry.reference, flw_id=285959876), FLUTTERWAVE_WEBHOOK_SECRET,
        )

        assert result.status == "processed"
        db_session.expire_all()
        assert retry.status == PaymentStatus.SUCCESS.value
        assert invoice.amount_paid == amount_paid
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert self.events(db_session, "invoice.paid") == 1
        assert self.events(db_session, "subscription.activated") == 1
        assert self.events(db_session, "subscription.renewed") == 0


class TestRejectedWebhooks:

    def test_invalid_signature_is_logged(self, reconciler, db_session, flutterwave_app, pending_payment):
        _, _, transaction = pending_payment

        with pytest.raises(WebhookVerificationError) as exc_info:
            reconciler.handle_webhook("flutterwave", flutterwave_app.id, flutterwave_body(transaction.reference), "forged")

        log = db_session.get(WebhookLog, exc_info.value.details["webhook_log_id"])
        assert log.status == WebhookLogStatus.FAILED.value
        assert log.signature_valid is False
        assert log.error == "Invalid signature"
        db_session.expire_all()
        assert transaction.status == PaymentStatus.PENDING.value
        assert webhook_count("invalid") == 1

    def test_unknown_app(self, reconciler):
        with pytest.raises(NotFoundError):
            reconciler.handle_webhook("flutterwave", 9999, b"{}", "sig")

    def test_provider_mismatch(self, reconciler, flutterwave_app):
        with pytest.raises(BillingValidationError):
            reconciler.handle_webhook("pawapay", flutterwave_app.id, b"{}", "Bearer x")

    def test_app_without_credentials(self, reconciler, db_session, app_record):
        app_record.payment_provider = "flutterwave"
        db_session.commit()

        with pytest.raises(BillingValidationError):
            reconciler.handle_webhook("flutterwave", app_record.id, b"{}", "sig")

    def test_malformed_body(self, reconciler, flutterwave_app):
        with pytest.raises(BillingValidationError):
            reconciler.handle_webhook("flutterwave", flutterwave_app.id, b"not-json", FLUTTERWAVE_WEBHOOK_SECRET)

    def test_unmatched_transaction_releases_claim(self, reconciler, db_session, flutterwave_app):
        body = flutterwave_body("txn_missing", flw_id=424242)

        with pytest.raises(NotFoundError):
            reconciler.handle_webhook("flutterwave", flutterwave_app.id, body, FLUTTERWAVE_WEBHOOK_SECRET)
        with pytest.raises(NotFoundError):
            reconciler.handle_webhook("flutterwave", flutterwave_app.id, body, FLUTTERWAVE_WEBHOOK_SECRET)

        logs = db_session.query(WebhookLog).all()
        assert [log.status for log in logs] == ["failed", "failed"]
        assert all(log.claim_key is None for log in logs)
        assert webhook_count("unmatched") == 2

    def test_processing_error_rolls_back(self, reconciler, db_session, flutterwave_app, pending_payment, monkeypatch):
        subscription, invoice, transaction = pending_payment

        def explode(*args, **kwargs):
            raise RuntimeError("lifecycle unavailable")
        monkeypatch.setattr(reconciler.lifecycle, "apply_payment_success", explode)

        body = flutterwave_body(transaction.reference)
        with pytest.raises(RuntimeError):
            reconciler.handle_webhook("flutterwave", flutterwave_app.id, body, FLUTTERWAVE_WEBHOOK_SECRET)

        db_session.expire_all()
        assert transaction.status == PaymentStatus.PENDING.value
        assert invoice.status == InvoiceStatus.OPEN.value
        log = db_session.query(WebhookLog).one()
        assert log.status == WebhookLogStatus.FAILED.value
        assert log.claim_key is None
        assert "lifecycle unavailable" in log.error

        # the provider's retry can now be processed
        monkeypatch.undo()
        result = reconciler.handle_webhook("flutterwave", flutterwave_app.id, body, FLUTTERWAVE_WEBHOOK_SECRET)
        assert result.status == "processed"


class TestConcurrentStatusUpdates:
    """Two sessions that both loaded the same rows while they were still unpaid"""

    @pytest.fixture
    def session_factory(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'billing.db'}")
        Base.metadata.create_all(bind=engine)
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
        engine.dispose()

    @pytest.fixture
    def transaction_ids(self, session_factory):
        db = session_factory()
        app = App(
            organization_id="org_test", name="Race App", environment="test", default_currency="UGX",
            grace_period_days=3, webhook_url="https://merchant.example/hooks", webhook_secret="whsec",
        )
        db.add(app)
        db.flush()
        customer = Customer(app_id=app.id, email="race@example.com", status="active")
        plan = Plan(
            app_id=app.id, name="Pro Plan", pricing_model="flat", base_amount=50000, currency="UGX",
            interval="monthly", trial_days=0, status="active",
        )
        db.add_all([customer, plan])
        db.flush()
        subscription = SubscriptionLifecycle(db).create_subscription(
            app.id, customer.id, plan.id, now=PAID_AT - timedelta(hours=1)
        )
        invoice = db.query(Invoice).filter(Invoice.subscription_id == subscription.id).one()

        transactions = []
        for reference in ("txn_race", "txn_race_retry1"):
            transaction = PaymentTransaction(
                app_id=app.id, customer_id=customer.id, subscription_id=subscription.id, invoice_id=invoice.id,
                amount=invoice.amount_due, currency="UGX", provider="flutterwave",
                payment_method="mobile_money_mtn", status=PaymentStatus.PENDING.value, reference=reference,
            )
            db.add(transaction)
            transactions.append(transaction)
        db.commit()
        ids = [transaction.id for transaction in transactions]
        db.close()
        return ids

    def apply(self, db, encryption, transaction, status, provider_id):
        reconciler = WebhookReconciler(db, CredentialVault(db, encryption))
        note = reconciler.apply_transaction_event(transaction, WebhookEvent(
            event=f"payment.{status}",
            transaction_id=provider_id,
            reference=transaction.reference,
            status=status,
            paid_at=PAID_AT,
        ))
        db.commit()
        return note

    def test_failure_cannot_overwrite_success(self, session_factory, transaction_ids, encryption):
        first, second = session_factory(), session_factory()
        seen_by_first = first.get(PaymentTransaction, transaction_ids[0])
        seen_by_second = second.get(PaymentTransaction, transaction_ids[0])
        assert seen_by_first.status == seen_by_second.status == PaymentStatus.PENDING.value

        assert self.apply(first, encryption, seen_by_first, PaymentStatus.SUCCESS.value, "5001") is None
        note = self.apply(second, encryption, seen_by_second, PaymentStatus.FAILED.value, "5001")

        assert note == "Transaction already success"
        assert seen_by_second.status == PaymentStatus.SUCCESS.value
        first.close()
        second.close()

        check = session_factory()
        transaction = check.get(PaymentTransaction, transaction_ids[0])
        assert transaction.status == PaymentStatus.SUCCESS.value
        assert transaction.completed_at == PAID_AT
        assert transaction.invoice.status == InvoiceStatus.PAID.value
        subscription = check.get(Subscription, transaction.subscription_id)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.failed_payment_attempts == 0
        check.close()

    def test_two_successes_activate_once(self, session_factory, transaction_ids, encryption):
        first, second = session_factory(), session_factory()
        original = first.get(PaymentTransaction, transaction_ids[0])
        retry = second.get(PaymentTransaction, transaction_ids[1])
        assert original.invoice.status == retry.invoice.status == InvoiceStatus.OPEN.value

        self.apply(first, encryption, original, PaymentStatus.SUCCESS.value, "5001")
        self.apply(second, encryption, retry, PaymentStatus.SUCCESS.value, "5002")
        first.close()
        second.close()

        check = session_factory()
        events = [delivery.event for delivery in check.query(WebhookDelivery).order_by(WebhookDelivery.id)]
        assert events.count("invoice.paid") == 1
        assert events.count("subscription.activated") == 1
        assert "subscription.renewed" not in events
        assert check.get(PaymentTransaction, transaction_ids[1]).status == PaymentStatus.SUCCESS.value
        check.close()
