"""
Billing Sweeps
Time-driven transitions run by the scheduler

Each sweep selects its candidates, handles them one at a time and commits
per item. A failing item is rolled back, logged and counted in "errors";
the sweep moves on to the next one.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from ..exceptions import TerminalStateError
from ..db.models import (
    InvoiceStatus,
    PaymentStatus,
    PaymentTransaction,
    Subscription,
    SubscriptionStatus,
    TERMINAL_SUBSCRIPTION_STATUSES,
)
from .subscription_lifecycle import SubscriptionLifecycle, MAX_FAILED_PAYMENT_ATTEMPTS
from .webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

RETRY_LOOKBACK_DAYS = 7


class BillingSweeps:
    """Scheduled billing maintenance"""

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[WebhookDispatcher] = None,
        lifecycle: Optional[SubscriptionLifecycle] = None,
        payment_service=None
    ):
        self.db = db
        self.dispatcher = dispatcher or WebhookDispatcher(db)
        self.lifecycle = lifecycle or SubscriptionLifecycle(db, dispatcher=self.dispatcher)
        self.invoice_generator = self.lifecycle.invoice_generator
        self._payment_service = payment_service

    @property
    def payment_service(self):
        if self._payment_service is None:
            from .payment_service import get_payment_service
            self._payment_service = get_payment_service(self.db)
        return self._payment_service

    def _each(self, sweep: str, items: Iterable, handle: Callable, action: str) -> Dict[str, int]:
        stats = {"processed": 0, action: 0, "errors": 0}

        for item in items:
            item_id = item.id
            try:
                changed = handle(item)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                stats["errors"] += 1
                logger.error(f"{sweep}: error handling {type(item).__name__} {item_id}: {e}", exc_info=True)
                continue

            stats["processed"] += 1
            if changed:
                stats[action] += 1

        logger.info(f"{sweep} complete: {stats}")
        return stats

    def process_scheduled_cancellations(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        due = self.db.query(Subscription).filter(
            Subscription.cancel_at_period_end.is_(True),
            Subscription.status.notin_(TERMINAL_SUBSCRIPTION_STATUSES),
            (Subscription.current_period_end.is_(None)) | (Subscription.current_period_end <= now)
        ).all()

        return self._each(
            "process_scheduled_cancellations", due,
            lambda sub: self.lifecycle.process_scheduled_cancellation(sub, now),
            "cancelled",
        )

    def process_trial_expirations(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        due = self.db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.TRIALING.value,
            Subscription.trial_ends_at <= now
        ).all()

        return self._each(
            "process_trial_expirations", due,
            lambda sub: self.lifecycle.expire_trial(sub, now) is not None,
            "invoiced",
        )

    def _issue_renewal(self, subscription: Subscription, now: datetime) -> bool:
        """Close out an ended period: invoice it and tell the app payment is due"""
        if (subscription.plan_snapshot or {}).get("interval") == "one-time":
            return self.lifecycle.expire_one_time(subscription, now)

        start, end = subscription.current_period_start, subscription.current_period_end
        if self.invoice_generator.find_period_invoice(subscription.id, start, end):
            return False

        invoice = self.invoice_generator.generate_invoice(subscription, start, end, now=now)
        self.dispatcher.enqueue(subscription.app_id, "payment.due", {
            "subscription": subscription.to_dict(),
            "invoice": invoice.to_dict(),
        }, now=now)
        return True

    def process_recurring_payments(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        due = self.db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.current_period_end <= now,
            Subscription.cancel_at_period_end.is_(False)
        ).all()

        return self._each(
            "process_recurring_payments", due,
            lambda sub: self._issue_renewal(sub, now),
            "renewals",
        )

    def _should_retry(self, transaction: PaymentTransaction) -> bool:
        original_id = transaction.original_transaction_id or transaction.id
        later_attempt = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.original_transaction_id == original_id,
            PaymentTransaction.attempt_number > transaction.attempt_number
        ).first()
        if later_attempt:
            return False

        invoice = transaction.invoice
        if invoice is None or invoice.status in (InvoiceStatus.PAID.value, InvoiceStatus.VOID.value):
            return False

        subscription = transaction.subscription
        if subscription is None or subscription.is_terminal or subscription.status == SubscriptionStatus.PAUSED.value:
            return False
        return True

    def _retry(self, transaction: PaymentTransaction, now: datetime) -> bool:
        if not self._should_retry(transaction):
            return False
        self.payment_service.retry_failed_payment(transaction, now=now)
        return True

    def retry_failed_payments(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        failed = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.status == PaymentStatus.FAILED.value,
            PaymentTransaction.initiated_at >= now - timedelta(days=RETRY_LOOKBACK_DAYS),
            PaymentTransaction.attempt_number < MAX_FAILED_PAYMENT_ATTEMPTS
        ).order_by(PaymentTransaction.id).all()

        return self._each(
            "retry_failed_payments", failed,
            lambda txn: self._retry(txn, now),
            "retried",
        )

    def _expire_transaction(self, transaction: PaymentTransaction, now: datetime) -> bool:
        try:
            if not transaction.apply_status(PaymentStatus.FAILED.value, when=now):
                return False
        except TerminalStateError:
            logger.info(f"Transaction {transaction.reference} settled as {transaction.status} before it expired")
            return False
        transaction.failure_code = "EXPIRED"
        transaction.failure_reason = "Transaction expired"
        self.db.flush()
        logger.info(f"Transaction {transaction.reference} expired")
        return True

    def cleanup_expired_transactions(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        stale = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.status.in_([PaymentStatus.PENDING.value, PaymentStatus.INITIATED.value]),
            PaymentTransaction.expires_at < now
        ).all()

        return self._each(
            "cleanup_expired_transactions", stale,
            lambda txn: self._expire_transaction(txn, now),
            "expired",
        )

    def process_grace_period_expirations(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        candidates = self.db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.current_period_end <= now
        ).all()

        return self._each(
            "process_grace_period_expirations", candidates,
            lambda sub: self.lifecycle.mark_grace_period_expired(sub, sub.app.grace_period_days, now),
            "past_due",
        )

    def _generate_missing_invoice(self, subscription: Subscription, now: datetime) -> bool:
        if (subscription.plan_snapshot or {}).get("interval") == "one-time":
            return False
        start, end = subscription.current_period_start, subscription.current_period_end
        if self.invoice_generator.find_period_invoice(subscription.id, start, end):
            return False
        self.invoice_generator.generate_invoice(subscription, start, end, now=now)
        return True

    def generate_pending_invoices(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        candidates = self.db.query(Subscription).filter(
            Subscription.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]),
            Subscription.current_period_end <= now
        ).all()

        return self._each(
            "generate_pending_invoices", candidates,
            lambda sub: self._generate_missing_invoice(sub, now),
            "generated",
        )


def get_billing_sweeps(db: Session) -> BillingSweeps:
    return BillingSweeps(db)
