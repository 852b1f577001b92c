"""
Subscription Lifecycle

State machine for subscriptions:

    trialing --(payment)--> active
    pending_payment --(payment)--> active
    active --(3 failed payments | grace lapsed)--> past_due
    past_due --(payment)--> active
    active/trialing --(pause)--> paused --(resume)--> active
    any non-terminal --(cancel)--> cancelled
    active one-time plan --(period ended)--> expired

cancelled and expired are terminal. Billing periods are anchored at the
moment a payment succeeds, never at the previous period boundary.

Every operation flushes only; the caller commits, so the state change and
the outgoing events it enqueues land in the same transaction.
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session
import logging

from ..exceptions import AuthorizationError, BillingValidationError, NotFoundError
from ..db.models import (
    Customer,
    Invoice,
    Plan,
    PlanStatus,
    Subscription,
    SubscriptionStatus,
    TERMINAL_SUBSCRIPTION_STATUSES,
    LIVE_SUBSCRIPTION_STATUSES,
)
from .invoice_generator import InvoiceGenerator
from .proration_service import ProrationService
from .webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

MAX_FAILED_PAYMENT_ATTEMPTS = 3

INTERVAL_DAYS = {
    "monthly": 30,
    "quarterly": 90,
    "yearly": 365,
    "one-time": 0,
}

STATUS_DESCRIPTIONS = {
    SubscriptionStatus.ACTIVE.value: "Active subscription with access to services",
    SubscriptionStatus.TRIALING.value: "In trial period - no payment required yet",
    SubscriptionStatus.PENDING_PAYMENT.value: "Awaiting first payment to activate",
    SubscriptionStatus.PAST_DUE.value: "Payment overdue - access may be limited",
    SubscriptionStatus.PAUSED.value: "Subscription paused by user",
    SubscriptionStatus.CANCELLED.value: "Subscription cancelled - no further billing",
    SubscriptionStatus.EXPIRED.value: "One-time subscription period has ended",
}


def interval_duration(interval: str) -> timedelta:
    """Length of one billing period for a plan interval"""
    if interval not in INTERVAL_DAYS:
        raise BillingValidationError(f"Unknown billing interval: {interval}")
    return timedelta(days=INTERVAL_DAYS[interval])


def build_plan_snapshot(plan: Plan) -> Dict[str, Any]:
    """Copy of a plan's pricing terms, frozen onto the subscription"""
    return {
        "name": plan.name,
        "pricing_model": plan.pricing_model,
        "base_amount": plan.base_amount,
        "currency": plan.currency,
        "interval": plan.interval,
        "usage_metric": plan.usage_metric,
        "unit_price": plan.unit_price,
        "free_units": plan.free_units,
        "trial_days": plan.trial_days,
    }


def compute_subscription_status(
    subscription: Subscription,
    grace_period_days: int,
    now: Optional[datetime] = None
) -> str:
    """
    Effective status of a subscription at a point in time

    The stored status lags until a sweep runs; this reports what it should be:
    an expired trial reads as pending_payment and an active or pending
    subscription whose grace period has lapsed reads as past_due.
    """
    now = now or datetime.utcnow()
    status = subscription.status

    if status == SubscriptionStatus.TRIALING.value:
        if subscription.trial_ends_at and now >= subscription.trial_ends_at:
            return SubscriptionStatus.PENDING_PAYMENT.value
        return status

    if status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PENDING_PAYMENT.value):
        # No period yet means the first payment is still outstanding
        if not subscription.current_period_end:
            return SubscriptionStatus.PENDING_PAYMENT.value
        if now > subscription.current_period_end + timedelta(days=grace_period_days):
            return SubscriptionStatus.PAST_DUE.value
        return status

    return status


def has_active_access(
    subscription: Subscription,
    grace_period_days: int,
    now: Optional[datetime] = None
) -> bool:
    return compute_subscription_status(subscription, grace_period_days, now) in (
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.PENDING_PAYMENT.value,
    )


def can_be_cancelled(subscription: Subscription) -> bool:
    return subscription.status in (
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.TRIALING.value,
        SubscriptionStatus.PENDING_PAYMENT.value,
        SubscriptionStatus.PAUSED.value,
    )


def can_be_paused(subscription: Subscription) -> bool:
    return subscription.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


def can_be_resumed(subscription: Subscription) -> bool:
    return subscription.status == SubscriptionStatus.PAUSED.value


def get_status_description(status: str) -> str:
    return STATUS_DESCRIPTIONS.get(status, "Unknown status")


class SubscriptionLifecycle:
    """Drives subscriptions through their states and emits the matching events"""

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[WebhookDispatcher] = None,
        invoice_generator: Optional[InvoiceGenerator] = None,
        proration_service: Optional[ProrationService] = None
    ):
        self.db = db
        self.dispatcher = dispatcher or WebhookDispatcher(db)
        self.invoice_generator = invoice_generator or InvoiceGenerator(db, dispatcher=self.dispatcher)
        self.proration_service = proration_service or ProrationService()

    def _emit(self, subscription: Subscription, event: str, now: Optional[datetime] = None, **extra):
        data = {"subscription": subscription.to_dict()}
        data.update(extra)
        self.dispatcher.enqueue(subscription.app_id, event, data, now=now)

    def get_subscription(self, app_id: int, subscription_id: int) -> Subscription:
        subscription = self.db.query(Subscription).filter(Subscription.id == subscription_id).first()
        if not subscription:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if subscription.app_id != app_id:
            raise AuthorizationError("Access denied")
        return subscription

    def create_subscription(
        self,
        app_id: int,
        customer_id: int,
        plan_id: int,
        now: Optional[datetime] = None,
        trial_days: Optional[int] = None
    ) -> Subscription:
        """
        Subscribe a customer to a plan

        With a trial the subscription starts trialing; otherwise it waits in
        pending_payment with its first invoice already issued, unless that
        invoice has nothing to collect and the subscription starts active.
        """
        now = now or datetime.utcnow()

        customer = self.db.query(Customer).filter(Customer.id == customer_id).first()
        if not customer:
            raise NotFoundError(f"Customer {customer_id} not found")
        if customer.app_id != app_id:
            raise AuthorizationError("Customer does not belong to this app")

        plan = self.db.query(Plan).filter(Plan.id == plan_id).first()
        if not plan:
            raise NotFoundError(f"Plan {plan_id} not found")
        if plan.app_id != app_id:
            raise AuthorizationError("Plan does not belong to this app")
        if plan.status == PlanStatus.ARCHIVED.value:
            raise BillingValidationError("Plan is archived and unavailable")

        # Any non-terminal subscription can still become active, so it blocks a new one
        existing = self.db.query(Subscription).filter(
            Subscription.customer_id == customer_id,
            Subscription.status.notin_(TERMINAL_SUBSCRIPTION_STATUSES)
        ).first()
        if existing:
            raise BillingValidationError(
                f"Customer already has an open subscription ({existing.status})",
                details={"subscription_id": existing.id, "status": existing.status},
            )

        trial = plan.trial_days if trial_days is None else trial_days
        trial = trial or 0
        if trial < 0:
            raise BillingValidationError("trial_days cannot be negative")

        subscription = Subscription(
            app_id=app_id,
            customer_id=customer_id,
            plan_id=plan_id,
            plan_snapshot=build_plan_snapshot(plan),
            failed_payment_attempts=0,
            cancel_at_period_end=False,
        )
        if trial > 0:
            subscription.status = SubscriptionStatus.TRIALING.value
            subscription.trial_ends_at = now + timedelta(days=trial)
            subscription.next_payment_date = subscription.trial_ends_at
        else:
            subscription.status = SubscriptionStatus.PENDING_PAYMENT.value
            subscription.next_payment_date = now

        self.db.add(subscription)
        self.db.flush()
        logger.info(f"Created subscription {subscription.id} ({subscription.status}) for customer {customer_id} on plan {plan_id}")

        self._emit(subscription, "subscription.created", now=now, customer=customer.to_dict())

        if trial == 0:
            invoice = self.invoice_generator.generate_invoice(
                subscription, now, now + interval_duration(plan.interval), now=now
            )
            if invoice.amount_due == 0:
                # Nothing to collect up front (usage billed in arrears, or a free plan)
                self.invoice_generator.mark_invoice_paid(invoice, amount=0, paid_at=now)
                self.activate_from_payment(subscription, now)

        return subscription

    def _start_period(self, subscription: Subscription, paid_at: datetime):
        interval = (subscription.plan_snapshot or {}).get("interval")
        subscription.current_period_start = paid_at
        subscription.current_period_end = paid_at + interval_duration(interval)
        subscription.next_payment_date = subscription.current_period_end
        subscription.last_payment_date = paid_at
        subscription.failed_payment_attempts = 0

    def activate_from_payment(self, subscription: Subscription, paid_at: datetime) -> Subscription:
        if subscription.status not in (
            SubscriptionStatus.TRIALING.value,
            SubscriptionStatus.PENDING_PAYMENT.value,
            SubscriptionStatus.PAST_DUE.value,
        ):
            raise BillingValidationError(f"Cannot activate a {subscription.status} subscription")

        other = self._other_live_subscription(subscription)
        if other is not None:
            raise BillingValidationError(
                f"Customer {subscription.customer_id} already has {other.status} subscription {other.id}",
                details={"subscription_id": subscription.id, "live_subscription_id": other.id},
            )

        previous = subscription.status
        subscription.status = SubscriptionStatus.ACTIVE.value
        self._start_period(subscription, paid_at)
        self.db.flush()

        logger.info(f"Activated subscription {subscription.id} ({previous} -> active), period ends {subscription.current_period_end}")
        self._emit(subscription, "subscription.activated", now=paid_at, previous_status=previous)
        return subscription

    def _other_live_subscription(self, subscription: Subscription) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.customer_id == subscription.customer_id,
            Subscription.id != subscription.id,
            Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES)
        ).first()

    def renew_from_payment(self, subscription: Subscription, paid_at: datetime) -> Subscription:
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise BillingValidationError(f"Cannot renew a {subscription.status} subscription")

        self._start_period(subscription, paid_at)
        self.db.flush()

        logger.info(f"Renewed subscription {subscription.id}, period ends {subscription.current_period_end}")
        self._emit(subscription, "subscription.renewed", now=paid_at)
        return subscription

    def apply_payment_success(self, subscription: Subscription, paid_at: datetime) -> bool:
        """
        Apply a successful payment to its subscription

        Returns:
            True if the subscription was activated or renewed
        """
        if subscription.status == SubscriptionStatus.ACTIVE.value:
            self.renew_from_payment(subscription, paid_at)
            return True
        if subscription.status in (
            SubscriptionStatus.TRIALING.value,
            SubscriptionStatus.PENDING_PAYMENT.value,
            SubscriptionStatus.PAST_DUE.value,
        ):
            other = self._other_live_subscription(subscription)
            if other is None:
                self.activate_from_payment(subscription, paid_at)
                return True
            # The payment itself stands; only the second activation is refused
            logger.error(
                f"Payment for subscription {subscription.id} not activated: customer "
                f"{subscription.customer_id} already has {other.status} subscription {other.id}"
            )
        else:
            logger.warning(f"Payment received for {subscription.status} subscription {subscription.id}; state unchanged")

        subscription.last_payment_date = paid_at
        self.db.flush()
        return False

    def record_payment_failure(
        self,
        subscription: Subscription,
        transaction_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Count a failed payment against a subscription

        Returns:
            True if the failure moved the subscription to past_due
        """
        if subscription.status not in (
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.PAST_DUE.value,
            SubscriptionStatus.PENDING_PAYMENT.value,
            SubscriptionStatus.TRIALING.value,
        ):
            logger.warning(f"Ignoring payment failure for {subscription.status} subscription {subscription.id}")
            return False

        subscription.failed_payment_attempts = (subscription.failed_payment_attempts or 0) + 1
        moved_past_due = (
            subscription.status == SubscriptionStatus.ACTIVE.value
            and subscription.failed_payment_attempts >= MAX_FAILED_PAYMENT_ATTEMPTS
        )
        if moved_past_due:
            subscription.status = SubscriptionStatus.PAST_DUE.value
        self.db.flush()

        logger.info(f"Recorded failed payment {subscription.failed_payment_attempts} for subscription {subscription.id}")
        self._emit(subscription, "payment.failed", now=now, transaction=transaction_data)

        if moved_past_due:
            logger.warning(f"Subscription {subscription.id} is past due after {subscription.failed_payment_attempts} failed payments")
            self._emit(subscription, "subscription.past_due", now=now, reason="failed_payments")
        return moved_past_due

    def cancel_subscription(
        self,
        subscription: Subscription,
        at_period_end: bool = True,
        now: Optional[datetime] = None,
        reason: Optional[str] = None
    ) -> Subscription:
        """Cancel now, or flag the subscription to cancel when its period ends"""
        now = now or datetime.utcnow()
        if subscription.is_terminal:
            raise BillingValidationError(f"Subscription {subscription.id} is already {subscription.status}")

        if at_period_end:
            subscription.cancel_at_period_end = True
            subscription.cancellation_reason = reason
            self.db.flush()
            logger.info(f"Subscription {subscription.id} will cancel at period end ({subscription.current_period_end})")
            self._emit(subscription, "subscription.cancel_scheduled", now=now)
            return subscription

        if not can_be_cancelled(subscription):
            raise BillingValidationError(f"Cannot cancel a {subscription.status} subscription immediately")

        self._cancel(subscription, now, reason)
        return subscription

    def _cancel(self, subscription: Subscription, now: datetime, reason: Optional[str]):
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.cancelled_at = now
        subscription.cancel_at_period_end = False
        subscription.next_payment_date = None
        if reason:
            subscription.cancellation_reason = reason
        self.db.flush()

        logger.info(f"Cancelled subscription {subscription.id}")
        self._emit(subscription, "subscription.cancelled", now=now)

    def process_scheduled_cancellation(self, subscription: Subscription, now: datetime) -> bool:
        if not subscription.cancel_at_period_end or subscription.is_terminal:
            return False
        if subscription.current_period_end and subscription.current_period_end > now:
            return False

        self._cancel(subscription, now, subscription.cancellation_reason)
        return True

    def pause_subscription(self, subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
        if not can_be_paused(subscription):
            raise BillingValidationError(f"Cannot pause a {subscription.status} subscription")

        now = now or datetime.utcnow()
        subscription.status = SubscriptionStatus.PAUSED.value
        subscription.paused_at = now
        self.db.flush()

        logger.info(f"Paused subscription {subscription.id}")
        self._emit(subscription, "subscription.paused", now=now)
        return subscription

    def resume_subscription(self, subscription: Subscription, now: Optional[datetime] = None) -> Subscription:
        if not can_be_resumed(subscription):
            raise BillingValidationError(f"Cannot resume a {subscription.status} subscription")

        now = now or datetime.utcnow()
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.paused_at = None
        self.db.flush()

        logger.info(f"Resumed subscription {subscription.id}")
        self._emit(subscription, "subscription.resumed", now=now)
        return subscription

    def expire_trial(self, subscription: Subscription, now: datetime) -> Optional[Invoice]:
        """
        Bill a subscription whose trial has ended

        The status stays trialing until the invoice is paid. Returns None when
        the trial has not ended or an unpaid invoice is already waiting.
        """
        if subscription.status != SubscriptionStatus.TRIALING.value:
            return None
        if not subscription.trial_ends_at or subscription.trial_ends_at > now:
            return None

        if self.invoice_generator.get_open_invoice(subscription.id):
            logger.debug(f"Trial for subscription {subscription.id} already invoiced")
            return None

        interval = (subscription.plan_snapshot or {}).get("interval")
        invoice = self.invoice_generator.generate_invoice(
            subscription, now, now + interval_duration(interval), now=now
        )
        subscription.next_payment_date = now
        self.db.flush()

        logger.info(f"Trial ended for subscription {subscription.id}; issued {invoice.invoice_number}")
        self._emit(subscription, "subscription.trial_expired", now=now, invoice=invoice.to_dict())
        return invoice

    def expire_one_time(self, subscription: Subscription, now: datetime) -> bool:
        interval = (subscription.plan_snapshot or {}).get("interval")
        if interval != "one-time" or subscription.status != SubscriptionStatus.ACTIVE.value:
            return False
        if not subscription.current_period_end or subscription.current_period_end > now:
            return False

        subscription.status = SubscriptionStatus.EXPIRED.value
        subscription.next_payment_date = None
        self.db.flush()

        logger.info(f"One-time subscription {subscription.id} expired")
        self._emit(subscription, "subscription.expired", now=now)
        return True

    def mark_grace_period_expired(self, subscription: Subscription, grace_days: int, now: datetime) -> bool:
        """
        Move an active subscription to past_due once its grace period lapsed unpaid

        past_due subscriptions are never cancelled automatically.
        """
        if subscription.status != SubscriptionStatus.ACTIVE.value or not subscription.current_period_end:
            return False
        if subscription.current_period_end + timedelta(days=grace_days) > now:
            return False
        if not self.invoice_generator.get_open_invoice(subscription.id):
            return False

        subscription.status = SubscriptionStatus.PAST_DUE.value
        self.db.flush()

        logger.warning(f"Grace period expired for subscription {subscription.id}; now past due")
        self._emit(subscription, "subscription.past_due", now=now, reason="grace_period_expired")
        return True

    def change_plan(self, subscription: Subscription, new_plan_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Move a subscription to another plan of the same app

        The billing period is left as is. Upgrades report the prorated amount
        owed for the rest of the period; downgrades owe nothing.
        """
        now = now or datetime.utcnow()
        if subscription.is_terminal:
            raise BillingValidationError(f"Cannot change plan of a {subscription.status} subscription")
        if new_plan_id == subscription.plan_id:
            raise BillingValidationError("Subscription is already on this plan")

        new_plan = self.db.query(Plan).filter(Plan.id == new_plan_id).first()
        if not new_plan:
            raise NotFoundError(f"Plan {new_plan_id} not found")
        if new_plan.app_id != subscription.app_id:
            raise AuthorizationError("Plan does not belong to this app")
        if new_plan.status == PlanStatus.ARCHIVED.value:
            raise BillingValidationError("Plan is archived and unavailable")

        old_snapshot = subscription.plan_snapshot or {}
        if old_snapshot.get("currency") != new_plan.currency:
            raise BillingValidationError(
                f"Cannot change from a {old_snapshot.get('currency')} plan to a {new_plan.currency} plan"
            )

        new_snapshot = build_plan_snapshot(new_plan)
        proration = self.proration_service.calculate_proration(
            old_snapshot,
            new_snapshot,
            subscription.current_period_start,
            subscription.current_period_end,
            at=now,
        )

        old_plan_id = subscription.plan_id
        subscription.plan_id = new_plan.id
        subscription.plan_snapshot = new_snapshot
        self.db.flush()

        logger.info(
            f"Subscription {subscription.id} changed plan {old_plan_id} -> {new_plan.id} "
            f"({proration['change_type']}, prorated {proration['prorated_amount']})"
        )
        self._emit(subscription, "subscription.plan_changed", now=now, previous_plan_id=old_plan_id, proration=proration)
        return proration


def get_subscription_lifecycle(db: Session) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(db)
