"""
Revenue overview for an app: subscription counts, MRR, paid revenue and
trials about to end
"""
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..db.models import Invoice, InvoiceStatus, Plan, PlanStatus, Subscription, SubscriptionStatus
from .proration_service import monthly_amount

TRIAL_WARNING_DAYS = 7


def compute_overview(db: Session, app_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Dashboard metrics for one app

    MRR counts active and trialing recurring subscriptions, each normalized to a
    monthly amount from its plan snapshot and summed per currency (one-time
    plans are excluded).
    """
    now = now or datetime.utcnow()

    status_counts = dict(
        db.query(Subscription.status, func.count(Subscription.id))
        .filter(Subscription.app_id == app_id)
        .group_by(Subscription.status)
        .all()
    )

    mrr = defaultdict(Decimal)
    plan_subscribers = defaultdict(int)
    plan_mrr = defaultdict(Decimal)
    recurring = db.query(Subscription).filter(
        Subscription.app_id == app_id,
        Subscription.status.in_((SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value))
    ).all()
    for subscription in recurring:
        snapshot = subscription.plan_snapshot or {}
        plan_subscribers[subscription.plan_id] += 1
        if snapshot.get("interval") == "one-time" or not snapshot.get("base_amount"):
            continue
        amount = monthly_amount(snapshot)
        mrr[snapshot.get("currency")] += amount
        plan_mrr[subscription.plan_id] += amount

    revenue = dict(
        db.query(Invoice.currency, func.coalesce(func.sum(Invoice.amount_paid), 0))
        .filter(Invoice.app_id == app_id, Invoice.status == InvoiceStatus.PAID.value)
        .group_by(Invoice.currency)
        .all()
    )

    trials_expiring_soon = db.query(func.count(Subscription.id)).filter(
        Subscription.app_id == app_id,
        Subscription.status == SubscriptionStatus.TRIALING.value,
        Subscription.trial_ends_at > now,
        Subscription.trial_ends_at <= now + timedelta(days=TRIAL_WARNING_DAYS)
    ).scalar()

    plans = db.query(Plan).filter(Plan.app_id == app_id, Plan.status == PlanStatus.ACTIVE.value).all()

    def to_int(value: Decimal) -> int:
        return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    return {
        "subscriptions": {
            "active": status_counts.get(SubscriptionStatus.ACTIVE.value, 0),
            "trialing": status_counts.get(SubscriptionStatus.TRIALING.value, 0),
            "past_due": status_counts.get(SubscriptionStatus.PAST_DUE.value, 0),
            "cancelled": status_counts.get(SubscriptionStatus.CANCELLED.value, 0),
            "pending_payment": status_counts.get(SubscriptionStatus.PENDING_PAYMENT.value, 0),
            "paused": status_counts.get(SubscriptionStatus.PAUSED.value, 0),
            "expired": status_counts.get(SubscriptionStatus.EXPIRED.value, 0),
        },
        "mrr": {currency: to_int(amount) for currency, amount in mrr.items()},
        "total_revenue": {currency: int(amount) for currency, amount in revenue.items()},
        "trials_expiring_soon": trials_expiring_soon or 0,
        "plans": [
            {
                "plan_id": plan.id,
                "name": plan.name,
                "currency": plan.currency,
                "subscribers": plan_subscribers.get(plan.id, 0),
                "mrr": to_int(plan_mrr.get(plan.id, Decimal(0))),
            }
            for plan in plans
        ],
        "generated_at": now.isoformat(),
    }
