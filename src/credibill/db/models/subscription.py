"""
Subscription model
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base, JSONType


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle states"""
    TRIALING = "trialing"
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.EXPIRED.value,
})

# A customer holds at most one subscription in these states
LIVE_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
})


class Subscription(Base):
    """
    Customer subscription to a plan

    plan_snapshot is a copy of the plan's pricing terms taken at subscribe
    time (or at plan change). Billing always reads the snapshot, never the
    live plan row.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False, index=True)

    plan_snapshot = Column(JSONType, nullable=False)
    status = Column(String(20), nullable=False, index=True)

    # Billing period, anchored at the payment timestamp
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True, index=True)
    trial_ends_at = Column(DateTime, nullable=True, index=True)
    next_payment_date = Column(DateTime, nullable=True)

    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    paused_at = Column(DateTime, nullable=True)

    failed_payment_attempts = Column(Integer, default=0, nullable=False)
    last_payment_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    app = relationship("App")
    customer = relationship("Customer")
    plan = relationship("Plan")

    __table_args__ = (
        Index("idx_subscriptions_customer_status", "customer_id", "status"),
        Index("idx_subscriptions_status_period_end", "status", "current_period_end"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SUBSCRIPTION_STATUSES

    def __repr__(self):
        return f"<Subscription(id={self.id}, customer_id={self.customer_id}, status={self.status})>"

    def to_dict(self) -> dict:
        def iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "app_id": self.app_id,
            "customer_id": self.customer_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "plan_snapshot": self.plan_snapshot,
            "current_period_start": iso(self.current_period_start),
            "current_period_end": iso(self.current_period_end),
            "trial_ends_at": iso(self.trial_ends_at),
            "next_payment_date": iso(self.next_payment_date),
            "cancel_at_period_end": self.cancel_at_period_end,
            "cancelled_at": iso(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
            "paused_at": iso(self.paused_at),
            "failed_payment_attempts": self.failed_payment_attempts,
            "last_payment_date": iso(self.last_payment_date),
        }
