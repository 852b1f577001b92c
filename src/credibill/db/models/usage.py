"""
Metered usage events
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, UniqueConstraint
from datetime import datetime

from ..base import Base, JSONType


class UsageEvent(Base):
    """Immutable usage record, deduplicated by the caller-supplied event id"""
    __tablename__ = "usage_events"

    id = Column(Integer, primary_key=True, index=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)

    metric = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    event_id = Column(String(200), nullable=True)
    extra_metadata = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("app_id", "event_id", name="uq_usage_events_app_event_id"),
        Index("idx_usage_events_subscription_metric_ts", "subscription_id", "metric", "timestamp"),
    )

    def __repr__(self):
        return f"<UsageEvent(id={self.id}, metric={self.metric}, quantity={self.quantity})>"
