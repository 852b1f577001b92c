"""
Tenant application model
"""
from sqlalchemy import Column, Integer, String, DateTime, Index
from datetime import datetime
import enum

from ..base import Base


class AppStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class AppEnvironment(str, enum.Enum):
    TEST = "test"
    LIVE = "live"


class App(Base):
    """
    A client application billed through the engine

    Every customer, plan, subscription, invoice and transaction belongs to
    exactly one app. The webhook secret signs outgoing event deliveries.
    """
    __tablename__ = "apps"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String(100), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=True)
    status = Column(String(20), default=AppStatus.ACTIVE.value, nullable=False)
    environment = Column(String(10), default=AppEnvironment.TEST.value, nullable=False)

    # Provider is chosen once per app and never switched
    payment_provider = Column(String(30), nullable=True)
    default_currency = Column(String(3), default="UGX", nullable=False)

    # Outgoing webhooks
    webhook_url = Column(String(500), nullable=True)
    webhook_secret = Column(String(128), nullable=True)

    grace_period_days = Column(Integer, default=3, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_apps_org_status", "organization_id", "status"),
    )

    def __repr__(self):
        return f"<App(id={self.id}, name={self.name}, provider={self.payment_provider})>"
