"""
Plan model and pricing vocabularies
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base


class PricingModel(str, enum.Enum):
    FLAT = "flat"
    USAGE = "usage"
    HYBRID = "hybrid"


class BillingInterval(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    ONE_TIME = "one-time"


class PlanStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class Plan(Base):
    """
    Pricing plan offered by a tenant app

    All amounts are integers in the smallest currency unit.
    """
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)

    name = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=True)
    pricing_model = Column(String(20), nullable=False)

    base_amount = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=False)
    interval = Column(String(20), nullable=False)

    # Metered pricing
    usage_metric = Column(String(100), nullable=True)
    unit_price = Column(Integer, nullable=True)
    free_units = Column(Integer, nullable=True)

    trial_days = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default=PlanStatus.ACTIVE.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    app = relationship("App")

    __table_args__ = (
        Index("idx_plans_app_status", "app_id", "status"),
    )

    def __repr__(self):
        return f"<Plan(id={self.id}, name={self.name}, model={self.pricing_model}, interval={self.interval})>"
