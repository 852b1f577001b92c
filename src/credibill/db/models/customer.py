"""
Customer model
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime

from ..base import Base, JSONType


class Customer(Base):
    """A paying end user of a tenant app"""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)

    email = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(30), nullable=True)
    external_customer_id = Column(String(200), nullable=True, index=True)
    status = Column(String(20), default="active", nullable=False)
    extra_metadata = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    app = relationship("App")

    __table_args__ = (
        UniqueConstraint("app_id", "email", name="uq_customers_app_email"),
    )

    @property
    def full_name(self) -> str:
        return " ".join(part for part in [self.first_name, self.last_name] if part)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "external_customer_id": self.external_customer_id,
            "status": self.status,
            "metadata": self.extra_metadata,
        }

    def __repr__(self):
        return f"<Customer(id={self.id}, app_id={self.app_id}, email={self.email})>"
