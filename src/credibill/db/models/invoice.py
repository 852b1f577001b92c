"""
Invoice models for the billing engine
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..base import Base, JSONType


class InvoiceStatus(str, enum.Enum):
    """Invoice status enum"""
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    FAILED = "failed"
    VOID = "void"


class LineItemType(str, enum.Enum):
    PLAN = "plan"
    USAGE = "usage"


class Invoice(Base):
    """
    Invoice for one subscription billing period

    Line items are computed once when the invoice is issued and never
    recomputed. amount_due is always the sum of the line item totals.
    """
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)

    invoice_number = Column(String(50), nullable=False)  # INV-2026-001

    # Amounts in minor currency units
    currency = Column(String(3), nullable=False)
    amount_due = Column(Integer, nullable=False)
    amount_paid = Column(Integer, default=0, nullable=False)

    status = Column(String(20), default=InvoiceStatus.OPEN.value, nullable=False, index=True)

    # [{"description", "quantity", "unit_amount", "total_amount", "type"}]
    line_items = Column(JSONType, nullable=False)

    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)

    extra_metadata = Column(JSONType, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    subscription = relationship("Subscription")
    customer = relationship("Customer")

    __table_args__ = (
        UniqueConstraint("app_id", "invoice_number", name="uq_invoices_app_number"),
        Index("idx_invoices_subscription_period", "subscription_id", "period_start", "period_end"),
        Index("idx_invoices_due_date", "due_date", "status"),
    )

    def __repr__(self):
        return f"<Invoice(id={self.id}, number={self.invoice_number}, amount_due={self.amount_due}, status={self.status})>"

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID.value

    def to_dict(self) -> dict:
        """Convert invoice to dictionary for JSON serialization and event payloads"""
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "app_id": self.app_id,
            "customer_id": self.customer_id,
            "subscription_id": self.subscription_id,
            "currency": self.currency,
            "amount_due": self.amount_due,
            "amount_paid": self.amount_paid,
            "status": self.status,
            "line_items": self.line_items,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


class InvoiceCounter(Base):
    """Per-app, per-calendar-year invoice sequence"""
    __tablename__ = "invoice_counters"

    id = Column(Integer, primary_key=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False)
    year = Column(Integer, nullable=False)
    last_value = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("app_id", "year", name="uq_invoice_counters_app_year"),
    )

    def __repr__(self):
        return f"<InvoiceCounter(app_id={self.app_id}, year={self.year}, last_value={self.last_value})>"
