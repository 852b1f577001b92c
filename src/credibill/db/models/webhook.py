"""
Inbound webhook audit log and outgoing webhook delivery queue
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index, Text
from datetime import datetime
import enum

from ..base import Base, JSONType


class WebhookLogStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class WebhookLog(Base):
    """
    One row per provider callback received

    claim_key is set (unique) only on the row that owns processing of an
    event key. Duplicates are recorded with claim_key NULL and status ignored.
    """
    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, index=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=True, index=True)
    provider = Column(String(30), nullable=False)
    event = Column(String(100), nullable=True)

    event_key = Column(String(300), nullable=True, index=True)
    claim_key = Column(String(350), nullable=True, unique=True)

    payload = Column(JSONType, nullable=True)
    status = Column(String(20), default=WebhookLogStatus.RECEIVED.value, nullable=False)
    signature_valid = Column(Boolean, nullable=True)

    payment_transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), nullable=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    error = Column(String(1000), nullable=True)

    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_webhook_logs_app_received", "app_id", "received_at"),
    )

    def __repr__(self):
        return f"<WebhookLog(id={self.id}, provider={self.provider}, event_key={self.event_key}, status={self.status})>"


class WebhookDelivery(Base):
    """Outgoing event queued for a client app's webhook endpoint"""
    __tablename__ = "webhook_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)
    event = Column(String(100), nullable=False)
    payload = Column(JSONType, nullable=False)
    url = Column(String(500), nullable=False)

    status = Column(String(20), default=DeliveryStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)

    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_webhook_deliveries_status_retry", "status", "next_retry_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "event": self.event,
            "url": self.url,
            "status": self.status,
            "attempts": self.attempts,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "response_status": self.response_status,
            "error": self.error,
        }

    def __repr__(self):
        return f"<WebhookDelivery(id={self.id}, event={self.event}, status={self.status}, attempts={self.attempts})>"
