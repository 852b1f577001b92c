"""
Payment transaction model
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index, update
from sqlalchemy.orm import object_session, relationship
from datetime import datetime
import enum

from ..base import Base, JSONType
from ...exceptions import TerminalStateError


class PaymentStatus(str, enum.Enum):
    """Canonical payment status shared by every provider adapter"""
    PENDING = "pending"
    INITIATED = "initiated"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.SUCCESS.value,
    PaymentStatus.CANCELED.value,
    PaymentStatus.REFUNDED.value,
})


class PaymentMethod(str, enum.Enum):
    MOBILE_MONEY_MTN = "mobile_money_mtn"
    MOBILE_MONEY_AIRTEL = "mobile_money_airtel"
    MOBILE_MONEY_TIGO = "mobile_money_tigo"
    MOBILE_MONEY_VODACOM = "mobile_money_vodacom"
    CARD_VISA = "card_visa"
    CARD_MASTERCARD = "card_mastercard"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class PaymentTransaction(Base):
    """
    One attempt to collect money through a payment provider

    Statuses in TERMINAL_PAYMENT_STATUSES are write-once: use apply_status
    for every status change so that a late callback can never overwrite them.
    """
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    app_id = Column(Integer, ForeignKey("apps.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True, index=True)

    amount = Column(Integer, nullable=False)
    amount_refunded = Column(Integer, default=0, nullable=False)
    currency = Column(String(3), nullable=False)
    provider = Column(String(30), nullable=False)
    payment_method = Column(String(30), nullable=False)
    customer_phone = Column(String(30), nullable=True)

    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)

    # Our merchant reference (txn_{id}, txn_{id}_retry{n})
    reference = Column(String(100), nullable=True, index=True)
    provider_transaction_id = Column(String(200), nullable=True, index=True)
    provider_reference = Column(String(200), nullable=True)

    failure_reason = Column(String(500), nullable=True)
    failure_code = Column(String(50), nullable=True)
    provider_response = Column(JSONType, nullable=True)

    # Retry tracking
    attempt_number = Column(Integer, default=1, nullable=False)
    is_retry = Column(Boolean, default=False, nullable=False)
    original_transaction_id = Column(Integer, ForeignKey("payment_transactions.id"), nullable=True)

    initiated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    invoice = relationship("Invoice")
    subscription = relationship("Subscription")

    __table_args__ = (
        Index("idx_payment_transactions_app_reference", "app_id", "reference"),
        Index("idx_payment_transactions_status_expires", "status", "expires_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    def apply_status(self, new_status: str, when: datetime = None) -> bool:
        """
        Move the transaction to a canonical status

        Returns False when the status is unchanged.

        Raises:
            TerminalStateError: if the transaction already reached a terminal status
        """
        if self.is_terminal:
            raise self._terminal_error(new_status)
        if new_status == self.status:
            return False

        values = {"status": new_status}
        if new_status in TERMINAL_PAYMENT_STATUSES or new_status == PaymentStatus.FAILED.value:
            values["completed_at"] = when or datetime.utcnow()

        # The row may have gone terminal in another transaction since it was loaded
        if not self._guarded_update(PaymentTransaction.status.notin_(TERMINAL_PAYMENT_STATUSES), values):
            raise self._terminal_error(new_status)

        for key, value in values.items():
            setattr(self, key, value)
        return True

    def mark_refunded(self, when: datetime = None):
        """success -> refunded is the only transition allowed out of a terminal status"""
        if self.status != PaymentStatus.SUCCESS.value:
            raise TerminalStateError(
                f"Only successful transactions can be refunded (transaction {self.id} is {self.status})",
                details={"transaction_id": self.id, "status": self.status},
            )

        values = {"status": PaymentStatus.REFUNDED.value, "completed_at": when or datetime.utcnow()}
        if not self._guarded_update(PaymentTransaction.status == PaymentStatus.SUCCESS.value, values):
            raise self._terminal_error(PaymentStatus.REFUNDED.value)

        for key, value in values.items():
            setattr(self, key, value)

    def _guarded_update(self, condition, values: dict) -> bool:
        """
        Write values only while the stored row still satisfies condition

        Returns False (after reloading the stored status) when another
        transaction changed the row first. Rows not yet flushed are not checked.
        """
        session = object_session(self)
        if session is None or self.id is None:
            return True

        result = session.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == self.id, condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.refresh(self, ["status", "completed_at"])
            return False
        return True

    def _terminal_error(self, attempted: str) -> TerminalStateError:
        return TerminalStateError(
            f"Transaction {self.id} is already {self.status}; refusing update to {attempted}",
            details={"transaction_id": self.id, "status": self.status, "attempted": attempted},
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "customer_id": self.customer_id,
            "subscription_id": self.subscription_id,
            "invoice_id": self.invoice_id,
            "amount": self.amount,
            "amount_refunded": self.amount_refunded or 0,
            "currency": self.currency,
            "provider": self.provider,
            "payment_method": self.payment_method,
            "status": self.status,
            "reference": self.reference,
            "provider_transaction_id": self.provider_transaction_id,
            "failure_reason": self.failure_reason,
            "failure_code": self.failure_code,
            "attempt_number": self.attempt_number,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<PaymentTransaction(id={self.id}, reference={self.reference}, status={self.status})>"
