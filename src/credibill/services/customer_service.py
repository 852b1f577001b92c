"""
Customer Service
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..exceptions import AuthorizationError, BillingValidationError, NotFoundError
from ..db.models import Customer
from .cleanup_service import CleanupService
from .webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("email", "first_name", "last_name", "phone", "external_customer_id", "status", "extra_metadata")


def normalize_email(email: Optional[str]) -> str:
    email = (email or "").strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise BillingValidationError(f"Invalid email address: {email or '(empty)'}")
    return email


class CustomerService:
    """Service for managing an app's customers"""

    def __init__(self, db: Session, dispatcher: Optional[WebhookDispatcher] = None):
        self.db = db
        self.dispatcher = dispatcher or WebhookDispatcher(db)

    def get_customer(self, app_id: int, customer_id: int) -> Customer:
        customer = self.db.query(Customer).filter(Customer.id == customer_id).first()
        if not customer:
            raise NotFoundError(f"Customer {customer_id} not found")
        if customer.app_id != app_id:
            raise AuthorizationError("API key cannot access this customer")
        return customer

    def _ensure_email_available(self, app_id: int, email: str, exclude_id: Optional[int] = None):
        query = self.db.query(Customer).filter(Customer.app_id == app_id, Customer.email == email)
        if exclude_id is not None:
            query = query.filter(Customer.id != exclude_id)
        if query.first():
            raise BillingValidationError(f"A customer with email {email} already exists")

    def list_customers(self, app_id: int, limit: int = 50, offset: int = 0) -> List[Customer]:
        return self.db.query(Customer).filter(
            Customer.app_id == app_id
        ).order_by(Customer.created_at.desc()).offset(offset).limit(limit).all()

    def create_customer(
        self,
        app_id: int,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        external_customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Customer:
        email = normalize_email(email)
        self._ensure_email_available(app_id, email)

        customer = Customer(
            app_id=app_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            external_customer_id=external_customer_id,
            status="active",
            extra_metadata=metadata,
        )
        self.db.add(customer)
        self.db.flush()

        logger.info(f"Created customer {customer.id} for app {app_id}")
        self.dispatcher.enqueue(app_id, "customer.created", {"customer": customer.to_dict()})
        return customer

    def update_customer(self, app_id: int, customer_id: int, **updates) -> Customer:
        """
        Update customer fields

        Emits customer.updated with the old and new value of every changed field.
        """
        customer = self.get_customer(app_id, customer_id)

        unknown = set(updates) - set(UPDATABLE_FIELDS)
        if unknown:
            raise BillingValidationError(f"Cannot update customer field(s): {', '.join(sorted(unknown))}")

        if "email" in updates:
            updates["email"] = normalize_email(updates["email"])
            self._ensure_email_available(app_id, updates["email"], exclude_id=customer.id)

        changes = {}
        for field, value in updates.items():
            old = getattr(customer, field)
            if old != value:
                changes[field] = {"old": old, "new": value}
                setattr(customer, field, value)

        if not changes:
            return customer

        self.db.flush()
        logger.info(f"Updated customer {customer.id}: {', '.join(changes)}")
        self.dispatcher.enqueue(app_id, "customer.updated", {"customer": customer.to_dict(), "changes": changes})
        return customer

    def delete_customer(self, app_id: int, customer_id: int, force: bool = False) -> Dict[str, int]:
        customer = self.get_customer(app_id, customer_id)
        snapshot = customer.to_dict()

        counts = CleanupService(self.db).delete_customer(customer, force=force)
        self.dispatcher.enqueue(app_id, "customer.deleted", {"customer": snapshot, "deleted_records": counts})
        return counts


def get_customer_service(db: Session) -> CustomerService:
    return CustomerService(db)
