"""
Database module for the CrediBill billing engine
"""
from .engine import SessionLocal, get_db
from .base import Base
from .models import (
    App,
    Customer,
    Plan,
    Subscription,
    Invoice,
    InvoiceCounter,
    PaymentTransaction,
    WebhookLog,
    WebhookDelivery,
    UsageEvent,
    PaymentProviderCredential,
)

__all__ = [
    "SessionLocal",
    "get_db",
    "Base",
    "App",
    "Customer",
    "Plan",
    "Subscription",
    "Invoice",
    "InvoiceCounter",
    "PaymentTransaction",
    "WebhookLog",
    "WebhookDelivery",
    "UsageEvent",
    "PaymentProviderCredential",
]
