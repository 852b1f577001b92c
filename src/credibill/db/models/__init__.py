"""
Database models for the CrediBill billing engine
"""
from .app import App, AppStatus, AppEnvironment
from .customer import Customer
from .plan import Plan, PricingModel, BillingInterval, PlanStatus
from .subscription import (
    Subscription,
    SubscriptionStatus,
    TERMINAL_SUBSCRIPTION_STATUSES,
    LIVE_SUBSCRIPTION_STATUSES,
)
from .invoice import Invoice, InvoiceCounter, InvoiceStatus, LineItemType
from .payment import PaymentTransaction, PaymentStatus, PaymentMethod, TERMINAL_PAYMENT_STATUSES
from .webhook import WebhookLog, WebhookLogStatus, WebhookDelivery, DeliveryStatus
from .usage import UsageEvent
from .credentials import PaymentProviderCredential

__all__ = [
    "App",
    "AppStatus",
    "AppEnvironment",
    "Customer",
    "Plan",
    "PricingModel",
    "BillingInterval",
    "PlanStatus",
    "Subscription",
    "SubscriptionStatus",
    "TERMINAL_SUBSCRIPTION_STATUSES",
    "LIVE_SUBSCRIPTION_STATUSES",
    "Invoice",
    "InvoiceCounter",
    "InvoiceStatus",
    "LineItemType",
    "PaymentTransaction",
    "PaymentStatus",
    "PaymentMethod",
    "TERMINAL_PAYMENT_STATUSES",
    "WebhookLog",
    "WebhookLogStatus",
    "WebhookDelivery",
    "DeliveryStatus",
    "UsageEvent",
    "PaymentProviderCredential",
]
