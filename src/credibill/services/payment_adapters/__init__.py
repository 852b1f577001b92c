"""
Payment provider adapters
"""
from .base import (
    PaymentAdapter,
    ProviderCredentials,
    PaymentRequest,
    PaymentResponse,
    PaymentStatusResponse,
    WebhookVerification,
    WebhookEvent,
    ConnectionTestResult,
    RefundResult,
    to_major_units,
    to_minor_units,
)
from .payloads import load_webhook_payload
from .factory import get_payment_adapter, list_supported_providers, PROVIDER_CATALOG

__all__ = [
    "PaymentAdapter",
    "ProviderCredentials",
    "PaymentRequest",
    "PaymentResponse",
    "PaymentStatusResponse",
    "WebhookVerification",
    "WebhookEvent",
    "ConnectionTestResult",
    "RefundResult",
    "to_major_units",
    "to_minor_units",
    "load_webhook_payload",
    "get_payment_adapter",
    "list_supported_providers",
    "PROVIDER_CATALOG",
]
