"""
Payment adapter factory and provider catalog
"""
from typing import Optional, List, Dict, Any
import logging

import httpx

from .base import PaymentAdapter, ProviderCredentials
from .flutterwave import FlutterwaveAdapter
from .pawapay import PawapayAdapter
from .pesapal import PesapalAdapter
from .dpo import DpoAdapter

logger = logging.getLogger(__name__)


ADAPTERS = {
    "flutterwave": FlutterwaveAdapter,
    "pawapay": PawapayAdapter,
    "pesapal": PesapalAdapter,
    "dpo": DpoAdapter,
}

PROVIDER_CATALOG: List[Dict[str, Any]] = [
    {
        "id": "flutterwave",
        "name": "Flutterwave",
        "description": "Cards and mobile money across Africa",
        "regions": ["UG", "KE", "TZ", "RW", "GH", "NG"],
        "verification": "verif-hash header",
    },
    {
        "id": "pawapay",
        "name": "PawaPay",
        "description": "Mobile money collections",
        "regions": ["UG", "KE", "TZ", "RW"],
        "verification": "signed callback",
    },
    {
        "id": "pesapal",
        "name": "Pesapal",
        "description": "Hosted checkout for cards and mobile money",
        "regions": ["KE", "UG", "TZ", "RW"],
        "verification": "IPN re-query",
    },
    {
        "id": "dpo",
        "name": "DPO Pay",
        "description": "Hosted card and mobile payments",
        "regions": ["KE", "UG", "TZ", "RW", "ZA"],
        "verification": "verifyToken re-query",
    },
]


def get_payment_adapter(
    provider: str,
    credentials: ProviderCredentials,
    environment: str = "test",
    http_client: Optional[httpx.Client] = None
) -> PaymentAdapter:
    """
    Get adapter instance for a provider

    Raises:
        ValueError: if the provider is not supported
    """
    adapter_class = ADAPTERS.get(provider)
    if adapter_class is None:
        raise ValueError(f"Unsupported payment provider: {provider}")
    return adapter_class(credentials, environment=environment, http_client=http_client)


def list_supported_providers() -> List[Dict[str, Any]]:
    """Provider catalog with each provider's supported payment methods"""
    catalog = []
    for entry in PROVIDER_CATALOG:
        adapter = ADAPTERS[entry["id"]](ProviderCredentials(secret_key=""))
        catalog.append({**entry, "supported_methods": adapter.get_supported_methods()})
    return catalog
