"""
Payment Adapter - Abstract interface for payment providers

Every adapter maps its provider's status vocabulary and verification scheme
onto one canonical contract. Amounts cross this boundary as integers in the
smallest currency unit; adapters convert to the provider's major-unit
representation internally.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List
import hashlib
import hmac
import logging

import httpx

from ...config import config
from ...exceptions import ProviderError
from ...db.models.payment import PaymentStatus

logger = logging.getLogger(__name__)


# Canonical status -> canonical webhook event name
STATUS_EVENTS = {
    PaymentStatus.SUCCESS.value: "payment.success",
    PaymentStatus.FAILED.value: "payment.failed",
    PaymentStatus.CANCELED.value: "payment.canceled",
    PaymentStatus.REFUNDED.value: "payment.refunded",
    PaymentStatus.PENDING.value: "payment.pending",
    PaymentStatus.INITIATED.value: "payment.pending",
    PaymentStatus.PROCESSING.value: "payment.pending",
}


@dataclass
class ProviderCredentials:
    """Decrypted credential bundle handed to an adapter"""
    secret_key: str
    public_key: Optional[str] = None
    merchant_id: Optional[str] = None
    api_url: Optional[str] = None
    webhook_secret: Optional[str] = None


@dataclass
class PaymentRequest:
    amount: int
    currency: str
    reference: str
    customer_email: str
    payment_method: str
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None
    description: Optional[str] = None
    callback_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentResponse:
    success: bool
    reference: str
    status: str
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class PaymentStatusResponse:
    transaction_id: str
    status: str
    reference: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class WebhookVerification:
    """
    Result of verifying an inbound callback

    Invalid results always carry an error string. Re-query providers attach
    the status they confirmed so parsing does not query twice.
    """
    valid: bool
    error: Optional[str] = None
    confirmed: Optional[PaymentStatusResponse] = None

    @property
    def confirmed_status(self) -> Optional[str]:
        return self.confirmed.status if self.confirmed else None


@dataclass
class WebhookEvent:
    """Canonical event produced from any provider callback"""
    event: str
    transaction_id: Optional[str]
    reference: Optional[str]
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_payload: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["paid_at"] = self.paid_at.isoformat() if self.paid_at else None
        data.pop("raw_payload", None)
        return data


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    details: Optional[Dict[str, Any]] = None


@dataclass
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    error: Optional[str] = None


def to_major_units(amount: int) -> Decimal:
    """Convert smallest-unit integer to a 2-decimal major-unit amount"""
    return (Decimal(amount) / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """Convert a provider major-unit amount (str, int, float, Decimal) to smallest units"""
    value = Decimal(str(amount)) * Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 provider timestamp into naive UTC"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable provider timestamp: {value}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def hmac_sha256_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def secure_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def event_for_status(status: str) -> str:
    return STATUS_EVENTS.get(status, "payment.pending")


class PaymentAdapter(ABC):
    """Abstract base class for payment provider adapters"""

    provider_name: str = ""
    display_name: str = ""

    def __init__(
        self,
        credentials: ProviderCredentials,
        environment: str = "test",
        http_client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None
    ):
        """
        Initialize adapter

        Args:
            credentials: Decrypted provider credentials
            environment: "test" or "live"
            http_client: Optional preconfigured httpx client (tests inject a MockTransport)
            timeout: Per-request timeout in seconds
        """
        self.credentials = credentials
        self.environment = environment
        self.http_client = http_client
        self.timeout = timeout if timeout is not None else config.PROVIDER_HTTP_TIMEOUT

    @property
    def is_live(self) -> bool:
        return self.environment == "live"

    @abstractmethod
    def get_base_url(self) -> str:
        """Provider API base URL for the configured environment"""
        pass

    @abstractmethod
    def initiate_payment(self, request: PaymentRequest) -> PaymentResponse:
        """Start a collection. Provider failures are returned, not raised."""
        pass

    @abstractmethod
    def get_payment_status(self, transaction_id: str) -> PaymentStatusResponse:
        """Query the provider for a transaction's current canonical status"""
        pass

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str], secret: Optional[str]) -> WebhookVerification:
        """Check authenticity of a callback. Never raises for a bad signature."""
        pass

    @abstractmethod
    def parse_webhook(self, payload, verification: Optional[WebhookVerification] = None) -> WebhookEvent:
        """Parse this provider's typed payload into the canonical event"""
        pass

    @abstractmethod
    def event_key(self, payload, verification: Optional[WebhookVerification] = None) -> str:
        """Dedup key for a callback: provider id plus the status it reports"""
        pass

    @abstractmethod
    def test_connection(self) -> ConnectionTestResult:
        pass

    @abstractmethod
    def get_supported_methods(self) -> List[str]:
        pass

    def refund_payment(self, transaction_id: str, amount: Optional[int] = None, reason: Optional[str] = None) -> RefundResult:
        """Refunds are optional; providers that support them override this"""
        return RefundResult(success=False, error=f"{self.display_name} does not support refunds")

    def _make_request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> httpx.Response:
        """Make HTTP request to the provider API, raising ProviderError on failure"""
        try:
            if self.http_client is not None:
                response = self.http_client.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            else:
                response = httpx.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{self.display_name} API request failed: {e}")
            raise ProviderError(f"{self.display_name} request failed: {e}") from e

        if response.is_error:
            message = self._error_message(response)
            logger.error(f"{self.display_name} API error {response.status_code}: {message}")
            raise ProviderError(
                f"{self.display_name} API error ({response.status_code}): {message}",
                details={"status_code": response.status_code},
            )
        return response

    def _request_json(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> Any:
        response = self._make_request(method, url, headers=headers, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"{self.display_name} returned invalid JSON") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                return str(error.get("message") or error)
            return str(body.get("message") or body.get("errorMessage") or error or body)
        return str(body)[:200]

    def _failed_response(self, request: PaymentRequest, error: str, provider_response: Optional[Dict[str, Any]] = None) -> PaymentResponse:
        logger.warning(f"{self.display_name} payment {request.reference} failed to initiate: {error}")
        return PaymentResponse(
            success=False,
            reference=request.reference,
            status=PaymentStatus.FAILED.value,
            error=error,
            provider_response=provider_response,
        )
