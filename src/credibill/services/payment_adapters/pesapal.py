"""
Pesapal adapter - hosted checkout for cards and mobile money

Pesapal IPN callbacks are unsigned, so authenticity is established by
re-querying the order status with our own OAuth token.
"""
from typing import Optional, List
import json
import logging

from .base import (
    PaymentAdapter,
    PaymentRequest,
    PaymentResponse,
    PaymentStatusResponse,
    WebhookVerification,
    WebhookEvent,
    ConnectionTestResult,
    to_major_units,
    to_minor_units,
    parse_timestamp,
    event_for_status,
)
from .payloads import PesapalIpnPayload, payload_to_dict
from ...exceptions import ProviderError
from ...db.models.payment import PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)


class PesapalAdapter(PaymentAdapter):
    """Pesapal API v3 (consumer key/secret OAuth, IPN re-query)"""

    provider_name = "pesapal"
    display_name = "Pesapal"

    LIVE_URL = "https://pay.pesapal.com/v3"
    SANDBOX_URL = "https://cybqa.pesapal.com/pesapalv3"

    COUNTRY_CODES = {
        "KES": "KE",
        "UGX": "UG",
        "TZS": "TZ",
        "RWF": "RW",
        "USD": "US",
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._access_token: Optional[str] = None

    def get_base_url(self) -> str:
        if self.credentials.api_url:
            return self.credentials.api_url
        return self.LIVE_URL if self.is_live else self.SANDBOX_URL

    def map_status(self, description: Optional[str]) -> str:
        value = (description or "").lower()
        if value in ("completed", "success"):
            return PaymentStatus.SUCCESS.value
        if value in ("failed", "invalid"):
            return PaymentStatus.FAILED.value
        if value == "cancelled":
            return PaymentStatus.CANCELED.value
        if value == "processing":
            return PaymentStatus.PROCESSING.value
        return PaymentStatus.PENDING.value

    def _get_access_token(self) -> str:
        """Request (and cache for this adapter instance) a bearer token"""
        if self._access_token:
            return self._access_token

        result = self._request_json(
            "POST",
            f"{self.get_base_url()}/api/Auth/RequestToken",
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            json={
                "consumer_key": self.credentials.public_key,
                "consumer_secret": self.credentials.secret_key,
            },
        )
        token = result.get("token")
        if not token:
            error = result.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else error
            raise ProviderError(f"Pesapal authentication failed: {message or 'no token returned'}")

        self._access_token = token
        return token

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._get_access_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def initiate_payment(self, request: PaymentRequest) -> PaymentResponse:
        names = (request.customer_name or "").split()
        payload = {
            "id": request.reference,
            "currency": request.currency,
            "amount": float(to_major_units(request.amount)),
            "description": request.description or "CrediBill Payment",
            "callback_url": request.callback_url,
            "notification_id": self.credentials.merchant_id,
            "billing_address": {
                "email_address": request.customer_email,
                "phone_number": request.customer_phone,
                "country_code": self.COUNTRY_CODES.get(request.currency.upper(), "KE"),
                "first_name": names[0] if names else "",
                "last_name": " ".join(names[1:]),
            },
        }

        try:
            result = self._request_json(
                "POST",
                f"{self.get_base_url()}/api/Transactions/SubmitOrderRequest",
                headers=self._headers(),
                json=payload,
            )
        except ProviderError as e:
            return self._failed_response(request, e.message)

        if result.get("error") or not result.get("order_tracking_id"):
            error = result.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else error
            return self._failed_response(request, message or "Order submission failed", result)

        return PaymentResponse(
            success=True,
            reference=request.reference,
            transaction_id=result["order_tracking_id"],
            status=PaymentStatus.INITIATED.value,
            payment_url=result.get("redirect_url"),
            message="Redirect customer to complete payment",
            provider_response=result,
        )

    def get_payment_status(self, transaction_id: str) -> PaymentStatusResponse:
        result = self._request_json(
            "GET",
            f"{self.get_base_url()}/api/Transactions/GetTransactionStatus",
            headers=self._headers(),
            params={"orderTrackingId": transaction_id},
        )
        error = result.get("error")
        if isinstance(error, dict) and error.get("message"):
            raise ProviderError(f"Pesapal status query failed: {error['message']}")

        status = self.map_status(result.get("payment_status_description"))
        return PaymentStatusResponse(
            transaction_id=transaction_id,
            reference=result.get("merchant_reference"),
            status=status,
            amount=to_minor_units(result["amount"]) if result.get("amount") is not None else None,
            currency=result.get("currency"),
            paid_at=parse_timestamp(result.get("created_date")) if status == PaymentStatus.SUCCESS.value else None,
            failure_reason=result.get("description") if status == PaymentStatus.FAILED.value else None,
            provider_response=result,
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str], secret: Optional[str]) -> WebhookVerification:
        """Authenticated re-query of the order named in the IPN"""
        try:
            body = json.loads(payload)
        except ValueError:
            return WebhookVerification(valid=False, error="Payload is not valid JSON")

        tracking_id = body.get("OrderTrackingId") if isinstance(body, dict) else None
        if not tracking_id:
            return WebhookVerification(valid=False, error="Missing OrderTrackingId")

        try:
            confirmed = self.get_payment_status(tracking_id)
        except ProviderError as e:
            return WebhookVerification(valid=False, error=f"Verification query failed: {e.message}")

        merchant_reference = body.get("OrderMerchantReference")
        if merchant_reference and confirmed.reference and merchant_reference != confirmed.reference:
            return WebhookVerification(valid=False, error="Merchant reference mismatch")

        return WebhookVerification(valid=True, confirmed=confirmed)

    def _confirmed_status(self, payload: PesapalIpnPayload, verification: Optional[WebhookVerification]) -> PaymentStatusResponse:
        if verification is not None and verification.confirmed is not None:
            return verification.confirmed
        return self.get_payment_status(payload.OrderTrackingId)

    def parse_webhook(self, payload: PesapalIpnPayload, verification: Optional[WebhookVerification] = None) -> WebhookEvent:
        confirmed = self._confirmed_status(payload, verification)

        return WebhookEvent(
            event=event_for_status(confirmed.status),
            transaction_id=payload.OrderTrackingId,
            reference=payload.OrderMerchantReference or confirmed.reference,
            status=confirmed.status,
            amount=confirmed.amount,
            currency=confirmed.currency,
            paid_at=confirmed.paid_at,
            failure_reason=confirmed.failure_reason,
            metadata={"notification_type": payload.OrderNotificationType},
            raw_payload=payload_to_dict(payload),
        )

    def event_key(self, payload: PesapalIpnPayload, verification: Optional[WebhookVerification] = None) -> str:
        status = verification.confirmed_status if verification else None
        notification_type = payload.OrderNotificationType or "IPNCHANGE"
        return f"pesapal:{payload.OrderTrackingId}:{notification_type}:{status or 'unknown'}"

    def test_connection(self) -> ConnectionTestResult:
        try:
            self._access_token = None
            self._get_access_token()
        except ProviderError as e:
            return ConnectionTestResult(success=False, message=e.message)

        return ConnectionTestResult(
            success=True,
            message="Successfully authenticated with Pesapal",
            details={"environment": self.environment},
        )

    def get_supported_methods(self) -> List[str]:
        return [
            PaymentMethod.CARD_VISA.value,
            PaymentMethod.CARD_MASTERCARD.value,
            PaymentMethod.MOBILE_MONEY_MTN.value,
            PaymentMethod.MOBILE_MONEY_AIRTEL.value,
        ]
