"""
Flutterwave adapter - cards and mobile money across East and West Africa
"""
from typing import Optional, List
import logging

from .base import (
    PaymentAdapter,
    PaymentRequest,
    PaymentResponse,
    PaymentStatusResponse,
    WebhookVerification,
    WebhookEvent,
    ConnectionTestResult,
    RefundResult,
    to_major_units,
    to_minor_units,
    parse_timestamp,
    hmac_sha256_hex,
    secure_compare,
    event_for_status,
)
from .payloads import FlutterwaveWebhookPayload, payload_to_dict
from ...exceptions import ProviderError
from ...db.models.payment import PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)


class FlutterwaveAdapter(PaymentAdapter):
    """Flutterwave v3 API (Bearer secret key, verif-hash webhooks)"""

    provider_name = "flutterwave"
    display_name = "Flutterwave"

    BASE_URL = "https://api.flutterwave.com/v3"

    STATUS_MAP = {
        "successful": PaymentStatus.SUCCESS.value,
        "success": PaymentStatus.SUCCESS.value,
        "pending": PaymentStatus.PENDING.value,
        "failed": PaymentStatus.FAILED.value,
        "cancelled": PaymentStatus.CANCELED.value,
        "refunded": PaymentStatus.REFUNDED.value,
    }

    NETWORKS = {
        PaymentMethod.MOBILE_MONEY_MTN.value: "MTN",
        PaymentMethod.MOBILE_MONEY_AIRTEL.value: "AIRTEL",
        PaymentMethod.MOBILE_MONEY_TIGO.value: "TIGO",
        PaymentMethod.MOBILE_MONEY_VODACOM.value: "VODAFONE",
    }

    def get_base_url(self) -> str:
        return self.credentials.api_url or self.BASE_URL

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.credentials.secret_key}",
            "Content-Type": "application/json",
        }

    def map_status(self, status: Optional[str]) -> str:
        return self.STATUS_MAP.get((status or "").lower(), PaymentStatus.PENDING.value)

    def initiate_payment(self, request: PaymentRequest) -> PaymentResponse:
        is_mobile_money = request.payment_method in self.NETWORKS

        payload = {
            "tx_ref": request.reference,
            "amount": float(to_major_units(request.amount)),
            "currency": request.currency,
            "email": request.customer_email,
            "phone_number": request.customer_phone,
            "fullname": request.customer_name,
            "redirect_url": request.callback_url,
            "meta": request.metadata,
        }

        if is_mobile_money:
            charge_type = "mobile_money_uganda"
            payload["network"] = self.NETWORKS[request.payment_method]
        else:
            charge_type = "card"
            payload["customer"] = {
                "email": request.customer_email,
                "phonenumber": request.customer_phone,
                "name": request.customer_name,
            }
            payload["customizations"] = {
                "title": "CrediBill Payment",
                "description": request.description,
            }

        try:
            result = self._request_json(
                "POST",
                f"{self.get_base_url()}/charges",
                headers=self._headers(),
                params={"type": charge_type},
                json=payload,
            )
        except ProviderError as e:
            return self._failed_response(request, e.message)

        if result.get("status") != "success":
            return self._failed_response(request, result.get("message") or "Payment initiation failed", result)

        charge = result.get("data") or {}
        authorization = (result.get("meta") or {}).get("authorization") or {}
        transaction_id = charge.get("id")

        return PaymentResponse(
            success=True,
            reference=request.reference,
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            status=self.map_status(charge.get("status")),
            payment_url=charge.get("link") or authorization.get("redirect"),
            message=result.get("message"),
            provider_response=result,
        )

    def get_payment_status(self, transaction_id: str) -> PaymentStatusResponse:
        result = self._request_json(
            "GET",
            f"{self.get_base_url()}/transactions/{transaction_id}/verify",
            headers=self._headers(),
        )
        if result.get("status") != "success":
            raise ProviderError(f"Flutterwave verification failed: {result.get('message')}")

        data = result.get("data") or {}
        status = self.map_status(data.get("status"))
        return PaymentStatusResponse(
            transaction_id=str(data.get("id", transaction_id)),
            reference=data.get("tx_ref"),
            status=status,
            amount=to_minor_units(data["amount"]) if data.get("amount") is not None else None,
            currency=data.get("currency"),
            paid_at=parse_timestamp(data.get("created_at")) if status == PaymentStatus.SUCCESS.value else None,
            failure_reason=data.get("processor_response") if status == PaymentStatus.FAILED.value else None,
            provider_response=result,
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str], secret: Optional[str]) -> WebhookVerification:
        """verif-hash header carries the configured secret hash (or an HMAC of the body)"""
        if not secret:
            return WebhookVerification(valid=False, error="Webhook secret not configured")
        if not signature:
            return WebhookVerification(valid=False, error="Missing verif-hash signature")

        if secure_compare(signature, secret):
            return WebhookVerification(valid=True)
        if secure_compare(signature, hmac_sha256_hex(secret, payload)):
            return WebhookVerification(valid=True)

        return WebhookVerification(valid=False, error="Invalid signature")

    def parse_webhook(self, payload: FlutterwaveWebhookPayload, verification: Optional[WebhookVerification] = None) -> WebhookEvent:
        data = payload.data
        status = self.map_status(data.status)
        transaction_id = data.id if data.id is not None else data.flw_ref

        return WebhookEvent(
            event=event_for_status(status),
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            reference=data.tx_ref,
            status=status,
            amount=to_minor_units(data.amount) if data.amount is not None else None,
            currency=data.currency,
            paid_at=parse_timestamp(data.created_at) if status == PaymentStatus.SUCCESS.value else None,
            failure_reason=data.processor_response if status in (PaymentStatus.FAILED.value, PaymentStatus.CANCELED.value) else None,
            metadata=data.meta or {},
            raw_payload=payload_to_dict(payload),
        )

    def event_key(self, payload: FlutterwaveWebhookPayload, verification: Optional[WebhookVerification] = None) -> str:
        data = payload.data
        identifier = data.id if data.id is not None else (data.flw_ref or data.tx_ref)
        return f"flutterwave:{identifier}:{(data.status or '').lower()}"

    def refund_payment(self, transaction_id: str, amount: Optional[int] = None, reason: Optional[str] = None) -> RefundResult:
        body = {"comments": reason or "Refund requested"}
        if amount is not None:
            body["amount"] = float(to_major_units(amount))

        try:
            result = self._request_json(
                "POST",
                f"{self.get_base_url()}/transactions/{transaction_id}/refund",
                headers=self._headers(),
                json=body,
            )
        except ProviderError as e:
            return RefundResult(success=False, error=e.message)

        if result.get("status") != "success":
            return RefundResult(success=False, error=result.get("message") or "Refund failed")

        refund_id = (result.get("data") or {}).get("id")
        return RefundResult(success=True, refund_id=str(refund_id) if refund_id is not None else None)

    def test_connection(self) -> ConnectionTestResult:
        try:
            result = self._request_json("GET", f"{self.get_base_url()}/balances", headers=self._headers())
        except ProviderError as e:
            return ConnectionTestResult(success=False, message=e.message)

        if result.get("status") == "success":
            return ConnectionTestResult(
                success=True,
                message="Successfully connected to Flutterwave",
                details={"environment": self.environment},
            )
        return ConnectionTestResult(success=False, message=result.get("message") or "Connection failed")

    def get_supported_methods(self) -> List[str]:
        return [
            PaymentMethod.MOBILE_MONEY_MTN.value,
            PaymentMethod.MOBILE_MONEY_AIRTEL.value,
            PaymentMethod.MOBILE_MONEY_TIGO.value,
            PaymentMethod.MOBILE_MONEY_VODACOM.value,
            PaymentMethod.CARD_VISA.value,
            PaymentMethod.CARD_MASTERCARD.value,
        ]
