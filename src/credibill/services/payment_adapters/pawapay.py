"""
PawaPay adapter - mobile money deposits (Uganda, Kenya, Tanzania, Rwanda)
"""
from datetime import datetime
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
    hmac_sha256_hex,
    secure_compare,
    event_for_status,
)
from .payloads import PawapayWebhookPayload, payload_to_dict
from ...exceptions import ProviderError
from ...db.models.payment import PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)


class PawapayAdapter(PaymentAdapter):
    """PawaPay deposits API (Bearer token, signed or bearer-shaped callbacks)"""

    provider_name = "pawapay"
    display_name = "PawaPay"

    LIVE_URL = "https://api.pawapay.cloud"
    SANDBOX_URL = "https://api.sandbox.pawapay.cloud"

    STATUS_MAP = {
        "SUBMITTED": PaymentStatus.PENDING.value,
        "ACCEPTED": PaymentStatus.PROCESSING.value,
        "COMPLETED": PaymentStatus.SUCCESS.value,
        "FAILED": PaymentStatus.FAILED.value,
        "REJECTED": PaymentStatus.FAILED.value,
        "CANCELLED": PaymentStatus.CANCELED.value,
    }

    # currency -> network -> correspondent code
    CORRESPONDENTS = {
        "UGX": {"mtn": "MTN_MOMO_UGA", "airtel": "AIRTEL_OAPI_UGA"},
        "KES": {"mtn": "MPESA_LIPA_KEN", "airtel": "AIRTEL_OAPI_KEN"},
        "TZS": {"mtn": "TIGO_PESA_TZA", "airtel": "AIRTEL_OAPI_TZA", "vodacom": "VODACOM_MPESA_TZA"},
        "RWF": {"mtn": "MTN_MOMO_RWA", "airtel": "AIRTEL_OAPI_RWA"},
    }
    DEFAULT_CORRESPONDENT = "MTN_MOMO_UGA"

    def get_base_url(self) -> str:
        if self.credentials.api_url:
            return self.credentials.api_url
        return self.LIVE_URL if self.is_live else self.SANDBOX_URL

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.credentials.secret_key}",
            "Content-Type": "application/json",
        }

    def map_status(self, status: Optional[str]) -> str:
        return self.STATUS_MAP.get((status or "").upper(), PaymentStatus.PENDING.value)

    def get_correspondent(self, payment_method: str, currency: str) -> str:
        network = payment_method.replace("mobile_money_", "")
        return self.CORRESPONDENTS.get(currency.upper(), {}).get(network, self.DEFAULT_CORRESPONDENT)

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """MSISDN without spaces, dashes or leading plus"""
        return phone.replace(" ", "").replace("-", "").lstrip("+")

    def initiate_payment(self, request: PaymentRequest) -> PaymentResponse:
        if not request.payment_method.startswith("mobile_money"):
            return self._failed_response(request, "PawaPay only supports mobile money payments")
        if not request.customer_phone:
            return self._failed_response(request, "Phone number is required for mobile money payments")

        payload = {
            "depositId": request.reference,
            "amount": str(to_major_units(request.amount)),
            "currency": request.currency,
            "correspondent": self.get_correspondent(request.payment_method, request.currency),
            "payer": {
                "type": "MSISDN",
                "address": {"value": self.normalize_phone(request.customer_phone)},
            },
            "customerTimestamp": datetime.utcnow().isoformat() + "Z",
            "statementDescription": (request.description or "CrediBill Payment")[:22],
            "metadata": [
                {"fieldName": key, "fieldValue": str(value)}
                for key, value in (request.metadata or {}).items()
            ],
        }

        try:
            result = self._request_json("POST", f"{self.get_base_url()}/deposits", headers=self._headers(), json=payload)
        except ProviderError as e:
            return self._failed_response(request, e.message)

        status = (result.get("status") or "").upper()
        if status not in ("ACCEPTED", "SUBMITTED", "COMPLETED"):
            rejection = result.get("rejectionReason") or {}
            error = rejection.get("rejectionMessage") or rejection.get("rejectionCode") or f"Deposit {status or 'rejected'}"
            return self._failed_response(request, error, result)

        return PaymentResponse(
            success=True,
            reference=request.reference,
            transaction_id=result.get("depositId") or request.reference,
            status=self.map_status(status),
            message="Deposit accepted, awaiting customer approval",
            provider_response=result,
        )

    def get_payment_status(self, transaction_id: str) -> PaymentStatusResponse:
        result = self._request_json("GET", f"{self.get_base_url()}/deposits/{transaction_id}", headers=self._headers())

        # The deposits endpoint returns a list of matches
        deposit = result[0] if isinstance(result, list) and result else result
        if not deposit or not isinstance(deposit, dict):
            raise ProviderError(f"PawaPay deposit {transaction_id} not found")

        status = self.map_status(deposit.get("status"))
        failure = deposit.get("failureReason") or {}
        return PaymentStatusResponse(
            transaction_id=deposit.get("depositId", transaction_id),
            reference=deposit.get("depositId", transaction_id),
            status=status,
            amount=to_minor_units(deposit["amount"]) if deposit.get("amount") is not None else None,
            currency=deposit.get("currency"),
            paid_at=parse_timestamp(deposit.get("created")) if status == PaymentStatus.SUCCESS.value else None,
            failure_reason=failure.get("failureMessage"),
            provider_response=deposit,
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str], secret: Optional[str]) -> WebhookVerification:
        """Callback must carry depositId and status, signed by HMAC or bearing the shared secret"""
        try:
            body = json.loads(payload)
        except ValueError:
            return WebhookVerification(valid=False, error="Payload is not valid JSON")

        if not isinstance(body, dict) or not body.get("depositId") or not body.get("status"):
            return WebhookVerification(valid=False, error="Missing depositId or status")
        if not secret:
            return WebhookVerification(valid=False, error="Webhook secret not configured")
        if not signature:
            return WebhookVerification(valid=False, error="Missing signature")

        if secure_compare(signature, f"Bearer {secret}"):
            return WebhookVerification(valid=True)

        candidate = signature[len("sha256="):] if signature.startswith("sha256=") else signature
        if secure_compare(candidate, hmac_sha256_hex(secret, payload)):
            return WebhookVerification(valid=True)

        return WebhookVerification(valid=False, error="Invalid signature")

    def parse_webhook(self, payload: PawapayWebhookPayload, verification: Optional[WebhookVerification] = None) -> WebhookEvent:
        status = self.map_status(payload.status)
        failure = payload.failureReason or {}
        metadata = payload.metadata if isinstance(payload.metadata, dict) else {}

        return WebhookEvent(
            event=event_for_status(status),
            transaction_id=payload.depositId,
            reference=payload.depositId,
            status=status,
            amount=to_minor_units(payload.amount) if payload.amount is not None else None,
            currency=payload.currency,
            paid_at=parse_timestamp(payload.created) if status == PaymentStatus.SUCCESS.value else None,
            failure_reason=failure.get("failureMessage"),
            failure_code=failure.get("failureCode"),
            metadata=metadata,
            raw_payload=payload_to_dict(payload),
        )

    def event_key(self, payload: PawapayWebhookPayload, verification: Optional[WebhookVerification] = None) -> str:
        return f"pawapay:{payload.depositId}:{(payload.status or '').upper()}"

    def test_connection(self) -> ConnectionTestResult:
        try:
            result = self._request_json("GET", f"{self.get_base_url()}/active-conf", headers=self._headers())
        except ProviderError as e:
            return ConnectionTestResult(success=False, message=e.message)

        correspondents = []
        if isinstance(result, dict):
            for country in result.get("countries") or []:
                correspondents.extend(c.get("correspondent") for c in country.get("correspondents") or [])

        return ConnectionTestResult(
            success=True,
            message="Successfully connected to PawaPay",
            details={"environment": self.environment, "correspondents": correspondents},
        )

    def get_supported_methods(self) -> List[str]:
        return [
            PaymentMethod.MOBILE_MONEY_MTN.value,
            PaymentMethod.MOBILE_MONEY_AIRTEL.value,
            PaymentMethod.MOBILE_MONEY_TIGO.value,
            PaymentMethod.MOBILE_MONEY_VODACOM.value,
        ]
