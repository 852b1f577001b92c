"""
DPO Group adapter - XML API3G hosted payment page

Callbacks are authenticated by re-querying the transaction token with our
company token (verifyToken).
"""
from datetime import datetime
from typing import Optional, List, Dict
import xml.etree.ElementTree as ET
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
    event_for_status,
)
from .payloads import DpoCallbackPayload, decode_body, payload_to_dict
from ...exceptions import ProviderError, BillingValidationError
from ...db.models.payment import PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)


class DpoAdapter(PaymentAdapter):
    """DPO Pay (3G Direct Pay) createToken / verifyToken"""

    provider_name = "dpo"
    display_name = "DPO"

    BASE_URL = "https://secure.3gdirectpay.com"
    DEFAULT_SERVICE_TYPE = "3854"

    RESULT_OK = "000"
    # Duplicate company reference: credentials were accepted
    RESULT_DUPLICATE_REF = "901"

    APPROVAL_MAP = {
        "1": PaymentStatus.SUCCESS.value,
        "0": PaymentStatus.FAILED.value,
        "2": PaymentStatus.CANCELED.value,
    }

    def get_base_url(self) -> str:
        return self.credentials.api_url or self.BASE_URL

    def _service_type(self) -> str:
        return self.credentials.merchant_id or self.DEFAULT_SERVICE_TYPE

    def _build_xml(self, request_type: str, sections: Dict) -> bytes:
        root = ET.Element("API3G")
        ET.SubElement(root, "CompanyToken").text = self.credentials.secret_key
        ET.SubElement(root, "Request").text = request_type
        self._append(root, sections)
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)

    def _append(self, parent: ET.Element, values: Dict):
        for tag, value in values.items():
            child = ET.SubElement(parent, tag)
            if isinstance(value, dict):
                self._append(child, value)
            elif value is not None:
                child.text = str(value)

    def _post_xml(self, request_type: str, sections: Dict) -> Dict[str, str]:
        response = self._make_request(
            "POST",
            f"{self.get_base_url()}/payv2.php",
            headers={"Content-Type": "application/xml"},
            params={"ID": request_type},
            content=self._build_xml(request_type, sections),
        )
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as e:
            raise ProviderError(f"DPO returned malformed XML: {e}") from e
        return {child.tag: (child.text or "").strip() for child in root}

    def initiate_payment(self, request: PaymentRequest) -> PaymentResponse:
        names = (request.customer_name or "").split()
        sections = {
            "Transaction": {
                "PaymentAmount": to_major_units(request.amount),
                "PaymentCurrency": request.currency,
                "CompanyRef": request.reference,
                "RedirectURL": request.callback_url,
                "BackURL": request.callback_url,
                "CompanyRefUnique": "0",
                "PTL": "24",
                "customerEmail": request.customer_email,
                "customerFirstName": names[0] if names else None,
                "customerLastName": " ".join(names[1:]) or None,
                "customerPhone": request.customer_phone,
            },
            "Services": {
                "Service": {
                    "ServiceType": self._service_type(),
                    "ServiceDescription": request.description or "CrediBill Payment",
                    "ServiceDate": datetime.utcnow().strftime("%Y/%m/%d %H:%M"),
                },
            },
        }

        try:
            result = self._post_xml("createToken", sections)
        except ProviderError as e:
            return self._failed_response(request, e.message)

        if result.get("Result") != self.RESULT_OK or not result.get("TransToken"):
            return self._failed_response(request, result.get("ResultExplanation") or "Token creation failed", result)

        token = result["TransToken"]
        return PaymentResponse(
            success=True,
            reference=request.reference,
            transaction_id=token,
            status=PaymentStatus.INITIATED.value,
            payment_url=f"{self.get_base_url()}/payv2.php?ID={token}",
            message=result.get("ResultExplanation"),
            provider_response=result,
        )

    def get_payment_status(self, transaction_id: str) -> PaymentStatusResponse:
        result = self._post_xml("verifyToken", {"TransactionToken": transaction_id})

        status = self.APPROVAL_MAP.get(result.get("TransactionApproval", ""), PaymentStatus.PENDING.value)
        amount = result.get("TransactionAmount")

        return PaymentStatusResponse(
            transaction_id=transaction_id,
            reference=result.get("CompanyRef") or None,
            status=status,
            amount=to_minor_units(amount) if amount else None,
            currency=result.get("TransactionCurrency") or None,
            paid_at=datetime.utcnow() if status == PaymentStatus.SUCCESS.value else None,
            failure_reason=result.get("ResultExplanation") if status != PaymentStatus.SUCCESS.value else None,
            provider_response=result,
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str], secret: Optional[str]) -> WebhookVerification:
        """Authenticated verifyToken re-query; CompanyRef must match when present"""
        try:
            body = DpoCallbackPayload.model_validate(decode_body(self.provider_name, payload))
        except (BillingValidationError, ValueError):
            return WebhookVerification(valid=False, error="Payload could not be decoded")

        if not body.transaction_token:
            return WebhookVerification(valid=False, error="Missing TransactionToken")

        try:
            confirmed = self.get_payment_status(body.transaction_token)
        except ProviderError as e:
            return WebhookVerification(valid=False, error=f"Verification query failed: {e.message}")

        if body.company_ref and confirmed.reference and body.company_ref != confirmed.reference:
            return WebhookVerification(valid=False, error="CompanyRef mismatch")

        return WebhookVerification(valid=True, confirmed=confirmed)

    def parse_webhook(self, payload: DpoCallbackPayload, verification: Optional[WebhookVerification] = None) -> WebhookEvent:
        if verification is not None and verification.confirmed is not None:
            confirmed = verification.confirmed
        else:
            confirmed = self.get_payment_status(payload.transaction_token)

        return WebhookEvent(
            event=event_for_status(confirmed.status),
            transaction_id=payload.transaction_token,
            reference=payload.company_ref or confirmed.reference,
            status=confirmed.status,
            amount=confirmed.amount,
            currency=confirmed.currency,
            paid_at=confirmed.paid_at,
            failure_reason=confirmed.failure_reason,
            raw_payload=payload_to_dict(payload),
        )

    def event_key(self, payload: DpoCallbackPayload, verification: Optional[WebhookVerification] = None) -> str:
        status = verification.confirmed_status if verification else None
        return f"dpo:{payload.transaction_token}:{status or 'unknown'}"

    def test_connection(self) -> ConnectionTestResult:
        reference = f"conn_test_{int(datetime.utcnow().timestamp())}"
        try:
            result = self._post_xml("createToken", {
                "Transaction": {
                    "PaymentAmount": to_major_units(100),
                    "PaymentCurrency": "USD",
                    "CompanyRef": reference,
                    "PTL": "1",
                },
                "Services": {
                    "Service": {
                        "ServiceType": self._service_type(),
                        "ServiceDescription": "Connection test",
                        "ServiceDate": datetime.utcnow().strftime("%Y/%m/%d %H:%M"),
                    },
                },
            })
        except ProviderError as e:
            return ConnectionTestResult(success=False, message=e.message)

        if result.get("Result") in (self.RESULT_OK, self.RESULT_DUPLICATE_REF):
            return ConnectionTestResult(
                success=True,
                message="Successfully connected to DPO",
                details={"environment": self.environment, "result": result.get("Result")},
            )
        return ConnectionTestResult(
            success=False,
            message=result.get("ResultExplanation") or "Connection failed",
            details={"result": result.get("Result")},
        )

    def get_supported_methods(self) -> List[str]:
        return [
            PaymentMethod.CARD_VISA.value,
            PaymentMethod.CARD_MASTERCARD.value,
            PaymentMethod.MOBILE_MONEY_MTN.value,
            PaymentMethod.MOBILE_MONEY_AIRTEL.value,
        ]
