"""
Typed inbound webhook payloads, one variant per provider

load_webhook_payload tags the decoded body with its provider and validates
it into the matching variant, so untyped dicts never reach an adapter.
"""
import json
import xml.etree.ElementTree as ET
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from ...exceptions import BillingValidationError


class FlutterwaveChargeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[Union[int, str]] = None
    tx_ref: Optional[str] = None
    flw_ref: Optional[str] = None
    amount: Optional[Union[int, float, str]] = None
    currency: Optional[str] = None
    status: str = "pending"
    processor_response: Optional[str] = None
    created_at: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None


class FlutterwaveWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    provider: Literal["flutterwave"] = "flutterwave"
    event: Optional[str] = None
    data: FlutterwaveChargeData

    @model_validator(mode="before")
    @classmethod
    def wrap_flat_payload(cls, values):
        # Older callbacks send the charge fields at the top level
        if isinstance(values, dict) and "data" not in values:
            charge = {k: v for k, v in values.items() if k not in ("provider", "event")}
            return {"provider": values.get("provider"), "event": values.get("event"), "data": charge}
        return values


class PawapayWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    provider: Literal["pawapay"] = "pawapay"
    depositId: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    correspondent: Optional[str] = None
    created: Optional[str] = None
    failureReason: Optional[Dict[str, Any]] = None
    metadata: Optional[Any] = None


class PesapalIpnPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    provider: Literal["pesapal"] = "pesapal"
    OrderTrackingId: Optional[str] = None
    OrderMerchantReference: Optional[str] = None
    OrderNotificationType: Optional[str] = None


class DpoCallbackPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    provider: Literal["dpo"] = "dpo"
    transaction_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("TransactionToken", "transactionToken", "TransToken"),
    )
    company_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("CompanyRef", "companyRef"),
    )


WebhookPayload = Annotated[
    Union[FlutterwaveWebhookPayload, PawapayWebhookPayload, PesapalIpnPayload, DpoCallbackPayload],
    Field(discriminator="provider"),
]

_payload_adapter = TypeAdapter(WebhookPayload)

SUPPORTED_WEBHOOK_PROVIDERS = ("flutterwave", "pawapay", "pesapal", "dpo")


def _xml_to_dict(body: bytes) -> Dict[str, Any]:
    root = ET.fromstring(body)
    return {child.tag: (child.text or "").strip() for child in root}


def decode_body(provider: str, body: bytes) -> Dict[str, Any]:
    """Decode a raw callback body (JSON, or XML for DPO) into a dict"""
    text = body.strip()
    if not text:
        raise BillingValidationError("Empty webhook payload")

    try:
        if provider == "dpo" and text.startswith(b"<"):
            data = _xml_to_dict(text)
        else:
            data = json.loads(text)
    except (ValueError, ET.ParseError) as e:
        raise BillingValidationError(f"Malformed {provider} webhook payload: {e}") from e

    if not isinstance(data, dict):
        raise BillingValidationError(f"Malformed {provider} webhook payload: expected an object")
    return data


def load_webhook_payload(provider: str, body: bytes):
    """
    Validate a raw callback body into its provider's typed payload

    Raises:
        BillingValidationError: unknown provider or malformed payload
    """
    if provider not in SUPPORTED_WEBHOOK_PROVIDERS:
        raise BillingValidationError(f"Unsupported payment provider: {provider}")

    data = decode_body(provider, body)
    data["provider"] = provider

    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        raise BillingValidationError(
            f"Invalid {provider} webhook payload",
            details={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]},
        ) from e


def payload_to_dict(payload: BaseModel) -> Dict[str, Any]:
    """Plain dict of a typed payload for audit logging"""
    return payload.model_dump(mode="json", exclude={"provider"}, exclude_none=True)
