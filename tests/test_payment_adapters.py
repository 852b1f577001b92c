"""
Tests for payment provider adapters
"""
import json

import httpx
import pytest

from credibill.exceptions import BillingValidationError
from credibill.services.payment_adapters import (
    PaymentRequest,
    ProviderCredentials,
    get_payment_adapter,
    list_supported_providers,
    load_webhook_payload,
    to_major_units,
    to_minor_units,
)
from credibill.services.payment_adapters.base import hmac_sha256_hex
from credibill.services.payment_adapters.dpo import DpoAdapter
from credibill.services.payment_adapters.flutterwave import FlutterwaveAdapter
from credibill.services.payment_adapters.pawapay import PawapayAdapter
from credibill.services.payment_adapters.pesapal import PesapalAdapter


FLUTTERWAVE_SUCCESS = {
    "event": "charge.completed",
    "data": {
        "id": 285959875,
        "tx_ref": "txn_1",
        "flw_ref": "FLW-MOCK-1",
        "amount": 500,
        "currency": "UGX",
        "status": "successful",
        "created_at": "2026-01-01T10:00:00.000Z",
    },
}


def payment_request(**overrides) -> PaymentRequest:
    values = {
        "amount": 50000,
        "currency": "UGX",
        "reference": "txn_1",
        "customer_email": "jane@example.com",
        "payment_method": "mobile_money_mtn",
        "customer_phone": "+256 700-000001",
        "customer_name": "Jane Doe",
    }
    values.update(overrides)
    return PaymentRequest(**values)


class TestAmountConversion:
    """Minor/major unit conversion"""

    def test_to_major_units(self):
        assert str(to_major_units(50000)) == "500.00"
        assert str(to_major_units(1)) == "0.01"

    def test_to_minor_units_accepts_provider_formats(self):
        assert to_minor_units(500) == 50000
        assert to_minor_units("500.50") == 50050
        assert to_minor_units(19.99) == 1999


class TestFactory:

    def test_get_payment_adapter(self):
        adapter = get_payment_adapter("pawapay", ProviderCredentials(secret_key="sk"))
        assert isinstance(adapter, PawapayAdapter)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            get_payment_adapter("stripe", ProviderCredentials(secret_key="sk"))

    def test_provider_catalog(self):
        providers = {entry["id"]: entry for entry in list_supported_providers()}
        assert set(providers) == {"flutterwave", "pawapay", "pesapal", "dpo"}
        assert "mobile_money_mtn" in providers["pawapay"]["supported_methods"]
        assert "card_visa" not in providers["pawapay"]["supported_methods"]


class TestWebhookPayloads:

    def test_flutterwave_payload_is_typed(self):
        payload = load_webhook_payload("flutterwave", json.dumps(FLUTTERWAVE_SUCCESS).encode())
        assert payload.provider == "flutterwave"
        assert payload.data.tx_ref == "txn_1"

    def test_flat_flutterwave_payload_is_wrapped(self):
        body = json.dumps({"id": 1, "tx_ref": "txn_9", "status": "failed"}).encode()
        payload = load_webhook_payload("flutterwave", body)
        assert payload.data.tx_ref == "txn_9"
        assert payload.data.status == "failed"

    def test_dpo_xml_payload(self):
        body = b"<API3G><TransactionToken>TOK-1</TransactionToken><CompanyRef>txn_5</CompanyRef></API3G>"
        payload = load_webhook_payload("dpo", body)
        assert payload.transaction_token == "TOK-1"
        assert payload.company_ref == "txn_5"

    def test_malformed_payload(self):
        with pytest.raises(BillingValidationError):
            load_webhook_payload("flutterwave", b"{not json")

    def test_empty_payload(self):
        with pytest.raises(BillingValidationError):
            load_webhook_payload("pawapay", b"   ")

    def test_unsupported_provider(self):
        with pytest.raises(BillingValidationError):
            load_webhook_payload("paypal", b"{}")


class TestFlutterwaveAdapter:

    @pytest.fixture
    def adapter(self, mock_http):
        return FlutterwaveAdapter(
            ProviderCredentials(secret_key="FLWSECK_TEST-secret"),
            http_client=mock_http.client,
        )

    def test_verify_with_secret_hash(self, adapter):
        result = adapter.verify_webhook(b"{}", "my-hash", "my-hash")
        assert result.valid is True

    def test_verify_with_hmac(self, adapter):
        body = json.dumps(FLUTTERWAVE_SUCCESS).encode()
        result = adapter.verify_webhook(body, hmac_sha256_hex("my-hash", body), "my-hash")
        assert result.valid is True

    def test_verify_rejects_wrong_signature(self, adapter):
        result = adapter.verify_webhook(b"{}", "forged", "my-hash")
        assert result.valid is False
        assert result.error == "Invalid signature"

    def test_verify_requires_secret(self, adapter):
        result = adapter.verify_webhook(b"{}", "anything", None)
        assert result.valid is False
        assert "not configured" in result.error

    def test_parse_success_webhook(self, adapter):
        payload = load_webhook_payload("flutterwave", json.dumps(FLUTTERWAVE_SUCCESS).encode())
        event = adapter.parse_webhook(payload)

        assert event.event == "payment.success"
        assert event.status == "success"
        assert event.transaction_id == "285959875"
        assert event.reference == "txn_1"
        assert event.amount == 50000
        assert event.paid_at is not None
        assert event.paid_at.tzinfo is None

    def test_parse_failed_webhook(self, adapter):
        body = {"data": {"id": 7, "tx_ref": "txn_2", "status": "failed", "processor_response": "Insufficient funds"}}
        event = adapter.parse_webhook(load_webhook_payload("flutterwave", json.dumps(body).encode()))

        assert event.status == "failed"
        assert event.failure_reason == "Insufficient funds"
        assert event.paid_at is None

    def test_event_key_includes_status(self, adapter):
        payload = load_webhook_payload("flutterwave", json.dumps(FLUTTERWAVE_SUCCESS).encode())
        assert adapter.event_key(payload) == "flutterwave:285959875:successful"

    def test_unknown_status_maps_to_pending(self, adapter):
        assert adapter.map_status("weird") == "pending"
        assert adapter.map_status("SUCCESSFUL") == "success"

    def test_initiate_mobile_money(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(200, json={
            "status": "success",
            "message": "Charge initiated",
            "data": {"id": 12345, "status": "pending"},
            "meta": {"authorization": {"mode": "redirect", "redirect": "https://checkout.example/abc"}},
        })

        response = adapter.initiate_payment(payment_request())

        assert response.success is True
        assert response.transaction_id == "12345"
        assert response.status == "pending"
        assert response.payment_url == "https://checkout.example/abc"

        sent = mock_http.requests[0]
        assert sent.url.params["type"] == "mobile_money_uganda"
        assert sent.headers["Authorization"] == "Bearer FLWSECK_TEST-secret"
        body = json.loads(sent.content)
        assert body["amount"] == 500.0
        assert body["network"] == "MTN"

    def test_initiate_provider_error_is_returned(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(400, json={"status": "error", "message": "Invalid phone"})

        response = adapter.initiate_payment(payment_request())

        assert response.success is False
        assert response.status == "failed"
        assert "Invalid phone" in response.error

    def test_network_error_is_returned(self, adapter, mock_http):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)
        mock_http.handler = handler

        response = adapter.initiate_payment(payment_request())

        assert response.success is False
        assert "request failed" in response.error

    def test_get_payment_status(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(200, json={
            "status": "success",
            "data": {"id": 12345, "tx_ref": "txn_1", "status": "successful", "amount": 500, "currency": "UGX"},
        })

        status = adapter.get_payment_status("12345")

        assert status.status == "success"
        assert status.amount == 50000
        assert mock_http.requests[0].url.path.endswith("/transactions/12345/verify")

    def test_refund(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(200, json={"status": "success", "data": {"id": 777}})

        result = adapter.refund_payment("12345", amount=10000, reason="Duplicate charge")

        assert result.success is True
        assert result.refund_id == "777"
        assert json.loads(mock_http.requests[0].content)["amount"] == 100.0


class TestPawapayAdapter:

    @pytest.fixture
    def adapter(self, mock_http):
        return PawapayAdapter(ProviderCredentials(secret_key="pawa-token"), http_client=mock_http.client)

    def test_sandbox_url_by_default(self, adapter):
        assert adapter.get_base_url() == PawapayAdapter.SANDBOX_URL

    def test_correspondent_lookup(self, adapter):
        assert adapter.get_correspondent("mobile_money_airtel", "KES") == "AIRTEL_OAPI_KEN"
        assert adapter.get_correspondent("mobile_money_mtn", "XOF") == PawapayAdapter.DEFAULT_CORRESPONDENT

    def test_verify_bearer_signature(self, adapter):
        body = json.dumps({"depositId": "txn_3", "status": "COMPLETED"}).encode()
        assert adapter.verify_webhook(body, "Bearer shared", "shared").valid is True

    def test_verify_hmac_signature(self, adapter):
        body = json.dumps({"depositId": "txn_3", "status": "COMPLETED"}).encode()
        signature = "sha256=" + hmac_sha256_hex("shared", body)
        assert adapter.verify_webhook(body, signature, "shared").valid is True

    def test_verify_requires_deposit_fields(self, adapter):
        body = json.dumps({"status": "COMPLETED"}).encode()
        result = adapter.verify_webhook(body, "Bearer shared", "shared")
        assert result.valid is False
        assert result.error == "Missing depositId or status"

    def test_parse_failed_deposit(self, adapter):
        body = json.dumps({
            "depositId": "txn_3",
            "status": "FAILED",
            "failureReason": {"failureCode": "PAYER_NOT_FOUND", "failureMessage": "Payer not found"},
        }).encode()
        event = adapter.parse_webhook(load_webhook_payload("pawapay", body))

        assert event.status == "failed"
        assert event.failure_code == "PAYER_NOT_FOUND"
        assert event.reference == "txn_3"

    def test_initiate_rejects_card(self, adapter, mock_http):
        response = adapter.initiate_payment(payment_request(payment_method="card_visa"))
        assert response.success is False
        assert mock_http.requests == []

    def test_initiate_deposit(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(200, json={"depositId": "txn_1", "status": "ACCEPTED"})

        response = adapter.initiate_payment(payment_request())

        assert response.success is True
        assert response.status == "processing"
        body = json.loads(mock_http.requests[0].content)
        assert body["payer"]["address"]["value"] == "256700000001"
        assert body["amount"] == "500.00"
        assert body["correspondent"] == "MTN_MOMO_UGA"

    def test_initiate_rejected_deposit(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(200, json={
            "depositId": "txn_1",
            "status": "REJECTED",
            "rejectionReason": {"rejectionCode": "INVALID_AMOUNT", "rejectionMessage": "Amount too small"},
        })

        response = adapter.initiate_payment(payment_request())

        assert response.success is False
        assert response.error == "Amount too small"


class TestPesapalAdapter:

    @pytest.fixture
    def adapter(self, mock_http):
        return PesapalAdapter(
            ProviderCredentials(secret_key="consumer-secret", public_key="consumer-key", merchant_id="ipn-1"),
            http_client=mock_http.client,
        )

    @staticmethod
    def handler(status_description="Completed", merchant_reference="txn_8"):
        def _handle(request):
            if request.url.path.endswith("/api/Auth/RequestToken"):
                return httpx.Response(200, json={"token": "pesapal-token"})
            if request.url.path.endswith("/api/Transactions/GetTransactionStatus"):
                return httpx.Response(200, json={
                    "payment_status_description": status_description,
                    "merchant_reference": merchant_reference,
                    "amount": 250.0,
                    "currency": "KES",
                    "created_date": "2026-02-01T08:30:00Z",
                })
            return httpx.Response(404, json={"error": {"message": "not found"}})
        return _handle

    def test_verify_requeries_order(self, adapter, mock_http):
        mock_http.handler = self.handler()
        body = json.dumps({"OrderTrackingId": "TRK-1", "OrderMerchantReference": "txn_8"}).encode()

        result = adapter.verify_webhook(body, None, None)

        assert result.valid is True
        assert result.confirmed_status == "success"
        status_request = mock_http.requests[-1]
        assert status_request.headers["Authorization"] == "Bearer pesapal-token"
        assert status_request.url.params["orderTrackingId"] == "TRK-1"

    def test_verify_reference_mismatch(self, adapter, mock_http):
        mock_http.handler = self.handler(merchant_reference="txn_other")
        body = json.dumps({"OrderTrackingId": "TRK-1", "OrderMerchantReference": "txn_8"}).encode()

        result = adapter.verify_webhook(body, None, None)

        assert result.valid is False
        assert result.error == "Merchant reference mismatch"

    def test_parse_uses_confirmed_status_without_requery(self, adapter, mock_http):
        mock_http.handler = self.handler()
        body = json.dumps({"OrderTrackingId": "TRK-1", "OrderMerchantReference": "txn_8"}).encode()
        verification = adapter.verify_webhook(body, None, None)
        calls = len(mock_http.requests)

        event = adapter.parse_webhook(load_webhook_payload("pesapal", body), verification)

        assert len(mock_http.requests) == calls
        assert event.status == "success"
        assert event.amount == 25000
        assert adapter.event_key(load_webhook_payload("pesapal", body), verification) == "pesapal:TRK-1:IPNCHANGE:success"

    def test_test_connection_failure(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(401, json={"error": {"message": "Invalid credentials"}})

        result = adapter.test_connection()

        assert result.success is False
        assert "Invalid credentials" in result.message


class TestDpoAdapter:

    VERIFY_PAID = (
        b"<?xml version='1.0' encoding='utf-8'?><API3G><Result>000</Result>"
        b"<ResultExplanation>Transaction paid</ResultExplanation><TransactionApproval>1</TransactionApproval>"
        b"<CompanyRef>txn_5</CompanyRef><TransactionAmount>500.00</TransactionAmount>"
        b"<TransactionCurrency>UGX</TransactionCurrency></API3G>"
    )

    @pytest.fixture
    def adapter(self, mock_http):
        return DpoAdapter(ProviderCredentials(secret_key="company-token"), http_client=mock_http.client)

    def test_create_token(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(200, content=(
            b"<API3G><Result>000</Result><ResultExplanation>Transaction created</ResultExplanation>"
            b"<TransToken>TOK-9</TransToken></API3G>"
        ))

        response = adapter.initiate_payment(payment_request(payment_method="card_visa"))

        assert response.success is True
        assert response.transaction_id == "TOK-9"
        assert response.payment_url.endswith("payv2.php?ID=TOK-9")
        sent = mock_http.requests[0].content
        assert b"<CompanyToken>company-token</CompanyToken>" in sent
        assert b"<PaymentAmount>500.00</PaymentAmount>" in sent

    def test_verify_callback_by_requery(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(200, content=self.VERIFY_PAID)
        body = b"<API3G><TransactionToken>TOK-9</TransactionToken><CompanyRef>txn_5</CompanyRef></API3G>"

        result = adapter.verify_webhook(body, None, None)

        assert result.valid is True
        assert result.confirmed.status == "success"
        assert result.confirmed.amount == 50000

    def test_verify_company_ref_mismatch(self, adapter, mock_http):
        mock_http.handler = lambda request: httpx.Response(200, content=self.VERIFY_PAID)
        body = b"<API3G><TransactionToken>TOK-9</TransactionToken><CompanyRef>txn_6</CompanyRef></API3G>"

        result = adapter.verify_webhook(body, None, None)

        assert result.valid is False
        assert result.error == "CompanyRef mismatch"

    def test_verify_missing_token(self, adapter):
        result = adapter.verify_webhook(b"<API3G><CompanyRef>txn_5</CompanyRef></API3G>", None, None)
        assert result.valid is False
        assert result.error == "Missing TransactionToken"

    def test_refunds_not_supported(self, adapter):
        result = adapter.refund_payment("TOK-9")
        assert result.success is False
        assert "does not support refunds" in result.error
