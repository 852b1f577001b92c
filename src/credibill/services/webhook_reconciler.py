"""
Inbound Webhook Reconciler

Turns a provider callback into billing state changes:

1. resolve the app and its provider credentials, verify the callback
2. claim the callback's dedup key (a unique WebhookLog.claim_key row)
3. parse it into a canonical WebhookEvent
4. find the PaymentTransaction it refers to
5. apply the status (terminal statuses are write-once)
6. success: mark the invoice paid, then activate or renew the subscription
7. failure: count it against the subscription unless the invoice is paid

Every callback is recorded in webhook_logs, including rejected and
duplicate ones. Processing commits once at the end so the state change and
the outgoing events it enqueues land together; on any error the work is
rolled back and the claim released so a provider retry can succeed.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

import httpx
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import (
    BillingValidationError,
    NotFoundError,
    TerminalStateError,
    WebhookVerificationError,
)
from ..db.models import (
    App,
    InvoiceStatus,
    PaymentStatus,
    PaymentTransaction,
    SubscriptionStatus,
    WebhookLog,
    WebhookLogStatus,
)
from .credential_vault import CredentialVault
from .metrics import increment_counter
from .payment_adapters import get_payment_adapter
from .payment_adapters.base import WebhookEvent
from .payment_adapters.payloads import load_webhook_payload, payload_to_dict
from .subscription_lifecycle import SubscriptionLifecycle
from .webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    status: str
    webhook_log_id: Optional[int] = None
    transaction_id: Optional[int] = None
    message: Optional[str] = None


class WebhookReconciler:
    """Verifies, deduplicates and applies inbound payment provider callbacks"""

    def __init__(
        self,
        db: Session,
        vault: CredentialVault,
        dispatcher: Optional[WebhookDispatcher] = None,
        lifecycle: Optional[SubscriptionLifecycle] = None,
        adapter_factory: Callable = get_payment_adapter,
        http_client: Optional[httpx.Client] = None
    ):
        self.db = db
        self.vault = vault
        self.dispatcher = dispatcher or WebhookDispatcher(db)
        self.lifecycle = lifecycle or SubscriptionLifecycle(db, dispatcher=self.dispatcher)
        self.invoice_generator = self.lifecycle.invoice_generator
        self.adapter_factory = adapter_factory
        self.http_client = http_client

    def _write_log(self, app_id: int, provider: str, payload: Optional[Dict[str, Any]], status: str, **fields) -> WebhookLog:
        log = WebhookLog(app_id=app_id, provider=provider, payload=payload, status=status, **fields)
        self.db.add(log)
        self.db.flush()
        return log

    def handle_webhook(self, provider: str, app_id: int, body: bytes, signature: Optional[str]) -> ReconcileResult:
        """
        Process one provider callback

        Returns:
            ReconcileResult with status "processed" or "ignored"

        Raises:
            NotFoundError: unknown app, or no transaction matches the callback
            BillingValidationError: provider mismatch, missing credentials or malformed payload
            WebhookVerificationError: the callback failed verification
        """
        now = datetime.utcnow()

        app = self.db.query(App).filter(App.id == app_id).first()
        if not app:
            raise NotFoundError(f"App {app_id} not found")
        if app.payment_provider != provider:
            raise BillingValidationError(f"App {app_id} is not configured for {provider}")

        try:
            credentials = self.vault.load_credentials(app.id)
        except NotFoundError as e:
            raise BillingValidationError(f"{provider} credentials are not configured for app {app_id}") from e

        payload = load_webhook_payload(provider, body)
        payload_dict = payload_to_dict(payload)
        adapter = self.adapter_factory(provider, credentials, environment=app.environment, http_client=self.http_client)

        verification = adapter.verify_webhook(body, signature, credentials.webhook_secret)
        if not verification.valid:
            log = self._write_log(
                app.id, provider, payload_dict, WebhookLogStatus.FAILED.value,
                signature_valid=False, error=verification.error, received_at=now, processed_at=now,
            )
            self.db.commit()
            increment_counter("webhooks_received_total", labels={"provider": provider, "result": "invalid"})
            logger.warning(f"Rejected {provider} webhook for app {app_id}: {verification.error}")
            raise WebhookVerificationError(
                verification.error or "Invalid webhook signature",
                details={"webhook_log_id": log.id},
            )

        event_key = adapter.event_key(payload, verification)
        log = WebhookLog(
            app_id=app.id,
            provider=provider,
            event_key=event_key,
            claim_key=event_key,
            payload=payload_dict,
            status=WebhookLogStatus.PROCESSING.value,
            signature_valid=True,
            received_at=now,
        )
        try:
            with self.db.begin_nested():
                self.db.add(log)
                self.db.flush()
        except IntegrityError:
            duplicate = self._write_log(
                app.id, provider, payload_dict, WebhookLogStatus.IGNORED.value,
                event_key=event_key, signature_valid=True, error="Duplicate webhook",
                received_at=now, processed_at=now,
            )
            self.db.commit()
            increment_counter("webhooks_received_total", labels={"provider": provider, "result": "duplicate"})
            logger.warning(f"Duplicate {provider} webhook {event_key} for app {app_id} ignored")
            return ReconcileResult(
                status=WebhookLogStatus.IGNORED.value,
                webhook_log_id=duplicate.id,
                message="Duplicate webhook",
            )

        try:
            event = adapter.parse_webhook(payload, verification)
            log.event = event.event
            transaction = self._find_transaction(app.id, event)

            if transaction is None:
                log.status = WebhookLogStatus.FAILED.value
                log.claim_key = None
                log.error = f"No transaction matches reference {event.reference} / {event.transaction_id}"
                log.processed_at = datetime.utcnow()
                self.db.commit()
            else:
                log.payment_transaction_id = transaction.id
                log.subscription_id = transaction.subscription_id
                outcome = self.apply_transaction_event(transaction, event)
                log.status = WebhookLogStatus.PROCESSED.value
                log.processed_at = datetime.utcnow()
                if outcome:
                    log.error = outcome
                self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error processing {provider} webhook {event_key} for app {app_id}: {e}", exc_info=True)
            self._write_log(
                app.id, provider, payload_dict, WebhookLogStatus.FAILED.value,
                event_key=event_key, signature_valid=True, error=str(e)[:1000],
                received_at=now, processed_at=datetime.utcnow(),
            )
            self.db.commit()
            increment_counter("webhooks_received_total", labels={"provider": provider, "result": "error"})
            raise

        if transaction is None:
            increment_counter("webhooks_received_total", labels={"provider": provider, "result": "unmatched"})
            logger.warning(f"{provider} webhook {event_key} for app {app_id}: {log.error}")
            raise NotFoundError(log.error, details={"webhook_log_id": log.id})

        increment_counter("webhooks_received_total", labels={"provider": provider, "result": "processed"})
        logger.info(f"Processed {provider} webhook {event_key} for transaction {transaction.id} ({event.status})")
        return ReconcileResult(
            status=WebhookLogStatus.PROCESSED.value,
            webhook_log_id=log.id,
            transaction_id=transaction.id,
            message=log.error,
        )

    def _find_transaction(self, app_id: int, event: WebhookEvent) -> Optional[PaymentTransaction]:
        conditions = []
        if event.reference:
            conditions.append(PaymentTransaction.reference == event.reference)
        if event.transaction_id:
            conditions.append(PaymentTransaction.provider_transaction_id == event.transaction_id)
        if not conditions:
            return None

        return self.db.query(PaymentTransaction).filter(
            PaymentTransaction.app_id == app_id,
            or_(*conditions)
        ).order_by(PaymentTransaction.id.desc()).first()

    def apply_transaction_event(self, transaction: PaymentTransaction, event: WebhookEvent) -> Optional[str]:
        """
        Apply a canonical payment status to a transaction and its billing records

        Shared by webhook processing and provider status polling. Flushes only.

        Returns:
            A note when the event was dropped (terminal transaction), else None
        """
        now = datetime.utcnow()

        try:
            changed = transaction.apply_status(event.status, when=event.paid_at or now)
        except TerminalStateError as e:
            logger.warning(f"Dropped {event.status} update: {e.message}")
            return f"Transaction already {transaction.status}"

        if event.transaction_id and not transaction.provider_transaction_id:
            transaction.provider_transaction_id = event.transaction_id

        if not changed:
            logger.debug(f"Transaction {transaction.id} already {transaction.status}")
            return None

        if event.raw_payload:
            transaction.provider_response = event.raw_payload

        if event.status == PaymentStatus.SUCCESS.value:
            self._apply_success(transaction, event.paid_at or now)
        elif event.status in (PaymentStatus.FAILED.value, PaymentStatus.CANCELED.value):
            transaction.failure_reason = (event.failure_reason or "")[:500] or None
            transaction.failure_code = event.failure_code
            self._apply_failure(transaction, now)

        self.db.flush()
        return None

    def _apply_success(self, transaction: PaymentTransaction, paid_at: datetime):
        invoice = transaction.invoice
        subscription = transaction.subscription

        if invoice is not None:
            if not self.invoice_generator.mark_invoice_paid(invoice, amount=transaction.amount, paid_at=paid_at):
                return
        else:
            logger.warning(f"Successful transaction {transaction.id} has no invoice")

        if subscription is not None:
            self.lifecycle.apply_payment_success(subscription, paid_at)

    def _apply_failure(self, transaction: PaymentTransaction, now: datetime):
        invoice = transaction.invoice
        if invoice is not None and invoice.status == InvoiceStatus.PAID.value:
            logger.info(f"Failure of transaction {transaction.id} ignored; invoice {invoice.invoice_number} already paid")
            return

        subscription = transaction.subscription
        if subscription is None:
            return

        self.lifecycle.record_payment_failure(subscription, transaction_data=transaction.to_dict(), now=now)
        if invoice is not None and subscription.status == SubscriptionStatus.PAST_DUE.value:
            self.invoice_generator.mark_invoice_failed(invoice)


def get_webhook_reconciler(db: Session) -> WebhookReconciler:
    from .credential_vault import get_credential_vault
    return WebhookReconciler(db, get_credential_vault(db))
