"""
Payment Service
Initiates collections through the app's payment provider, retries failed
attempts, polls provider status and refunds successful payments
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
import logging

import httpx
from sqlalchemy.orm import Session

from ..config import config
from ..exceptions import AuthorizationError, BillingValidationError, NotFoundError, ProviderError
from ..db.models import (
    App,
    Customer,
    Invoice,
    InvoiceStatus,
    PaymentStatus,
    PaymentTransaction,
    Subscription,
)
from .credential_vault import CredentialVault
from .payment_adapters import get_payment_adapter, PaymentAdapter, PaymentRequest
from .payment_adapters.base import WebhookEvent, event_for_status
from .subscription_lifecycle import SubscriptionLifecycle, interval_duration
from .webhook_dispatcher import WebhookDispatcher
from .webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.INITIATED.value,
    PaymentStatus.PROCESSING.value,
)


@dataclass
class PaymentInitiation:
    transaction: PaymentTransaction
    payment_url: Optional[str] = None
    message: Optional[str] = None


class PaymentService:
    """Service for collecting subscription payments"""

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

    def get_adapter(self, app: App) -> PaymentAdapter:
        if not app.payment_provider:
            raise BillingValidationError(f"App {app.id} has no payment provider configured")
        credentials = self.vault.load_credentials(app.id)
        return self.adapter_factory(
            app.payment_provider, credentials, environment=app.environment, http_client=self.http_client
        )

    def get_transaction(self, app_id: int, transaction_id: int) -> PaymentTransaction:
        transaction = self.db.query(PaymentTransaction).filter(PaymentTransaction.id == transaction_id).first()
        if not transaction:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if transaction.app_id != app_id:
            raise AuthorizationError("API key cannot access this transaction")
        return transaction

    def _resolve_invoice(self, subscription: Subscription, invoice_id: Optional[int], now: datetime) -> Invoice:
        if invoice_id is not None:
            invoice = self.db.query(Invoice).filter(Invoice.id == invoice_id).first()
            if not invoice or invoice.subscription_id != subscription.id:
                raise NotFoundError(f"Invoice {invoice_id} not found for subscription {subscription.id}")
        else:
            invoice = self.invoice_generator.get_open_invoice(subscription.id)
            if invoice is None:
                interval = (subscription.plan_snapshot or {}).get("interval")
                invoice = self.invoice_generator.generate_invoice(
                    subscription, now, now + interval_duration(interval), now=now
                )

        if invoice.status == InvoiceStatus.PAID.value:
            raise BillingValidationError(f"Invoice {invoice.invoice_number} is already paid")
        if invoice.status == InvoiceStatus.VOID.value:
            raise BillingValidationError(f"Invoice {invoice.invoice_number} is void")
        return invoice

    def initiate_subscription_payment(
        self,
        app_id: int,
        subscription_id: int,
        payment_method: str,
        customer_phone: Optional[str] = None,
        invoice_id: Optional[int] = None,
        amount: Optional[int] = None,
        callback_url: Optional[str] = None
    ) -> PaymentInitiation:
        """
        Start collecting the subscription's open invoice

        Provider rejections are recorded on the transaction (status failed)
        and returned to the caller; they are not retried here.
        """
        now = datetime.utcnow()

        subscription = self.lifecycle.get_subscription(app_id, subscription_id)
        if subscription.is_terminal:
            raise BillingValidationError(f"Subscription {subscription.id} is {subscription.status}")

        app = self.db.query(App).filter(App.id == app_id).first()
        adapter = self.get_adapter(app)
        customer = self.db.query(Customer).filter(Customer.id == subscription.customer_id).first()

        invoice = self._resolve_invoice(subscription, invoice_id, now)
        charge_amount = amount if amount is not None else invoice.amount_due
        if charge_amount is None or charge_amount <= 0:
            raise BillingValidationError(f"Invoice {invoice.invoice_number} has no amount due")

        transaction = PaymentTransaction(
            app_id=app_id,
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            invoice_id=invoice.id,
            amount=charge_amount,
            currency=invoice.currency,
            provider=app.payment_provider,
            payment_method=payment_method,
            customer_phone=customer_phone or customer.phone,
            status=PaymentStatus.PENDING.value,
            attempt_number=1,
            is_retry=False,
            initiated_at=now,
            expires_at=now + timedelta(hours=config.PENDING_TRANSACTION_TTL_HOURS),
        )
        self.db.add(transaction)
        self.db.flush()
        transaction.reference = f"txn_{transaction.id}"

        return self._submit(transaction, adapter, customer, callback_url)

    def _submit(
        self,
        transaction: PaymentTransaction,
        adapter: PaymentAdapter,
        customer: Customer,
        callback_url: Optional[str] = None
    ) -> PaymentInitiation:
        plan_name = ((transaction.subscription.plan_snapshot or {}).get("name")
                     if transaction.subscription else None)
        request = PaymentRequest(
            amount=transaction.amount,
            currency=transaction.currency,
            reference=transaction.reference,
            customer_email=customer.email,
            payment_method=transaction.payment_method,
            customer_phone=transaction.customer_phone,
            customer_name=customer.full_name or None,
            description=f"{plan_name} subscription" if plan_name else "Subscription payment",
            callback_url=callback_url,
            metadata={
                "app_id": transaction.app_id,
                "subscription_id": transaction.subscription_id,
                "invoice_id": transaction.invoice_id,
            },
        )

        try:
            response = adapter.initiate_payment(request)
        except ProviderError as e:
            transaction.apply_status(PaymentStatus.FAILED.value)
            transaction.failure_reason = e.message[:500]
            transaction.failure_code = e.code
            self.db.flush()
            logger.error(f"Payment {transaction.reference} could not be initiated: {e.message}")
            return PaymentInitiation(transaction=transaction, message=e.message)

        transaction.provider_response = response.provider_response
        if not response.success:
            transaction.apply_status(PaymentStatus.FAILED.value)
            transaction.failure_reason = (response.error or "Payment initiation failed")[:500]
            transaction.failure_code = "INITIATION_FAILED"
            self.db.flush()
            logger.warning(f"Payment {transaction.reference} rejected by {transaction.provider}: {response.error}")
            return PaymentInitiation(transaction=transaction, message=response.error)

        transaction.provider_transaction_id = response.transaction_id
        transaction.provider_reference = response.reference
        if response.status in IN_FLIGHT_STATUSES:
            transaction.apply_status(response.status)
        else:
            # Provider settled synchronously
            self._reconciler().apply_transaction_event(transaction, WebhookEvent(
                event=event_for_status(response.status),
                transaction_id=response.transaction_id,
                reference=transaction.reference,
                status=response.status,
                raw_payload=response.provider_response,
            ))
        self.db.flush()

        logger.info(f"Initiated payment {transaction.reference} via {transaction.provider}: {transaction.amount} {transaction.currency}")
        return PaymentInitiation(transaction=transaction, payment_url=response.payment_url, message=response.message)

    def _reconciler(self) -> WebhookReconciler:
        return WebhookReconciler(
            self.db,
            self.vault,
            dispatcher=self.dispatcher,
            lifecycle=self.lifecycle,
            adapter_factory=self.adapter_factory,
            http_client=self.http_client,
        )

    def retry_failed_payment(self, transaction: PaymentTransaction, now: Optional[datetime] = None) -> PaymentInitiation:
        """Create and submit the next attempt for a failed transaction"""
        if transaction.status != PaymentStatus.FAILED.value:
            raise BillingValidationError(f"Only failed transactions can be retried (transaction {transaction.id} is {transaction.status})")

        now = now or datetime.utcnow()
        original_id = transaction.original_transaction_id or transaction.id
        app = self.db.query(App).filter(App.id == transaction.app_id).first()
        adapter = self.get_adapter(app)
        customer = self.db.query(Customer).filter(Customer.id == transaction.customer_id).first()

        retry = PaymentTransaction(
            app_id=transaction.app_id,
            customer_id=transaction.customer_id,
            subscription_id=transaction.subscription_id,
            invoice_id=transaction.invoice_id,
            amount=transaction.amount,
            currency=transaction.currency,
            provider=transaction.provider,
            payment_method=transaction.payment_method,
            customer_phone=transaction.customer_phone,
            status=PaymentStatus.PENDING.value,
            reference=f"txn_{original_id}_retry{transaction.attempt_number}",
            attempt_number=transaction.attempt_number + 1,
            is_retry=True,
            original_transaction_id=original_id,
            initiated_at=now,
            expires_at=now + timedelta(hours=config.PENDING_TRANSACTION_TTL_HOURS),
        )
        self.db.add(retry)
        self.db.flush()

        logger.info(f"Retrying transaction {transaction.id} as {retry.reference} (attempt {retry.attempt_number})")
        return self._submit(retry, adapter, customer)

    def poll_transaction_status(self, app_id: int, transaction_id: int) -> PaymentTransaction:
        """Query the provider for a transaction's status and apply it"""
        transaction = self.get_transaction(app_id, transaction_id)
        if transaction.is_terminal:
            return transaction
        if not transaction.provider_transaction_id:
            raise BillingValidationError(f"Transaction {transaction.id} has no provider transaction id yet")

        app = self.db.query(App).filter(App.id == app_id).first()
        status = self.get_adapter(app).get_payment_status(transaction.provider_transaction_id)

        self._reconciler().apply_transaction_event(transaction, WebhookEvent(
            event=event_for_status(status.status),
            transaction_id=status.transaction_id,
            reference=status.reference or transaction.reference,
            status=status.status,
            amount=status.amount,
            currency=status.currency,
            paid_at=status.paid_at,
            failure_reason=status.failure_reason,
            raw_payload=status.provider_response,
        ))
        logger.info(f"Polled transaction {transaction.reference}: {transaction.status}")
        return transaction

    def refund_transaction(
        self,
        app_id: int,
        transaction_id: int,
        amount: Optional[int] = None,
        reason: Optional[str] = None
    ) -> PaymentTransaction:
        """
        Refund all or part of a successful transaction

        Partial refunds accumulate in amount_refunded and leave the transaction
        successful; it becomes refunded once the whole amount is returned.
        """
        transaction = self.get_transaction(app_id, transaction_id)
        if transaction.status != PaymentStatus.SUCCESS.value:
            raise BillingValidationError(f"Only successful transactions can be refunded (transaction {transaction.id} is {transaction.status})")

        remaining = transaction.amount - (transaction.amount_refunded or 0)
        refund_amount = remaining if amount is None else amount
        if refund_amount <= 0 or refund_amount > remaining:
            raise BillingValidationError(f"Refund amount must be between 1 and {remaining}")

        app = self.db.query(App).filter(App.id == app_id).first()
        result = self.get_adapter(app).refund_payment(transaction.provider_transaction_id, amount=refund_amount, reason=reason)
        if not result.success:
            raise ProviderError(result.error or "Refund failed")

        transaction.amount_refunded = (transaction.amount_refunded or 0) + refund_amount
        if transaction.amount_refunded == transaction.amount:
            transaction.mark_refunded()
        transaction.provider_response = {
            **(transaction.provider_response or {}),
            "refund": {"refund_id": result.refund_id, "amount": refund_amount, "reason": reason},
        }
        self.db.flush()

        logger.info(f"Refunded {refund_amount} {transaction.currency} of transaction {transaction.reference} ({transaction.amount_refunded}/{transaction.amount} refunded)")
        return transaction


def get_payment_service(db: Session) -> PaymentService:
    from .credential_vault import get_credential_vault
    return PaymentService(db, get_credential_vault(db))
