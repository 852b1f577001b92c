"""
Invoice Generator

Computes line items for a subscription billing period under the flat, usage
and hybrid pricing models and issues numbered invoices.

Invoice numbers are INV-{year}-{seq:03d}, with seq restarting at 1 for each
app every calendar year. The sequence comes from a per-(app, year) counter
row advanced by a single INSERT ... ON CONFLICT DO UPDATE ... RETURNING, so
concurrent generators never receive the same number.
"""
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any
from sqlalchemy import update
from sqlalchemy.orm import Session
import logging

from ..config import config
from ..exceptions import BillingValidationError
from ..db.models import (
    App,
    Customer,
    Invoice,
    InvoiceCounter,
    InvoiceStatus,
    LineItemType,
    PricingModel,
    Subscription,
)
from .usage_service import UsageService
from .webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

UNPAID_INVOICE_STATUSES = (
    InvoiceStatus.DRAFT.value,
    InvoiceStatus.OPEN.value,
    InvoiceStatus.FAILED.value,
)

INTERVAL_LABELS = {
    "monthly": "Monthly",
    "quarterly": "Quarterly",
    "yearly": "Yearly",
    "one-time": "One-time",
}


class InvoiceGenerator:
    """Issue invoices for subscription billing periods"""

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[WebhookDispatcher] = None,
        usage_service: Optional[UsageService] = None
    ):
        self.db = db
        self.dispatcher = dispatcher or WebhookDispatcher(db)
        self.usage_service = usage_service or UsageService(db)

    def compute_line_items(
        self,
        subscription: Subscription,
        period_start: datetime,
        period_end: datetime
    ) -> List[Dict[str, Any]]:
        """
        Line items for one period, read from the subscription's plan snapshot

        - flat: one plan line for the base amount
        - usage: one usage line for max(0, usage - free_units) * unit_price
        - hybrid: base fee line, plus a usage line only when billable units > 0
        """
        snapshot = subscription.plan_snapshot or {}
        pricing_model = snapshot.get("pricing_model")
        name = snapshot.get("name", "Subscription")
        items: List[Dict[str, Any]] = []

        if pricing_model not in {m.value for m in PricingModel}:
            raise BillingValidationError(f"Unknown pricing model: {pricing_model}")

        if pricing_model in (PricingModel.FLAT.value, PricingModel.HYBRID.value):
            base_amount = snapshot.get("base_amount") or 0
            if pricing_model == PricingModel.FLAT.value:
                label = INTERVAL_LABELS.get(snapshot.get("interval"), snapshot.get("interval"))
                description = f"{name} - {label}"
            else:
                description = f"{name} - Base Fee"
            items.append({
                "description": description,
                "quantity": 1,
                "unit_amount": base_amount,
                "total_amount": base_amount,
                "type": LineItemType.PLAN.value,
            })

        if pricing_model in (PricingModel.USAGE.value, PricingModel.HYBRID.value):
            metric = snapshot.get("usage_metric")
            total_usage = self.usage_service.sum_usage(subscription.id, metric, period_start, period_end)
            billable = max(0, total_usage - (snapshot.get("free_units") or 0))
            unit_price = snapshot.get("unit_price") or 0

            if pricing_model == PricingModel.USAGE.value or billable > 0:
                items.append({
                    "description": f"{name} - Usage ({billable} {metric or 'units'})",
                    "quantity": billable,
                    "unit_amount": unit_price,
                    "total_amount": billable * unit_price,
                    "type": LineItemType.USAGE.value,
                })

        return items

    def next_invoice_number(self, app_id: int, year: int) -> str:
        """Atomically advance the (app, year) counter and format the number"""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise RuntimeError(f"Invoice numbering requires PostgreSQL or SQLite (got {dialect})")

        stmt = insert(InvoiceCounter).values(app_id=app_id, year=year, last_value=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=["app_id", "year"],
            set_={"last_value": InvoiceCounter.last_value + 1},
        ).returning(InvoiceCounter.last_value)

        sequence = self.db.execute(stmt).scalar_one()
        return f"INV-{year}-{sequence:03d}"

    def find_period_invoice(self, subscription_id: int, period_start: datetime, period_end: datetime) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(
            Invoice.subscription_id == subscription_id,
            Invoice.period_start == period_start,
            Invoice.period_end == period_end,
            Invoice.status != InvoiceStatus.VOID.value
        ).first()

    def get_open_invoice(self, subscription_id: int) -> Optional[Invoice]:
        """Most recent draft/open/failed invoice for a subscription"""
        return self.db.query(Invoice).filter(
            Invoice.subscription_id == subscription_id,
            Invoice.status.in_(UNPAID_INVOICE_STATUSES)
        ).order_by(Invoice.created_at.desc(), Invoice.id.desc()).first()

    def generate_invoice(
        self,
        subscription: Subscription,
        period_start: datetime,
        period_end: datetime,
        now: Optional[datetime] = None,
        status: str = InvoiceStatus.OPEN.value,
        auto_generated: bool = True
    ) -> Invoice:
        """
        Issue the invoice for a subscription period

        Idempotent per (subscription, period): an existing non-void invoice for
        the same period is returned unchanged.
        """
        existing = self.find_period_invoice(subscription.id, period_start, period_end)
        if existing:
            logger.info(f"Invoice {existing.invoice_number} already exists for subscription {subscription.id} period {period_start} - {period_end}")
            return existing

        now = now or datetime.utcnow()
        line_items = self.compute_line_items(subscription, period_start, period_end)
        amount_due = sum(item["total_amount"] for item in line_items)

        app = self.db.query(App).filter(App.id == subscription.app_id).first()
        grace_days = app.grace_period_days if app is not None else config.DEFAULT_GRACE_PERIOD_DAYS
        customer = self.db.query(Customer).filter(Customer.id == subscription.customer_id).first()
        snapshot = subscription.plan_snapshot or {}

        invoice = Invoice(
            app_id=subscription.app_id,
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            invoice_number=self.next_invoice_number(subscription.app_id, now.year),
            currency=snapshot.get("currency"),
            amount_due=amount_due,
            amount_paid=0,
            status=status,
            line_items=line_items,
            period_start=period_start,
            period_end=period_end,
            due_date=period_end + timedelta(days=grace_days),
            extra_metadata={
                "plan_name": snapshot.get("name"),
                "customer_email": customer.email if customer else None,
                "generated_at": now.isoformat(),
                "auto_generated": auto_generated,
            },
        )
        self.db.add(invoice)
        self.db.flush()

        logger.info(f"Generated invoice {invoice.invoice_number} for subscription {subscription.id}: {amount_due} {invoice.currency}")
        self.dispatcher.enqueue(invoice.app_id, "invoice.created", invoice.to_dict(), now=now)
        return invoice

    def mark_invoice_paid(self, invoice: Invoice, amount: Optional[int] = None, paid_at: Optional[datetime] = None) -> bool:
        """
        Mark an invoice paid

        Returns:
            False when the invoice was already paid (or void) and nothing changed
        """
        if invoice.status == InvoiceStatus.PAID.value:
            logger.warning(f"Invoice {invoice.invoice_number} is already paid; ignoring repeat payment")
            return False
        if invoice.status == InvoiceStatus.VOID.value:
            logger.warning(f"Invoice {invoice.invoice_number} is void; not marking paid")
            return False

        paid_amount = amount if amount is not None else invoice.amount_due
        if paid_amount < invoice.amount_due:
            logger.warning(f"Invoice {invoice.invoice_number} paid {paid_amount} of {invoice.amount_due}")

        values = {
            "amount_paid": paid_amount,
            "status": InvoiceStatus.PAID.value,
            "paid_at": paid_at or datetime.utcnow(),
        }
        # Only one of several concurrent successes for this invoice may win
        result = self.db.execute(
            update(Invoice)
            .where(
                Invoice.id == invoice.id,
                Invoice.status.notin_([InvoiceStatus.PAID.value, InvoiceStatus.VOID.value])
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.refresh(invoice, ["status", "amount_paid", "paid_at"])
            logger.warning(f"Invoice {invoice.invoice_number} was settled concurrently ({invoice.status}); ignoring repeat payment")
            return False

        for key, value in values.items():
            setattr(invoice, key, value)
        self.db.flush()

        logger.info(f"Marked invoice {invoice.invoice_number} paid: {paid_amount} {invoice.currency}")
        self.dispatcher.enqueue(invoice.app_id, "invoice.paid", invoice.to_dict(), now=invoice.paid_at)
        return True

    def mark_invoice_failed(self, invoice: Invoice) -> bool:
        if invoice.status not in (InvoiceStatus.DRAFT.value, InvoiceStatus.OPEN.value):
            return False
        invoice.status = InvoiceStatus.FAILED.value
        self.db.flush()
        logger.info(f"Marked invoice {invoice.invoice_number} failed")
        return True

    def void_invoice(self, invoice: Invoice, reason: Optional[str] = None) -> Invoice:
        if invoice.status == InvoiceStatus.PAID.value:
            raise BillingValidationError("Cannot void a paid invoice")

        invoice.status = InvoiceStatus.VOID.value
        if reason:
            invoice.extra_metadata = {**(invoice.extra_metadata or {}), "void_reason": reason}
        self.db.flush()

        logger.info(f"Voided invoice {invoice.invoice_number}")
        return invoice


def get_invoice_generator(db: Session) -> InvoiceGenerator:
    return InvoiceGenerator(db)
