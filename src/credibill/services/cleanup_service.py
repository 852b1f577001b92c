"""
Cleanup Service
Deletes tenant records together with everything that depends on them

The database carries no ON DELETE cascades; dependent rows are removed here,
children before parents, in the order of DEPENDENT_RECORDS.
"""
import logging
from typing import Dict

from sqlalchemy.orm import Session

from ..exceptions import BillingValidationError
from ..db.models import (
    App,
    Customer,
    Invoice,
    InvoiceCounter,
    PaymentProviderCredential,
    PaymentTransaction,
    Plan,
    PlanStatus,
    Subscription,
    UsageEvent,
    WebhookDelivery,
    WebhookLog,
    LIVE_SUBSCRIPTION_STATUSES,
    TERMINAL_SUBSCRIPTION_STATUSES,
)

logger = logging.getLogger(__name__)

# Children before parents
DEPENDENT_RECORDS = [
    WebhookLog,
    WebhookDelivery,
    UsageEvent,
    PaymentTransaction,
    Invoice,
    Subscription,
    Customer,
    Plan,
    InvoiceCounter,
    PaymentProviderCredential,
]


class CleanupService:
    """Ordered deletion of apps, customers, plans and finished subscriptions"""

    def __init__(self, db: Session):
        self.db = db

    def _detach_webhook_logs(self, subscription_ids, transaction_ids):
        # Inbound webhook logs are an audit trail; keep them, drop the references
        if subscription_ids:
            self.db.query(WebhookLog).filter(
                WebhookLog.subscription_id.in_(subscription_ids)
            ).update({WebhookLog.subscription_id: None}, synchronize_session=False)
        if transaction_ids:
            self.db.query(WebhookLog).filter(
                WebhookLog.payment_transaction_id.in_(transaction_ids)
            ).update({WebhookLog.payment_transaction_id: None}, synchronize_session=False)

    def _delete_where(self, column_name: str, value) -> Dict[str, int]:
        counts = {}
        for model in DEPENDENT_RECORDS:
            column = getattr(model, column_name, None)
            if column is None or model is WebhookLog:
                continue
            deleted = self.db.query(model).filter(column == value).delete(synchronize_session=False)
            if deleted:
                counts[model.__tablename__] = deleted
        return counts

    def delete_customer(self, customer: Customer, force: bool = False) -> Dict[str, int]:
        """
        Delete a customer with their subscriptions, invoices, transactions and usage

        Raises:
            BillingValidationError: customer has an active or trialing subscription and force is False
        """
        live = self.db.query(Subscription).filter(
            Subscription.customer_id == customer.id,
            Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES)
        ).count()
        if live and not force:
            raise BillingValidationError(
                f"Customer {customer.id} has {live} active subscription(s); cancel them first or force the deletion"
            )

        subscription_ids = [row.id for row in self.db.query(Subscription.id).filter(Subscription.customer_id == customer.id)]
        transaction_ids = [row.id for row in self.db.query(PaymentTransaction.id).filter(PaymentTransaction.customer_id == customer.id)]
        self._detach_webhook_logs(subscription_ids, transaction_ids)

        counts = self._delete_where("customer_id", customer.id)
        self.db.delete(customer)
        self.db.flush()

        logger.info(f"Deleted customer {customer.id} and dependents: {counts}")
        return counts

    def prune_subscription(self, subscription: Subscription) -> Dict[str, int]:
        """Remove a cancelled or expired subscription and its billing records"""
        if subscription.status not in TERMINAL_SUBSCRIPTION_STATUSES:
            raise BillingValidationError(f"Only cancelled or expired subscriptions can be pruned (subscription {subscription.id} is {subscription.status})")

        transaction_ids = [row.id for row in self.db.query(PaymentTransaction.id).filter(PaymentTransaction.subscription_id == subscription.id)]
        self._detach_webhook_logs([subscription.id], transaction_ids)

        counts = self._delete_where("subscription_id", subscription.id)
        self.db.delete(subscription)
        self.db.flush()

        logger.info(f"Pruned subscription {subscription.id}: {counts}")
        return counts

    def delete_plan(self, plan: Plan) -> Dict[str, bool]:
        """
        Delete a plan, or archive it when finished subscriptions still reference it

        Raises:
            BillingValidationError: a non-terminal subscription is on the plan
        """
        referencing = self.db.query(Subscription).filter(Subscription.plan_id == plan.id)
        in_use = referencing.filter(Subscription.status.notin_(TERMINAL_SUBSCRIPTION_STATUSES)).count()
        if in_use:
            raise BillingValidationError(f"Plan {plan.id} is used by {in_use} subscription(s) and cannot be deleted")

        if referencing.count():
            plan.status = PlanStatus.ARCHIVED.value
            self.db.flush()
            logger.info(f"Archived plan {plan.id}; finished subscriptions still reference it")
            return {"deleted": False, "archived": True}

        self.db.delete(plan)
        self.db.flush()
        logger.info(f"Deleted plan {plan.id}")
        return {"deleted": True, "archived": False}

    def delete_app(self, app: App) -> Dict[str, int]:
        """Delete an app and every record it owns"""
        counts = {}
        for model in DEPENDENT_RECORDS:
            deleted = self.db.query(model).filter(model.app_id == app.id).delete(synchronize_session=False)
            if deleted:
                counts[model.__tablename__] = deleted

        self.db.delete(app)
        self.db.flush()

        logger.info(f"Deleted app {app.id} and dependents: {counts}")
        return counts


def get_cleanup_service(db: Session) -> CleanupService:
    return CleanupService(db)
