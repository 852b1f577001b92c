"""
Tenant billing API - customers, plans, subscriptions, usage, payments,
outgoing webhook deliveries and provider credentials

Every route is scoped to the app named by the X-App-ID header.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field, model_validator
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import secrets
import logging

from .db import get_db
from .db.models import App, Invoice, Plan, PlanStatus, PricingModel, BillingInterval, WebhookDelivery
from .dependencies import get_current_app, commit_and_dispatch
from .services.cleanup_service import CleanupService
from .services.credential_vault import get_credential_vault
from .services.customer_service import CustomerService
from .services.payment_adapters import list_supported_providers
from .services.payment_service import get_payment_service
from .services.revenue_metrics import compute_overview
from .services.subscription_lifecycle import (
    SubscriptionLifecycle,
    compute_subscription_status,
    get_status_description,
)
from .services.usage_service import UsageService
from .services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["billing"])


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CustomerCreateRequest(BaseModel):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    external_customer_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class CustomerUpdateRequest(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    external_customer_id: Optional[str] = None
    status: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class PlanCreateRequest(BaseModel):
    """Pricing plan; amounts in the smallest currency unit"""
    name: str = Field(..., min_length=3)
    description: Optional[str] = None
    pricing_model: PricingModel
    base_amount: Optional[int] = Field(None, ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    interval: BillingInterval
    usage_metric: Optional[str] = None
    unit_price: Optional[int] = Field(None, ge=0)
    free_units: Optional[int] = Field(None, ge=0)
    trial_days: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_pricing(self):
        if self.pricing_model == PricingModel.FLAT and not self.base_amount:
            raise ValueError("Flat plans require base_amount > 0")
        if self.pricing_model in (PricingModel.USAGE, PricingModel.HYBRID):
            if not self.usage_metric:
                raise ValueError("Usage-based plans require usage_metric")
            if not self.unit_price:
                raise ValueError("Usage-based plans require unit_price > 0")
        return self


class SubscriptionCreateRequest(BaseModel):
    customer_id: int
    plan_id: int
    trial_days: Optional[int] = Field(None, ge=0)


class CancelRequest(BaseModel):
    at_period_end: bool = True
    reason: Optional[str] = Field(None, max_length=500)


class ChangePlanRequest(BaseModel):
    plan_id: int


class UsageRequest(BaseModel):
    subscription_id: int
    metric: str
    quantity: int
    timestamp: Optional[datetime] = None
    event_id: Optional[str] = Field(None, max_length=200)
    metadata: Optional[Dict[str, Any]] = None


class PaymentInitiateRequest(BaseModel):
    subscription_id: int
    payment_method: str
    customer_phone: Optional[str] = None
    invoice_id: Optional[int] = None
    amount: Optional[int] = Field(None, gt=0)
    callback_url: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Optional[int] = None
    reason: Optional[str] = None


class CredentialsRequest(BaseModel):
    provider: str
    secret_key: str
    public_key: Optional[str] = None
    merchant_id: Optional[str] = None
    api_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    environment: Optional[str] = None


class WebhookEndpointRequest(BaseModel):
    url: str = Field(..., min_length=8, max_length=500)


# Customers

@router.post("/customers", status_code=status.HTTP_201_CREATED)
async def create_customer(
    request: CustomerCreateRequest,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    customer = CustomerService(db).create_customer(
        app.id,
        email=request.email,
        first_name=request.first_name,
        last_name=request.last_name,
        phone=request.phone,
        external_customer_id=request.external_customer_id,
        metadata=request.metadata,
    )
    commit_and_dispatch(db, background_tasks)
    return customer.to_dict()


@router.patch("/customers/{customer_id}")
async def update_customer(
    customer_id: int,
    request: CustomerUpdateRequest,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    updates = request.model_dump(exclude_unset=True)
    if "metadata" in updates:
        updates["extra_metadata"] = updates.pop("metadata")

    customer = CustomerService(db).update_customer(app.id, customer_id, **updates)
    commit_and_dispatch(db, background_tasks)
    return customer.to_dict()


@router.delete("/customers/{customer_id}")
async def delete_customer(
    customer_id: int,
    background_tasks: BackgroundTasks,
    force: bool = Query(False),
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    counts = CustomerService(db).delete_customer(app.id, customer_id, force=force)
    commit_and_dispatch(db, background_tasks)
    return {"deleted": True, "customer_id": customer_id, "deleted_records": counts}


# Plans

@router.post("/plans", status_code=status.HTTP_201_CREATED)
async def create_plan(
    request: PlanCreateRequest,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    plan = Plan(
        app_id=app.id,
        name=request.name,
        description=request.description,
        pricing_model=request.pricing_model.value,
        base_amount=request.base_amount,
        currency=request.currency.upper(),
        interval=request.interval.value,
        usage_metric=request.usage_metric,
        unit_price=request.unit_price,
        free_units=request.free_units,
        trial_days=request.trial_days,
        status=PlanStatus.ACTIVE.value,
    )
    db.add(plan)
    db.commit()
    logger.info(f"Created plan {plan.id} ({plan.pricing_model}/{plan.interval}) for app {app.id}")
    return {"id": plan.id, "name": plan.name, "status": plan.status}


@router.delete("/plans/{plan_id}")
async def delete_plan(
    plan_id: int,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    plan = db.query(Plan).filter(Plan.id == plan_id, Plan.app_id == app.id).first()
    if not plan:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Plan {plan_id} not found"
        )
    result = CleanupService(db).delete_plan(plan)
    db.commit()
    return {"plan_id": plan_id, **result}


# Subscriptions

def _subscription_response(db: Session, app: App, subscription) -> dict:
    invoices = db.query(Invoice).filter(
        Invoice.subscription_id == subscription.id
    ).order_by(Invoice.created_at.desc()).all()
    effective = compute_subscription_status(subscription, app.grace_period_days)
    return {
        **subscription.to_dict(),
        "effective_status": effective,
        "status_description": get_status_description(effective),
        "invoices": [invoice.to_dict() for invoice in invoices],
    }


@router.post("/subscriptions", status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: SubscriptionCreateRequest,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    subscription = SubscriptionLifecycle(db).create_subscription(
        app.id, request.customer_id, request.plan_id, trial_days=request.trial_days
    )
    commit_and_dispatch(db, background_tasks)
    return _subscription_response(db, app, subscription)


@router.get("/subscriptions/{subscription_id}")
async def get_subscription(
    subscription_id: int,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    subscription = SubscriptionLifecycle(db).get_subscription(app.id, subscription_id)
    return _subscription_response(db, app, subscription)


@router.post("/subscriptions/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: int,
    request: CancelRequest,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    lifecycle = SubscriptionLifecycle(db)
    subscription = lifecycle.get_subscription(app.id, subscription_id)
    lifecycle.cancel_subscription(subscription, at_period_end=request.at_period_end, reason=request.reason)
    commit_and_dispatch(db, background_tasks)
    return subscription.to_dict()


@router.post("/subscriptions/{subscription_id}/pause")
async def pause_subscription(
    subscription_id: int,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    lifecycle = SubscriptionLifecycle(db)
    subscription = lifecycle.pause_subscription(lifecycle.get_subscription(app.id, subscription_id))
    commit_and_dispatch(db, background_tasks)
    return subscription.to_dict()


@router.post("/subscriptions/{subscription_id}/resume")
async def resume_subscription(
    subscription_id: int,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    lifecycle = SubscriptionLifecycle(db)
    subscription = lifecycle.resume_subscription(lifecycle.get_subscription(app.id, subscription_id))
    commit_and_dispatch(db, background_tasks)
    return subscription.to_dict()


@router.post("/subscriptions/{subscription_id}/change-plan")
async def change_plan(
    subscription_id: int,
    request: ChangePlanRequest,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    lifecycle = SubscriptionLifecycle(db)
    subscription = lifecycle.get_subscription(app.id, subscription_id)
    proration = lifecycle.change_plan(subscription, request.plan_id)
    commit_and_dispatch(db, background_tasks)
    return {"subscription": subscription.to_dict(), "proration": proration}


# Usage

@router.post("/usage")
async def record_usage(
    request: UsageRequest,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    event, duplicate = UsageService(db).record_usage(
        app.id,
        request.subscription_id,
        request.metric,
        request.quantity,
        timestamp=_naive_utc(request.timestamp),
        event_id=request.event_id,
        metadata=request.metadata,
    )
    db.commit()
    return {"id": event.id, "duplicate": duplicate}


# Payments

@router.post("/payments", status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    request: PaymentInitiateRequest,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    """
    Start collecting a subscription's open invoice

    A provider rejection still returns 201 with the transaction in status failed.
    """
    initiation = get_payment_service(db).initiate_subscription_payment(
        app.id,
        request.subscription_id,
        request.payment_method,
        customer_phone=request.customer_phone,
        invoice_id=request.invoice_id,
        amount=request.amount,
        callback_url=request.callback_url,
    )
    commit_and_dispatch(db, background_tasks)
    return {
        "transaction": initiation.transaction.to_dict(),
        "payment_url": initiation.payment_url,
        "message": initiation.message,
    }


@router.get("/payments/{transaction_id}/status")
async def poll_payment_status(
    transaction_id: int,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    transaction = get_payment_service(db).poll_transaction_status(app.id, transaction_id)
    commit_and_dispatch(db, background_tasks)
    return transaction.to_dict()


@router.post("/payments/{transaction_id}/refund")
async def refund_payment(
    transaction_id: int,
    request: RefundRequest,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    transaction = get_payment_service(db).refund_transaction(
        app.id, transaction_id, amount=request.amount, reason=request.reason
    )
    db.commit()
    return transaction.to_dict()


# Outgoing webhooks

@router.put("/webhook-endpoint")
async def configure_webhook_endpoint(
    request: WebhookEndpointRequest,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    """Set the app's webhook URL; the signing secret is generated once and returned"""
    if not request.url.startswith(("https://", "http://")):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook URL must be http(s)"
        )
    app.webhook_url = request.url
    if not app.webhook_secret:
        app.webhook_secret = secrets.token_hex(32)
    db.commit()
    return {"webhook_url": app.webhook_url, "webhook_secret": app.webhook_secret}


@router.get("/deliveries")
async def list_deliveries(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    deliveries = WebhookDispatcher(db).list_deliveries(app.id, status=status_filter, limit=limit)
    return {"deliveries": [delivery.to_dict() for delivery in deliveries]}


@router.post("/deliveries/{delivery_id}/retry")
async def retry_delivery(
    delivery_id: int,
    background_tasks: BackgroundTasks,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    delivery = db.query(WebhookDelivery).filter(
        WebhookDelivery.id == delivery_id,
        WebhookDelivery.app_id == app.id
    ).first()
    if not delivery:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Delivery {delivery_id} not found"
        )

    copy = WebhookDispatcher(db).requeue(delivery)
    commit_and_dispatch(db, background_tasks)
    return copy.to_dict()


# Overview

@router.get("/overview")
async def overview(
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    return compute_overview(db, app.id)


# Provider credentials

@router.get("/providers")
async def list_providers():
    return {"providers": list_supported_providers()}


@router.put("/credentials")
async def save_credentials(
    request: CredentialsRequest,
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    record = get_credential_vault(db).save_credentials(
        app,
        request.provider,
        request.secret_key,
        public_key=request.public_key,
        merchant_id=request.merchant_id,
        api_url=request.api_url,
        webhook_secret=request.webhook_secret,
        environment=request.environment,
    )
    db.commit()
    return {
        "provider": record.provider,
        "environment": record.environment,
        "connection_status": record.connection_status,
    }


@router.post("/credentials/test")
async def test_credentials(
    app: App = Depends(get_current_app),
    db: Session = Depends(get_db)
):
    payment_service = get_payment_service(db)
    result = payment_service.get_adapter(app).test_connection()
    record = payment_service.vault.record_connection_test(app.id, result)
    db.commit()
    return {
        "success": result.success,
        "message": result.message,
        "connection_status": record.connection_status,
        "details": result.details,
    }
