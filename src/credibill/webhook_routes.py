"""
Inbound payment provider webhooks
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from typing import Optional
import logging

from .db import get_db
from .dependencies import commit_and_dispatch
from .logging_config import bind_app_id
from .services.payment_adapters.payloads import SUPPORTED_WEBHOOK_PROVIDERS
from .services.webhook_reconciler import WebhookReconciler, get_webhook_reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Providers verified by re-querying the transaction send no signature
SIGNATURE_HEADERS = {
    "flutterwave": ("verif-hash",),
    "pawapay": ("X-Signature", "Authorization"),
    "pesapal": (),
    "dpo": (),
}


def get_reconciler(db: Session = Depends(get_db)) -> WebhookReconciler:
    return get_webhook_reconciler(db)


async def read_body(request: Request) -> bytes:
    return await request.body()


def extract_signature(provider: str, request: Request) -> Optional[str]:
    for header in SIGNATURE_HEADERS.get(provider, ()):
        value = request.headers.get(header)
        if value:
            return value
    return None


@router.post("/{provider}/{app_id}")
def receive_webhook(
    provider: str,
    app_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    body: bytes = Depends(read_body),
    db: Session = Depends(get_db),
    reconciler: WebhookReconciler = Depends(get_reconciler)
):
    """
    Payment provider callback endpoint

    - 200: processed, or ignored as a duplicate
    - 400: unsupported provider, malformed payload or missing signature
    - 401: signature or re-query verification failed
    - 404: unknown app, or no transaction matches the callback

    Runs in the threadpool: Pesapal and DPO verification re-queries the
    provider with a blocking HTTP call.
    """
    if provider not in SUPPORTED_WEBHOOK_PROVIDERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported payment provider: {provider}"
        )

    signature = extract_signature(provider, request)
    if SIGNATURE_HEADERS[provider] and not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {' or '.join(SIGNATURE_HEADERS[provider])} header"
        )

    bind_app_id(app_id)
    result = reconciler.handle_webhook(provider, app_id, body, signature)
    commit_and_dispatch(db, background_tasks)

    return {
        "status": "ok",
        "result": result.status,
        "webhook_log_id": result.webhook_log_id,
        "transaction_id": result.transaction_id,
    }
