"""
Shared FastAPI dependencies for the tenant API and webhook routes
"""
import logging

from fastapi import BackgroundTasks, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .db import get_db
from .db.models import App, AppStatus
from .logging_config import bind_app_id
from .services.webhook_dispatcher import dispatch_enqueued_deliveries, pop_enqueued_delivery_ids

logger = logging.getLogger(__name__)


async def get_current_app(
    x_app_id: int = Header(..., alias="X-App-ID"),
    db: Session = Depends(get_db)
) -> App:
    """Resolve the tenant app addressed by the X-App-ID header"""
    app = db.query(App).filter(App.id == x_app_id).first()
    if not app:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"App {x_app_id} not found"
        )
    if app.status == AppStatus.ARCHIVED.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"App {x_app_id} is archived"
        )
    bind_app_id(app.id)
    return app


def commit_and_dispatch(db: Session, background_tasks: BackgroundTasks):
    """
    Commit the request's unit of work, then schedule first delivery of any
    webhooks it enqueued
    """
    db.commit()
    delivery_ids = pop_enqueued_delivery_ids(db)
    if delivery_ids:
        background_tasks.add_task(dispatch_enqueued_deliveries, delivery_ids)
