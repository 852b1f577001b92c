"""
Usage Service
Records metered usage events and aggregates them for invoicing
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import AuthorizationError, BillingValidationError, NotFoundError
from ..db.models import Subscription, UsageEvent

logger = logging.getLogger(__name__)


class UsageService:
    """Service for recording and summing metered usage"""

    def __init__(self, db: Session):
        self.db = db

    def record_usage(
        self,
        app_id: int,
        subscription_id: int,
        metric: str,
        quantity: int,
        timestamp: Optional[datetime] = None,
        event_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Tuple[UsageEvent, bool]:
        """
        Record a usage event

        Returns:
            (event, duplicate) - duplicate is True when event_id was already recorded
        """
        if quantity is None or quantity <= 0:
            raise BillingValidationError("Quantity must be greater than 0")
        if not metric:
            raise BillingValidationError("Usage metric is required")

        subscription = self.db.query(Subscription).filter(Subscription.id == subscription_id).first()
        if not subscription:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        if subscription.app_id != app_id:
            raise AuthorizationError("API key cannot access this subscription")

        if event_id:
            existing = self.db.query(UsageEvent).filter(
                UsageEvent.app_id == app_id,
                UsageEvent.event_id == event_id
            ).first()
            if existing:
                logger.warning(f"Duplicate usage event {event_id} for app {app_id} ignored")
                return existing, True

        event = UsageEvent(
            app_id=app_id,
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            metric=metric,
            quantity=quantity,
            timestamp=timestamp or datetime.utcnow(),
            event_id=event_id,
            extra_metadata=metadata,
        )

        try:
            with self.db.begin_nested():
                self.db.add(event)
                self.db.flush()
        except IntegrityError:
            # Concurrent insert with the same event id won the race
            existing = self.db.query(UsageEvent).filter(
                UsageEvent.app_id == app_id,
                UsageEvent.event_id == event_id
            ).first()
            if existing is None:
                raise
            logger.warning(f"Duplicate usage event {event_id} for app {app_id} ignored")
            return existing, True

        logger.info(f"Recorded usage {metric}={quantity} for subscription {subscription.id}")
        return event, False

    def sum_usage(self, subscription_id: int, metric: Optional[str], start: datetime, end: datetime) -> int:
        """Total quantity for a metric within [start, end] inclusive"""
        query = self.db.query(func.coalesce(func.sum(UsageEvent.quantity), 0)).filter(
            UsageEvent.subscription_id == subscription_id,
            UsageEvent.timestamp >= start,
            UsageEvent.timestamp <= end,
        )
        if metric:
            query = query.filter(UsageEvent.metric == metric)
        return int(query.scalar() or 0)


def get_usage_service(db: Session) -> UsageService:
    return UsageService(db)
