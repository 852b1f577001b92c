"""
Outgoing Webhook Dispatcher

Queues billing events for each app's webhook endpoint, signs them with the
app's webhook secret and redelivers on failure:

    attempt 1 immediately, then +1 min, +5 min, +15 min; after the 4th
    failed attempt the delivery is marked failed and never retried again.

Enqueueing only flushes; the row commits with the caller's state change and
is delivered after the request returns (background task) or by the
per-minute sweep.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from ..config import config
from ..db.models import App, WebhookDelivery, DeliveryStatus
from .metrics import increment_counter

logger = logging.getLogger(__name__)

ENQUEUED_KEY = "credibill_enqueued_deliveries"


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def to_json_safe(data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of an event payload with datetimes rendered as ISO strings"""
    return json.loads(json.dumps(data, default=_json_default))


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body"""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def pop_enqueued_delivery_ids(db: Session) -> List[int]:
    """Ids enqueued on this session since the last call"""
    return db.info.pop(ENQUEUED_KEY, [])


class WebhookDispatcher:
    """Queues, signs and delivers events to client webhook endpoints"""

    RETRY_DELAYS = [timedelta(minutes=1), timedelta(minutes=5), timedelta(minutes=15)]
    MAX_ATTEMPTS = len(RETRY_DELAYS) + 1
    USER_AGENT = "CrediBill-Webhooks/1.0"
    RESPONSE_BODY_LIMIT = 1000

    def __init__(self, db: Session, http_client: Optional[httpx.Client] = None, timeout: Optional[float] = None):
        self.db = db
        self.http_client = http_client
        self.timeout = timeout if timeout is not None else config.WEBHOOK_DELIVERY_TIMEOUT

    def enqueue(self, app_id: int, event: str, data: Dict[str, Any], now: Optional[datetime] = None) -> Optional[WebhookDelivery]:
        """
        Queue an event for the app's webhook endpoint

        Returns None when the app has no webhook URL configured.
        """
        app = self.db.query(App).filter(App.id == app_id).first()
        if app is None or not app.webhook_url:
            logger.debug(f"App {app_id} has no webhook URL; skipping {event}")
            return None

        delivery = WebhookDelivery(
            app_id=app_id,
            event=event,
            payload=to_json_safe(data),
            url=app.webhook_url,
            status=DeliveryStatus.PENDING.value,
            attempts=0,
            next_retry_at=now or datetime.utcnow(),
        )
        self.db.add(delivery)
        self.db.flush()

        self.db.info.setdefault(ENQUEUED_KEY, []).append(delivery.id)
        logger.info(f"Enqueued webhook {event} for app {app_id} (delivery {delivery.id})")
        return delivery

    def build_body(self, delivery: WebhookDelivery, now: datetime) -> bytes:
        timestamp_ms = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
        body = {
            "event": delivery.event,
            "data": delivery.payload,
            "timestamp": timestamp_ms,
            "app_id": str(delivery.app_id),
        }
        return json.dumps(body, separators=(",", ":"), default=_json_default).encode("utf-8")

    def _post(self, url: str, body: bytes, headers: Dict[str, str]) -> httpx.Response:
        if self.http_client is not None:
            return self.http_client.post(url, content=body, headers=headers, timeout=self.timeout)
        return httpx.post(url, content=body, headers=headers, timeout=self.timeout)

    def deliver(self, delivery: WebhookDelivery, now: Optional[datetime] = None) -> bool:
        """
        Make one delivery attempt

        Returns:
            True if the endpoint answered 2xx
        """
        if delivery.status != DeliveryStatus.PENDING.value:
            logger.warning(f"Delivery {delivery.id} is {delivery.status}; not attempting")
            return delivery.status == DeliveryStatus.SUCCESS.value

        now = now or datetime.utcnow()
        app = self.db.query(App).filter(App.id == delivery.app_id).first()
        secret = (app.webhook_secret if app else None) or ""

        attempt = delivery.attempts + 1
        body = self.build_body(delivery, now)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.USER_AGENT,
            "X-Webhook-Event": delivery.event,
            "X-Delivery-Attempt": str(attempt),
            "X-Webhook-Signature": sign_payload(body, secret),
        }

        delivery.attempts = attempt
        delivery.last_attempt_at = now

        try:
            response = self._post(delivery.url, body, headers)
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"
        else:
            delivery.response_status = response.status_code
            delivery.response_body = response.text[:self.RESPONSE_BODY_LIMIT]
            if response.is_success:
                delivery.status = DeliveryStatus.SUCCESS.value
                delivery.next_retry_at = None
                delivery.error = None
                increment_counter("webhook_deliveries_total", labels={"result": "success"})
                logger.info(f"Delivered {delivery.event} to app {delivery.app_id} (delivery {delivery.id}, attempt {attempt})")
                return True
            error = f"HTTP {response.status_code}"

        self._schedule_retry(delivery, error, now)
        return False

    def _schedule_retry(self, delivery: WebhookDelivery, error: str, now: datetime):
        delivery.error = error[:1000]

        if delivery.attempts < self.MAX_ATTEMPTS:
            delay = self.RETRY_DELAYS[delivery.attempts - 1]
            delivery.next_retry_at = now + delay
            increment_counter("webhook_deliveries_total", labels={"result": "retry"})
            logger.warning(
                f"Delivery {delivery.id} attempt {delivery.attempts} failed ({error}); "
                f"retrying at {delivery.next_retry_at.isoformat()}"
            )
        else:
            delivery.status = DeliveryStatus.FAILED.value
            delivery.next_retry_at = None
            increment_counter("webhook_deliveries_total", labels={"result": "failed"})
            logger.error(f"Delivery {delivery.id} permanently failed after {delivery.attempts} attempts: {error}")

    def process_due_deliveries(self, now: Optional[datetime] = None, limit: int = 50) -> Dict[str, int]:
        """Attempt every pending delivery whose retry time has come, committing each one"""
        now = now or datetime.utcnow()
        stats = {"processed": 0, "delivered": 0, "failed": 0, "errors": 0}

        due = self.db.query(WebhookDelivery).filter(
            WebhookDelivery.status == DeliveryStatus.PENDING.value,
            WebhookDelivery.next_retry_at <= now
        ).order_by(WebhookDelivery.next_retry_at).limit(limit).all()

        for delivery in due:
            try:
                delivered = self.deliver(delivery, now=now)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                stats["errors"] += 1
                logger.error(f"Error delivering webhook {delivery.id}: {e}", exc_info=True)
                continue

            stats["processed"] += 1
            if delivered:
                stats["delivered"] += 1
            else:
                stats["failed"] += 1

        return stats

    def deliver_pending_ids(self, delivery_ids: List[int], now: Optional[datetime] = None) -> int:
        """First attempt for deliveries just enqueued by a request"""
        delivered = 0
        for delivery_id in delivery_ids:
            delivery = self.db.query(WebhookDelivery).filter(WebhookDelivery.id == delivery_id).first()
            if delivery is None or delivery.status != DeliveryStatus.PENDING.value or delivery.attempts > 0:
                continue
            try:
                if self.deliver(delivery, now=now):
                    delivered += 1
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Error delivering webhook {delivery_id}: {e}", exc_info=True)
        return delivered

    def list_deliveries(self, app_id: int, status: Optional[str] = None, limit: int = 50) -> List[WebhookDelivery]:
        query = self.db.query(WebhookDelivery).filter(WebhookDelivery.app_id == app_id)
        if status:
            query = query.filter(WebhookDelivery.status == status)
        return query.order_by(WebhookDelivery.created_at.desc()).limit(limit).all()

    def requeue(self, delivery: WebhookDelivery, now: Optional[datetime] = None) -> WebhookDelivery:
        """Queue a fresh copy of a delivery; the original keeps its history"""
        copy = WebhookDelivery(
            app_id=delivery.app_id,
            event=delivery.event,
            payload=delivery.payload,
            url=delivery.url,
            status=DeliveryStatus.PENDING.value,
            attempts=0,
            next_retry_at=now or datetime.utcnow(),
        )
        self.db.add(copy)
        self.db.flush()
        self.db.info.setdefault(ENQUEUED_KEY, []).append(copy.id)
        logger.info(f"Requeued delivery {delivery.id} as {copy.id}")
        return copy


def get_webhook_dispatcher(db: Session) -> WebhookDispatcher:
    return WebhookDispatcher(db)


def dispatch_enqueued_deliveries(delivery_ids: List[int]):
    """Background task: first delivery attempt on a fresh session"""
    from ..db.engine import SessionLocal

    if not delivery_ids:
        return

    db = SessionLocal()
    try:
        WebhookDispatcher(db).deliver_pending_ids(delivery_ids)
    finally:
        db.close()
