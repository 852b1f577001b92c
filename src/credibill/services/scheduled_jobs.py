"""
Scheduled Jobs Service
Registers the billing sweeps and outgoing webhook retries on a background scheduler
"""
import logging
from typing import Optional
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None

# (job id, BillingSweeps method, name, hour UTC)
DAILY_SWEEPS = [
    ("scheduled_cancellations", "process_scheduled_cancellations", "Process scheduled cancellations", 1),
    ("trial_expirations", "process_trial_expirations", "Process trial expirations", 2),
    ("recurring_payments", "process_recurring_payments", "Process recurring payments", 3),
    ("failed_payment_retries", "retry_failed_payments", "Retry failed payments", 4),
    ("expired_transactions", "cleanup_expired_transactions", "Clean up expired transactions", 5),
    ("grace_period_expirations", "process_grace_period_expirations", "Process grace period expirations", 6),
    ("pending_invoices", "generate_pending_invoices", "Generate pending invoices", 7),
]


def get_scheduler() -> BackgroundScheduler:
    """
    Get or create the background scheduler instance

    Returns:
        BackgroundScheduler instance
    """
    global _scheduler

    if _scheduler is None:
        _scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                'coalesce': True,  # Combine missed runs
                'max_instances': 1,  # Only one instance at a time
                'misfire_grace_time': 3600  # 1 hour grace period
            }
        )

    return _scheduler


def register_jobs(scheduler: BackgroundScheduler):
    for job_id, method, name, hour in DAILY_SWEEPS:
        scheduler.add_job(
            func=run_billing_sweep_job,
            args=[method],
            trigger=CronTrigger(hour=hour, minute=0, timezone="UTC"),
            id=job_id,
            name=name,
            replace_existing=True
        )
        logger.info(f"Registered {job_id} job (daily at {hour} AM UTC)")

    scheduler.add_job(
        func=run_webhook_delivery_job,
        trigger=CronTrigger(minute="*", timezone="UTC"),
        id='webhook_deliveries',
        name='Deliver outgoing webhooks',
        replace_existing=True
    )
    logger.info("Registered webhook delivery job (every minute)")


def start_scheduler():
    """
    Start the background scheduler and register all jobs
    """
    scheduler = get_scheduler()

    if not scheduler.running:
        register_jobs(scheduler)
        scheduler.start()
        logger.info("Background scheduler started")
    else:
        logger.warning("Scheduler already running")


def stop_scheduler():
    """
    Stop the background scheduler
    """
    scheduler = get_scheduler()

    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler stopped")


def run_billing_sweep_job(method: str):
    """
    Run one BillingSweeps method on a fresh session

    Args:
        method: Name of the sweep, e.g. "process_trial_expirations"
    """
    from ..db.engine import SessionLocal
    from .billing_sweeps import get_billing_sweeps
    from .metrics import JobTimer, increment_counter

    logger.info("=" * 60)
    logger.info(f"Starting scheduled billing sweep: {method}")
    logger.info("=" * 60)

    db = SessionLocal()

    try:
        with JobTimer(method):
            stats = getattr(get_billing_sweeps(db), method)()

        for key, value in stats.items():
            logger.info(f"  - {key}: {value}")
        if stats.get("errors"):
            increment_counter("billing_sweep_item_errors_total", stats["errors"], labels={"job": method})

    except Exception as e:
        logger.error(f"Billing sweep {method} failed: {e}", exc_info=True)
    finally:
        db.close()

    logger.info(f"Billing sweep {method} completed")
    logger.info("=" * 60)


def run_webhook_delivery_job():
    """
    Outgoing webhook job - runs every minute to deliver due webhooks and retries
    """
    from ..db.engine import SessionLocal
    from .metrics import JobTimer
    from .webhook_dispatcher import get_webhook_dispatcher

    db = SessionLocal()

    try:
        with JobTimer("webhook_deliveries"):
            stats = get_webhook_dispatcher(db).process_due_deliveries()
        if stats["processed"] or stats["errors"]:
            logger.info(f"Webhook delivery run: {stats}")
    except Exception as e:
        logger.error(f"Webhook delivery job failed: {e}", exc_info=True)
    finally:
        db.close()
