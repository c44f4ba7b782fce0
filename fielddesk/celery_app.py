"""
Celery worker: envelope dispatch loop and one-time code housekeeping.

Envelopes are claimed with SELECT ... FOR UPDATE SKIP LOCKED, so an overlapping
run (slow cycle, second worker) never handles the same row twice.
"""
import logging

from celery import Celery
from celery.schedules import crontab
from celery.signals import after_setup_logger

from .config import settings
from .database import SessionLocal
from .transport import build_transport
from .use_cases.envelopes import process_pending_envelopes_use_case
from .use_cases.one_time_codes import purge_stale_codes

logger = logging.getLogger(__name__)

celery_app = Celery(
    "fielddesk",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
)


@after_setup_logger.connect
def _apply_log_level(logger, *args, **kwargs):
    logger.setLevel(settings.LOG_LEVEL.upper())


@celery_app.task(name="process_envelope_outbox")
def process_envelope_outbox(batch_size: int | None = None):
    """One dispatch cycle over the oldest due PENDING envelopes."""
    db = SessionLocal()
    transport = build_transport()

    try:
        report = process_pending_envelopes_use_case(db=db, transport=transport, batch_size=batch_size)
        if report.locked:
            logger.info(
                f"✅ Dispatch cycle: {report.sent} sent, {report.retried} retrying, "
                f"{report.failed} failed of {report.locked} locked"
            )
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error processing envelope outbox: {e}", exc_info=True)
        raise

    finally:
        db.close()

    return report.as_dict()


@celery_app.task(name="purge_stale_codes")
def purge_stale_codes_task():
    """Delete one-time codes past the retention window."""
    db = SessionLocal()

    try:
        deleted = purge_stale_codes(db)
        if deleted:
            logger.info(f"🧹 Purged {deleted} stale one-time codes")
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error purging one-time codes: {e}", exc_info=True)
        raise

    finally:
        db.close()

    return {"deleted": deleted}


# Schedule periodic processing
celery_app.conf.beat_schedule = {
    'process-envelope-outbox': {
        'task': 'process_envelope_outbox',
        'schedule': settings.DISPATCH_INTERVAL_SECONDS,
        # A cycle still queued after one interval is superseded by the next one.
        'options': {'expires': settings.DISPATCH_INTERVAL_SECONDS},
    },
    'purge-stale-codes-hourly': {
        'task': 'purge_stale_codes',
        'schedule': crontab(minute=0),
    },
}
