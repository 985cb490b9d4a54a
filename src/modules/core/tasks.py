"""Celery tasks for the core module."""

import structlog
from celery import shared_task

from modules.core.outbox import OutboxDispatcher, purge_processed_events
from shared.infrastructure.bus import event_bus

logger = structlog.get_logger(__name__)


@shared_task(name="core.outbox.dispatch_pending")
def dispatch_pending():
    """Drain one batch of due outbox events."""
    result = OutboxDispatcher(event_bus).dispatch_batch()
    return {
        "processed": result.processed,
        "retried": result.retried,
        "failed": result.failed,
        "skipped": result.skipped,
    }


@shared_task(name="core.outbox.purge_processed")
def purge_processed():
    deleted = purge_processed_events()
    return {"deleted": deleted}
