"""Celery tasks for the inventory module."""

from datetime import timedelta

import structlog
from celery import shared_task
from django.conf import settings
from django.utils import timezone

from modules.inventory.models import InventoryLogEntry

logger = structlog.get_logger(__name__)


@shared_task(name="inventory.prune_logs")
def prune_logs(retention_days=None):
    """Delete inventory log entries older than the retention window."""
    days = retention_days or settings.INVENTORY_LOG_RETENTION_DAYS
    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = InventoryLogEntry.objects.filter(created_at__lt=cutoff).delete()
    logger.info("inventory.logs_pruned", deleted=deleted, retention_days=days)
    return {"deleted": deleted}
