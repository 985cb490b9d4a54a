"""Outbox writer and dispatcher.

``write_events`` is called by repositories inside the unit of work that
changed the aggregate.  ``OutboxDispatcher`` is the poller: it locks one due
row at a time with ``SKIP LOCKED`` so several workers can drain the table
concurrently, runs the handlers inside a savepoint and commits their writes
together with the ``PROCESSED`` mark.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Iterable, List, Optional
from uuid import UUID

import structlog
from django.conf import settings
from django.db import transaction
from django.utils import timezone

from modules.core.models import EventStatus, OutboxEvent
from shared.domain.events import DomainEvent

if TYPE_CHECKING:
    from shared.domain.bus import IEventBus

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


def write_events(
    events: Iterable[DomainEvent], tenant_id: Optional[str] = None
) -> List[OutboxEvent]:
    """Persist domain events as outbox rows in the caller's transaction."""
    rows = [
        OutboxEvent.objects.create(
            aggregate_type=event.aggregate_type,
            aggregate_id=str(event.aggregate_id),
            event_type=event.event_name,
            payload=event.to_payload(),
            tenant_id=tenant_id,
        )
        for event in events
    ]
    if rows and settings.OUTBOX_DISPATCH_ON_COMMIT:
        transaction.on_commit(_kick_dispatcher)
    return rows


def _kick_dispatcher() -> None:
    from modules.core.tasks import dispatch_pending

    dispatch_pending.delay()


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


@dataclass
class DispatchResult:
    processed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.processed + self.retried + self.failed + self.skipped


class OutboxDispatcher:
    """At-least-once delivery of outbox rows to the in-process event bus."""

    def __init__(
        self,
        bus: IEventBus,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_base_seconds: Optional[int] = None,
    ) -> None:
        self._bus = bus
        self._batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
        self._max_attempts = max_attempts or settings.OUTBOX_MAX_ATTEMPTS
        self._retry_base_seconds = (
            retry_base_seconds
            if retry_base_seconds is not None
            else settings.OUTBOX_RETRY_BASE_SECONDS
        )

    def dispatch_batch(self) -> DispatchResult:
        """Dispatch up to ``batch_size`` due events, oldest first."""
        result = DispatchResult()
        event_ids = list(
            OutboxEvent.objects.due().values_list("id", flat=True)[: self._batch_size]
        )
        for event_id in event_ids:
            outcome = self.dispatch_one(event_id)
            setattr(result, outcome, getattr(result, outcome) + 1)

        if event_ids:
            logger.info(
                "outbox.batch_dispatched",
                processed=result.processed,
                retried=result.retried,
                failed=result.failed,
                skipped=result.skipped,
            )
        return result

    def dispatch_one(self, event_id: UUID) -> str:
        """Dispatch a single event in its own transaction.

        Returns one of ``processed``, ``retried``, ``failed`` or ``skipped``
        (row already taken by another worker or no longer pending).
        """
        with transaction.atomic():
            row = (
                OutboxEvent.objects.select_for_update(skip_locked=True)
                .filter(id=event_id, status=EventStatus.PENDING)
                .first()
            )
            if row is None:
                return "skipped"

            log = logger.bind(
                outbox_id=str(row.id),
                event_type=row.event_type,
                aggregate_id=row.aggregate_id,
                attempt=row.retry_count + 1,
            )

            try:
                with transaction.atomic():
                    self._bus.publish(DomainEvent.from_payload(row.payload))
            except Exception as exc:  # noqa: BLE001 - any handler failure is retried
                error = f"{type(exc).__name__}: {exc}"
                if row.schedule_retry(
                    error, self._max_attempts, self._retry_base_seconds
                ):
                    log.warning(
                        "outbox.dispatch_retry_scheduled",
                        error=error,
                        available_at=row.available_at.isoformat(),
                    )
                    return "retried"
                log.error("outbox.dispatch_failed", error=error)
                return "failed"

            row.mark_as_processed()
            log.info("outbox.dispatched")
            return "processed"


def purge_processed_events(retention_days: Optional[int] = None) -> int:
    """Delete ``PROCESSED`` rows older than the retention window."""
    days = retention_days if retention_days is not None else settings.OUTBOX_RETENTION_DAYS
    cutoff = timezone.now() - timedelta(days=days)
    deleted, _ = OutboxEvent.objects.filter(
        status=EventStatus.PROCESSED, processed_at__lt=cutoff
    ).delete()
    logger.info("outbox.purged", deleted=deleted, retention_days=days)
    return deleted
