"""Integration tests for the outbox writer and dispatcher.

Covers:
- write_events persists one row per event with a decodable payload.
- Successful dispatch marks rows PROCESSED.
- Handler failures roll back handler writes and schedule a retry.
- Rows give up as FAILED after max attempts.
- Best-effort handlers never block the row.
- Unknown event types are retried then failed.
- purge_processed_events retention.
- The Celery task wrappers.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from django.utils import timezone
from freezegun import freeze_time

from modules.core.models import EventStatus, OutboxEvent
from modules.core.outbox import OutboxDispatcher, purge_processed_events, write_events
from modules.core.tasks import dispatch_pending, purge_processed
from modules.orders.events import OrderCancelled, OrderPlaced
from modules.tenants.models import Tenant
from shared.infrastructure.bus import InMemoryEventBus

pytestmark = pytest.mark.integration


def _placed(**overrides) -> OrderPlaced:
    data = {
        "aggregate_id": uuid4(),
        "tenant_id": str(uuid4()),
        "user_id": 1,
        "order_number": "ORD-20240101-ABCDEF",
        "total_amount": "130000.00",
        "payment_method": "COD",
    }
    data.update(overrides)
    return OrderPlaced(**data)


class RecordingHandler:
    def __init__(self) -> None:
        self.events = []

    def handle(self, event) -> None:
        self.events.append(event)


class FailingHandler:
    """Writes a row and then fails, so rollback of handler writes is visible."""

    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.calls = 0

    def handle(self, event) -> None:
        self.calls += 1
        Tenant.objects.create(name="side effect", slug=f"side-{uuid4().hex[:8]}")
        raise self.exc


@pytest.fixture()
def bus():
    return InMemoryEventBus()


class TestWriteEvents:
    def test_one_row_per_event(self):
        event = _placed()

        rows = write_events([event], tenant_id=event.tenant_id)

        assert len(rows) == 1
        row = rows[0]
        assert row.event_type == "ORDER_PLACED"
        assert row.aggregate_type == "Order"
        assert row.aggregate_id == str(event.aggregate_id)
        assert row.tenant_id == event.tenant_id
        assert row.payload["event_id"] == str(event.event_id)


class TestDispatch:
    def test_success_marks_processed(self, bus):
        handler = RecordingHandler()
        bus.subscribe(OrderPlaced, handler)
        event = _placed()
        write_events([event])

        result = OutboxDispatcher(bus).dispatch_batch()

        assert result.processed == 1
        assert handler.events == [event]
        row = OutboxEvent.objects.get()
        assert row.status == EventStatus.PROCESSED
        assert row.processed_at is not None

    def test_events_without_handlers_are_processed(self, bus):
        write_events([_placed()])
        assert OutboxDispatcher(bus).dispatch_batch().processed == 1

    def test_handler_failure_schedules_retry_and_rolls_back(self, bus):
        handler = FailingHandler(RuntimeError("downstream unavailable"))
        bus.subscribe(OrderPlaced, handler)
        write_events([_placed()])

        result = OutboxDispatcher(bus, retry_base_seconds=30).dispatch_batch()

        assert result.retried == 1
        row = OutboxEvent.objects.get()
        assert row.status == EventStatus.PENDING
        assert row.retry_count == 1
        assert "downstream unavailable" in row.error_message
        assert row.available_at > timezone.now()
        assert not Tenant.objects.filter(name="side effect").exists()

    def test_retry_waits_for_backoff(self, bus):
        handler = FailingHandler(RuntimeError("again"))
        bus.subscribe(OrderPlaced, handler)
        write_events([_placed()])
        dispatcher = OutboxDispatcher(bus, retry_base_seconds=30)

        dispatcher.dispatch_batch()
        assert dispatcher.dispatch_batch().total == 0
        assert handler.calls == 1

        with freeze_time(timezone.now() + timedelta(seconds=31)):
            assert dispatcher.dispatch_batch().retried == 1
        assert handler.calls == 2

    def test_gives_up_after_max_attempts(self, bus):
        bus.subscribe(OrderPlaced, FailingHandler(RuntimeError("permanent")))
        write_events([_placed()])
        dispatcher = OutboxDispatcher(bus, max_attempts=2, retry_base_seconds=0)

        assert dispatcher.dispatch_batch().retried == 1
        assert dispatcher.dispatch_batch().failed == 1

        row = OutboxEvent.objects.get()
        assert row.status == EventStatus.FAILED
        assert dispatcher.dispatch_batch().total == 0

    def test_best_effort_failure_does_not_block(self, bus):
        required = RecordingHandler()
        bus.subscribe(
            OrderPlaced, FailingHandler(ValueError("template missing")), best_effort=True
        )
        bus.subscribe(OrderPlaced, required)
        write_events([_placed()])

        result = OutboxDispatcher(bus).dispatch_batch()

        assert result.processed == 1
        assert len(required.events) == 1
        assert not Tenant.objects.filter(name="side effect").exists()

    def test_dispatch_is_per_event_type(self, bus):
        placed_handler = RecordingHandler()
        bus.subscribe(OrderPlaced, placed_handler)
        write_events(
            [
                OrderCancelled(
                    aggregate_id=uuid4(),
                    tenant_id="t",
                    user_id=1,
                    reason="x",
                    was_paid=False,
                    stock_was_finalized=False,
                )
            ]
        )

        OutboxDispatcher(bus).dispatch_batch()

        assert placed_handler.events == []

    def test_unknown_event_type_fails_eventually(self, bus):
        OutboxEvent.objects.create(
            aggregate_type="Order",
            aggregate_id="x",
            event_type="SOMETHING_ELSE",
            payload={"event_name": "SOMETHING_ELSE"},
        )

        result = OutboxDispatcher(bus, max_attempts=1).dispatch_batch()

        assert result.failed == 1
        assert "UnknownEventType" in OutboxEvent.objects.get().error_message

    def test_processed_rows_are_skipped(self, bus):
        row = write_events([_placed()])[0]
        row.mark_as_processed()

        assert OutboxDispatcher(bus).dispatch_one(row.id) == "skipped"

    def test_batch_size_limits_work(self, bus):
        write_events([_placed() for _ in range(3)])

        result = OutboxDispatcher(bus, batch_size=2).dispatch_batch()

        assert result.processed == 2
        assert OutboxEvent.objects.filter(status=EventStatus.PENDING).count() == 1


class TestPurge:
    def test_old_processed_rows_are_deleted(self):
        old, recent, pending = (write_events([_placed()])[0] for _ in range(3))
        with freeze_time(timezone.now() - timedelta(days=10)):
            old.mark_as_processed()
        recent.mark_as_processed()

        deleted = purge_processed_events(retention_days=7)

        assert deleted == 1
        assert set(OutboxEvent.objects.values_list("id", flat=True)) == {
            recent.id,
            pending.id,
        }


class TestTasks:
    def test_dispatch_task_reports_counts(self, make_sku, place_order):
        place_order([(make_sku(), 1)])
        assert dispatch_pending.apply().get() == {
            "processed": 1,
            "retried": 0,
            "failed": 0,
            "skipped": 0,
        }

    def test_purge_task(self):
        assert purge_processed.apply().get() == {"deleted": 0}
