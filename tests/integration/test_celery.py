"""Integration tests for the Celery configuration and scheduled tasks."""

from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from modules.inventory.models import InventoryLogEntry
from modules.inventory.services import StockLedger

pytestmark = pytest.mark.integration

SCHEDULED_TASKS = {
    "core.outbox.dispatch_pending",
    "core.outbox.purge_processed",
    "orders.expire_unpaid_orders",
    "inventory.prune_logs",
}


class TestCeleryConfig:
    """Celery loads through Django settings."""

    def test_celery_app_is_importable(self):
        from config.celery import app

        assert app.main == "commerce"

    def test_celery_app_exported_from_init(self):
        from config import celery_app

        assert celery_app.main == "commerce"

    def test_celery_serializer_is_json(self, settings):
        assert settings.CELERY_TASK_SERIALIZER == "json"
        assert settings.CELERY_RESULT_SERIALIZER == "json"
        assert settings.CELERY_ACCEPT_CONTENT == ["json"]

    def test_celery_timezone_matches_django(self, settings):
        assert settings.CELERY_TIMEZONE == settings.TIME_ZONE

    def test_beat_schedule_points_at_registered_tasks(self, settings):
        from config.celery import app

        app.loader.import_default_modules()
        scheduled = {entry["task"] for entry in settings.CELERY_BEAT_SCHEDULE.values()}

        assert scheduled == SCHEDULED_TASKS
        assert SCHEDULED_TASKS <= set(app.tasks)


class TestScheduledTasks:
    """Tasks run eagerly in the test process."""

    def test_expire_unpaid_orders(self, make_sku, place_order):
        from modules.orders.tasks import expire_unpaid_orders

        sku = make_sku(stock=3)
        with freeze_time(timezone.now() - timedelta(hours=1)):
            place_order([(sku, 2)], payment_method="VNPAY")

        assert expire_unpaid_orders.apply().get() == 1
        sku.refresh_from_db()
        assert sku.reserved == 0

    def test_prune_inventory_logs(self, make_sku):
        from modules.inventory.tasks import prune_logs

        sku = make_sku(stock=5)
        ledger = StockLedger()
        with freeze_time(timezone.now() - timedelta(days=200)):
            ledger.restock(sku.id, 1, operation_id="restock:old")
        ledger.restock(sku.id, 1, operation_id="restock:new")

        result = prune_logs.apply(kwargs={"retention_days": 90}).get()

        assert result == {"deleted": 1}
        assert InventoryLogEntry.objects.get().operation_id == "restock:new"
