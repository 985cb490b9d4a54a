from django.apps import AppConfig


class NotificationsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.notifications"
    label = "notifications"

    def ready(self) -> None:
        from modules.notifications.handlers import (
            NOTIFIED_EVENTS,
            order_notification_handler,
        )
        from shared.infrastructure.bus import event_bus

        for event_class in NOTIFIED_EVENTS:
            event_bus.subscribe(event_class, order_notification_handler, best_effort=True)
