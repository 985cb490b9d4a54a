from __future__ import annotations

from typing import Optional
from uuid import UUID

import structlog

from modules.notifications.models import Notification

logger = structlog.get_logger(__name__)


class NotificationService:
    def notify(
        self,
        user_id: int,
        title: str,
        message: str,
        *,
        type: str,
        dedupe_key: str,
        tenant_id: Optional[UUID] = None,
        link: str = "",
    ) -> Notification:
        """Create the notification unless one with ``dedupe_key`` exists."""
        notification, created = Notification.objects.get_or_create(
            dedupe_key=dedupe_key,
            defaults={
                "user_id": user_id,
                "tenant_id": tenant_id,
                "type": type,
                "title": title,
                "message": message,
                "link": link,
            },
        )
        if created:
            logger.info(
                "notification.created",
                user_id=user_id,
                notification_type=type,
                dedupe_key=dedupe_key,
            )
        return notification
