"""In-memory event bus implementation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Type

import structlog
from django.db import DatabaseError, transaction

from shared.domain.bus import IEventBus, IEventHandler
from shared.domain.events import DomainEvent

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _Subscription:
    handler: IEventHandler
    best_effort: bool


class InMemoryEventBus(IEventBus):
    """In-process event bus used by the outbox dispatcher.

    Required handlers propagate their exceptions so the dispatcher can
    retry the event.  Best-effort handlers (notifications) run inside their
    own savepoint; a failure is logged and rolled back on its own.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Type[DomainEvent], List[_Subscription]] = {}

    def subscribe(
        self,
        event_class: Type[DomainEvent],
        handler: IEventHandler,
        best_effort: bool = False,
    ) -> None:
        subscriptions = self._handlers.setdefault(event_class, [])
        if any(sub.handler is handler for sub in subscriptions):
            return
        subscriptions.append(_Subscription(handler=handler, best_effort=best_effort))

    def handlers_for(self, event_class: Type[DomainEvent]) -> List[IEventHandler]:
        return [sub.handler for sub in self._handlers.get(event_class, [])]

    def publish(self, event: DomainEvent) -> None:
        for sub in self._handlers.get(type(event), []):
            if not sub.best_effort:
                sub.handler.handle(event)
                continue
            try:
                with transaction.atomic():
                    sub.handler.handle(event)
            except (DatabaseError, ValueError, LookupError, OSError) as exc:
                logger.warning(
                    "event_bus.best_effort_handler_failed",
                    event_type=event.event_name,
                    event_id=str(event.event_id),
                    handler=type(sub.handler).__name__,
                    error=str(exc),
                )


# Global bus instance (singleton)

event_bus = InMemoryEventBus()
