"""Domain events primitives for the modular monolith."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Dict, Mapping, Type
from uuid import UUID, uuid4

_EVENT_TYPES: Dict[str, Type["DomainEvent"]] = {}


class UnknownEventType(LookupError):
    """An outbox row names an event type no module has declared."""


@dataclass(frozen=True)
class DomainEvent:
    """Base domain event (immutable).

    Subclasses set ``event_type`` (the value stored in the outbox) and
    ``aggregate_type``; both are registered on class creation so a stored
    payload can be turned back into the event with ``from_payload``.
    """

    event_type: ClassVar[str] = ""
    aggregate_type: ClassVar[str] = ""

    aggregate_id: UUID
    event_id: UUID = field(default_factory=uuid4)
    occurred_on: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_name: str = field(init=False)

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        _EVENT_TYPES[cls.event_type or cls.__name__] = cls

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_name", self.event_type or type(self).__name__)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_payload(self) -> Dict[str, Any]:
        return _normalize_for_json(asdict(self))

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> DomainEvent:
        data = dict(payload)
        name = data.pop("event_name", None)
        event_cls = _EVENT_TYPES.get(name)
        if event_cls is None:
            raise UnknownEventType(f"No domain event registered for {name!r}.")
        data["aggregate_id"] = UUID(str(data["aggregate_id"]))
        data["event_id"] = UUID(str(data["event_id"]))
        data["occurred_on"] = datetime.fromisoformat(data["occurred_on"])
        return event_cls(**data)


def _normalize_for_json(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_normalize_for_json(item) for item in value]
    if isinstance(value, dict):
        return {key: _normalize_for_json(val) for key, val in value.items()}
    return value


class DomainEventMixin:
    """Mixin for aggregate roots that collect domain events in memory."""

    _domain_events: list[DomainEvent]

    def add_domain_event(self, event: DomainEvent) -> None:
        if not hasattr(self, "_domain_events"):
            self._domain_events = []
        self._domain_events.append(event)

    def clear_domain_events(self) -> None:
        if hasattr(self, "_domain_events"):
            self._domain_events.clear()

    @property
    def domain_events(self) -> list[DomainEvent]:
        if not hasattr(self, "_domain_events"):
            self._domain_events = []
        return list(self._domain_events)
