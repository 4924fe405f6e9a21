"""
Events consumed by the recommendation engine.

The surrounding application pushes these through an EventBus; the
engine subscribes its handlers with ``TemperatureRecommendationEngine.attach``.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class EngineEventType(str, Enum):
    """Event names on the bus."""
    RECOMMENDATION_APPLIED = "recommendation-applied"
    TEMPERATURE_MANUALLY_CHANGED = "temperature-manually-changed"
    ENTITY_SELECTED = "entity-selected"


@dataclass
class RecommendationApplied:
    """The user (or an automation) accepted the pending recommendation."""
    entity_id: str
    recommended_temp: Optional[float] = None
    applied_by: str = "user"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecommendationApplied":
        return cls(
            entity_id=data["entity_id"],
            recommended_temp=data.get("recommended_temp"),
            applied_by=data.get("applied_by") or "user",
        )


@dataclass
class TemperatureManuallyChanged:
    """The setpoint was changed by hand."""
    entity_id: str
    new_temp: Optional[float] = None
    previous_temp: Optional[float] = None
    changed_by: str = "user"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemperatureManuallyChanged":
        return cls(
            entity_id=data["entity_id"],
            new_temp=data.get("new_temp"),
            previous_temp=data.get("previous_temp"),
            changed_by=data.get("changed_by") or "user",
        )


@dataclass
class EntitySelected:
    """A unit was selected in the UI. Informational only."""
    entity_id: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntitySelected":
        return cls(entity_id=data["entity_id"])


EVENT_CLASSES = {
    EngineEventType.RECOMMENDATION_APPLIED: RecommendationApplied,
    EngineEventType.TEMPERATURE_MANUALLY_CHANGED: TemperatureManuallyChanged,
    EngineEventType.ENTITY_SELECTED: EntitySelected,
}

Handler = Callable[[Any], None]


class EventBus:
    """
    Minimal synchronous publish/subscribe bus.

    Payloads may be event dataclasses or plain dicts; dicts are decoded
    into the matching event class. A failing handler is logged and does
    not stop delivery to the others.
    """

    def __init__(self):
        self._handlers: Dict[EngineEventType, List[Handler]] = {}
        self._lock = threading.Lock()

    def on(self, event_type: Union[EngineEventType, str], handler: Handler) -> None:
        event_type = EngineEventType(event_type)
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: Union[EngineEventType, str], handler: Handler) -> None:
        event_type = EngineEventType(event_type)
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event_type: Union[EngineEventType, str], payload: Any) -> int:
        """
        Deliver an event to every subscriber.

        Returns:
            Number of handlers that completed without error
        """
        event_type = EngineEventType(event_type)
        if isinstance(payload, dict):
            payload = EVENT_CLASSES[event_type].from_dict(payload)

        with self._lock:
            handlers = list(self._handlers.get(event_type, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"Handler for {event_type.value} failed: {e}")
        return delivered
