"""
Tests for consumed events and the event bus.
"""
import pytest

from thermo_bandit.events import (
    EngineEventType,
    EntitySelected,
    EventBus,
    RecommendationApplied,
    TemperatureManuallyChanged,
)


class TestEventPayloads:

    def test_recommendation_applied_from_dict(self):
        event = RecommendationApplied.from_dict({"entity_id": "unit-1", "recommended_temp": 23.0})
        assert event == RecommendationApplied("unit-1", 23.0, "user")

    def test_manual_change_from_dict(self):
        event = TemperatureManuallyChanged.from_dict({
            "entity_id": "unit-1",
            "new_temp": 21.0,
            "previous_temp": 23.0,
            "changed_by": None,
        })
        assert event.changed_by == "user"
        assert event.new_temp == 21.0

    def test_missing_entity_rejected(self):
        with pytest.raises(KeyError):
            EntitySelected.from_dict({})

    def test_event_names(self):
        assert EngineEventType("recommendation-applied") is EngineEventType.RECOMMENDATION_APPLIED
        with pytest.raises(ValueError):
            EngineEventType("thermostat-exploded")


class TestEventBus:

    def test_emit_delivers_to_subscribers(self):
        bus = EventBus()
        seen = []
        bus.on(EngineEventType.ENTITY_SELECTED, seen.append)
        bus.on("entity-selected", lambda e: seen.append(e.entity_id))

        assert bus.emit("entity-selected", EntitySelected("unit-1")) == 2
        assert seen == [EntitySelected("unit-1"), "unit-1"]

    def test_dict_payload_decoded(self):
        bus = EventBus()
        seen = []
        bus.on("temperature-manually-changed", seen.append)
        bus.emit("temperature-manually-changed", {"entity_id": "unit-1", "new_temp": 20.0})
        assert isinstance(seen[0], TemperatureManuallyChanged)

    def test_handler_failure_is_contained(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.on("entity-selected", broken)
        bus.on("entity-selected", seen.append)

        assert bus.emit("entity-selected", EntitySelected("unit-1")) == 1
        assert len(seen) == 1

    def test_off(self):
        bus = EventBus()
        seen = []
        bus.on("entity-selected", seen.append)
        bus.off("entity-selected", seen.append)
        bus.off("entity-selected", seen.append)
        assert bus.emit("entity-selected", EntitySelected("unit-1")) == 0
        assert seen == []

    def test_no_subscribers(self):
        assert EventBus().emit("recommendation-applied", RecommendationApplied("unit-1")) == 0
