from __future__ import annotations

import math
import numbers
import time
from decimal import Decimal
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class TemperatureAction(Enum):
    """
    Thermostat adjustments the engine can recommend.

    Declaration order is significant: it is the slot order of every
    Q-value array and the tie-breaking order for greedy selection.
    """
    DECREASE_2 = (-2, "decrease_2")
    DECREASE_1 = (-1, "decrease_1")
    MAINTAIN = (0, "maintain")
    INCREASE_1 = (1, "increase_1")
    INCREASE_2 = (2, "increase_2")

    def __init__(self, adjustment: int, label: str):
        self.adjustment = adjustment
        self.label = label

    @property
    def index(self) -> int:
        """Slot of this action in per-context arrays."""
        return ACTIONS.index(self)

    @classmethod
    def from_label(cls, label: str) -> "TemperatureAction":
        for action in cls:
            if action.label == label:
                return action
        raise ValueError(f"Unknown action label: {label!r}")

    @classmethod
    def from_adjustment(cls, adjustment: float) -> "TemperatureAction":
        """Closest action to a raw adjustment, clamped to the action range."""
        clamped = max(-2, min(2, int(round(adjustment))))
        for action in cls:
            if action.adjustment == clamped:
                return action
        return cls.MAINTAIN


ACTIONS: Tuple[TemperatureAction, ...] = tuple(TemperatureAction)


@dataclass(frozen=True)
class ContextKey:
    """
    Discretized situation used to index learned values.

    Attributes:
        outdoor: Outdoor temperature band label (e.g. "hot")
        target: Target temperature band label (e.g. "comfortable")
        room: Room category label (e.g. "medium")
    """
    outdoor: str
    target: str
    room: str

    def to_string(self) -> str:
        return f"{self.outdoor}|{self.target}|{self.room}"

    @classmethod
    def from_string(cls, value: str) -> "ContextKey":
        parts = value.split("|")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Malformed context key: {value!r}")
        return cls(*parts)

    def to_dict(self) -> Dict[str, str]:
        return {"outdoor": self.outdoor, "target": self.target, "room": self.room}


@dataclass
class EfficiencyContext:
    """
    Energy-efficiency data supplied by the surrounding application.

    Only its presence matters to the savings estimate; the fields are
    carried into activity records.
    """
    power_watts: Optional[float] = None
    efficiency_score: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Recommendation:
    """
    A single thermostat recommendation.

    Not persisted on its own; referenced by a monitoring window while the
    user's response is pending.
    """
    entity_id: str
    action: TemperatureAction
    recommended_temp: float
    current_temp: float
    confidence: float
    energy_savings: float
    context_key: Optional[ContextKey]
    exploration_reason: str = "exploitation"
    timestamp: float = field(default_factory=time.time)
    fallback: bool = False
    version: str = "RL_v1.0"

    @property
    def adjustment(self) -> int:
        return self.action.adjustment

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "action": self.action.label,
            "adjustment": self.adjustment,
            "recommended_temp": self.recommended_temp,
            "current_temp": self.current_temp,
            "confidence": self.confidence,
            "energy_savings": self.energy_savings,
            "context": self.context_key.to_dict() if self.context_key else None,
            "exploration_reason": self.exploration_reason,
            "timestamp": self.timestamp,
            "fallback": self.fallback,
            "version": self.version,
        }



def is_finite_number(value: Any) -> bool:
    """True for finite real numbers (numpy scalars and Decimal included), never bool."""
    if isinstance(value, bool) or not isinstance(value, (numbers.Real, Decimal)):
        return False
    return math.isfinite(value)
