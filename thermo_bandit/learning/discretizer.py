"""
Context discretization.

Maps continuous temperatures onto stable band labels and builds the
ContextKey used to index learned values.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

from ..types import ContextKey

DEFAULT_ROOM_CATEGORY = "medium"


@dataclass(frozen=True)
class TemperatureBand:
    """Half-open temperature range ``[minimum, maximum)`` with a label."""
    minimum: float
    maximum: float
    label: str

    def contains(self, temp: float) -> bool:
        return self.minimum <= temp < self.maximum


OUTDOOR_BANDS: Tuple[TemperatureBand, ...] = (
    TemperatureBand(15, 20, "cool"),
    TemperatureBand(20, 25, "mild"),
    TemperatureBand(25, 30, "warm"),
    TemperatureBand(30, 35, "hot"),
    TemperatureBand(35, 45, "extreme"),
)

TARGET_BANDS: Tuple[TemperatureBand, ...] = (
    TemperatureBand(16, 20, "cold"),
    TemperatureBand(20, 24, "comfortable"),
    TemperatureBand(24, 28, "warm_indoor"),
)


def discretize_temperature(temp: float, bands: Sequence[TemperatureBand]) -> str:
    """
    Convert a temperature to the label of the band containing it.

    Values below the first band clamp to the first label; anything else
    outside the table clamps to the last label.

    Examples:
        >>> discretize_temperature(32.0, OUTDOOR_BANDS)
        'hot'
        >>> discretize_temperature(-10.0, OUTDOOR_BANDS)
        'cool'
        >>> discretize_temperature(60.0, TARGET_BANDS)
        'warm_indoor'
    """
    for band in bands:
        if band.contains(temp):
            return band.label
    if temp < bands[0].minimum:
        return bands[0].label
    return bands[-1].label


class ContextDiscretizer:
    """
    Pure mapping from (outdoor, target, room) to a ContextKey.

    Band tables are injectable so deployments in other climates can
    re-bucket without touching the learner.
    """

    def __init__(
        self,
        outdoor_bands: Sequence[TemperatureBand] = OUTDOOR_BANDS,
        target_bands: Sequence[TemperatureBand] = TARGET_BANDS,
    ):
        if not outdoor_bands or not target_bands:
            raise ValueError("Band tables must not be empty")
        self.outdoor_bands = tuple(outdoor_bands)
        self.target_bands = tuple(target_bands)

    def context_key(
        self,
        outdoor_temp: float,
        target_temp: float,
        room_category: str = DEFAULT_ROOM_CATEGORY,
    ) -> ContextKey:
        return ContextKey(
            outdoor=discretize_temperature(outdoor_temp, self.outdoor_bands),
            target=discretize_temperature(target_temp, self.target_bands),
            room=room_category or DEFAULT_ROOM_CATEGORY,
        )
