"""
Epsilon-greedy policy over the temperature action space.

Chooses an adjustment per context from learned Q-values, scores how much
experience backs the choice, and estimates the energy it would save.
"""
from __future__ import annotations

import logging
import random
from typing import Optional, Sequence, Tuple

import numpy as np

from ..types import ACTIONS, ContextKey, EfficiencyContext, Recommendation, TemperatureAction, is_finite_number
from .discretizer import DEFAULT_ROOM_CATEGORY, ContextDiscretizer
from .learning_config import LearningConfig
from .learning_state import LearningState, LearningStateStore

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95
MAX_BASE_CONFIDENCE = 0.9


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class PolicyEngine:
    """
    Epsilon-greedy contextual bandit policy.

    Features:
    - Uniform random exploration with probability epsilon
    - Greedy exploitation with first-declared tie-breaking
    - Experience-based confidence scoring
    - Deterministic with seeded PRNG
    """

    def __init__(
        self,
        store: LearningStateStore,
        discretizer: Optional[ContextDiscretizer] = None,
        config: Optional[LearningConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.discretizer = discretizer or ContextDiscretizer()
        self.config = config or store.config
        self.rng = rng or random.Random(self.config.prng_seed)

    def select_action(self, q_values: Sequence[float], epsilon: float) -> TemperatureAction:
        """
        Pick an action for the given Q-values.

        Args:
            q_values: One value per action, ordered like ACTIONS
            epsilon: Exploration probability (0.0 to 1.0)
        """
        return self._select(q_values, epsilon)[0]

    def _select(self, q_values: Sequence[float], epsilon: float) -> Tuple[TemperatureAction, bool]:
        if self.rng.random() < epsilon:
            return ACTIONS[self.rng.randrange(len(ACTIONS))], True
        # argmax returns the first maximal index
        return ACTIONS[int(np.argmax(np.asarray(q_values, dtype=float)))], False

    def confidence(
        self,
        learning_state: LearningState,
        context_key: ContextKey,
        action: TemperatureAction,
    ) -> float:
        """
        Confidence in [0.1, 0.95] backing a (context, action) choice.

        Grows by 0.1 per visit up to 0.9, scaled by the entity's overall
        success rate (0.5 when it has no history).
        """
        visits = learning_state.visit_count(context_key, action)
        base = min(MAX_BASE_CONFIDENCE, visits * 0.1)
        return clamp(base * (0.5 + learning_state.success_rate), MIN_CONFIDENCE, MAX_CONFIDENCE)

    def estimate_energy_savings(
        self,
        current_temp: float,
        recommended_temp: float,
        outdoor_temp: float,
        efficiency_context: Optional[EfficiencyContext],
    ) -> float:
        """
        Percent saving from moving the setpoint closer to outdoor.

        Proportional to the reduction of |temp - outdoor|, capped at
        max_energy_savings. Zero without efficiency data or when the
        distance does not shrink.
        """
        if efficiency_context is None or current_temp == recommended_temp:
            return 0.0

        current_diff = abs(current_temp - outdoor_temp)
        recommended_diff = abs(recommended_temp - outdoor_temp)
        if recommended_diff >= current_diff:
            return 0.0

        percent = (current_diff - recommended_diff) / current_diff * 100.0
        return clamp(percent, 0.0, self.config.max_energy_savings)

    def recommend(
        self,
        entity_id: str,
        outdoor_temp: float,
        current_target: float,
        efficiency_context: Optional[EfficiencyContext] = None,
        room_category: str = DEFAULT_ROOM_CATEGORY,
    ) -> Recommendation:
        """
        Produce a recommendation for one entity.

        Never raises: any internal failure yields the fallback.
        """
        try:
            context_key = self.discretizer.context_key(outdoor_temp, current_target, room_category)
            q_values = self.store.q_values(entity_id, context_key)
            action, explored = self._select(q_values, self.store.exploration.value)

            recommended_temp = clamp(
                current_target + action.adjustment,
                self.config.min_temp,
                self.config.max_temp,
            )

            with self.store.entity_lock(entity_id):
                confidence = self.confidence(
                    self.store.get_or_create(entity_id), context_key, action
                )

            recommendation = Recommendation(
                entity_id=entity_id,
                action=action,
                recommended_temp=recommended_temp,
                current_temp=current_target,
                confidence=confidence,
                energy_savings=self.estimate_energy_savings(
                    current_target, recommended_temp, outdoor_temp, efficiency_context
                ),
                context_key=context_key,
                exploration_reason="exploration" if explored else "exploitation",
            )
            logger.debug(
                f"Recommendation for {entity_id}: {action.label} -> {recommended_temp} "
                f"(confidence={confidence:.2f}, {recommendation.exploration_reason})",
                extra={"entity_id": entity_id, "subsystem": "policy"},
            )
            return recommendation
        except Exception:
            logger.exception(f"Error generating recommendation for {entity_id}")
            return self.fallback(entity_id, current_target, outdoor_temp)

    def fallback(
        self,
        entity_id: str,
        current_temp: float,
        outdoor_temp: float,
    ) -> Recommendation:
        """
        Deterministic energy-aware recommendation used when learning fails.

        Targets outdoor + fallback_offset, kept within the fallback band.
        The target is not limited to a one-step move: ``action`` is the
        nearest enumerated adjustment (clamped to -2..+2), so for a current
        setpoint far outside the fallback band ``recommended_temp -
        current_temp`` can exceed ``action.adjustment``. Current 18 with
        outdoor 30 yields a target of 26 and action INCREASE_2.
        """
        cfg = self.config
        base = float(outdoor_temp) if is_finite_number(outdoor_temp) else cfg.fallback_min_temp
        recommended_temp = clamp(base + cfg.fallback_offset, cfg.fallback_min_temp, cfg.fallback_max_temp)
        current_temp = float(current_temp) if is_finite_number(current_temp) else recommended_temp

        return Recommendation(
            entity_id=entity_id,
            action=TemperatureAction.from_adjustment(recommended_temp - current_temp),
            recommended_temp=recommended_temp,
            current_temp=current_temp,
            confidence=cfg.fallback_confidence,
            energy_savings=cfg.fallback_energy_savings,
            context_key=None,
            exploration_reason="fallback",
            fallback=True,
            version="fallback",
        )

