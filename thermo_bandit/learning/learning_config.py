"""
Learning configuration for the recommendation engine.

Holds the bandit constants (exploration schedule, learning rate,
reward magnitudes, monitoring window) as bounded, safe parameters.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class LearningConfig:
    """
    Configuration for the learning system.

    All parameters are clamped to safe ranges on construction.

    Attributes:
        initial_exploration_rate: Starting epsilon (0.0 to 1.0)
        exploration_decay: Multiplier applied to epsilon after each reward
        min_exploration_rate: Floor for the decayed epsilon
        learning_rate: Step size of the Q-value update (0.0 to 1.0)
        optimistic_q: Initial Q-value of unseen (context, action) pairs
        override_reward: Reward applied when the user overrides a recommendation
        sustained_reward: Reward applied when a recommendation survives the window
        monitoring_window_seconds: Length of the feedback window
        history_limit: Adaptation history entries kept per entity
        bias_limit: Absolute bound of the personalized bias
        min_temp: Lowest temperature the engine will recommend
        max_temp: Highest temperature the engine will recommend
        max_energy_savings: Cap of the savings estimate (percent)
        fallback_offset: Degrees above outdoor used by the fallback
        fallback_min_temp: Lower clamp of the fallback target
        fallback_max_temp: Upper clamp of the fallback target
        fallback_confidence: Confidence reported by the fallback
        fallback_energy_savings: Savings estimate reported by the fallback
        prng_seed: Seed for deterministic exploration (None = random)
    """
    # Exploration schedule
    initial_exploration_rate: float = 0.1
    exploration_decay: float = 0.995
    min_exploration_rate: float = 0.01

    # Value update
    learning_rate: float = 0.1
    optimistic_q: float = 0.5

    # Delayed feedback
    override_reward: float = -0.5
    sustained_reward: float = 0.5
    monitoring_window_seconds: float = 3600.0

    # Per-entity bounds
    history_limit: int = 100
    bias_limit: float = 2.0

    # Recommendation bounds
    min_temp: float = 16.0
    max_temp: float = 30.0
    max_energy_savings: float = 30.0

    # Fallback recommendation
    fallback_offset: float = 5.0
    fallback_min_temp: float = 22.0
    fallback_max_temp: float = 26.0
    fallback_confidence: float = 0.3
    fallback_energy_savings: float = 5.0

    # Determinism
    prng_seed: Optional[int] = None

    def __post_init__(self):
        """Validate and clamp all parameters to safe ranges."""
        self.initial_exploration_rate = max(0.0, min(1.0, self.initial_exploration_rate))
        self.exploration_decay = max(0.0, min(1.0, self.exploration_decay))
        self.min_exploration_rate = max(0.0, min(self.initial_exploration_rate, self.min_exploration_rate))
        self.learning_rate = max(0.0, min(1.0, self.learning_rate))
        self.override_reward = max(-1.0, min(1.0, self.override_reward))
        self.sustained_reward = max(-1.0, min(1.0, self.sustained_reward))
        self.monitoring_window_seconds = max(0.0, self.monitoring_window_seconds)
        self.history_limit = max(1, self.history_limit)
        self.bias_limit = max(0.0, self.bias_limit)
        if self.max_temp < self.min_temp:
            self.min_temp, self.max_temp = self.max_temp, self.min_temp
        if self.fallback_max_temp < self.fallback_min_temp:
            self.fallback_min_temp, self.fallback_max_temp = self.fallback_max_temp, self.fallback_min_temp
        self.max_energy_savings = max(0.0, min(100.0, self.max_energy_savings))
        self.fallback_confidence = max(0.0, min(1.0, self.fallback_confidence))

    def to_dict(self) -> dict:
        """Serialize to dictionary."""
        return {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LearningConfig":
        """Deserialize from dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# Default configuration instance
DEFAULT_LEARNING_CONFIG = LearningConfig()
