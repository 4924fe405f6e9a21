"""
Learning layer for thermostat recommendations.

A small contextual bandit that personalizes setpoint adjustments per
controlled unit from delayed user feedback.

Key principles:
- Learning only ranks a fixed set of +/-2 degree adjustments
- Rewards arrive late, through a monitoring window per recommendation
- Every recommendation call succeeds; failures degrade to a fallback
- Persistence is best-effort and never blocks a recommendation

Design:
- Epsilon-greedy selection over per-context Q-value arrays
- Per-entity locks around every learning-state mutation
- Cancellable countdowns resolved through an atomic claim
- Background snapshot writer with bounded retry
"""

from .learning_config import LearningConfig, DEFAULT_LEARNING_CONFIG
from .discretizer import (
    ContextDiscretizer,
    TemperatureBand,
    OUTDOOR_BANDS,
    TARGET_BANDS,
    DEFAULT_ROOM_CATEGORY,
    discretize_temperature,
)
from .learning_state import LearningState, LearningStateStore, ExplorationRate, AdaptationEvent
from .policy import PolicyEngine
from .reward_scheduler import (
    RewardScheduler,
    MonitoringWindow,
    WindowState,
    ArmResult,
    CancellationToken,
    TimerScheduler,
    ThreadingTimerScheduler,
)
from .persistence_hooks import (
    PersistenceGateway,
    LearningSnapshot,
    SnapshotBackend,
    JsonFileBackend,
    InMemoryBackend,
    SNAPSHOT_VERSION,
)


__all__ = [
    # Configuration
    "LearningConfig",
    "DEFAULT_LEARNING_CONFIG",

    # Context discretization
    "ContextDiscretizer",
    "TemperatureBand",
    "OUTDOOR_BANDS",
    "TARGET_BANDS",
    "DEFAULT_ROOM_CATEGORY",
    "discretize_temperature",

    # Learning state
    "LearningState",
    "LearningStateStore",
    "ExplorationRate",
    "AdaptationEvent",

    # Policy
    "PolicyEngine",

    # Delayed rewards
    "RewardScheduler",
    "MonitoringWindow",
    "WindowState",
    "ArmResult",
    "CancellationToken",
    "TimerScheduler",
    "ThreadingTimerScheduler",

    # Persistence
    "PersistenceGateway",
    "LearningSnapshot",
    "SnapshotBackend",
    "JsonFileBackend",
    "InMemoryBackend",
    "SNAPSHOT_VERSION",
]
