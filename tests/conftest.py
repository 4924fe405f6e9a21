"""Shared fixtures for the recommendation engine tests."""
import random
from dataclasses import dataclass
from typing import Callable, List

import pytest

from thermo_bandit.config import EngineConfig
from thermo_bandit.engine import TemperatureRecommendationEngine
from thermo_bandit.learning import (
    CancellationToken,
    InMemoryBackend,
    LearningConfig,
    LearningStateStore,
    PersistenceGateway,
)
from thermo_bandit.metrics import MetricsCollector


@dataclass
class ScheduledCall:
    delay: float
    callback: Callable[[], None]
    token: CancellationToken
    fired: bool = False


class ManualScheduler:
    """TimerScheduler whose callbacks run only when a test fires them."""

    def __init__(self):
        self.calls: List[ScheduledCall] = []

    def schedule(self, delay, callback):
        token = CancellationToken()
        self.calls.append(ScheduledCall(delay=delay, callback=callback, token=token))
        return token

    @property
    def pending(self) -> List[ScheduledCall]:
        return [c for c in self.calls if not c.fired and not c.token.cancelled]

    def fire_last(self) -> None:
        call = self.calls[-1]
        call.fired = True
        call.callback()

    def fire_all(self) -> int:
        """Run every pending (uncancelled) callback. Returns how many ran."""
        calls = self.pending
        for call in calls:
            call.fired = True
            call.callback()
        return len(calls)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def store():
    return LearningStateStore(LearningConfig())


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def engine(scheduler, metrics, backend):
    """Engine with manual timers, in-memory persistence and greedy policy."""
    config = EngineConfig(learning=LearningConfig(initial_exploration_rate=0.0, min_exploration_rate=0.0))
    gateway = PersistenceGateway(backend, metrics=metrics)
    eng = TemperatureRecommendationEngine(
        config=config,
        persistence=gateway,
        scheduler=scheduler,
        metrics=metrics,
        rng=random.Random(7),
    )
    eng.initialize()
    yield eng
    eng.shutdown()
