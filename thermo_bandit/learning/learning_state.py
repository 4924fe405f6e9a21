"""
Learning state tracking for per-entity thermostat adaptation.

Maintains Q-values, visit counts, success counters and the personalized
bias of every controlled unit, plus the shared exploration rate.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterator, List, Optional

import numpy as np

from ..types import ACTIONS, ContextKey, TemperatureAction
from .learning_config import LearningConfig

logger = logging.getLogger(__name__)


@dataclass
class AdaptationEvent:
    """
    One reward application, kept in the entity's adaptation history.

    Attributes:
        timestamp: Epoch seconds of the update
        adjustment: Adjustment of the rewarded action
        reward: Reward that was applied
        new_bias: Personalized bias after the update
    """
    timestamp: float
    adjustment: int
    reward: float
    new_bias: float

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "adjustment": self.adjustment,
            "reward": self.reward,
            "new_bias": self.new_bias,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AdaptationEvent":
        return cls(
            timestamp=float(data.get("timestamp", 0.0)),
            adjustment=int(data["adjustment"]),
            reward=float(data["reward"]),
            new_bias=float(data.get("new_bias", 0.0)),
        )


class LearningState:
    """
    Learned values of a single controlled unit.

    Each context owns a fixed-size array with one slot per action, in
    TemperatureAction declaration order. Rows are created lazily at the
    optimistic default the first time a context is looked up.
    """

    def __init__(self, optimistic_q: float = 0.5, history_limit: int = 100):
        self.optimistic_q = optimistic_q
        self.q_table: Dict[ContextKey, np.ndarray] = {}
        self.visit_counts: Dict[ContextKey, np.ndarray] = {}
        self.total_recommendations = 0
        self.successful_recommendations = 0
        self.personalized_bias = 0.0
        self.adaptation_history: Deque[AdaptationEvent] = deque(maxlen=history_limit)
        self.last_update = time.time()

    def q_row(self, context_key: ContextKey) -> np.ndarray:
        """Q-values for a context, initializing the row if unseen."""
        row = self.q_table.get(context_key)
        if row is None:
            row = np.full(len(ACTIONS), self.optimistic_q, dtype=float)
            self.q_table[context_key] = row
        return row

    def visit_count(self, context_key: ContextKey, action: TemperatureAction) -> int:
        counts = self.visit_counts.get(context_key)
        if counts is None:
            return 0
        return int(counts[action.index])

    @property
    def success_rate(self) -> float:
        """Fraction of rewarded recommendations (0.5 neutral prior)."""
        if self.total_recommendations == 0:
            return 0.5
        return self.successful_recommendations / self.total_recommendations

    def to_dict(self) -> Dict:
        """Serialize through the persisted schema."""
        return {
            "q_table": {
                key.to_string(): {
                    action.label: float(row[action.index]) for action in ACTIONS
                }
                for key, row in self.q_table.items()
            },
            "visit_counts": {
                key.to_string(): {
                    action.label: int(counts[action.index]) for action in ACTIONS
                }
                for key, counts in self.visit_counts.items()
            },
            "total_recommendations": self.total_recommendations,
            "successful_recommendations": self.successful_recommendations,
            "personalized_bias": self.personalized_bias,
            "adaptation_history": [e.to_dict() for e in self.adaptation_history],
            "last_update": self.last_update,
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict,
        optimistic_q: float = 0.5,
        history_limit: int = 100,
    ) -> "LearningState":
        """
        Deserialize from the persisted schema.

        Malformed context keys or action labels are skipped with a warning
        rather than failing the whole entity.
        """
        state = cls(optimistic_q=optimistic_q, history_limit=history_limit)

        for raw_key, actions in (data.get("q_table") or {}).items():
            parsed = _parse_row(raw_key, actions, optimistic_q, float)
            if parsed is not None:
                state.q_table[parsed[0]] = parsed[1]

        for raw_key, actions in (data.get("visit_counts") or {}).items():
            parsed = _parse_row(raw_key, actions, 0, int)
            if parsed is not None:
                state.visit_counts[parsed[0]] = parsed[1]

        state.total_recommendations = max(0, int(data.get("total_recommendations", 0)))
        state.successful_recommendations = max(
            0, min(state.total_recommendations, int(data.get("successful_recommendations", 0)))
        )
        state.personalized_bias = float(data.get("personalized_bias", 0.0))
        for event in data.get("adaptation_history") or []:
            state.adaptation_history.append(AdaptationEvent.from_dict(event))
        state.last_update = float(data.get("last_update", time.time()))
        return state


def _parse_row(raw_key: str, actions: Dict, default, cast):
    try:
        key = ContextKey.from_string(raw_key)
    except ValueError as e:
        logger.warning(f"Skipping persisted row: {e}")
        return None

    dtype = float if cast is float else np.int64
    row = np.full(len(ACTIONS), default, dtype=dtype)
    for label, value in (actions or {}).items():
        try:
            row[TemperatureAction.from_label(label).index] = cast(value)
        except (ValueError, TypeError) as e:
            logger.warning(f"Skipping persisted value {raw_key}/{label}: {e}")
    return key, row


class ExplorationRate:
    """
    Shared epsilon of the epsilon-greedy policy.

    Decays multiplicatively after each reward application and never drops
    below the configured floor.
    """

    def __init__(self, initial: float = 0.1, decay: float = 0.995, minimum: float = 0.01):
        self.initial = initial
        self.decay_factor = decay
        self.minimum = minimum
        self._value = initial
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def decay(self) -> float:
        """Apply one decay step and return the new epsilon."""
        with self._lock:
            self._value = max(self.minimum, self._value * self.decay_factor)
            return self._value

    def set(self, value: float) -> None:
        """Restore a persisted epsilon (clamped to [minimum, 1])."""
        with self._lock:
            self._value = max(self.minimum, min(1.0, float(value)))

    def reset(self) -> None:
        with self._lock:
            self._value = self.initial


class LearningStateStore:
    """
    Exclusive owner of every entity's LearningState.

    Mutations of one entity are serialized by a lock keyed by entity id;
    different entities proceed independently.
    """

    def __init__(self, config: Optional[LearningConfig] = None):
        self.config = config or LearningConfig()
        self.exploration = ExplorationRate(
            initial=self.config.initial_exploration_rate,
            decay=self.config.exploration_decay,
            minimum=self.config.min_exploration_rate,
        )
        self._states: Dict[str, LearningState] = {}
        self._entity_locks: Dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    def entity_lock(self, entity_id: str) -> threading.RLock:
        """Lock serializing mutations of one entity."""
        with self._lock:
            lock = self._entity_locks.get(entity_id)
            if lock is None:
                lock = threading.RLock()
                self._entity_locks[entity_id] = lock
            return lock

    def get(self, entity_id: str) -> Optional[LearningState]:
        with self._lock:
            return self._states.get(entity_id)

    def get_or_create(self, entity_id: str) -> LearningState:
        """Return the entity's state, inserting a fresh one if missing."""
        with self._lock:
            state = self._states.get(entity_id)
            if state is None:
                state = LearningState(
                    optimistic_q=self.config.optimistic_q,
                    history_limit=self.config.history_limit,
                )
                self._states[entity_id] = state
                logger.debug(f"Created learning state for {entity_id}")
            return state

    def q_values(self, entity_id: str, context_key: ContextKey) -> np.ndarray:
        """
        Q-value of every action under a context.

        Unseen (context, action) pairs are initialized to the optimistic
        default. Returns a copy ordered like ACTIONS.
        """
        with self.entity_lock(entity_id):
            return self.get_or_create(entity_id).q_row(context_key).copy()

    def update(
        self,
        entity_id: str,
        context_key: ContextKey,
        action: TemperatureAction,
        reward: float,
    ) -> float:
        """
        Apply one reward to a (context, action) pair.

        Args:
            entity_id: Controlled unit
            context_key: Context the recommendation was made in
            action: Recommended action
            reward: Observed reward (-1.0 to 1.0)

        Returns:
            The new Q-value
        """
        reward = max(-1.0, min(1.0, reward))
        alpha = self.config.learning_rate

        with self.entity_lock(entity_id):
            state = self.get_or_create(entity_id)
            row = state.q_row(context_key)
            old_q = float(row[action.index])
            new_q = old_q + alpha * (reward - old_q)
            row[action.index] = new_q

            counts = state.visit_counts.get(context_key)
            if counts is None:
                counts = np.zeros(len(ACTIONS), dtype=np.int64)
                state.visit_counts[context_key] = counts
            counts[action.index] += 1

            state.total_recommendations += 1
            if reward > 0:
                state.successful_recommendations += 1
                state.personalized_bias += action.adjustment * 0.1
            else:
                state.personalized_bias -= action.adjustment * 0.05

            limit = self.config.bias_limit
            state.personalized_bias = max(-limit, min(limit, state.personalized_bias))
            state.adaptation_history.append(AdaptationEvent(
                timestamp=time.time(),
                adjustment=action.adjustment,
                reward=reward,
                new_bias=state.personalized_bias,
            ))
            state.last_update = time.time()

        epsilon = self.exploration.decay()
        logger.info(
            f"Q-value updated for {entity_id} {context_key.to_string()}/{action.label}: "
            f"{old_q:.4f} -> {new_q:.4f} (reward={reward:+.2f}, epsilon={epsilon:.4f})",
            extra={"entity_id": entity_id, "subsystem": "learning", "event_type": "q_update"},
        )
        return new_q

    def reset(self, entity_id: Optional[str] = None) -> None:
        """
        Clear one entity's state, or every entity and the shared epsilon.

        Idempotent: resetting an absent entity is a no-op.
        """
        if entity_id is not None:
            with self.entity_lock(entity_id):
                with self._lock:
                    self._states.pop(entity_id, None)
            return

        for eid in self.entity_ids():
            with self.entity_lock(eid):
                with self._lock:
                    self._states.pop(eid, None)
        with self._lock:
            self._states.clear()
        self.exploration.reset()

    def entity_ids(self) -> List[str]:
        with self._lock:
            return list(self._states.keys())

    def export_entities(self) -> Dict[str, Dict]:
        """Serialized copy of every entity, taken under each entity lock."""
        exported = {}
        for entity_id in self.entity_ids():
            with self.entity_lock(entity_id):
                state = self.get(entity_id)
                if state is not None:
                    exported[entity_id] = state.to_dict()
        return exported

    def import_entities(self, entities: Dict[str, Dict]) -> int:
        """Replace entities from serialized payloads; returns how many loaded."""
        loaded = 0
        for entity_id, payload in entities.items():
            try:
                state = LearningState.from_dict(
                    payload,
                    optimistic_q=self.config.optimistic_q,
                    history_limit=self.config.history_limit,
                )
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping learning state for {entity_id}: {e}")
                continue
            with self.entity_lock(entity_id):
                with self._lock:
                    self._states[entity_id] = state
            loaded += 1
        return loaded

    def __contains__(self, entity_id: str) -> bool:
        with self._lock:
            return entity_id in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entity_ids())
