"""
Temperature recommendation engine.

Ties the learning components together behind the operations the
surrounding application uses: recommendations, feedback events,
statistics and resets. Collaborators (persistence, activity logging,
room categories, timers, metrics) are injected; nothing is global.
"""
from __future__ import annotations

import logging
import random
import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional, Union

from .activity_log import JsonlActivityLogger, NullActivityLogger
from .config import EngineConfig, RoomCategoryProvider
from .events import (
    EngineEventType,
    EntitySelected,
    EventBus,
    RecommendationApplied,
    TemperatureManuallyChanged,
)
from .learning.discretizer import ContextDiscretizer
from .learning.learning_state import LearningState, LearningStateStore
from .learning.persistence_hooks import (
    InMemoryBackend,
    JsonFileBackend,
    LearningSnapshot,
    PersistenceGateway,
)
from .learning.policy import PolicyEngine
from .learning.reward_scheduler import ArmResult, MonitoringWindow, RewardScheduler, TimerScheduler
from .metrics import MetricsCollector
from .types import EfficiencyContext, Recommendation, is_finite_number

logger = logging.getLogger(__name__)


def validate_request(entity_id: Any, outdoor_temp: Any, current_target: Any) -> None:
    """
    Check recommendation inputs.

    Raises:
        ValueError: If the entity id is empty or a temperature is not a
            finite number
    """
    if not isinstance(entity_id, str) or not entity_id.strip():
        raise ValueError(f"Invalid entity id: {entity_id!r}")
    for name, value in (("outdoor_temp", outdoor_temp), ("current_target", current_target)):
        if not is_finite_number(value):
            raise ValueError(f"{name} must be a finite number, got {value!r}")


class TemperatureRecommendationEngine:
    """
    Personalized thermostat recommendations learned from user feedback.

    Features:
    - Total recommendation API (falls back instead of raising)
    - Delayed rewards through cancellable monitoring windows
    - Non-blocking persistence of the learning state
    - Per-entity and aggregate statistics

    Example:
        >>> engine = TemperatureRecommendationEngine()
        >>> engine.initialize()
        >>> rec = engine.get_recommendation("unit-1", 32.0, 24.0)
        >>> engine.on_recommendation_applied(RecommendationApplied("unit-1", rec.recommended_temp))
        >>> engine.shutdown()
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        persistence: Optional[PersistenceGateway] = None,
        activity_logger=None,
        room_category_provider: Optional[RoomCategoryProvider] = None,
        scheduler: Optional[TimerScheduler] = None,
        metrics: Optional[MetricsCollector] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Engine settings (defaults when None)
            persistence: Snapshot gateway (in-memory when None)
            activity_logger: Receiver of activity records
            room_category_provider: Source of room categories
            scheduler: Timer scheduler for monitoring windows
            metrics: Metrics registry
            rng: PRNG for exploration (seeded from config when None)
        """
        self.config = config or EngineConfig()
        learning = self.config.learning
        self.metrics = metrics or MetricsCollector()
        self.persistence = persistence or PersistenceGateway(
            InMemoryBackend(),
            max_retries=self.config.max_retries,
            base_backoff=self.config.base_backoff_seconds,
            max_backoff=self.config.max_backoff_seconds,
            metrics=self.metrics,
        )
        self.activity_logger = activity_logger or NullActivityLogger()
        self.room_category_provider = room_category_provider or self.config.room_category_provider()

        self.store = LearningStateStore(learning)
        self.discretizer = ContextDiscretizer()
        self.policy = PolicyEngine(self.store, self.discretizer, learning, rng=rng)
        self.rewards = RewardScheduler(
            self.store,
            learning,
            scheduler=scheduler,
            activity_logger=self.activity_logger,
            on_reward=self._on_reward,
            metrics=self.metrics,
        )

        self._pending: Dict[str, Recommendation] = {}
        self._lock = threading.Lock()
        self._initialized = False
        self._shut_down = False
        self._started_at = time.time()

    # -- lifecycle ---------------------------------------------------------

    def initialize(self) -> int:
        """
        Restore persisted learning state.

        Failures leave the engine empty but functional.

        Returns:
            Number of entities restored
        """
        if self._initialized:
            logger.warning("Engine already initialized")
            return len(self.store)

        restored = 0
        try:
            snapshot = self.persistence.load()
            if snapshot.epsilon is not None:
                self.store.exploration.set(snapshot.epsilon)
            restored = self.store.import_entities(snapshot.entities)
        except Exception:
            logger.exception("Failed to restore learning state, starting fresh")
            self.store.reset()
            restored = 0

        self._initialized = True
        logger.info(
            f"Recommendation engine initialized ({restored} entities, "
            f"epsilon={self.store.exploration.value:.4f})",
            extra={"subsystem": "engine", "event_type": "initialized"},
        )
        return restored

    def shutdown(self, timeout: float = 5.0) -> None:
        """Write a final snapshot and stop the persistence writer. Idempotent."""
        with self._lock:
            if self._shut_down:
                return
            self._shut_down = True
        self.persistence.save(self.snapshot())
        self.persistence.close(timeout=timeout)
        logger.info("Recommendation engine shut down", extra={"subsystem": "engine"})

    def snapshot(self) -> LearningSnapshot:
        """Current learning state as a persistable snapshot."""
        return LearningSnapshot(
            epsilon=self.store.exploration.value,
            entities=self.store.export_entities(),
        )

    # -- recommendations ---------------------------------------------------

    def get_recommendation(
        self,
        entity_id: str,
        outdoor_temp: float,
        current_target: float,
        efficiency_context: Optional[EfficiencyContext] = None,
    ) -> Recommendation:
        """
        Recommend a setpoint for one unit.

        Never raises. Malformed input or an internal failure yields the
        deterministic fallback, which is not tracked for feedback.

        Args:
            entity_id: Controlled unit
            outdoor_temp: Current outdoor temperature
            current_target: Current thermostat setpoint
            efficiency_context: Optional energy data enabling savings estimates

        Returns:
            Recommendation with a temperature in [min_temp, max_temp]
        """
        with self.metrics.time_operation("recommendation"):
            try:
                validate_request(entity_id, outdoor_temp, current_target)
            except ValueError as e:
                logger.warning(
                    f"Rejected recommendation request: {e}",
                    extra={"subsystem": "engine", "event_type": "invalid_request"},
                )
                return self._fallback(entity_id, current_target, outdoor_temp)

            try:
                room = self._room_category(entity_id)
                recommendation = self.policy.recommend(
                    entity_id,
                    float(outdoor_temp),
                    float(current_target),
                    efficiency_context,
                    room,
                )
            except Exception:
                logger.exception(f"Recommendation failed for {entity_id}")
                return self._fallback(entity_id, current_target, outdoor_temp)

            if recommendation.fallback:
                self.metrics.increment("recommendations.fallback")
                return recommendation

            with self._lock:
                self._pending[entity_id] = recommendation
            self.metrics.increment("recommendations.generated")
            return recommendation

    def pending_recommendation(self, entity_id: str) -> Optional[Recommendation]:
        with self._lock:
            return self._pending.get(entity_id)

    def _fallback(self, entity_id: Any, current_target: Any, outdoor_temp: Any) -> Recommendation:
        self.metrics.increment("recommendations.fallback")
        recommendation = self.policy.fallback(
            entity_id if isinstance(entity_id, str) else str(entity_id),
            current_target,
            outdoor_temp,
        )
        logger.warning(
            f"Using fallback recommendation for {entity_id}: {recommendation.recommended_temp}",
            extra={"subsystem": "engine", "event_type": "fallback"},
        )
        return recommendation

    def _room_category(self, entity_id: str) -> str:
        default = self.config.default_room_category
        try:
            return self.room_category_provider.room_category(entity_id) or default
        except Exception as e:
            logger.warning(f"Room category lookup failed for {entity_id}: {e}")
            return default

    # -- events ------------------------------------------------------------

    def on_recommendation_applied(
        self,
        event: Union[RecommendationApplied, Dict[str, Any]],
    ) -> Optional[ArmResult]:
        """
        Handle acceptance of the pending recommendation.

        Arms a monitoring window for it. Without a pending recommendation
        the event is ignored.
        """
        if isinstance(event, dict):
            event = RecommendationApplied.from_dict(event)

        with self._lock:
            recommendation = self._pending.pop(event.entity_id, None)
        if recommendation is None:
            logger.warning(
                f"No pending recommendation for {event.entity_id}; applied event ignored",
                extra={"entity_id": event.entity_id, "subsystem": "engine"},
            )
            return None

        if (
            event.recommended_temp is not None
            and abs(event.recommended_temp - recommendation.recommended_temp) > 1e-6
        ):
            logger.warning(
                f"Applied temperature {event.recommended_temp} differs from pending "
                f"recommendation {recommendation.recommended_temp} for {event.entity_id}"
            )

        self._notify("log_recommendation_application", {
            "entity_id": event.entity_id,
            "recommended_temp": recommendation.recommended_temp,
            "original_temp": recommendation.current_temp,
            "applied_by": event.applied_by,
            "confidence": recommendation.confidence,
            "energy_savings": recommendation.energy_savings,
            "context": recommendation.context_key.to_dict(),
            "timestamp": time.time(),
        })
        return self.rewards.arm(event.entity_id, recommendation)

    def on_temperature_manually_changed(
        self,
        event: Union[TemperatureManuallyChanged, Dict[str, Any]],
    ) -> bool:
        """
        Handle a manual setpoint change.

        Returns True if it resolved an active window as overridden.
        """
        if isinstance(event, dict):
            event = TemperatureManuallyChanged.from_dict(event)
        return self.rewards.on_manual_adjustment(
            event.entity_id,
            new_temp=event.new_temp,
            previous_temp=event.previous_temp,
            changed_by=event.changed_by,
        )

    def on_entity_selected(self, event: Union[EntitySelected, Dict[str, Any]]) -> None:
        if isinstance(event, dict):
            event = EntitySelected.from_dict(event)
        logger.debug(f"Entity selected: {event.entity_id}", extra={"entity_id": event.entity_id})

    def attach(self, bus: EventBus) -> None:
        """Subscribe the event handlers to a bus."""
        bus.on(EngineEventType.RECOMMENDATION_APPLIED, self.on_recommendation_applied)
        bus.on(EngineEventType.TEMPERATURE_MANUALLY_CHANGED, self.on_temperature_manually_changed)
        bus.on(EngineEventType.ENTITY_SELECTED, self.on_entity_selected)

    def _on_reward(self, entity_id: str, window: MonitoringWindow) -> None:
        self.persistence.save(self.snapshot())

    def _notify(self, method: str, record: Dict[str, Any]) -> None:
        try:
            getattr(self.activity_logger, method)(record)
        except Exception as e:
            logger.warning(f"Activity logger {method} failed: {e}")

    # -- statistics and reset ----------------------------------------------

    def get_statistics(self, entity_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Learning statistics for one entity, or aggregated over all.

        Returns None for an unknown entity id.
        """
        epsilon = round(self.store.exploration.value, 4)

        if entity_id is not None:
            if entity_id not in self.store:
                return None
            with self.store.entity_lock(entity_id):
                state = self.store.get(entity_id)
                if state is None:
                    return None
                return self._entity_statistics(entity_id, state, epsilon)

        total = successful = contexts = 0
        entity_ids = self.store.entity_ids()
        for eid in entity_ids:
            with self.store.entity_lock(eid):
                state = self.store.get(eid)
                if state is None:
                    continue
                total += state.total_recommendations
                successful += state.successful_recommendations
                contexts += len(state.q_table)

        return {
            "total_entities": len(entity_ids),
            "total_recommendations": total,
            "total_successful": successful,
            "overall_success_rate": round(successful / total, 4) if total else 0.0,
            "explored_contexts": contexts,
            "current_epsilon": epsilon,
            "uptime_seconds": round(time.time() - self._started_at, 1),
        }

    @staticmethod
    def _entity_statistics(entity_id: str, state: LearningState, epsilon: float) -> Dict[str, Any]:
        total = state.total_recommendations
        return {
            "entity_id": entity_id,
            "total_recommendations": total,
            "successful_recommendations": state.successful_recommendations,
            "success_rate": round(state.successful_recommendations / total, 4) if total else 0.0,
            "personalized_bias": round(state.personalized_bias, 2),
            "explored_contexts": len(state.q_table),
            "current_epsilon": epsilon,
            "last_update": datetime.fromtimestamp(state.last_update).isoformat(),
        }

    def reset_learning_data(self, entity_id: Optional[str] = None) -> int:
        """
        Clear learning state for one entity, or for all of them.

        Active monitoring windows of the affected entities are cancelled
        first. A full reset also restores the initial exploration rate.
        Idempotent.

        Returns:
            Number of monitoring windows cancelled
        """
        if entity_id is None:
            entity_ids = sorted(set(self.store.entity_ids()) | set(self.rewards.entity_ids()))
        else:
            entity_ids = [entity_id]

        # Windows are discarded and state cleared under the entity lock that
        # reward resolution also holds.
        cancelled = 0
        for eid in entity_ids:
            with self.store.entity_lock(eid):
                cancelled += self.rewards.cancel(eid)
                self.store.reset(eid)
        if entity_id is None:
            self.store.reset()

        with self._lock:
            if entity_id is None:
                self._pending.clear()
            else:
                self._pending.pop(entity_id, None)
        self.persistence.save(self.snapshot())

        logger.info(
            f"Learning data reset for {entity_id or 'all entities'} "
            f"({cancelled} window(s) cancelled)",
            extra={"entity_id": entity_id, "subsystem": "engine", "event_type": "reset"},
        )
        return cancelled

    def get_system_status(self) -> Dict[str, Any]:
        with self._lock:
            pending = len(self._pending)
        return {
            "initialized": self._initialized,
            "epsilon": round(self.store.exploration.value, 4),
            "total_entities": len(self.store),
            "pending_recommendations": pending,
            "active_windows": len(self.rewards.active_windows()),
            "pending_saves": self.persistence.pending_count,
            "activity_logger_available": not isinstance(self.activity_logger, NullActivityLogger),
        }


def build_engine(
    config: Optional[EngineConfig] = None,
    scheduler: Optional[TimerScheduler] = None,
    metrics: Optional[MetricsCollector] = None,
) -> TemperatureRecommendationEngine:
    """
    Wire an engine from deployment settings.

    Learning state is stored in ``config.state_path``; activity records go
    to ``config.activity_log_dir`` when it is set.
    """
    config = config or EngineConfig()
    metrics = metrics or MetricsCollector()
    persistence = PersistenceGateway(
        JsonFileBackend(config.state_path),
        max_retries=config.max_retries,
        base_backoff=config.base_backoff_seconds,
        max_backoff=config.max_backoff_seconds,
        metrics=metrics,
    )
    if config.activity_log_dir:
        activity_logger = JsonlActivityLogger(config.activity_log_dir)
    else:
        activity_logger = NullActivityLogger()

    return TemperatureRecommendationEngine(
        config=config,
        persistence=persistence,
        activity_logger=activity_logger,
        room_category_provider=config.room_category_provider(),
        scheduler=scheduler,
        metrics=metrics,
    )
