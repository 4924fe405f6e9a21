"""
Delayed-reward attribution for accepted recommendations.

An accepted recommendation opens a monitoring window. The window ends in
exactly one terminal state:

    ACTIVE -> RESOLVED_ACCEPTED    countdown expired, reward +0.5
    ACTIVE -> RESOLVED_OVERRIDDEN  manual change observed, reward -0.5
    ACTIVE -> DISCARDED            superseded or reset, no reward

The manual-change path and the countdown race; both resolve through an
atomic claim on the window so only the winner applies a reward.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from ..types import Recommendation
from .learning_config import LearningConfig
from .learning_state import LearningStateStore

logger = logging.getLogger(__name__)


class WindowState(str, Enum):
    """Monitoring window lifecycle states."""
    ACTIVE = "active"
    RESOLVED_ACCEPTED = "resolved_accepted"
    RESOLVED_OVERRIDDEN = "resolved_overridden"
    DISCARDED = "discarded"


class CancellationToken:
    """Handle returned by a scheduler for one pending callback."""

    def __init__(self, cancel_fn: Optional[Callable[[], None]] = None):
        self._cancel_fn = cancel_fn
        self._cancelled = False
        self._lock = threading.Lock()

    def cancel(self) -> bool:
        """Cancel the callback. Returns False if already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
        if self._cancel_fn is not None:
            self._cancel_fn()
        return True

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled


class TimerScheduler(Protocol):
    """Runs a callback once after a delay, cancellable through its token."""

    def schedule(self, delay: float, callback: Callable[[], None]) -> CancellationToken:
        ...


class ThreadingTimerScheduler:
    """TimerScheduler backed by daemon ``threading.Timer`` threads."""

    def __init__(self, name_prefix: str = "reward-window"):
        self.name_prefix = name_prefix

    def schedule(self, delay: float, callback: Callable[[], None]) -> CancellationToken:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.name = f"{self.name_prefix}-{timer.name}"
        timer.start()
        return CancellationToken(timer.cancel)


@dataclass(eq=False)
class MonitoringWindow:
    """
    Feedback window for one accepted recommendation.

    Attributes:
        entity_id: Controlled unit
        recommendation: The accepted recommendation (never mutated)
        started_at: Epoch seconds when the window was armed
        deadline: Epoch seconds when the countdown expires
        window_id: Unique identifier for logging
    """
    entity_id: str
    recommendation: Recommendation
    started_at: float
    deadline: float
    window_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    token: Optional[CancellationToken] = None
    resolved_at: Optional[float] = None
    _state: WindowState = WindowState.ACTIVE
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def state(self) -> WindowState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        return self.state == WindowState.ACTIVE

    def claim(self, target: WindowState) -> bool:
        """
        Compare-and-set from ACTIVE to a terminal state.

        Returns True only for the single caller that performed the
        transition.
        """
        if target == WindowState.ACTIVE:
            raise ValueError("Cannot claim a window back to ACTIVE")
        with self._lock:
            if self._state != WindowState.ACTIVE:
                return False
            self._state = target
            self.resolved_at = time.time()
            return True


@dataclass(frozen=True)
class ArmResult:
    """Outcome of arming a window; names any window it superseded."""
    window: MonitoringWindow
    superseded: Optional[MonitoringWindow] = None


class RewardScheduler:
    """
    Owns the monitoring windows, at most one active per entity.

    Rewards are applied through LearningStateStore.update; the activity
    logger and the ``on_reward`` hook are notified best-effort.
    """

    def __init__(
        self,
        store: LearningStateStore,
        config: Optional[LearningConfig] = None,
        scheduler: Optional[TimerScheduler] = None,
        activity_logger=None,
        on_reward: Optional[Callable[[str, MonitoringWindow], None]] = None,
        metrics=None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or store.config
        self.scheduler = scheduler or ThreadingTimerScheduler()
        self.activity_logger = activity_logger
        self.on_reward = on_reward
        self.metrics = metrics
        self.clock = clock

        self._windows: Dict[str, MonitoringWindow] = {}
        self._lock = threading.Lock()

    def arm(self, entity_id: str, recommendation: Recommendation) -> ArmResult:
        """
        Open a monitoring window for an accepted recommendation.

        An active window for the same entity is cancelled and discarded
        first; it never receives a reward.
        """
        if recommendation.context_key is None:
            raise ValueError("Cannot monitor a recommendation without a context key")

        duration = self.config.monitoring_window_seconds
        now = self.clock()
        window = MonitoringWindow(
            entity_id=entity_id,
            recommendation=recommendation,
            started_at=now,
            deadline=now + duration,
        )

        with self._lock:
            previous = self._windows.get(entity_id)
            superseded = None
            if previous is not None and previous.claim(WindowState.DISCARDED):
                if previous.token is not None:
                    previous.token.cancel()
                superseded = previous
            window.token = self.scheduler.schedule(duration, lambda: self._on_expiry(window))
            self._windows[entity_id] = window

        self._count("windows.armed")
        if superseded is not None:
            self._count("windows.superseded")
            logger.warning(
                f"Window {superseded.window_id} for {entity_id} superseded by "
                f"{window.window_id}; no reward applied",
                extra={"entity_id": entity_id, "subsystem": "rewards", "event_type": "window_superseded"},
            )
        logger.info(
            f"Started {duration:.0f}s adjustment monitoring for {entity_id} "
            f"(window {window.window_id})",
            extra={"entity_id": entity_id, "subsystem": "rewards", "event_type": "window_armed"},
        )
        return ArmResult(window=window, superseded=superseded)

    def on_manual_adjustment(
        self,
        entity_id: str,
        new_temp: Optional[float] = None,
        previous_temp: Optional[float] = None,
        changed_by: str = "user",
    ) -> bool:
        """
        Resolve the entity's active window as overridden.

        Returns True if this call won the claim and applied the negative
        reward; False if there was no active window or the countdown won.
        """
        window = self.active_window(entity_id)
        if window is None:
            return False
        if not self._resolve(window, WindowState.RESOLVED_OVERRIDDEN, self.config.override_reward):
            return False

        rec = window.recommendation
        self._count("rewards.overridden")
        self._notify("log_manual_adjustment", {
            "entity_id": entity_id,
            "recommended_temp": rec.recommended_temp,
            "adjusted_temp": new_temp,
            "previous_temp": previous_temp,
            "adjustment_time": self.clock() - window.started_at,
            "changed_by": changed_by or "user",
            "context": rec.context_key.to_dict(),
            "window_id": window.window_id,
            "timestamp": self.clock(),
        })
        logger.info(
            f"Negative reward applied for {entity_id}: manual change within monitoring window",
            extra={"entity_id": entity_id, "subsystem": "rewards", "event_type": "window_overridden"},
        )
        return True

    def _on_expiry(self, window: MonitoringWindow) -> None:
        """Countdown callback: resolve as sustained acceptance."""
        if not self._resolve(window, WindowState.RESOLVED_ACCEPTED, self.config.sustained_reward):
            return

        self._count("rewards.accepted")
        self._notify("log_successful_recommendation", {
            "entity_id": window.entity_id,
            "recommendation": window.recommendation.to_dict(),
            "sustained_duration": self.config.monitoring_window_seconds,
            "window_id": window.window_id,
            "timestamp": self.clock(),
        })
        logger.info(
            f"Positive reward applied for {window.entity_id}: recommendation sustained",
            extra={"entity_id": window.entity_id, "subsystem": "rewards", "event_type": "window_accepted"},
        )

    def cancel(self, entity_id: Optional[str] = None) -> int:
        """
        Cancel and discard active windows (one entity or all).

        Returns the number of windows discarded.
        """
        with self._lock:
            if entity_id is None:
                windows = list(self._windows.values())
                self._windows.clear()
            else:
                window = self._windows.pop(entity_id, None)
                windows = [window] if window is not None else []

        cancelled = 0
        for window in windows:
            if window.claim(WindowState.DISCARDED):
                if window.token is not None:
                    window.token.cancel()
                cancelled += 1
        if cancelled:
            self._count("windows.cancelled", cancelled)
            logger.info(f"Cancelled {cancelled} monitoring window(s)")
        return cancelled

    def active_window(self, entity_id: str) -> Optional[MonitoringWindow]:
        with self._lock:
            window = self._windows.get(entity_id)
        if window is not None and window.is_active:
            return window
        return None

    def active_windows(self) -> List[MonitoringWindow]:
        with self._lock:
            return [w for w in self._windows.values() if w.is_active]

    def entity_ids(self) -> List[str]:
        """Entities with a registered window, including one mid-resolution."""
        with self._lock:
            return list(self._windows.keys())

    def _release(self, window: MonitoringWindow) -> None:
        with self._lock:
            if self._windows.get(window.entity_id) is window:
                del self._windows[window.entity_id]

    def _resolve(self, window: MonitoringWindow, target: WindowState, reward: float) -> bool:
        """
        Claim the window and apply its reward under the entity lock.

        A reset holding the same lock either runs before the claim (and
        discards the window) or after the update has landed; it never
        interleaves with it. The window stays registered until the update
        is done so a concurrent reset can find its entity.

        Returns:
            True if this caller won the claim
        """
        rec = window.recommendation
        with self.store.entity_lock(window.entity_id):
            if not window.claim(target):
                return False
            if window.token is not None:
                window.token.cancel()
            try:
                self.store.update(window.entity_id, rec.context_key, rec.action, reward)
                applied = True
            except Exception:
                logger.exception(f"Failed to apply reward {reward:+.2f} for {window.entity_id}")
                applied = False
            self._release(window)

        if applied:
            self._after_reward(window)
        return True

    def _after_reward(self, window: MonitoringWindow) -> None:
        if self.on_reward is not None:
            try:
                self.on_reward(window.entity_id, window)
            except Exception as e:
                logger.warning(f"Reward hook error for {window.entity_id}: {e}")

    def _notify(self, method: str, record: Dict) -> None:
        if self.activity_logger is None:
            return
        try:
            getattr(self.activity_logger, method)(record)
        except Exception as e:
            logger.warning(f"Activity logger {method} failed: {e}")

    def _count(self, name: str, n: int = 1) -> None:
        if self.metrics is not None:
            self.metrics.increment(name, n)
