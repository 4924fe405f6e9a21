"""
Activity logging for recommendation feedback.

Records what users did with recommendations (applied, overridden,
sustained) for later behavior analysis. Logging is best-effort: callers
guard every call, and the file logger never raises on I/O errors.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class ActivityType:
    """Activity record categories."""
    RECOMMENDATION_APPLIED = "recommendation_applied"
    MANUAL_ADJUSTMENT = "adjustment_made"
    SUCCESSFUL_RECOMMENDATION = "successful_recommendation"


class ActivityLogger(Protocol):
    """Outbound activity logger collaborator."""

    def log_recommendation_application(self, record: Dict[str, Any]) -> None:
        ...

    def log_manual_adjustment(self, record: Dict[str, Any]) -> None:
        ...

    def log_successful_recommendation(self, record: Dict[str, Any]) -> None:
        ...


class NullActivityLogger:
    """Activity logger that discards every record."""

    def log_recommendation_application(self, record: Dict[str, Any]) -> None:
        pass

    def log_manual_adjustment(self, record: Dict[str, Any]) -> None:
        pass

    def log_successful_recommendation(self, record: Dict[str, Any]) -> None:
        pass


class JsonlActivityLogger:
    """
    Append-only JSON-lines activity log with daily statistics.

    Layout under ``log_dir``:
        recommendations.jsonl
        adjustments.jsonl
        successful_recommendations.jsonl
        daily_stats.json   {date: {entity_id: {counter: value}}}

    Example:
        >>> activity = JsonlActivityLogger("./activity")
        >>> activity.log_manual_adjustment({"entity_id": "unit-1", "adjusted_temp": 23})
        >>> activity.read("adjustments")[0]["entity_id"]
        'unit-1'
    """

    FILES = {
        ActivityType.RECOMMENDATION_APPLIED: "recommendations.jsonl",
        ActivityType.MANUAL_ADJUSTMENT: "adjustments.jsonl",
        ActivityType.SUCCESSFUL_RECOMMENDATION: "successful_recommendations.jsonl",
    }
    STATS_FILE = "daily_stats.json"

    def __init__(self, log_dir: str):
        self.log_dir = log_dir
        self._lock = threading.Lock()
        os.makedirs(log_dir, exist_ok=True)

    def log_recommendation_application(self, record: Dict[str, Any]) -> None:
        self._log(ActivityType.RECOMMENDATION_APPLIED, record)

    def log_manual_adjustment(self, record: Dict[str, Any]) -> None:
        entry = dict(record)
        previous, adjusted = record.get("previous_temp"), record.get("adjusted_temp")
        if previous is not None and adjusted is not None:
            entry["adjustment_direction"] = _direction(previous, adjusted)
            entry["adjustment_magnitude"] = abs(adjusted - previous)
        self._log(ActivityType.MANUAL_ADJUSTMENT, entry)

    def log_successful_recommendation(self, record: Dict[str, Any]) -> None:
        self._log(ActivityType.SUCCESSFUL_RECOMMENDATION, record)

    def read(self, category: str, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Read records of one category ("recommendations", "adjustments",
        "successful_recommendations"), optionally filtered by entity.
        """
        path = os.path.join(self.log_dir, f"{category}.jsonl")
        if not os.path.exists(path):
            return []
        records = []
        with self._lock, open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping corrupt activity line in {path}")
        if entity_id is not None:
            records = [r for r in records if r.get("entity_id") == entity_id]
        return records

    def daily_stats(self, day: Optional[date] = None) -> Dict[str, Dict[str, float]]:
        """Per-entity counters for one day (today by default)."""
        key = (day or date.today()).isoformat()
        with self._lock:
            return self._load_stats().get(key, {})

    def _log(self, activity_type: str, record: Dict[str, Any]) -> None:
        entry = {
            "type": activity_type,
            "logged_at": datetime.now().isoformat(),
            **record,
        }
        path = os.path.join(self.log_dir, self.FILES[activity_type])
        try:
            with self._lock:
                with open(path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, default=str) + "\n")
                self._update_daily_stats(activity_type, entry)
        except OSError as e:
            logger.warning(f"Failed to write {activity_type} activity: {e}")
            return
        logger.debug(
            f"Logged {activity_type}",
            extra={"entity_id": record.get("entity_id"), "subsystem": "activity"},
        )

    def _update_daily_stats(self, activity_type: str, entry: Dict[str, Any]) -> None:
        stats = self._load_stats()
        day = stats.setdefault(date.today().isoformat(), {})
        entity = day.setdefault(str(entry.get("entity_id")), {
            ActivityType.RECOMMENDATION_APPLIED: 0,
            ActivityType.MANUAL_ADJUSTMENT: 0,
            ActivityType.SUCCESSFUL_RECOMMENDATION: 0,
            "energy_savings": 0.0,
        })
        entity[activity_type] = entity.get(activity_type, 0) + 1
        if activity_type == ActivityType.SUCCESSFUL_RECOMMENDATION:
            savings = (entry.get("recommendation") or {}).get("energy_savings") or 0.0
            entity["energy_savings"] = entity.get("energy_savings", 0.0) + float(savings)

        path = os.path.join(self.log_dir, self.STATS_FILE)
        temp_path = path + ".tmp"
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(stats, f, indent=2)
        os.replace(temp_path, path)

    def _load_stats(self) -> Dict[str, Any]:
        path = os.path.join(self.log_dir, self.STATS_FILE)
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Daily stats unreadable, starting over: {e}")
            return {}


def _direction(previous: float, adjusted: float) -> str:
    if adjusted > previous:
        return "increase"
    if adjusted < previous:
        return "decrease"
    return "none"
