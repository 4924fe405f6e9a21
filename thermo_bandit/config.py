"""
Configuration for the recommendation engine.

Loads engine settings from YAML or JSON files so deployments can tune
learning parameters, storage locations and room categories without
modifying code.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

import yaml

from .learning.discretizer import DEFAULT_ROOM_CATEGORY
from .learning.learning_config import LearningConfig

logger = logging.getLogger(__name__)

STATE_DIR_ENV = "THERMO_BANDIT_STATE_DIR"
DEFAULT_STATE_PATH = "./.thermo_bandit/learning_state.json"


class RoomCategoryProvider(Protocol):
    """Outbound collaborator naming the room category of a unit."""

    def room_category(self, entity_id: str) -> str:
        ...


class StaticRoomCategoryProvider:
    """
    Room categories from a fixed mapping.

    Example:
        >>> rooms = StaticRoomCategoryProvider({"unit-1": "large"})
        >>> rooms.room_category("unit-1"), rooms.room_category("unit-2")
        ('large', 'medium')
    """

    def __init__(self, mapping: Optional[Mapping[str, str]] = None, default: str = DEFAULT_ROOM_CATEGORY):
        self.mapping = dict(mapping or {})
        self.default = default

    def room_category(self, entity_id: str) -> str:
        return self.mapping.get(entity_id) or self.default


@dataclass
class EngineConfig:
    """
    Deployment settings for a TemperatureRecommendationEngine.

    Attributes:
        learning: Bandit parameters
        state_path: JSON snapshot file of the learning state
        activity_log_dir: Directory for activity records (None disables them)
        room_categories: Entity id -> room category label
        default_room_category: Category for entities not in the mapping
        log_level: Root log level
        log_dir: Directory for rotating log files (None = console only)
        max_retries: Snapshot write retries before a snapshot is dropped
        base_backoff_seconds: Delay before the first retry
        max_backoff_seconds: Upper bound of the retry delay
    """
    learning: LearningConfig = field(default_factory=LearningConfig)
    state_path: str = DEFAULT_STATE_PATH
    activity_log_dir: Optional[str] = None
    room_categories: Dict[str, str] = field(default_factory=dict)
    default_room_category: str = DEFAULT_ROOM_CATEGORY
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    max_retries: int = 3
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0

    def __post_init__(self):
        if isinstance(self.learning, dict):
            self.learning = LearningConfig.from_dict(self.learning)
        self.max_retries = max(0, int(self.max_retries))
        self.base_backoff_seconds = max(0.0, float(self.base_backoff_seconds))
        self.max_backoff_seconds = max(self.base_backoff_seconds, float(self.max_backoff_seconds))

        state_dir = os.environ.get(STATE_DIR_ENV)
        if state_dir:
            self.state_path = str(Path(state_dir) / Path(self.state_path).name)

    def room_category_provider(self) -> StaticRoomCategoryProvider:
        return StaticRoomCategoryProvider(self.room_categories, self.default_room_category)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "learning": self.learning.to_dict(),
            "state_path": self.state_path,
            "activity_log_dir": self.activity_log_dir,
            "room_categories": dict(self.room_categories),
            "default_room_category": self.default_room_category,
            "log_level": self.log_level,
            "log_dir": self.log_dir,
            "max_retries": self.max_retries,
            "base_backoff_seconds": self.base_backoff_seconds,
            "max_backoff_seconds": self.max_backoff_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create from dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def save(self, path: str) -> None:
        """Save config to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "EngineConfig":
        """
        Load config from a JSON or YAML file.

        A missing path or file yields the defaults.

        Raises:
            ValueError: If the file is not a mapping or cannot be parsed
        """
        if not path or not os.path.exists(path):
            if path:
                logger.info(f"Config file {path} not found, using defaults")
            return cls()

        with open(path, "r", encoding="utf-8") as f:
            content = f.read()

        try:
            if path.endswith((".yaml", ".yml")):
                data = yaml.safe_load(content)
            else:
                data = json.loads(content)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ValueError(f"Failed to parse config {path}: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError(f"Config {path} must contain a mapping")
        return cls.from_dict(data)
