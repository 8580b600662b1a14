"""Process settings persisted in <data dir>/config.json.

Holds what outlives any single tree: the last project root, the standing
exclusion list grown by exclude_and_remove, and the file watching options.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import FileWatchingConfig
from .storage import atomic_write_json

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"
DATA_DIR_ENV = "FILESCOPE_DATA_DIR"


def default_data_dir() -> str:
    """$FILESCOPE_DATA_DIR, else ~/.filescope."""
    return os.environ.get(DATA_DIR_ENV) or str(Path.home() / ".filescope")


@dataclass
class AppConfig:
    base_directory: Optional[str] = None
    exclude_patterns: List[str] = field(default_factory=list)
    file_watching: FileWatchingConfig = field(default_factory=FileWatchingConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseDirectory": self.base_directory,
            "excludePatterns": list(self.exclude_patterns),
            "fileWatching": self.file_watching.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        patterns = data.get("excludePatterns") or []
        if not isinstance(patterns, list):
            raise ValueError("excludePatterns must be a list")
        return cls(
            base_directory=data.get("baseDirectory"),
            exclude_patterns=[str(p) for p in patterns],
            file_watching=FileWatchingConfig.from_dict(data.get("fileWatching")),
        )


def load_config(data_dir: str) -> AppConfig:
    """Read config.json, falling back to defaults if absent or unreadable."""
    path = os.path.join(data_dir, CONFIG_FILENAME)
    if not os.path.exists(path):
        return AppConfig()
    try:
        with open(path, "r", encoding="utf-8") as f:
            return AppConfig.from_dict(json.load(f))
    except (OSError, ValueError, TypeError, AttributeError) as e:
        logger.warning("Failed to load %s, using defaults: %s", path, e)
        return AppConfig()


def save_config(config: AppConfig, data_dir: str) -> None:
    """Atomically write config.json. Raises PersistenceFailure."""
    atomic_write_json(os.path.join(data_dir, CONFIG_FILENAME), config.to_dict())
