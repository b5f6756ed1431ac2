"""Layered settings store: config file over env.

Precedence: config file (YAML or JSON) > env / .env > defaults.
"""
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Generic, Optional, Type, TypeVar

import yaml
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=BaseSettings)


def read_config_file(path: Path) -> Dict[str, Any]:
    """Read a YAML or JSON mapping. Missing or malformed files yield {}."""
    if not path.exists():
        logger.debug("Config file not found: %s (optional; using env/defaults)", path)
        return {}
    try:
        raw = path.read_text()
    except OSError as e:
        logger.warning("Could not read config file %s: %s", path, e)
        return {}

    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(raw)
        elif suffix == ".json":
            data = json.loads(raw)
        else:
            logger.warning("Config file must be .yaml, .yml, or .json: %s", path)
            return {}
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        logger.warning("Invalid config file %s: %s", path, e)
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file must contain a mapping; got %s", type(data).__name__)
        return {}
    return data


class ConfigStore(Generic[S]):
    """Thread-safe holder of the current settings snapshot."""

    def __init__(self, settings_cls: Type[S], config_file_path: Optional[str] = None):
        self._settings_cls = settings_cls
        self._file_path = Path(config_file_path).expanduser().resolve() if config_file_path else None
        self._current: Optional[S] = None
        self._lock = threading.RLock()

    def load_initial(self) -> None:
        """Build settings from env and file. Called once at import."""
        with self._lock:
            env = self._settings_cls().model_dump()
            file_values = read_config_file(self._file_path) if self._file_path else {}
            if file_values:
                logger.info("Loaded config file (master over env): %s", self._file_path)
            self._current = self._settings_cls(**{**env, **file_values})

    def get_settings(self) -> S:
        with self._lock:
            if self._current is None:
                self.load_initial()
            return self._current
