from copy import deepcopy
from os import environ
from pathlib import Path
from threading import RLock
from typing import Any

from pydantic import ValidationError
from yaml import YAMLError, safe_load

from netlease.config.config_yaml_schema import ConfigSchema
from netlease.libs.errors import ConfigError

DEFAULT_CONFIG_PATH = Path(
    environ.get("NETLEASE_CONFIG", Path(__file__).parent / "config.yaml")
)


class Config:
    """Defines application level Config"""

    def __init__(self, path: Path = DEFAULT_CONFIG_PATH):
        self._lock = RLock()
        self._path: Path = Path(path)
        self._config = {}
        self._load()

    def _load(self):
        with self._lock:
            try:
                with open(self._path, mode="r", encoding="utf-8") as _file_handle:
                    raw = safe_load(_file_handle)
                ConfigSchema.model_validate(raw)
            except (OSError, YAMLError) as err:
                raise ConfigError(f"Failed to read {self._path}: {err}") from err
            except ValidationError as err:
                raise ConfigError(f"Invalid config {self._path}: {err}") from err
            self._config = raw

    def reload(self):
        """Reload config"""
        self._load()

    def get(self, key: str) -> Any:
        """Get parameter from config obj"""

        if not isinstance(key, str) or not key:
            raise ValueError("Key must be a non-empty str.")

        if key not in self._config:
            raise RuntimeError("Unknown key.")

        with self._lock:
            return deepcopy(self._config[key])


config = Config()
