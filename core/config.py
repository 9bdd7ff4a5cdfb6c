"""hotdeploy: Host configuration store

Reads {host, port, enableAuth, authToken} from a JSON file, merged over the
defaults. A missing or unreadable file yields the defaults; it is never an
error. Updates rewrite the whole record atomically.
"""

from __future__ import annotations
import json
import logging
import os
import tempfile
from typing import Optional

from core.errors import safe_text
from models.models import DebugConfig

logger = logging.getLogger("hotdeploy.config")

DEFAULT_CONFIG_FILENAME = "hotdeploy-config.json"
_MAX_CONFIG_BYTES = 1024 * 1024


class ConfigStore:
    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self._current: Optional[DebugConfig] = None

    @property
    def current(self) -> DebugConfig:
        if self._current is None:
            return self.load()
        return self._current

    def load(self) -> DebugConfig:
        config = DebugConfig()
        if not os.path.exists(self.path):
            logger.debug("No config at %s, using defaults", self.path)
            self._current = config
            return config
        try:
            with open(self.path, "rb") as f:
                raw = f.read(_MAX_CONFIG_BYTES + 1)
            if len(raw) > _MAX_CONFIG_BYTES:
                raise ValueError("config file too large")
            data = json.loads(raw.decode("utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"root is {type(data).__name__}, expected object")
            config = DebugConfig.from_dict(data)
        except (OSError, ValueError, RecursionError) as e:
            logger.warning("Failed to load config %s, using defaults: %s", self.path, safe_text(e))
            config = DebugConfig()
        self._current = config
        return config

    def save(self, config: DebugConfig) -> None:
        parent = os.path.dirname(self.path)
        os.makedirs(parent, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".hotdeploy_config_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(config.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        self._current = config
        logger.info("Saved config to %s", self.path)

    def update(self, **fields) -> DebugConfig:
        """Overlay camelCase or snake_case fields on the current config and persist."""
        data = self.current.to_dict()
        aliases = {"enable_auth": "enableAuth", "auth_token": "authToken"}
        for key, value in fields.items():
            data[aliases.get(key, key)] = value
        config = DebugConfig.from_dict(data)
        self.save(config)
        return config
