"""Settings loaded from YAML and overridden by environment variables.

Resolution order for every key: environment variable > config file >
built-in default. The config file is ``.cmdpipe.yaml`` in the workspace
or ``~/.config/cmdpipe/config.yaml``::

    debug: false
    pipefail: true
    log_level: INFO
    capture_stderr: true
    log_file: cmdpipe.log  # relative to ~/.local/state/cmdpipe
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from cmdpipe.config.paths import get_paths

logger = logging.getLogger(__name__)

ENV_DEBUG = "CMDPIPE_DEBUG"
ENV_PIPEFAIL = "CMDPIPE_PIPEFAIL"
ENV_LOG_LEVEL = "CMDPIPE_LOG_LEVEL"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})
_LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def parse_bool(value: object, default: bool = False) -> bool:
    """Interpret config and environment values as booleans."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    logger.warning("Ignoring non-boolean setting value %r", value)
    return default


class Settings:
    """Runtime defaults for pipelines and logging."""

    _defaults: dict[str, Any] = {
        "debug": False,
        "pipefail": False,
        "log_level": "WARNING",
        "capture_stderr": True,
        "log_file": None,
    }

    def __init__(
        self,
        data: Mapping[str, Any] | None = None,
        *,
        path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._data: dict[str, Any] = dict(data or {})
        self._path = path
        self._environ = environ if environ is not None else os.environ

    @classmethod
    def load(
        cls,
        path: Path | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> Settings:
        """Load settings from ``path`` or the resolved config file.

        A missing file yields defaults. An unreadable or malformed file is
        logged and ignored.
        """
        config_path = path if path is not None else get_paths().config_file()
        data: dict[str, Any] = {}
        if config_path is not None and config_path.exists():
            try:
                raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
                if raw is None:
                    raw = {}
                if not isinstance(raw, dict):
                    raise ValueError("Config file must contain a mapping")
                data = raw
                logger.debug("Loaded settings from %s", config_path)
            except (ValueError, yaml.YAMLError, OSError) as e:
                logger.warning("Failed to load settings from %s: %s", config_path, e)
        return cls(data, path=config_path, environ=environ)

    @property
    def path(self) -> Path | None:
        return self._path

    def get(self, key: str) -> Any:
        """Get a file setting value, falling back to default."""
        return self._data.get(key, self._defaults.get(key))

    def set(self, key: str, value: Any) -> None:
        """Set a setting value in memory; call :meth:`save` to persist."""
        self._data[key] = value

    def save(self, path: Path | None = None) -> Path:
        """Write the file-backed settings as YAML."""
        target = path or self._path or get_paths().global_config
        target.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(self._data, default_flow_style=False, sort_keys=False)
        target.write_text(content, encoding="utf-8")
        self._path = target
        logger.info("Saved settings to %s", target)
        return target

    def _env(self, name: str) -> str | None:
        return self._environ.get(name)

    @property
    def debug(self) -> bool:
        """Log every pipeline at INFO before it runs."""
        env_value = self._env(ENV_DEBUG)
        if env_value is not None:
            return parse_bool(env_value)
        return parse_bool(self.get("debug"))

    @property
    def pipefail(self) -> bool:
        """Fail a pipeline when any stage fails, not only the last one."""
        env_value = self._env(ENV_PIPEFAIL)
        if env_value is not None:
            return parse_bool(env_value)
        return parse_bool(self.get("pipefail"))

    @property
    def capture_stderr(self) -> bool:
        return parse_bool(self.get("capture_stderr"), default=True)

    @property
    def log_level(self) -> str:
        """Logging level name; unknown names fall back to the default."""
        raw = self._env(ENV_LOG_LEVEL) or self.get("log_level")
        level = str(raw).strip().upper()
        if level == "WARN":
            level = "WARNING"
        if level not in _LOG_LEVELS:
            logger.warning("Unknown log level %r, using WARNING", raw)
            return "WARNING"
        return level

    @property
    def log_file(self) -> Path | None:
        """Log file path; relative names live in the XDG state directory."""
        raw = self.get("log_file")
        if not raw:
            return None
        path = Path(str(raw)).expanduser()
        if not path.is_absolute():
            path = get_paths().global_state_dir / path
        return path


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the settings singleton, loading it on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (for testing)."""
    global _settings
    _settings = None
