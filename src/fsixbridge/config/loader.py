"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from fsixbridge.config.merge import merge_configs
from fsixbridge.config.paths import get_config_paths
from fsixbridge.config.schema import (
    DEFAULT_COMMAND,
    Config,
    DaemonConfig,
    EditorConfig,
    LoggingConfig,
    TransportMode,
)

_log = logging.getLogger("fsixbridge.config")

_cached_config: Config | None = None

# Environment variable -> (section, key)
_ENV_OVERRIDES = {
    "FSIX_COMMAND": ("daemon", "command"),
    "FSIX_TRANSPORT": ("daemon", "transport"),
    "FSIX_LOG": ("logging", "file"),
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning an empty dict if missing or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build a config dict from FSIX_* environment variables."""
    overrides: dict[str, Any] = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def _parse_transport(value: Any) -> TransportMode:
    try:
        return TransportMode(str(value).lower())
    except ValueError:
        _log.warning("Unknown daemon transport %r, using stdio", value)
        return TransportMode.STDIO


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert a merged dict to the typed Config dataclass."""
    defaults = DaemonConfig()
    daemon_data = data.get("daemon", {}) or {}
    init_timeout = daemon_data.get("init_timeout")
    daemon = DaemonConfig(
        command=str(daemon_data.get("command") or DEFAULT_COMMAND),
        transport=_parse_transport(daemon_data.get("transport", "stdio")),
        tool_name=daemon_data.get("tool_name", defaults.tool_name),
        package_id=daemon_data.get("package_id", defaults.package_id),
        manifest_key=daemon_data.get("manifest_key", defaults.manifest_key),
        init_timeout=float(init_timeout) if init_timeout is not None else None,
        shutdown_timeout=float(daemon_data.get("shutdown_timeout", defaults.shutdown_timeout)),
        max_message_size=int(daemon_data.get("max_message_size", defaults.max_message_size)),
    )

    editor_data = data.get("editor", {}) or {}
    editor = EditorConfig(
        diagnostics_delay=float(editor_data.get("diagnostics_delay", 0.3)),
    )

    log_data = data.get("logging", {}) or {}
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    known_keys = {"daemon", "editor", "logging"}
    extra = {k: v for k, v in data.items() if k not in known_keys}

    return Config(daemon=daemon, editor=editor, logging=logging_config, extra=extra)


def load_config(
    project_root: str | Path | None = None,
    reload: bool = False,
    config_path: Path | None = None,
) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables (FSIX_COMMAND, FSIX_TRANSPORT, FSIX_LOG)
    2. Explicit config_path, if given
    3. Project config (<project_root>/.fsix/config.yaml)
    4. User config
    5. System config

    Only the global config (no project_root, no config_path) is cached.
    """
    global _cached_config

    is_global = project_root is None and config_path is None
    if _cached_config is not None and not reload and is_global:
        return _cached_config

    configs: list[dict[str, Any]] = []

    paths = get_config_paths(project_root)
    if config_path is not None:
        paths.append(config_path)

    for path in paths:
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    config = dict_to_config(merge_configs(*configs))

    if is_global:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Drop the cached config (used by tests and forced reloads)."""
    global _cached_config
    _cached_config = None
