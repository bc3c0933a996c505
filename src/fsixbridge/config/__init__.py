"""Configuration management for fsixbridge.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/fsixbridge/ or %PROGRAMDATA%)
- User-level config (~/.config/fsixbridge/, ~/.fsix/ or %APPDATA%)
- Project-level config (<project>/.fsix/)
- Environment variable overrides (highest priority)

Example usage:
    from fsixbridge.config import load_config

    config = load_config(project_root="/path/to/project")
    print(config.daemon.command)
"""

from fsixbridge.config.loader import (
    get_config,
    load_config,
    reset_config,
)
from fsixbridge.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
from fsixbridge.config.schema import (
    DEFAULT_COMMAND,
    Config,
    DaemonConfig,
    EditorConfig,
    LoggingConfig,
    TransportMode,
)

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    # Schema types
    "DEFAULT_COMMAND",
    "DaemonConfig",
    "EditorConfig",
    "LoggingConfig",
    "TransportMode",
    # Path utilities
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]
