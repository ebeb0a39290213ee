"""Configuration management for lsp-top.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/lsptop/config.yaml)
- User-level config (~/.config/lsptop/ or ~/.lsp-top/)
- Environment variable overrides (highest priority)
- A separate alias file mapping short names to project roots

Example usage:
    from lsptop.config import get_config

    config = get_config()
    print(config.daemon.socket_path)
    print(config.server.command)
"""

from lsptop.config.aliases import AliasStore
from lsptop.config.loader import (
    deep_merge,
    get_config,
    load_config,
    reset_config,
)
from lsptop.config.paths import (
    get_aliases_path,
    get_config_paths,
    get_system_config_path,
    get_user_config_path,
)
from lsptop.config.schema import (
    Config,
    DaemonConfig,
    LoggingConfig,
    ServerConfig,
)

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    "deep_merge",
    # Schema types
    "DaemonConfig",
    "ServerConfig",
    "LoggingConfig",
    # Aliases
    "AliasStore",
    # Path utilities
    "get_aliases_path",
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
]
