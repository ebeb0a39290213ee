"""Configuration path resolution.

- System: /etc/lsptop/config.yaml
- User: $XDG_CONFIG_HOME/lsptop/, ~/.config/lsptop/ or ~/.lsp-top/
- Aliases live in ``aliases.yaml`` beside the user config file
"""

from __future__ import annotations

import os
from pathlib import Path

CONFIG_FILENAME = "config.yaml"
ALIASES_FILENAME = "aliases.yaml"
APP_NAME = "lsptop"
SHORT_NAME = ".lsp-top"


def get_system_config_path() -> Path:
    return Path("/etc") / APP_NAME / CONFIG_FILENAME


def get_user_config_dir() -> Path:
    """Get the user-level config directory (may not exist)."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / APP_NAME

    home = Path.home()
    xdg_default = home / ".config"
    if xdg_default.exists():
        return xdg_default / APP_NAME

    return home / SHORT_NAME


def get_user_config_path() -> Path:
    return get_user_config_dir() / CONFIG_FILENAME


def get_aliases_path() -> Path:
    return get_user_config_dir() / ALIASES_FILENAME


def get_config_paths() -> list[Path]:
    """Config paths in priority order (lowest to highest).

    Later paths override earlier ones when merging.
    """
    return [get_system_config_path(), get_user_config_path()]
