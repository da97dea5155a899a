"""
Configuration — ``{home}/config/config.yaml`` loaded into pydantic.

A missing file yields defaults. A malformed file logs a warning and also
yields defaults, so a broken config never prevents the notes themselves
from being read.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import VAULTNOTE_HOME
from .sync.models import RemoteConfig, SyncSettings

logger = logging.getLogger("vaultnote.config")

CONFIG_RELATIVE_PATH = Path("config") / "config.yaml"


class VaultConfig(BaseModel):
    """Top-level configuration for one VaultNote home."""

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)


def resolve_home(home: Optional[Path] = None) -> Path:
    """Expand the home directory, defaulting to ``VAULTNOTE_HOME``."""
    return Path(home or VAULTNOTE_HOME).expanduser()


def load_config(home: Path) -> VaultConfig:
    """Load configuration from disk.

    Args:
        home: VaultNote home directory.

    Returns:
        VaultConfig loaded from config.yaml, or defaults.
    """
    config_file = home / CONFIG_RELATIVE_PATH
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return VaultConfig.model_validate(data)
        except (yaml.YAMLError, ValueError) as exc:
            logger.warning("Failed to load config: %s, using defaults", exc)
    return VaultConfig()


def save_config(home: Path, config: VaultConfig) -> Path:
    """Write configuration back to ``config.yaml``.

    Returns:
        Path to the written file.
    """
    config_file = home / CONFIG_RELATIVE_PATH
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    logger.debug("Saved config to %s", config_file)
    return config_file
