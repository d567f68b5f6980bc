"""Configuration management: TOML loading and config models.

Usage:
    >>> from labcontrol.config import load_config, LabControlConfig, StoreProfile
"""

from labcontrol.config.loader import CONFIG_FILE_NAME, load_config
from labcontrol.config.models import BackupSettings, LabControlConfig, StoreProfile

__all__ = [
    "CONFIG_FILE_NAME",
    "load_config",
    "LabControlConfig",
    "StoreProfile",
    "BackupSettings",
]
