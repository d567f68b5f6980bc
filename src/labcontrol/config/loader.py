"""Workspace configuration loading from ``labcontrol.toml``."""

import tomllib
from pathlib import Path

from labcontrol.config.models import BackupSettings, LabControlConfig, StoreProfile

CONFIG_FILE_NAME = "labcontrol.toml"


def load_config(
    workspace_root: Path,
    config_path: Path | None = None,
) -> LabControlConfig:
    """Load workspace configuration from TOML.

    Args:
        workspace_root: Directory holding the store files and the backup
            directory.
        config_path: Explicit config file.  When ``None``, reads
            ``<workspace_root>/labcontrol.toml`` and falls back to defaults if
            that file does not exist.

    Returns:
        LabControlConfig with both store profiles resolved.

    Raises:
        FileNotFoundError: If an explicit ``config_path`` doesn't exist.
        ValueError: If the config defines an unknown store.
    """
    workspace_root = Path(workspace_root)

    if config_path is None:
        config_path = workspace_root / CONFIG_FILE_NAME
        if not config_path.exists():
            return LabControlConfig(workspace_root=workspace_root)
    elif not config_path.exists():
        raise FileNotFoundError(
            f"Config not found: {config_path}\n"
            f"Create {CONFIG_FILE_NAME} or omit --config to use defaults."
        )

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    stores = data.get("stores", {})
    unknown = set(stores) - {"main", "cargo"}
    if unknown:
        raise ValueError(
            f"Unknown store(s) in {config_path.name}: {', '.join(sorted(unknown))}. "
            f"Only 'main' and 'cargo' are supported."
        )

    config = LabControlConfig(workspace_root=workspace_root)
    if "main" in stores:
        config.main = StoreProfile(**stores["main"])
    if "cargo" in stores:
        config.cargo = StoreProfile(**stores["cargo"])
    if "backup" in data:
        config.backup = BackupSettings(**data["backup"])

    return config
