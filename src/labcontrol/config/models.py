"""Pydantic models for workspace configuration (``labcontrol.toml``)."""

from pathlib import Path

from pydantic import BaseModel, Field


class StoreProfile(BaseModel):
    """One store's backing file, relative to the workspace root unless absolute."""

    file: str
    description: str = ""

    def resolve(self, workspace_root: Path) -> Path:
        """Return the absolute path of the store file."""
        path = Path(self.file)
        return path if path.is_absolute() else workspace_root / path


class BackupSettings(BaseModel):
    """Backup behaviour that may vary per workspace.

    Retention size and the auto-backup period are process-wide constants in
    ``labcontrol.backup.engine`` and are deliberately absent here.
    """

    auto: bool = True


def _default_main() -> StoreProfile:
    return StoreProfile(file="database.sqlite", description="Inventory, assays, calibrations")


def _default_cargo() -> StoreProfile:
    return StoreProfile(file="cargo.sqlite", description="Load-test pieces and protocol links")


class LabControlConfig(BaseModel):
    """Complete workspace configuration."""

    workspace_root: Path
    main: StoreProfile = Field(default_factory=_default_main)
    cargo: StoreProfile = Field(default_factory=_default_cargo)
    backup: BackupSettings = Field(default_factory=BackupSettings)

    @property
    def main_path(self) -> Path:
        return self.main.resolve(self.workspace_root)

    @property
    def cargo_path(self) -> Path:
        return self.cargo.resolve(self.workspace_root)
