"""Backup record and sidecar models.

Each snapshot ``database-backup-<timestamp><ext>`` is paired with a JSON
sidecar ``<snapshot>.meta``.  The sidecar uses camelCase keys:

    {
      "originalPath": "/workspace/database.sqlite",
      "backupDate": "2024-05-01T12:00:00.123000+00:00",
      "fileSize": 40960,
      "version": 7,
      "type": "binary-store",
      "checksum": "9f86d081884c7d65..."
    }

``checksum`` is the sha256 of the snapshot bytes; sidecars written before
it existed omit it.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

BackupKind = Literal["json", "binary-store"]


class BackupSidecar(BaseModel):
    """Contents of a ``.meta`` file.  Authoritative for version and date."""

    model_config = ConfigDict(populate_by_name=True)

    original_path: str = Field(alias="originalPath")
    backup_date: datetime = Field(alias="backupDate")
    file_size: int = Field(alias="fileSize")
    version: int
    type: BackupKind
    checksum: str | None = None

    @field_validator("backup_date")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class BackupRecord(BaseModel):
    """One listed snapshot.

    ``has_metadata`` is False when the sidecar was missing or unreadable; the
    date then comes from the file's mtime and ``version`` is 0.
    """

    file_name: str
    path: Path
    original_path: str | None = None
    backup_date: datetime
    file_size_bytes: int
    version: int = 0
    kind: BackupKind
    checksum: str | None = None
    has_metadata: bool = False


class BackupStats(BaseModel):
    """Totals over the current listing."""

    backup_dir: Path
    total_backups: int = 0
    total_size_bytes: int = 0
    oldest_backup: datetime | None = None
    newest_backup: datetime | None = None
