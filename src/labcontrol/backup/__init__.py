"""Versioned file snapshots of store files with retention and restore."""

from labcontrol.backup.engine import (
    AUTO_BACKUP_INTERVAL,
    BACKUP_DIR_NAME,
    MAX_BACKUPS,
    BackupEngine,
)
from labcontrol.backup.models import BackupRecord, BackupSidecar, BackupStats

__all__ = [
    "AUTO_BACKUP_INTERVAL",
    "BACKUP_DIR_NAME",
    "MAX_BACKUPS",
    "BackupEngine",
    "BackupRecord",
    "BackupSidecar",
    "BackupStats",
]
