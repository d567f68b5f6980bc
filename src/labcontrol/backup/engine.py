"""File-level backup, retention and restore for store files.

The engine never opens a store; it copies bytes.  Backups live in
``<workspace_root>/.labcontrol-backups/`` as snapshot/sidecar pairs:

    database-backup-2024-05-01T12-00-00-123Z.sqlite
    database-backup-2024-05-01T12-00-00-123Z.sqlite.meta

Public operations never raise.  Failures are logged, reported as ``False``
and described in ``last_message``.

Usage:
    from labcontrol.backup.engine import BackupEngine

    engine = BackupEngine(workspace_root)
    engine.create_backup(workspace_root / "database.sqlite")
    for record in engine.list_backups():
        print(record.file_name, record.version)
    engine.restore_backup(record.file_name, workspace_root / "database.sqlite")
"""

import hashlib
import json
import logging
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from labcontrol.backup.models import BackupKind, BackupRecord, BackupSidecar, BackupStats

logger = logging.getLogger(__name__)

BACKUP_DIR_NAME = ".labcontrol-backups"
SNAPSHOT_PREFIX = "database-backup-"
SAFETY_PREFIX = "database-backup-before-restore-"
SIDECAR_SUFFIX = ".meta"
SNAPSHOT_EXTENSIONS = (".json", ".sqlite", ".sqlite3", ".db")

MAX_BACKUPS = 30
AUTO_BACKUP_INTERVAL = 6 * 60 * 60  # seconds


def backup_timestamp(now: datetime | None = None) -> str:
    """UTC timestamp usable in file names, e.g. ``2024-05-01T12-00-00-123Z``."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"


def snapshot_kind(path: Path) -> BackupKind:
    return "json" if path.suffix.lower() == ".json" else "binary-store"


def file_checksum(path: Path) -> str:
    """Hex sha256 of a file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


class BackupEngine:
    """Snapshots, prunes and restores store files.

    Args:
        workspace_root: Directory under which the backup directory lives.
        max_backups: Retention size.  Override in tests only.
        interval: Auto-backup period in seconds.  Override in tests only.
    """

    def __init__(
        self,
        workspace_root: str | Path,
        max_backups: int = MAX_BACKUPS,
        interval: float = AUTO_BACKUP_INTERVAL,
    ) -> None:
        self.workspace_root = Path(workspace_root)
        self.backup_dir = self.workspace_root / BACKUP_DIR_NAME
        self.max_backups = max_backups
        self.interval = interval
        self.last_message = ""

        self._lock = threading.RLock()
        self._timer_thread: threading.Thread | None = None
        self._timer_stop: threading.Event | None = None

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_backup(self, source_path: str | Path) -> bool:
        """Snapshot ``source_path`` with a versioned sidecar, then prune.

        Returns:
            True when the snapshot and its sidecar were written.
        """
        source = Path(source_path)
        if not source.is_file():
            return self._fail(f"Backup skipped: source {source} does not exist")
        ext = source.suffix.lower()
        if ext not in SNAPSHOT_EXTENSIONS:
            return self._fail(
                f"Backup skipped: unsupported extension {source.suffix!r} "
                f"(expected one of {', '.join(SNAPSHOT_EXTENSIONS)})"
            )

        with self._lock:
            try:
                self.backup_dir.mkdir(parents=True, exist_ok=True)
                snapshot = self._unique_path(f"{SNAPSHOT_PREFIX}{backup_timestamp()}", ext)
                version = self._next_version()

                shutil.copyfile(source, snapshot)
                sidecar = BackupSidecar(
                    original_path=str(source),
                    backup_date=datetime.now(timezone.utc),
                    file_size=snapshot.stat().st_size,
                    version=version,
                    type=snapshot_kind(snapshot),
                    checksum=file_checksum(snapshot),
                )
                sidecar_path = snapshot.with_name(snapshot.name + SIDECAR_SUFFIX)
                sidecar_path.write_text(sidecar.model_dump_json(by_alias=True, indent=2))
            except OSError as e:
                logger.exception("Backup of %s failed", source)
                return self._fail(f"Backup failed: {e}")

            self._prune()

        self.last_message = f"Backup created: {snapshot.name} (version {version})"
        logger.info(self.last_message)
        return True

    def _unique_path(self, stem: str, ext: str) -> Path:
        candidate = self.backup_dir / f"{stem}{ext}"
        counter = 1
        while candidate.exists():
            candidate = self.backup_dir / f"{stem}-{counter}{ext}"
            counter += 1
        return candidate

    def _next_version(self) -> int:
        """One more than the highest version among readable sidecars."""
        highest = 0
        for sidecar_path in self.backup_dir.glob(f"*{SIDECAR_SUFFIX}"):
            sidecar = _read_sidecar(sidecar_path)
            if sidecar is not None:
                highest = max(highest, sidecar.version)
        return highest + 1

    # ------------------------------------------------------------------
    # List
    # ------------------------------------------------------------------

    def list_backups(self) -> list[BackupRecord]:
        """All snapshots, newest first.  Returns ``[]`` on any read error.

        Waits for a backup, prune or restore in progress, so a listing never
        sees a half-written pair.
        """
        with self._lock:
            try:
                return sorted(
                    self._scan(),
                    key=lambda r: (r.backup_date, r.version, r.file_name),
                    reverse=True,
                )
            except OSError:
                logger.exception("Could not read backup directory %s", self.backup_dir)
                return []

    def backup_stats(self) -> BackupStats:
        """Count, total size and date range of the current snapshots."""
        records = self.list_backups()
        return BackupStats(
            backup_dir=self.backup_dir,
            total_backups=len(records),
            total_size_bytes=sum(r.file_size_bytes for r in records),
            oldest_backup=records[-1].backup_date if records else None,
            newest_backup=records[0].backup_date if records else None,
        )

    def _scan(self) -> list[BackupRecord]:
        if not self.backup_dir.is_dir():
            return []

        records = []
        for path in self.backup_dir.iterdir():
            if not _is_snapshot(path):
                continue
            try:
                stat = path.stat()
            except FileNotFoundError:
                # deleted by another process since iterdir()
                continue
            sidecar = _read_sidecar(path.with_name(path.name + SIDECAR_SUFFIX))
            if sidecar is None:
                records.append(
                    BackupRecord(
                        file_name=path.name,
                        path=path,
                        backup_date=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                        file_size_bytes=stat.st_size,
                        kind=snapshot_kind(path),
                    )
                )
            else:
                records.append(
                    BackupRecord(
                        file_name=path.name,
                        path=path,
                        original_path=sidecar.original_path,
                        backup_date=sidecar.backup_date,
                        file_size_bytes=sidecar.file_size,
                        version=sidecar.version,
                        kind=sidecar.type,
                        checksum=sidecar.checksum,
                        has_metadata=True,
                    )
                )
        return records

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def _prune(self) -> int:
        """Delete every snapshot pair beyond the ``max_backups`` most recent.

        Recency is the snapshot's mtime; ties fall back to version, then name.
        Returns the number of snapshots deleted.
        """
        with self._lock:
            try:
                ranked = sorted(
                    ((r.path.stat().st_mtime, r.version, r.file_name, r.path) for r in self._scan()),
                    reverse=True,
                )
            except OSError:
                logger.exception("Pruning skipped: could not list %s", self.backup_dir)
                return 0

            deleted = 0
            for *_, path in ranked[self.max_backups :]:
                try:
                    path.unlink(missing_ok=True)
                    path.with_name(path.name + SIDECAR_SUFFIX).unlink(missing_ok=True)
                    deleted += 1
                except OSError:
                    logger.exception("Could not delete old backup %s", path.name)
            if deleted:
                logger.info("Pruned %d old backup(s)", deleted)
            return deleted

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_backup(self, backup_name: str, target_path: str | Path) -> bool:
        """Copy a snapshot over ``target_path``.

        When the target exists it is first saved as
        ``database-backup-before-restore-<timestamp><ext>``, which counts
        toward retention.  A missing backup, or one whose bytes no longer
        match the sidecar checksum, changes nothing and returns False.
        """
        target = Path(target_path)
        backup = self.backup_dir / backup_name
        if Path(backup_name).name != backup_name or not backup.is_file():
            return self._fail(f"Backup not found: {backup_name}")

        with self._lock:
            try:
                sidecar = _read_sidecar(backup.with_name(backup.name + SIDECAR_SUFFIX))
                if sidecar is not None and sidecar.checksum is not None:
                    if file_checksum(backup) != sidecar.checksum:
                        return self._fail(f"Restore refused: {backup_name} fails checksum")
                if target.exists():
                    ext = target.suffix or backup.suffix
                    safety = self._unique_path(f"{SAFETY_PREFIX}{backup_timestamp()}", ext)
                    shutil.copyfile(target, safety)
                    logger.info("Current %s saved as %s", target.name, safety.name)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(backup, target)
            except OSError as e:
                logger.exception("Restore of %s onto %s failed", backup_name, target)
                return self._fail(f"Restore failed: {e}")

            self._prune()

        self.last_message = f"Restored {backup_name} to {target}"
        logger.info(self.last_message)
        return True

    # ------------------------------------------------------------------
    # Auto-backup schedule
    # ------------------------------------------------------------------

    def start_auto_backup(self, source_path: str | Path) -> None:
        """Back up now, then every ``interval`` seconds on a daemon thread.

        Replaces any schedule already running.
        """
        self.stop_auto_backup()
        self.create_backup(source_path)

        stop = threading.Event()

        def run() -> None:
            while not stop.wait(self.interval):
                self.create_backup(source_path)

        thread = threading.Thread(target=run, name="labcontrol-auto-backup", daemon=True)
        self._timer_stop = stop
        self._timer_thread = thread
        thread.start()
        logger.info("Auto-backup of %s every %ss", source_path, self.interval)

    def stop_auto_backup(self) -> None:
        """Cancel the schedule.  A copy already running is left to finish."""
        if self._timer_stop is not None:
            self._timer_stop.set()
            logger.info("Auto-backup stopped")
        self._timer_stop = None
        self._timer_thread = None

    @property
    def auto_backup_running(self) -> bool:
        return self._timer_thread is not None and self._timer_thread.is_alive()

    def _fail(self, message: str) -> bool:
        self.last_message = message
        logger.warning(message)
        return False


def _is_snapshot(path: Path) -> bool:
    return (
        path.is_file()
        and path.name.startswith(SNAPSHOT_PREFIX)
        and path.suffix.lower() in SNAPSHOT_EXTENSIONS
    )


def _read_sidecar(path: Path) -> BackupSidecar | None:
    """Parse a sidecar; ``None`` when missing or corrupt."""
    if not path.is_file():
        return None
    try:
        return BackupSidecar.model_validate(json.loads(path.read_text()))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
        logger.warning("Ignoring unreadable backup metadata %s: %s", path.name, e)
        return None
