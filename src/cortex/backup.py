"""
Cortex Backup Manager -- point-in-time snapshots of the store file.

Each snapshot is a consistent copy made with the SQLite online-backup API
plus a ``<snapshot>.meta.json`` sidecar recording filename, timestamp, size
and format version. Retention keeps at most ``max_backups`` snapshots and
nothing older than ``retention_days``; it runs after every successful
backup.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cortex.types import BackupRecord

logger = logging.getLogger("cortex.backup")

BACKUP_FORMAT_VERSION = "1.0"
BACKUP_PREFIX = "cortex_memory_"
PRE_RESTORE_PREFIX = "pre_restore_"
META_SUFFIX = ".meta.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _file_timestamp(ts: datetime) -> str:
    """ISO timestamp made filename-safe (':' and '.' become '-')."""
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def copy_database(src: Path, dst: Path) -> None:
    """Copy a SQLite database with the online-backup API (WAL-safe)."""
    source = sqlite3.connect(str(src))
    try:
        target = sqlite3.connect(str(dst))
        try:
            source.backup(target)
        finally:
            target.close()
    finally:
        source.close()


class BackupManager:
    """Creates, lists, prunes and restores snapshots of one database file."""

    def __init__(
        self,
        db_path: Path,
        backup_dir: Optional[Path] = None,
        retention_days: int = 7,
        max_backups: int = 10,
        interval_hours: int = 24,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db_path = Path(db_path)
        self.backup_dir = Path(backup_dir) if backup_dir else self.db_path.parent / "backups"
        self.retention = timedelta(days=retention_days)
        self.max_backups = max_backups
        self.interval = timedelta(hours=interval_hours)
        self._clock = clock

    def _ensure_dir(self) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    @staticmethod
    def _meta_path(snapshot: Path) -> Path:
        return snapshot.with_name(snapshot.name + META_SUFFIX)

    def _snapshot(self, prefix: str) -> BackupRecord:
        """Copy the live database to ``<prefix><timestamp>.db`` and write its sidecar."""
        self._ensure_dir()
        ts = self._clock()
        path = self.backup_dir / f"{prefix}{_file_timestamp(ts)}.db"
        try:
            copy_database(self.db_path, path)
            record = BackupRecord(
                filename=path.name,
                timestamp=ts,
                size=path.stat().st_size,
                version=BACKUP_FORMAT_VERSION,
            )
            self._meta_path(path).write_text(json.dumps(record.to_dict(), indent=2))
        except Exception:
            # Snapshot and sidecar exist together or not at all
            path.unlink(missing_ok=True)
            self._meta_path(path).unlink(missing_ok=True)
            raise
        return record

    def create_backup(self) -> Optional[BackupRecord]:
        """Snapshot the store. Returns None when there is no store file yet."""
        if not self.db_path.exists():
            logger.info("No database at %s, nothing to back up", self.db_path)
            return None
        record = self._snapshot(BACKUP_PREFIX)
        logger.info("Backup created: %s (%.1f KB)", record.filename, record.size / 1024)
        self.cleanup_old_backups()
        return record

    def _read_record(self, snapshot: Path) -> BackupRecord:
        """Load a snapshot's sidecar, synthesizing one from file stats if missing or unreadable."""
        meta = self._meta_path(snapshot)
        if meta.exists():
            try:
                data = json.loads(meta.read_text())
                ts = datetime.fromisoformat(data["timestamp"])
                if ts.tzinfo is None:
                    ts = ts.replace(tzinfo=timezone.utc)
                return BackupRecord(
                    filename=data.get("filename", snapshot.name),
                    timestamp=ts,
                    size=int(data.get("size", snapshot.stat().st_size)),
                    version=str(data.get("version", BACKUP_FORMAT_VERSION)),
                )
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Unreadable backup metadata %s: %s", meta.name, e)
        stat = snapshot.stat()
        return BackupRecord(
            filename=snapshot.name,
            timestamp=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size=stat.st_size,
            version=BACKUP_FORMAT_VERSION,
        )

    def list_backups(self) -> List[BackupRecord]:
        """All snapshots, newest first."""
        if not self.backup_dir.exists():
            return []
        records = [self._read_record(p) for p in self.backup_dir.glob("*.db") if p.is_file()]
        records.sort(key=lambda r: (r.timestamp, r.filename), reverse=True)
        return records

    def _delete(self, filename: str) -> None:
        snapshot = self.backup_dir / filename
        snapshot.unlink(missing_ok=True)
        self._meta_path(snapshot).unlink(missing_ok=True)

    def cleanup_old_backups(self) -> int:
        """Delete snapshots past the retention window or beyond the count cap."""
        records = self.list_backups()
        cutoff = self._clock() - self.retention
        removed = 0
        for i, record in enumerate(records):
            if i >= self.max_backups or record.timestamp < cutoff:
                try:
                    self._delete(record.filename)
                    removed += 1
                    logger.debug("Removed old backup: %s", record.filename)
                except OSError as e:
                    logger.warning("Could not remove backup %s: %s", record.filename, e)
        if removed:
            logger.info("Backup cleanup removed %d snapshot(s)", removed)
        return removed

    def check_and_backup(self) -> Optional[BackupRecord]:
        """Create a backup unless the newest one is younger than the interval."""
        backups = self.list_backups()
        if backups and self._clock() - backups[0].timestamp < self.interval:
            return None
        return self.create_backup()

    def restore_from_backup(self, filename: str) -> bool:
        """Replace the live store with a snapshot. Returns False if it doesn't exist.

        The current state is saved as a ``pre_restore_*`` snapshot first when
        possible. The caller must close its own connections beforehand.
        """
        name = Path(filename).name
        snapshot = self.backup_dir / name
        if not name.endswith(".db") or not snapshot.is_file():
            logger.warning("Backup not found: %s", filename)
            return False

        if self.db_path.exists():
            try:
                record = self._snapshot(PRE_RESTORE_PREFIX)
                logger.info("Saved pre-restore snapshot: %s", record.filename)
            except (OSError, sqlite3.Error) as e:
                logger.warning("Pre-restore snapshot failed, restoring anyway: %s", e)

        copy_database(snapshot, self.db_path)
        logger.info("Restored %s from %s", self.db_path.name, name)
        return True

    def stats(self) -> Dict[str, object]:
        backups = self.list_backups()
        return {
            "total_backups": len(backups),
            "oldest_backup": backups[-1].timestamp.isoformat() if backups else None,
            "newest_backup": backups[0].timestamp.isoformat() if backups else None,
            "total_size_kb": round(sum(b.size for b in backups) / 1024, 1),
        }
