"""Tests for the backup manager: snapshots, retention and restore."""
import json
import sqlite3

import pytest

from cortex.backup import BackupManager

from conftest import FakeClock


def _make_db(path, rows=("first",)):
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE IF NOT EXISTS notes (body TEXT)")
    conn.executemany("INSERT INTO notes (body) VALUES (?)", [(r,) for r in rows])
    conn.commit()
    conn.close()


def _rows(path):
    conn = sqlite3.connect(str(path))
    try:
        return [r[0] for r in conn.execute("SELECT body FROM notes ORDER BY rowid")]
    finally:
        conn.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "cortex_memory.db"
    _make_db(path)
    return path


@pytest.fixture
def backups(db_path, clock):
    return BackupManager(db_path, backup_dir=db_path.parent / "backups", clock=clock)


class TestCreateBackup:
    def test_creates_snapshot_and_sidecar(self, backups, clock):
        record = backups.create_backup()
        assert record.filename == "cortex_memory_2026-01-01T12-00-00-000000Z.db"
        snapshot = backups.backup_dir / record.filename
        assert snapshot.is_file()
        meta = json.loads((backups.backup_dir / (record.filename + ".meta.json")).read_text())
        assert meta["filename"] == record.filename
        assert meta["version"] == "1.0"
        assert meta["size"] == snapshot.stat().st_size
        assert _rows(snapshot) == ["first"]

    def test_no_database_returns_none(self, tmp_path, clock):
        mgr = BackupManager(tmp_path / "missing.db", clock=clock)
        assert mgr.create_backup() is None
        assert mgr.list_backups() == []

    def test_list_newest_first(self, backups, clock):
        first = backups.create_backup()
        clock.advance(hours=1)
        second = backups.create_backup()
        assert [b.filename for b in backups.list_backups()] == [second.filename, first.filename]

    def test_missing_sidecar_synthesized(self, backups):
        record = backups.create_backup()
        (backups.backup_dir / (record.filename + ".meta.json")).unlink()
        listed = backups.list_backups()
        assert [b.filename for b in listed] == [record.filename]
        assert listed[0].size > 0


class TestRetention:
    def test_daily_backups_bounded(self, backups, clock):
        """Twelve daily backups: never more than 10 kept and the oldest go first."""
        created = []
        for _ in range(12):
            created.append(backups.check_and_backup().filename)
            clock.advance(hours=25)
        remaining = [b.filename for b in backups.list_backups()]
        assert len(remaining) <= 10
        assert created[0] not in remaining
        assert created[1] not in remaining
        assert created[-1] in remaining

    def test_count_cap(self, backups, clock):
        created = []
        for _ in range(12):
            created.append(backups.create_backup().filename)
            clock.advance(minutes=1)
        remaining = [b.filename for b in backups.list_backups()]
        assert len(remaining) == 10
        assert set(remaining) == set(created[2:])

    def test_age_cap(self, backups, clock):
        old = backups.create_backup()
        clock.advance(days=8)
        backups.create_backup()
        remaining = [b.filename for b in backups.list_backups()]
        assert old.filename not in remaining
        assert len(remaining) == 1

    def test_sidecars_removed_with_snapshots(self, backups, clock):
        for _ in range(11):
            backups.create_backup()
            clock.advance(minutes=1)
        assert len(list(backups.backup_dir.glob("*.meta.json"))) == 10


class TestCheckAndBackup:
    def test_respects_interval(self, backups, clock):
        assert backups.check_and_backup() is not None
        clock.advance(hours=1)
        assert backups.check_and_backup() is None
        clock.advance(hours=24)
        assert backups.check_and_backup() is not None
        assert len(backups.list_backups()) == 2


class TestRestore:
    def test_restore_roundtrip(self, backups, db_path, clock):
        record = backups.create_backup()
        _make_db(db_path, rows=("second",))
        assert _rows(db_path) == ["first", "second"]

        clock.advance(minutes=5)
        assert backups.restore_from_backup(record.filename)
        assert _rows(db_path) == ["first"]

        names = [b.filename for b in backups.list_backups()]
        pre = [n for n in names if n.startswith("pre_restore_")]
        assert len(pre) == 1
        assert _rows(backups.backup_dir / pre[0]) == ["first", "second"]

    def test_restore_missing(self, backups):
        assert backups.restore_from_backup("cortex_memory_nope.db") is False

    def test_restore_rejects_path_traversal(self, backups, db_path):
        backups.create_backup()
        assert backups.restore_from_backup("../cortex_memory.db") is False


class TestStats:
    def test_empty(self, backups):
        assert backups.stats() == {
            "total_backups": 0,
            "oldest_backup": None,
            "newest_backup": None,
            "total_size_kb": 0.0,
        }

    def test_populated(self, backups, clock):
        first = backups.create_backup()
        clock.advance(hours=2)
        second = backups.create_backup()
        stats = backups.stats()
        assert stats["total_backups"] == 2
        assert stats["oldest_backup"] == first.timestamp.isoformat()
        assert stats["newest_backup"] == second.timestamp.isoformat()
        assert stats["total_size_kb"] > 0
