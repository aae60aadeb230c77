"""
Unit tests for the version store client (autobk/store.py).

Tests the queries and mutations issued against the relational store.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from autobk.models import Device, Schedule, Backup, BackupVersion, ScheduleState
from autobk.store import VersionStore, StoreError, ConnectivityError


NOW = datetime(2024, 1, 15, 12, 0, 0)


class TestConnection:
    """Test connectivity checks."""

    def test_check_connection(self, store):
        store.check_connection()

    def test_check_connection_failure(self):
        """Driver errors become ConnectivityError."""
        session = MagicMock()
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("refused"))

        with pytest.raises(ConnectivityError, match="unreachable"):
            VersionStore(session).check_connection()

        session.rollback.assert_called_once()

    def test_commit_failure(self):
        session = MagicMock()
        session.commit.side_effect = OperationalError("COMMIT", {}, Exception("lost"))

        with pytest.raises(StoreError, match="Failed to commit"):
            VersionStore(session).commit()

        session.rollback.assert_called_once()


class TestDueSchedules:
    """Test fetch_due_schedules()."""

    def test_only_pending_and_due_rows(self, db, store, device, make_schedule):
        auto = make_schedule(device.id, state=ScheduleState.AUTO, due_at=NOW - timedelta(hours=2))
        manual = make_schedule(device.id, state=ScheduleState.MANUAL, due_at=NOW)
        make_schedule(device.id, state=ScheduleState.AUTO, due_at=NOW + timedelta(seconds=1))
        make_schedule(device.id, state=ScheduleState.COMPLETE, due_at=NOW - timedelta(days=1))
        make_schedule(device.id, state=ScheduleState.FAIL, due_at=NOW - timedelta(days=1))

        due = store.fetch_due_schedules(NOW)

        assert [d.schedule_id for d in due] == [auto, manual]
        assert due[0].device_id == 7
        assert due[0].device_name == 'D1'
        assert due[0].device_address == '10.0.0.7'
        assert due[0].device_type == 'FakeDevice'
        assert due[0].auto_weeks == 1
        assert due[1].state == ScheduleState.MANUAL


class TestLatest:
    """Test latest hash/version lookups."""

    def test_no_history(self, store, device):
        assert store.fetch_latest_backup(device.id) is None
        assert store.fetch_latest_hash(device.id) is None
        assert store.fetch_latest_version(device.id) == 0

    def test_latest_by_completion_time(self, db, store, device):
        """The newest row wins, regardless of insertion order."""
        newer = store.insert_backup(device.id, '/b/new.bak', 'b' * 64, NOW)
        store.insert_backup(device.id, '/b/old.bak', 'a' * 64, NOW - timedelta(days=1))
        store.insert_version(newer, device.id, 3, NOW)
        store.commit()

        latest = store.fetch_latest_backup(device.id)
        assert latest.backup_hash == 'b' * 64
        assert latest.file_path == '/b/new.bak'
        assert store.fetch_latest_version(device.id) == 3

    def test_latest_version_by_creation_time(self, db, store, device):
        backup_id = store.insert_backup(device.id, '/b/x.bak', 'c' * 64, NOW)
        store.insert_version(backup_id, device.id, 2, NOW)
        store.insert_version(backup_id, device.id, 1, NOW - timedelta(days=1))
        store.commit()

        assert store.fetch_latest_version(device.id) == 2

    def test_history_is_per_device(self, db, store, device):
        other = Device(id=8, name='D2', address='10.0.0.8', device_type='FakeDevice')
        db.session.add(other)
        backup_id = store.insert_backup(other.id, '/b/y.bak', 'd' * 64, NOW)
        store.insert_version(backup_id, other.id, 5, NOW)
        store.commit()

        assert store.fetch_latest_hash(device.id) is None
        assert store.fetch_latest_version(device.id) == 0


class TestMutations:
    """Test staged mutations."""

    def test_update_schedule(self, db, store, device, make_schedule):
        schedule_id = make_schedule(device.id, attempt=2)

        store.update_schedule(schedule_id, ScheduleState.FAIL, 'Backup failed: x', increment_attempt=True)
        store.commit()

        schedule = db.session.get(Schedule, schedule_id)
        assert schedule.state == ScheduleState.FAIL
        assert schedule.attempt == 3
        assert schedule.comment == 'Backup failed: x'

    def test_update_schedule_keeps_attempt(self, db, store, device, make_schedule):
        schedule_id = make_schedule(device.id, attempt=1)

        store.update_schedule(schedule_id, ScheduleState.COMPLETE, 'done')
        store.commit()

        assert db.session.get(Schedule, schedule_id).attempt == 1

    def test_update_missing_schedule(self, store):
        with pytest.raises(StoreError, match="not found"):
            store.update_schedule(12345, ScheduleState.COMPLETE)

    def test_rollback_discards_staged_rows(self, db, store, device):
        store.insert_backup(device.id, '/b/z.bak', 'e' * 64, NOW)
        store.rollback()

        assert Backup.query.count() == 0


class TestExpired:
    """Test retention queries."""

    def test_fetch_expired(self, db, store, device):
        expired = store.insert_backup(device.id, '/b/1.bak', 'a' * 64, NOW, expires_at=NOW - timedelta(days=1))
        store.insert_backup(device.id, '/b/2.bak', 'b' * 64, NOW, expires_at=NOW + timedelta(days=1))
        store.insert_backup(device.id, '/b/3.bak', 'c' * 64, NOW, expires_at=None)
        store.commit()

        rows = store.fetch_expired(NOW)

        assert [r.backup_id for r in rows] == [expired]
        assert rows[0].device_name == 'D1'
        assert rows[0].file_path == '/b/1.bak'

    def test_delete_versions_and_backup(self, db, store, device):
        backup_id = store.insert_backup(device.id, '/b/1.bak', 'a' * 64, NOW)
        store.insert_version(backup_id, device.id, 1, NOW)
        store.commit()

        assert store.delete_versions(backup_id) == 1
        assert store.delete_backup(backup_id) == 1
        store.commit()

        assert Backup.query.count() == 0
        assert BackupVersion.query.count() == 0

    def test_count_file_references(self, db, store, device):
        first = store.insert_backup(device.id, '/b/shared.bak', 'a' * 64, NOW)
        second = store.insert_backup(device.id, '/b/shared.bak', 'a' * 64, NOW)
        own = store.insert_backup(device.id, '/b/own.bak', 'b' * 64, NOW)
        store.commit()

        assert store.count_file_references('/b/shared.bak', first) == 1
        assert store.count_file_references('/b/shared.bak', second) == 1
        assert store.count_file_references('/b/own.bak', own) == 0


class TestPlanningQueries:
    """Test planner queries."""

    def test_retryable_failures(self, db, store, device, make_schedule):
        retry = make_schedule(device.id, state=ScheduleState.FAIL, attempt=1, due_at=NOW)

        assert store.fetch_retryable_failures(max_attempts=3) == [retry]
        assert store.fetch_retryable_failures(max_attempts=1) == []

    def test_superseded_failure_is_not_retried(self, db, store, device, make_schedule):
        make_schedule(device.id, state=ScheduleState.FAIL, attempt=1, due_at=NOW - timedelta(days=7))
        make_schedule(device.id, state=ScheduleState.COMPLETE, due_at=NOW)

        assert store.fetch_retryable_failures(max_attempts=3) == []

    def test_requeue_schedule(self, db, store, device, make_schedule):
        schedule_id = make_schedule(device.id, state=ScheduleState.FAIL, attempt=2, due_at=NOW)

        store.requeue_schedule(schedule_id, NOW + timedelta(hours=1))
        store.commit()

        schedule = db.session.get(Schedule, schedule_id)
        assert schedule.state == ScheduleState.AUTO
        assert schedule.attempt == 2
        assert schedule.due_at == NOW + timedelta(hours=1)

    def test_plan_candidates(self, db, store, device, make_schedule):
        busy = Device(id=8, name='Busy', address='10.0.0.8', device_type='FakeDevice', auto_weeks=2)
        idle = Device(id=9, name='Idle', address='10.0.0.9', device_type='FakeDevice', auto_weeks=0)
        new = Device(id=10, name='New', address='10.0.0.10', device_type='FakeDevice', auto_weeks=4)
        db.session.add_all([busy, idle, new])
        db.session.commit()

        make_schedule(device.id, state=ScheduleState.COMPLETE, due_at=NOW - timedelta(days=3))
        make_schedule(device.id, state=ScheduleState.COMPLETE, due_at=NOW - timedelta(days=10))
        make_schedule(busy.id, state=ScheduleState.AUTO, due_at=NOW + timedelta(days=1))

        candidates = store.fetch_plan_candidates()

        assert [c.device_id for c in candidates] == [7, 10]
        assert candidates[0].last_due_at == NOW - timedelta(days=3)
        assert candidates[0].auto_weeks == 1
        assert candidates[1].last_due_at is None

    def test_insert_schedule_and_versions(self, db, store, device):
        schedule_id = store.insert_schedule(device.id, ScheduleState.MANUAL, NOW, 'manual')
        backup_id = store.insert_backup(device.id, '/b/1.bak', 'a' * 64, NOW)
        store.insert_version(backup_id, device.id, 1, NOW)
        store.commit()

        schedule = db.session.get(Schedule, schedule_id)
        assert schedule.state == ScheduleState.MANUAL
        assert schedule.attempt == 0

        versions = store.fetch_versions(device.id)
        assert [v.version_number for v in versions] == [1]
        assert versions[0].backup.file_path == '/b/1.bak'

    def test_get_device(self, store, device):
        assert store.get_device(7).name == 'D1'
        assert store.get_device(404) is None
