"""
Version store client.

Every query and mutation the daemon issues against the relational store lives
here, so the executor, the retention sweeper and the planner never touch the
session directly. Mutations are staged on the session; callers decide when a
unit of work is committed or rolled back.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from autobk import db
from autobk.models import Device, Schedule, Backup, BackupVersion, ScheduleState, format_version


class StoreError(Exception):
    """Raised when a query or mutation against the store fails."""
    pass


class ConnectivityError(StoreError):
    """Raised when the store cannot be reached at all."""
    pass


@dataclass
class DueSchedule:
    """A schedule row that is due, joined with its device."""
    schedule_id: int
    state: str
    attempt: int
    comment: Optional[str]
    device_id: int
    device_name: str
    device_address: str
    device_type: str
    auto_weeks: int


@dataclass
class LatestBackup:
    """Fingerprint and location of a device's latest backup."""
    backup_hash: str
    file_path: str


@dataclass
class ExpiredBackup:
    """A backup row past its expiration, with the device name for diagnostics."""
    backup_id: int
    device_id: int
    file_path: str
    expires_at: datetime
    device_name: Optional[str] = None


@dataclass
class PlanCandidate:
    """A device with a backup cadence and no pending schedule row."""
    device_id: int
    device_name: str
    auto_weeks: int
    last_due_at: Optional[datetime] = None


class VersionStore:
    """
    Repository over the Device, Schedule, Backup and BackupVersion tables.
    """

    def __init__(self, session=None):
        """
        Initialize the store.

        Args:
            session: SQLAlchemy session (defaults to the Flask-SQLAlchemy scoped session)
        """
        self.session = session if session is not None else db.session

    def check_connection(self):
        """
        Make sure a connection can be acquired.

        Raises:
            ConnectivityError: If the database is unreachable
        """
        try:
            self.session.execute(text('SELECT 1'))
        except SQLAlchemyError as e:
            self.session.rollback()
            raise ConnectivityError(f"Database unreachable: {e}") from e

    def commit(self):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise StoreError(f"Failed to commit: {e}") from e

    def rollback(self):
        try:
            self.session.rollback()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to roll back: {e}") from e

    # Autobackups

    def fetch_due_schedules(self, now: datetime) -> List[DueSchedule]:
        """
        Select schedule rows in Auto/Manual state that are due.

        Args:
            now: Reference time

        Returns:
            Due rows ordered by due time
        """
        try:
            rows = (
                self.session.query(Schedule, Device)
                .join(Device, Schedule.device_id == Device.id)
                .filter(Schedule.state.in_(ScheduleState.PENDING))
                .filter(Schedule.due_at <= now)
                .order_by(Schedule.due_at, Schedule.id)
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch due schedules: {e}") from e

        return [
            DueSchedule(
                schedule_id=schedule.id,
                state=schedule.state,
                attempt=schedule.attempt,
                comment=schedule.comment,
                device_id=device.id,
                device_name=device.name,
                device_address=device.address,
                device_type=device.device_type,
                auto_weeks=device.auto_weeks,
            )
            for schedule, device in rows
        ]

    def fetch_latest_backup(self, device_id: int) -> Optional[LatestBackup]:
        """Hash and file of the most recently completed backup of a device, if any."""
        try:
            backup = (
                self.session.query(Backup)
                .filter_by(device_id=device_id)
                .order_by(Backup.completed_at.desc(), Backup.id.desc())
                .first()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch latest backup for device {device_id}: {e}") from e

        if backup is None:
            return None

        return LatestBackup(backup_hash=backup.backup_hash, file_path=backup.file_path)

    def fetch_latest_hash(self, device_id: int) -> Optional[str]:
        """Hash of the most recently completed backup of a device, if any."""
        latest = self.fetch_latest_backup(device_id)
        return latest.backup_hash if latest else None

    def fetch_latest_version(self, device_id: int) -> float:
        """Most recent version number of a device (0 when it has none)."""
        try:
            version = (
                self.session.query(BackupVersion)
                .filter_by(device_id=device_id)
                .order_by(BackupVersion.created_at.desc(), BackupVersion.id.desc())
                .first()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch latest version for device {device_id}: {e}") from e

        return version.version_number if version else 0.0

    def insert_backup(self, device_id: int, file_path: str, backup_hash: str,
                      completed_at: datetime, expires_at: Optional[datetime] = None) -> int:
        """Stage a Backup row and return its id."""
        backup = Backup(
            device_id=device_id,
            completed_at=completed_at,
            expires_at=expires_at,
            file_path=file_path,
            backup_hash=backup_hash
        )

        try:
            self.session.add(backup)
            self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert backup for device {device_id}: {e}") from e

        return backup.id

    def insert_version(self, backup_id: int, device_id: int, version_number: float,
                       created_at: datetime) -> int:
        """Stage a BackupVersion row and return its id."""
        version = BackupVersion(
            backup_id=backup_id,
            device_id=device_id,
            version_number=version_number,
            created_at=created_at
        )

        try:
            self.session.add(version)
            self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert version {format_version(version_number)} for device {device_id}: {e}") from e

        return version.id

    def update_schedule(self, schedule_id: int, state: str, comment: Optional[str] = None,
                        increment_attempt: bool = False):
        """
        Stage a state/comment change on a schedule row.

        Args:
            schedule_id: Schedule row to update
            state: New state
            comment: New comment
            increment_attempt: Add exactly one to the attempt counter

        Raises:
            StoreError: If the row does not exist or the update fails
        """
        try:
            schedule = self.session.get(Schedule, schedule_id)
            if schedule is None:
                raise StoreError(f"Schedule not found: {schedule_id}")

            schedule.state = state
            schedule.comment = comment
            if increment_attempt:
                schedule.attempt = (schedule.attempt or 0) + 1

            self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update schedule {schedule_id}: {e}") from e

    # Retention

    def fetch_expired(self, now: datetime) -> List[ExpiredBackup]:
        """Select backups whose expiration has passed."""
        try:
            rows = (
                self.session.query(Backup, Device.name)
                .outerjoin(Device, Backup.device_id == Device.id)
                .filter(Backup.expires_at.isnot(None))
                .filter(Backup.expires_at <= now)
                .order_by(Backup.expires_at, Backup.id)
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch expired backups: {e}") from e

        return [
            ExpiredBackup(
                backup_id=backup.id,
                device_id=backup.device_id,
                file_path=backup.file_path,
                expires_at=backup.expires_at,
                device_name=device_name,
            )
            for backup, device_name in rows
        ]

    def count_file_references(self, file_path: str, exclude_backup_id: int) -> int:
        """Number of other Backup rows pointing at the same file."""
        try:
            return (
                self.session.query(Backup)
                .filter(Backup.file_path == file_path)
                .filter(Backup.id != exclude_backup_id)
                .count()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to check references to {file_path}: {e}") from e

    def delete_versions(self, backup_id: int) -> int:
        """Stage deletion of the version rows of a backup; returns the row count."""
        try:
            return (
                self.session.query(BackupVersion)
                .filter_by(backup_id=backup_id)
                .delete(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete versions of backup {backup_id}: {e}") from e

    def delete_backup(self, backup_id: int) -> int:
        """Stage deletion of a backup row; returns the row count."""
        try:
            return (
                self.session.query(Backup)
                .filter_by(id=backup_id)
                .delete(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete backup {backup_id}: {e}") from e

    # Planning

    def get_device(self, device_id: int) -> Optional[Device]:
        try:
            return self.session.get(Device, device_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load device {device_id}: {e}") from e

    def fetch_retryable_failures(self, max_attempts: int) -> List[int]:
        """
        Ids of failed rows that may be tried again.

        Only the latest row of a device is considered, so an old failure that
        was followed by a newer backup is never resurrected.
        """
        latest = (
            self.session.query(
                Schedule.device_id.label('device_id'),
                func.max(Schedule.due_at).label('last_due_at')
            )
            .group_by(Schedule.device_id)
            .subquery()
        )

        try:
            rows = (
                self.session.query(Schedule.id)
                .join(latest, (latest.c.device_id == Schedule.device_id) &
                      (latest.c.last_due_at == Schedule.due_at))
                .filter(Schedule.state == ScheduleState.FAIL)
                .filter(Schedule.attempt < max_attempts)
                .order_by(Schedule.id)
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch retryable schedules: {e}") from e

        return [row.id for row in rows]

    def requeue_schedule(self, schedule_id: int, due_at: datetime):
        """Stage moving a failed row back to Auto, keeping its attempt counter."""
        try:
            schedule = self.session.get(Schedule, schedule_id)
            if schedule is None:
                raise StoreError(f"Schedule not found: {schedule_id}")

            schedule.state = ScheduleState.AUTO
            schedule.due_at = due_at
            schedule.comment = f"Retry {schedule.attempt + 1} queued"
            self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to requeue schedule {schedule_id}: {e}") from e

    def fetch_plan_candidates(self) -> List[PlanCandidate]:
        """Devices with a backup cadence that have no Auto/Manual row."""
        last_due = (
            self.session.query(
                Schedule.device_id.label('device_id'),
                func.max(Schedule.due_at).label('last_due_at')
            )
            .group_by(Schedule.device_id)
            .subquery()
        )
        pending = db.select(Schedule.device_id).where(Schedule.state.in_(ScheduleState.PENDING))

        try:
            rows = (
                self.session.query(Device.id, Device.name, Device.auto_weeks, last_due.c.last_due_at)
                .outerjoin(last_due, last_due.c.device_id == Device.id)
                .filter(Device.auto_weeks > 0)
                .filter(~Device.id.in_(pending))
                .order_by(Device.id)
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch devices to schedule: {e}") from e

        return [
            PlanCandidate(
                device_id=device_id,
                device_name=name,
                auto_weeks=auto_weeks,
                last_due_at=last_due_at,
            )
            for device_id, name, auto_weeks, last_due_at in rows
        ]

    def insert_schedule(self, device_id: int, state: str, due_at: datetime,
                        comment: Optional[str] = None) -> int:
        """Stage a new schedule row and return its id."""
        schedule = Schedule(
            device_id=device_id,
            state=state,
            due_at=due_at,
            attempt=0,
            comment=comment
        )

        try:
            self.session.add(schedule)
            self.session.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert schedule for device {device_id}: {e}") from e

        return schedule.id

    def fetch_versions(self, device_id: int) -> List[BackupVersion]:
        """Version history of a device, oldest first."""
        try:
            return (
                self.session.query(BackupVersion)
                .filter_by(device_id=device_id)
                .order_by(BackupVersion.created_at, BackupVersion.id)
                .all()
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch versions for device {device_id}: {e}") from e
