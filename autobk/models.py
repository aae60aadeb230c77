from datetime import datetime, timezone
from autobk import db


def utcnow():
    """Naive UTC timestamp, matching the DATETIME columns of the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_version(version_number):
    """Render a version number, e.g. 3.0 -> '3', 1000000.0 -> '1000000', 2.5 -> '2.5'."""
    version_number = float(version_number)
    if version_number.is_integer():
        return str(int(version_number))
    return str(version_number)


class ScheduleState:
    """Values of Schedule.sState"""
    AUTO = 'Auto'
    MANUAL = 'Manual'
    COMPLETE = 'Complete'
    FAIL = 'Fail'

    PENDING = (AUTO, MANUAL)
    TERMINAL = (COMPLETE, FAIL)


class Device(db.Model):
    """Registered device (maintained by the operator, read-only here)"""
    __tablename__ = 'Device'

    id = db.Column('kSelf', db.Integer, primary_key=True)
    name = db.Column('sName', db.String(255), nullable=False)
    address = db.Column('sIP', db.String(255), nullable=False)
    device_type = db.Column('sType', db.String(64), nullable=False)
    auto_weeks = db.Column('iAutoWeeks', db.Integer, default=0, nullable=False)  # 0 = no automatic backups

    # Relationships
    schedules = db.relationship('Schedule', back_populates='device', lazy='dynamic')
    backups = db.relationship('Backup', back_populates='device', lazy='dynamic')

    def __repr__(self):
        return f'<Device {self.name} type={self.device_type}>'


class Schedule(db.Model):
    """One pending-or-resolved backup job for a device"""
    __tablename__ = 'Schedule'

    id = db.Column('kSelf', db.Integer, primary_key=True)
    device_id = db.Column('kDevice', db.Integer, db.ForeignKey('Device.kSelf'), nullable=False)
    state = db.Column('sState', db.String(16), nullable=False, default=ScheduleState.AUTO)  # Auto, Manual, Complete, Fail
    due_at = db.Column('tTime', db.DateTime, nullable=False, default=utcnow)
    attempt = db.Column('iAttempt', db.Integer, nullable=False, default=0)
    comment = db.Column('sComment', db.Text)

    # Relationship
    device = db.relationship('Device', back_populates='schedules')

    def __repr__(self):
        return f'<Schedule device_id={self.device_id} state={self.state}>'


class Backup(db.Model):
    """Stored backup file of a device"""
    __tablename__ = 'Backup'

    id = db.Column('kSelf', db.Integer, primary_key=True)
    device_id = db.Column('kDevice', db.Integer, db.ForeignKey('Device.kSelf'), nullable=False)
    completed_at = db.Column('tComplete', db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column('tExpires', db.DateTime)  # NULL = keep forever
    file_path = db.Column('sFile', db.String(1024), nullable=False)
    backup_hash = db.Column('backupHash', db.String(64), nullable=False)  # SHA-256 hex digest

    # Relationships
    device = db.relationship('Device', back_populates='backups')
    versions = db.relationship('BackupVersion', back_populates='backup', lazy='dynamic')

    def __repr__(self):
        return f'<Backup device_id={self.device_id} file={self.file_path}>'


class BackupVersion(db.Model):
    """Version entry created alongside every new Backup row"""
    __tablename__ = 'BackupVersion'

    id = db.Column('kSelf', db.Integer, primary_key=True)
    backup_id = db.Column('kBackup', db.Integer, db.ForeignKey('Backup.kSelf'), nullable=False)
    device_id = db.Column('kDevice', db.Integer, db.ForeignKey('Device.kSelf'), nullable=False)
    version_number = db.Column('versionNumber', db.Float, nullable=False)
    created_at = db.Column('createdAt', db.DateTime, nullable=False, default=utcnow)

    # Relationship
    backup = db.relationship('Backup', back_populates='versions')

    def __repr__(self):
        return f'<BackupVersion device_id={self.device_id} version={format_version(self.version_number)}>'
