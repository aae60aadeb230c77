"""
Shared pytest fixtures for autobk tests.

This module provides fixtures for:
- Flask app with in-memory SQLite and per-test directories
- Database setup
- Device and schedule fixtures
- A scripted capability whose payloads are controlled by the test
- External backup scripts
"""

import os
import sys
import textwrap
from datetime import timedelta
from unittest.mock import patch

import pytest

from autobk import create_app, db as _db
from autobk.models import Device, Schedule, ScheduleState, utcnow
from autobk.store import VersionStore
from autobk.backup.devices import DeviceCapability, backup_path
from autobk.backup.executor import BackupExecutor
from autobk.backup.storage import BackupStorage


@pytest.fixture(scope='function')
def app(tmp_path_factory):
    """
    Create app with test configuration.

    Uses in-memory SQLite database and directories under a dedicated temp
    directory, so a test's own tmp_path stays empty.
    """
    app_dir = tmp_path_factory.mktemp('app')
    scripts_dir = app_dir / 'scripts'
    scripts_dir.mkdir()

    app = create_app('testing', {
        'BACKUP_DIR': str(app_dir / 'backups'),
        'SCRIPTS_DIR': str(scripts_dir),
        'LOG_DIR': str(app_dir / 'logs'),
        'SCRIPT_INTERPRETER': sys.executable,
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def device(db):
    """
    Device D1 (id=7, type FakeDevice).
    """
    device = Device(
        id=7,
        name='D1',
        address='10.0.0.7',
        device_type='FakeDevice',
        auto_weeks=1
    )
    db.session.add(device)
    db.session.commit()
    return device


def add_schedule(db, device_id, state=ScheduleState.AUTO, due_at=None, attempt=0, comment=None):
    """Insert a schedule row and return its id."""
    schedule = Schedule(
        device_id=device_id,
        state=state,
        due_at=due_at or utcnow() - timedelta(minutes=1),
        attempt=attempt,
        comment=comment
    )
    db.session.add(schedule)
    db.session.commit()
    return schedule.id


@pytest.fixture(scope='function')
def make_schedule(db):
    """Factory inserting schedule rows: make_schedule(device_id, state=..., due_at=..., attempt=...)."""
    def _make(device_id, **kwargs):
        return add_schedule(db, device_id, **kwargs)

    return _make


@pytest.fixture(scope='function')
def due_schedule(db, device):
    """Auto schedule row of D1 that is due."""
    return add_schedule(db, device.id)


@pytest.fixture(scope='function')
def store(db):
    return VersionStore()


@pytest.fixture(scope='function')
def storage(app):
    return BackupStorage(app.config['BACKUP_DIR'])


class ScriptedDevice(DeviceCapability):
    """
    Capability that writes queued payloads.

    Each backup() call consumes one entry of `payloads`: bytes are written to
    the backup file, an exception is raised instead.
    """

    def __init__(self):
        self.payloads = []
        self.calls = []

    def backup(self, device_name, device_address, destination_directory, file_extension):
        self.calls.append((device_name, device_address, destination_directory, file_extension))

        payload = self.payloads.pop(0)
        if isinstance(payload, Exception):
            raise payload

        path = backup_path(destination_directory, device_name, file_extension)
        with open(path, 'wb') as f:
            f.write(payload)
        return path


@pytest.fixture(scope='function')
def scripted_device():
    return ScriptedDevice()


@pytest.fixture(scope='function')
def executor(app, store, storage, scripted_device):
    """
    BackupExecutor with FakeDevice mapped to the scripted capability.
    """
    return BackupExecutor(
        store=store,
        storage=storage,
        extensions={'fakedevice': 'bak'},
        scripts_dir=app.config['SCRIPTS_DIR'],
        interpreter=sys.executable,
        registry={'FakeDevice': lambda: scripted_device},
        retention_days=30
    )


@pytest.fixture(scope='function')
def scripted_registry(scripted_device):
    """Patch the global registry so run_autobackups() uses the scripted capability."""
    with patch.dict('autobk.backup.devices.DEVICE_TYPES', {'FakeDevice': lambda: scripted_device}):
        yield scripted_device


@pytest.fixture(scope='function')
def write_script(app):
    """
    Write an external backup script into SCRIPTS_DIR.

    Usage: write_script('Router', body) where body is Python source; the
    script receives DEVICE_ADDRESS and DESTINATION_FILE in sys.argv.
    """
    def _write(device_type, body):
        path = os.path.join(app.config['SCRIPTS_DIR'], f'op_autobk_backup_{device_type}.py')
        with open(path, 'w') as f:
            f.write(textwrap.dedent(body))
        return path

    return _write
