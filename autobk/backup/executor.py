"""
Backup executor - processes due schedule rows.

Workflow for one row:
1. Look up the file extension of the device type
2. Create the device directory
3. Resolve the device capability (or fall back to the external script)
4. Produce the backup file
5. Fingerprint the file
6. Compare with the latest stored backup of the device
7. Record a new version, or discard the duplicate
8. Close the schedule row (Complete/Fail)
"""

import logging
from datetime import timedelta
from typing import Optional, Dict, Any

from flask import current_app

from autobk.models import ScheduleState, format_version, utcnow
from autobk.store import VersionStore, DueSchedule, StoreError
from .devices import resolve_capability, CapabilityError
from .scripts import ScriptCapability
from .storage import BackupStorage, StorageError


logger = logging.getLogger(__name__)

# Outcomes of BackupExecutor.process()
OUTCOME_NEW_VERSION = 'new_version'
OUTCOME_UNCHANGED = 'unchanged'
OUTCOME_FAILED = 'failed'
OUTCOME_CONFIG_ERROR = 'config_error'
OUTCOME_REPAIR_REQUIRED = 'repair_required'

OUTCOMES = (
    OUTCOME_NEW_VERSION,
    OUTCOME_UNCHANGED,
    OUTCOME_FAILED,
    OUTCOME_CONFIG_ERROR,
    OUTCOME_REPAIR_REQUIRED,
)

NO_CHANGES_COMMENT = 'No changes detected'


class BackupExecutor:
    """
    Processes due schedule rows, one at a time.
    """

    def __init__(self, store: VersionStore, storage: BackupStorage, extensions: Dict[str, str],
                 scripts_dir: str, interpreter: str, script_timeout: Optional[int] = None,
                 registry=None, retention_days: Optional[int] = None):
        """
        Initialize backup executor.

        Args:
            store: Version store client
            storage: Backup root handler
            extensions: Lower-cased device type -> file extension
            scripts_dir: Directory of the external backup scripts
            interpreter: Interpreter used for external scripts
            script_timeout: Seconds before an external script is killed (None = no limit)
            registry: Device type -> capability class (default: DEVICE_TYPES)
            retention_days: Lifetime of new backups (None or 0 = keep forever)
        """
        self.store = store
        self.storage = storage
        self.extensions = extensions
        self.scripts_dir = scripts_dir
        self.interpreter = interpreter
        self.script_timeout = script_timeout
        self.registry = registry
        self.retention_days = retention_days

    @classmethod
    def from_config(cls, store: VersionStore, config) -> 'BackupExecutor':
        """Build an executor from the application config."""
        return cls(
            store=store,
            storage=BackupStorage(config['BACKUP_DIR']),
            extensions=config['FILE_EXTENSIONS'],
            scripts_dir=config['SCRIPTS_DIR'],
            interpreter=config['SCRIPT_INTERPRETER'],
            script_timeout=config.get('SCRIPT_TIMEOUT'),
            retention_days=config.get('BACKUP_RETENTION_DAYS'),
        )

    def process(self, due: DueSchedule) -> str:
        """
        Process one due schedule row to completion.

        There is no cancellation inside a row: once started, the row always
        ends in a terminal state (or is skipped for a configuration error).
        Shutdown requests are honoured between rows by run_autobackups().

        Args:
            due: Schedule row to process

        Returns:
            One of the OUTCOME_* values
        """
        logger.info(
            f"Processing schedule {due.schedule_id} ({due.state}) for device "
            f"{due.device_name} [{due.device_type}] at {due.device_address}"
        )

        try:
            return self._process(due)
        except Exception as e:
            logger.exception(f"Unexpected error on schedule {due.schedule_id}")
            try:
                self.store.rollback()
            except StoreError as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            return self._fail(due, f"Unexpected error: {e}")

    def _process(self, due: DueSchedule) -> str:
        extension = self.extensions.get(due.device_type.lower())
        if not extension:
            logger.error(
                f"Configuration error: no file extension for device type {due.device_type} "
                f"(schedule {due.schedule_id} left in state {due.state})"
            )
            return OUTCOME_CONFIG_ERROR

        try:
            destination = self.storage.device_directory(due.device_id)
        except StorageError as e:
            logger.error(f"Backup directory unavailable for {due.device_name}: {e}")
            return self._fail(due, f"Backup directory unavailable: {e}")

        capability = self._capability_for(due.device_type)

        try:
            backup_path = capability.backup(due.device_name, due.device_address, destination, extension)
        except CapabilityError as e:
            logger.error(f"Backup failed for device {due.device_name}: {e}")
            return self._fail(due, f"Backup failed: {e}")

        try:
            file_hash = self.storage.hash_file(backup_path)
        except StorageError as e:
            logger.error(f"Unable to fingerprint backup of {due.device_name}: {e}")
            self._discard(backup_path)
            return self._fail(due, f"Unable to fingerprint backup: {e}")

        return self._record(due, backup_path, file_hash)

    def _capability_for(self, device_type: str):
        capability = resolve_capability(device_type, self.registry)
        if capability is not None:
            return capability

        logger.warning(f"Unknown device type {device_type}, falling back to external script")
        return ScriptCapability(device_type, self.scripts_dir, self.interpreter, self.script_timeout)

    def _record(self, due: DueSchedule, backup_path: str, file_hash: str) -> str:
        """
        Decide between duplicate and new version, and commit the decision.

        All writes for the row are committed together.
        """
        latest = None

        try:
            latest = self.store.fetch_latest_backup(due.device_id)
            latest_version = self.store.fetch_latest_version(due.device_id)

            if latest is not None and file_hash == latest.backup_hash:
                logger.info(f"No changes for {due.device_name} (hash {file_hash[:12]}), discarding {backup_path}")
                # A capability may hand back the stored filename; never delete the stored copy
                if backup_path != latest.file_path:
                    self._discard(backup_path)
                self.store.update_schedule(due.schedule_id, ScheduleState.COMPLETE, NO_CHANGES_COMMENT)
                self.store.commit()
                return OUTCOME_UNCHANGED

            now = utcnow()
            expires_at = now + timedelta(days=self.retention_days) if self.retention_days else None
            version = latest_version + 1

            backup_id = self.store.insert_backup(due.device_id, backup_path, file_hash, now, expires_at)
            self.store.insert_version(backup_id, due.device_id, version, now)
            self.store.update_schedule(
                due.schedule_id, ScheduleState.COMPLETE, f"new version: {format_version(version)}"
            )
            self.store.commit()

        except StoreError as e:
            logger.critical(
                f"Maintenance fix required: failed to record backup of {due.device_name} "
                f"(schedule {due.schedule_id}): {e}"
            )
            try:
                self.store.rollback()
            except StoreError as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")

            # Nothing committed references the new file
            if latest is None or backup_path != latest.file_path:
                self._discard(backup_path)
            self._fail(due, f"Maintenance fix required: {e}")
            return OUTCOME_REPAIR_REQUIRED

        logger.info(f"Stored version {format_version(version)} of {due.device_name}: {backup_path}")
        return OUTCOME_NEW_VERSION

    def _fail(self, due: DueSchedule, comment: str) -> str:
        """Mark the row Fail and count the attempt."""
        try:
            self.store.update_schedule(due.schedule_id, ScheduleState.FAIL, comment, increment_attempt=True)
            self.store.commit()
        except StoreError as e:
            logger.critical(
                f"Maintenance fix required: schedule {due.schedule_id} could not be marked "
                f"{ScheduleState.FAIL}: {e}"
            )
            try:
                self.store.rollback()
            except StoreError as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            return OUTCOME_REPAIR_REQUIRED

        return OUTCOME_FAILED

    def _discard(self, path: str):
        """Remove a produced file that will not be kept."""
        if not self.storage.exists(path):
            return

        try:
            self.storage.delete(path)
        except StorageError as e:
            logger.error(f"Failed to discard {path}: {e}")


def run_autobackups(stop_event=None) -> Dict[str, Any]:
    """
    Run one autobackup cycle over all due schedule rows.

    Rows are processed sequentially. When stop_event is set the cycle stops
    after the row in progress; the remaining rows stay due for the next run.

    Args:
        stop_event: Optional threading.Event signalling shutdown

    Returns:
        Dict with the number of due rows, a count per outcome and the errors
    """
    logger.info("Running autobackups")

    summary = {'due': 0, 'errors': []}
    summary.update({outcome: 0 for outcome in OUTCOMES})

    store = VersionStore()

    try:
        store.check_connection()
        due_rows = store.fetch_due_schedules(utcnow())
    except StoreError as e:
        logger.error(f"Autobackups aborted: {e}")
        summary['errors'].append(str(e))
        return summary

    summary['due'] = len(due_rows)
    executor = BackupExecutor.from_config(store, current_app.config)

    for due in due_rows:
        if stop_event is not None and stop_event.is_set():
            logger.info("Stop requested, remaining schedules are left for the next cycle")
            break

        outcome = executor.process(due)
        summary[outcome] += 1

        if outcome == OUTCOME_REPAIR_REQUIRED:
            summary['errors'].append(f"Schedule {due.schedule_id} requires a maintenance fix")

    logger.info(
        f"Autobackups completed. "
        f"Due: {summary['due']}, "
        f"New versions: {summary[OUTCOME_NEW_VERSION]}, "
        f"Unchanged: {summary[OUTCOME_UNCHANGED]}, "
        f"Failed: {summary[OUTCOME_FAILED]}, "
        f"Config errors: {summary[OUTCOME_CONFIG_ERROR]}, "
        f"Repairs required: {summary[OUTCOME_REPAIR_REQUIRED]}"
    )

    return summary
