"""
Retention sweep for expired backups.

Each expired Backup row is reclaimed in three steps:
1. Delete the backup file (a missing file is logged, not fatal; a file still
   referenced by another Backup row is kept)
2. Delete the BackupVersion rows referencing the backup
3. Delete the Backup row

A failing step leaves the row in place; it is still expired on the next sweep,
which retries it.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional

from flask import current_app

from autobk.models import utcnow
from autobk.store import VersionStore, ExpiredBackup, StoreError
from .storage import BackupStorage, StorageError


logger = logging.getLogger(__name__)


class RetentionSweeper:
    """
    Deletes backups whose expiration time has passed.
    """

    def __init__(self, store: VersionStore, storage: BackupStorage):
        """
        Initialize retention sweeper.

        Args:
            store: Version store client
            storage: Backup root handler
        """
        self.store = store
        self.storage = storage

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Reclaim every expired backup.

        Args:
            now: Reference time (default: now, UTC)

        Returns:
            Dict with summary of cleanup operations:
            {
                'expired': int,
                'files_deleted': int,
                'files_missing': int,
                'files_shared': int,
                'backups_deleted': int,
                'errors': List[str]
            }

        Raises:
            StoreError: If the expired backups cannot be listed
        """
        if now is None:
            now = utcnow()

        summary = {
            'expired': 0,
            'files_deleted': 0,
            'files_missing': 0,
            'files_shared': 0,
            'backups_deleted': 0,
            'errors': []
        }

        expired_backups = self.store.fetch_expired(now)
        summary['expired'] = len(expired_backups)

        for expired in expired_backups:
            self._reclaim(expired, summary)

        return summary

    def _reclaim(self, expired: ExpiredBackup, summary: Dict[str, Any]):
        device = expired.device_name or f"device {expired.device_id}"
        path = self.storage.resolve(expired.device_id, expired.file_path)

        # Step 1: backup file, unless another backup row still uses it
        try:
            shared = self.store.count_file_references(expired.file_path, expired.backup_id)
        except StoreError as e:
            self._rollback()
            self._error(summary, f"Failed to check backup file of {device}: {e}")
            return

        if shared:
            logger.warning(f"Backup file of {device} is still used by {shared} other backup(s), keeping {path}")
            summary['files_shared'] += 1
        elif self.storage.exists(path):
            try:
                self.storage.delete(path)
                summary['files_deleted'] += 1
            except StorageError as e:
                self._error(summary, f"Failed to delete backup file of {device}: {e}")
                return
        else:
            logger.warning(f"Backup file of {device} already missing: {path}")
            summary['files_missing'] += 1

        # Step 2: version rows
        try:
            self.store.delete_versions(expired.backup_id)
            self.store.commit()
        except StoreError as e:
            self._rollback()
            self._error(summary, f"Failed to delete versions of backup {expired.backup_id} ({device}): {e}")
            return

        # Step 3: backup row
        try:
            self.store.delete_backup(expired.backup_id)
            self.store.commit()
        except StoreError as e:
            self._rollback()
            self._error(summary, f"Failed to delete backup {expired.backup_id} ({device}): {e}")
            return

        summary['backups_deleted'] += 1
        logger.info(f"Deleted expired backup {expired.backup_id} of {device}")

    def _rollback(self):
        try:
            self.store.rollback()
        except StoreError as e:
            logger.error(f"Rollback failed: {e}")

    def _error(self, summary: Dict[str, Any], message: str):
        logger.error(message)
        summary['errors'].append(message)


def run_maintenance(stop_event=None) -> Dict[str, Any]:
    """
    Run one retention sweep.

    This function is called by the scheduler on the maintenance interval.
    The sweep is short and is not interrupted by stop_event.

    Returns:
        Summary dict from RetentionSweeper.sweep()
    """
    logger.info("Running maintenance tasks")

    store = VersionStore()
    sweeper = RetentionSweeper(store, BackupStorage(current_app.config['BACKUP_DIR']))

    try:
        store.check_connection()
        summary = sweeper.sweep()
    except StoreError as e:
        logger.error(f"Maintenance aborted: {e}")
        return {
            'expired': 0,
            'files_deleted': 0,
            'files_missing': 0,
            'files_shared': 0,
            'backups_deleted': 0,
            'errors': [str(e)]
        }

    logger.info(
        f"Maintenance tasks completed. "
        f"Expired: {summary['expired']}, "
        f"Files deleted: {summary['files_deleted']}, "
        f"Files missing: {summary['files_missing']}, "
        f"Files shared: {summary['files_shared']}, "
        f"Backups deleted: {summary['backups_deleted']}, "
        f"Errors: {len(summary['errors'])}"
    )

    return summary
