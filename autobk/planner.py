"""
Schedule planning - the "scheduling" tick of the daemon.

Keeps the Schedule table fed so the autobackup cycle always has work:
- Failed rows with attempts left are queued again after a retry delay
- Devices with a cadence (iAutoWeeks > 0) and no pending row get their next
  Auto row, due one cadence after their latest row
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, Optional

from flask import current_app

from autobk.models import ScheduleState, utcnow
from autobk.store import VersionStore, StoreError


logger = logging.getLogger(__name__)

PLANNED_COMMENT = 'Scheduled automatically'
MANUAL_COMMENT = 'Requested by operator'


class SchedulePlanner:
    """
    Requeues failures and plans cadence-based schedule rows.
    """

    def __init__(self, store: VersionStore, max_attempts: int, retry_delay: timedelta):
        """
        Initialize planner.

        Args:
            store: Version store client
            max_attempts: Failed rows with fewer attempts are retried
            retry_delay: Delay before a failed row is due again
        """
        self.store = store
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run one planning pass and commit it.

        Returns:
            Dict with counts: {'requeued': int, 'planned': int}

        Raises:
            StoreError: If the pass cannot be committed
        """
        if now is None:
            now = utcnow()

        result = {'requeued': 0, 'planned': 0}

        try:
            for schedule_id in self.store.fetch_retryable_failures(self.max_attempts):
                self.store.requeue_schedule(schedule_id, now + self.retry_delay)
                result['requeued'] += 1

            for candidate in self.store.fetch_plan_candidates():
                if candidate.last_due_at is None:
                    due_at = now
                else:
                    due_at = candidate.last_due_at + timedelta(weeks=candidate.auto_weeks)

                self.store.insert_schedule(candidate.device_id, ScheduleState.AUTO, due_at, PLANNED_COMMENT)
                result['planned'] += 1
                logger.debug(f"Planned backup of {candidate.device_name} at {due_at.isoformat()}")

            self.store.commit()
        except StoreError:
            self.store.rollback()
            raise

        return result

    def queue_manual_backup(self, device_id: int, now: Optional[datetime] = None) -> int:
        """
        Queue an immediate backup of a device.

        Args:
            device_id: Device to back up

        Returns:
            Id of the new Manual schedule row

        Raises:
            ValueError: If the device does not exist
        """
        if now is None:
            now = utcnow()

        device = self.store.get_device(device_id)
        if device is None:
            raise ValueError(f"Device not found: {device_id}")

        schedule_id = self.store.insert_schedule(device.id, ScheduleState.MANUAL, now, MANUAL_COMMENT)
        self.store.commit()

        logger.info(f"Queued manual backup of {device.name} (schedule {schedule_id})")
        return schedule_id


def create_planner(store: Optional[VersionStore] = None) -> SchedulePlanner:
    """Build a planner from the application config."""
    config = current_app.config
    return SchedulePlanner(
        store or VersionStore(),
        max_attempts=config['BACKUP_MAX_ATTEMPTS'],
        retry_delay=timedelta(minutes=config['BACKUP_RETRY_MINUTES'])
    )


def run_scheduling(stop_event=None) -> Dict[str, Any]:
    """
    Run one planning pass.

    Returns:
        Dict with 'requeued', 'planned' and 'errors'
    """
    logger.info("Running scheduling tasks")

    store = VersionStore()
    planner = create_planner(store)

    try:
        store.check_connection()
        result = planner.run()
    except StoreError as e:
        logger.error(f"Scheduling aborted: {e}")
        return {'requeued': 0, 'planned': 0, 'errors': [str(e)]}

    logger.info(f"Scheduling completed. Requeued: {result['requeued']}, Planned: {result['planned']}")
    result['errors'] = []
    return result
