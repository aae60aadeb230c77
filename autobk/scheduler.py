"""
APScheduler configuration for the autobk daemon.

Runs the three periodic tasks on their own intervals:
- maintenance: retention sweep of expired backups
- scheduling: requeue failures and plan cadence-based schedule rows
- autobackups: process due schedule rows

A single worker thread runs the tasks, so at most one task touches the store
at any time. Shutdown is requested through a threading.Event; the autobackup
cycle checks it between rows.
"""

import signal
import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from autobk.backup.executor import run_autobackups
from autobk.backup.retention import run_maintenance
from autobk.planner import run_scheduling


logger = logging.getLogger(__name__)

# Global scheduler instance, Flask app reference and stop signal
scheduler = None
flask_app = None
stop_event = None

# Task id -> (function, config key of its interval in seconds)
TASKS = {
    'maintenance': (run_maintenance, 'MAINTENANCE_INTERVAL'),
    'scheduling': (run_scheduling, 'SCHEDULING_INTERVAL'),
    'autobackups': (run_autobackups, 'AUTOBACKUPS_INTERVAL'),
}


def init_scheduler(app, event=None):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
        event: threading.Event used to request shutdown (created if omitted)
    """
    global scheduler, flask_app, stop_event

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app
    stop_event = event if event is not None else threading.Event()

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Only one instance of a task at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    for task_id, (_, interval_key) in TASKS.items():
        interval = app.config[interval_key]
        scheduler.add_job(
            func=_run_task,
            args=[task_id],
            trigger=IntervalTrigger(seconds=interval),
            id=task_id,
            name=f"Task: {task_id}",
            replace_existing=True
        )
        logger.info(f"Scheduled {task_id} every {interval}s")

    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler(wait=True):
    """
    Stop the APScheduler.

    Args:
        wait: Wait for the task in progress to finish
    """
    global scheduler

    if stop_event is not None:
        stop_event.set()

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("APScheduler stopped")


def reset_scheduler():
    """Forget the global scheduler state."""
    global scheduler, flask_app, stop_event

    scheduler = None
    flask_app = None
    stop_event = None


def _run_task(task_id: str):
    """
    Run a periodic task in the Flask app context.

    Exceptions never escape: a failing task is logged and runs again on its
    next interval.
    """
    func, _ = TASKS[task_id]

    with flask_app.app_context():
        try:
            result = func(stop_event=stop_event)
            logger.debug(f"Task {task_id} finished: {result}")
        except Exception:
            logger.exception(f"Task {task_id} failed")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled tasks.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running


def run_daemon(app, event=None, poll_interval=1.0):
    """
    Run the daemon until SIGINT/SIGTERM (or until event is set).

    Must be called from the main thread, which owns the signal handlers.

    Args:
        app: Flask app instance
        event: threading.Event used to request shutdown (created if omitted)
        poll_interval: Seconds between checks of the stop signal
    """
    init_scheduler(app, event)
    done = stop_event

    def _handle_signal(signum, frame):
        logger.info(f"Service is stopping due to signal {signum}")
        done.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    start_scheduler()
    logger.info("Service is running")

    try:
        while not done.wait(poll_interval):
            pass
    finally:
        stop_scheduler(wait=True)
        reset_scheduler()
        logger.info("Service is stopped")
