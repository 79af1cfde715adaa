"""
APScheduler configuration and job scheduling for periodicbackup.

Manages:
- The periodic backup job (based on the BACKUP_CRON expression)
- Manual "backup now" triggers
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from periodicbackup.backup.executor import execute_backup
from periodicbackup.settings import settings_for_app


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'periodic_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_backup_schedule():
    """
    Install, update or remove the periodic backup job from BACKUP_CRON.

    Returns:
        True if a periodic backup is scheduled afterwards
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    try:
        cron = settings_for_app(flask_app).cron
    except ValueError as e:
        logger.error(f"Invalid backup settings, periodic backup not scheduled: {e}")
        return False

    if not cron:
        try:
            scheduler.remove_job(BACKUP_JOB_ID)
            logger.info("Removed periodic backup job")
        except JobLookupError:
            pass
        return False

    try:
        trigger = CronTrigger.from_crontab(cron, timezone=flask_app.config.get('SCHEDULER_TIMEZONE') or 'UTC')
    except (ValueError, KeyError) as e:
        logger.error(f"Invalid backup schedule '{cron}': {e}")
        return False

    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Periodic backup',
        replace_existing=True
    )
    logger.info(f"Scheduled periodic backup ({cron})")
    return True


def _execute_backup_wrapper():
    """
    Wrapper function for executing a backup in scheduler context.

    Settings are read when the job fires, so configuration changes apply
    to the next run.
    """
    with flask_app.app_context():
        try:
            logger.info("Scheduler executing backup")
            run = execute_backup(settings_for_app(flask_app))
            logger.info(f"Backup completed with status: {run.status}")
        except Exception:
            logger.exception("Scheduled backup failed")


def trigger_backup_now() -> str:
    """
    Trigger a backup immediately.

    Returns:
        ID of the one-off job
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp() * 1000)}"

    # 1 second delay to avoid racing the request that triggered it
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name='Manual backup',
        replace_existing=False
    )

    logger.info("Manually triggered backup")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
