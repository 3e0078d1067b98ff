"""
APScheduler configuration and job scheduling for pgkeeper.

Manages:
- The recurring backup job (based on a crontab expression)
- Scheduler lifecycle (start/stop)
"""

import logging

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'database_backup'

# Global scheduler instance and the orchestrator it drives
scheduler = None
orchestrator = None


def init_scheduler(backup_orchestrator, config):
    """
    Initialize and configure APScheduler.

    Args:
        backup_orchestrator: BackupOrchestrator run by the scheduled job
        config: Config instance (BACKUP_CRON_SCHEDULE, SCHEDULER_TIMEZONE)

    Returns:
        The scheduler instance
    """
    global scheduler, orchestrator

    if scheduler is not None:
        return scheduler

    orchestrator = backup_orchestrator

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Never overlap two backups in this process
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=config.SCHEDULER_TIMEZONE
    )

    trigger = CronTrigger.from_crontab(config.BACKUP_CRON_SCHEDULE, timezone=config.SCHEDULER_TIMEZONE)

    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Database Backup',
        replace_existing=True
    )

    logger.info(f"Scheduled database backup ({config.BACKUP_CRON_SCHEDULE})")
    return scheduler


def start_scheduler():
    """
    Start the APScheduler. Blocks until the scheduler is shut down.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    for job in scheduler.get_jobs():
        logger.info(f"  - {job.id}: {job.name} ({job.trigger})")

    logger.info("APScheduler starting")
    scheduler.start()


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler stopped")


def reset_scheduler():
    """Drop the global scheduler and orchestrator references."""
    global scheduler, orchestrator

    scheduler = None
    orchestrator = None


def _execute_backup_wrapper():
    """
    Wrapper function for executing the backup in scheduler context.

    The orchestrator does not raise, but nothing may escape into the
    scheduler's worker thread either.

    Returns:
        RunResult, or None if the run could not be started
    """
    global orchestrator

    if orchestrator is None:
        logger.error("Scheduled backup skipped: no orchestrator configured")
        return None

    try:
        logger.info("Scheduler executing database backup")
        result = orchestrator.run()
        logger.info(f"Scheduled backup completed with status: {result.status}")
        return result
    except Exception as e:
        logger.exception(f"Scheduled backup failed: {e}")
        return None


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run_time = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run_time.isoformat() if next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs
