"""
================================================================================
SCHEDULER - Background Refresh of Due Collections
================================================================================

Background job that periodically refreshes every collection whose refresh
interval has elapsed.

Schedule:
    interval:
        Runs RefreshScheduler.refresh_due() every check_interval_minutes
        (config.json -> refresh.check_interval_minutes, default 5)

    immediate:
        trigger_now() queues a one-off run, used right after a collection
        is created so its first items show up without waiting

Integration:
    - Started by the web server and by `cli.py web`
    - Background scheduler (APScheduler library)
    - Per-collection intervals are honored by the due test, the job period
      only bounds how late a due collection can be picked up

Safety:
    - Only one due-check runs at a time (max_instances=1, coalesce)
    - Errors don't crash the scheduler (exception handling)
    - Single-flight per collection is enforced by RefreshScheduler
================================================================================
"""
import logging
from typing import Dict, List

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from feedtree.core.refresh import RefreshScheduler
from feedtree.core.models import utcnow

logger = logging.getLogger("feedtree")

DUE_JOB_ID = 'refresh_due'
IMMEDIATE_JOB_ID = 'refresh_due_now'


class RefreshJobManager:
    """Manages the periodic due-collection refresh job"""

    def __init__(self, refresh: RefreshScheduler, interval_minutes: int):
        self.refresh = refresh
        self.interval_minutes = interval_minutes
        self.scheduler = BackgroundScheduler(timezone='UTC')

    def start(self):
        """Register the periodic job and start the background thread"""
        self.scheduler.add_job(
            func=self.run_due_refresh,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=DUE_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Refresh scheduler started (every {self.interval_minutes} min)")

    def run_due_refresh(self):
        """Refresh everything due (called by scheduler)"""
        try:
            result = self.refresh.refresh_due()
            if result.ok:
                logger.info(f"Scheduled refresh completed ({len(result.refreshed_ids)} collection(s))")
            else:
                logger.warning(f"Scheduled refresh had failures: {sorted(result.failed_ids)}")
        except Exception as e:
            logger.error(f"Error running scheduled refresh: {e}")

    def trigger_now(self, *_args):
        """Queue an immediate one-off due refresh"""
        if not self.scheduler.running:
            return
        self.scheduler.add_job(
            func=self.run_due_refresh,
            trigger='date',
            run_date=utcnow(),
            id=IMMEDIATE_JOB_ID,
            replace_existing=True,
        )

    def get_active_schedules(self) -> List[Dict]:
        """Get list of active schedules"""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'trigger': str(job.trigger)
            })
        return jobs

    def shutdown(self):
        """Shutdown the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Refresh scheduler shut down")
