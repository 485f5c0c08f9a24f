"""
Background Job Scheduler.

WHAT: Configures APScheduler to run the subscription jobs on their
cron schedules.

WHY: The jobs must run without user requests:
1. Hourly provider status sync
2. Daily renewal reminders (08:00), expiry processing (09:00) and
   payment failure reminders (10:00)
3. Weekly statistics (Monday 07:00)

HOW: AsyncIOScheduler with an in-memory job store and the asyncio
executor. Each job is registered with a CronTrigger in UTC, coalesces
missed runs and never overlaps itself.

Example:
    scheduler = SubscriptionScheduler(jobs)
    scheduler.start()
    ...
    scheduler.shutdown()
"""

import logging
from typing import Any, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from subscription_engine.core.exceptions import ResourceNotFoundError
from subscription_engine.services.subscription_jobs import JobResult, SubscriptionJobs

logger = logging.getLogger(__name__)


# Job name -> (display name, cron fields)
JOB_SCHEDULES: Dict[str, Dict[str, Any]] = {
    "sync_subscription_statuses": {
        "name": "Subscription Status Sync",
        "cron": {"minute": 0},
    },
    "check_renewal_reminders": {
        "name": "Renewal Reminders",
        "cron": {"hour": 8, "minute": 0},
    },
    "process_expired_subscriptions": {
        "name": "Expired Subscriptions",
        "cron": {"hour": 9, "minute": 0},
    },
    "send_payment_failure_reminders": {
        "name": "Payment Failure Reminders",
        "cron": {"hour": 10, "minute": 0},
    },
    "update_subscription_statistics": {
        "name": "Subscription Statistics",
        "cron": {"day_of_week": "mon", "hour": 7, "minute": 0},
    },
}


class SubscriptionScheduler:
    """
    Owns the APScheduler instance for the subscription jobs.

    Attributes:
        jobs: The job implementations
        last_results: Most recent JobResult per job name
    """

    def __init__(self, jobs: SubscriptionJobs, misfire_grace_time: int = 300):
        self.jobs = jobs
        self.misfire_grace_time = misfire_grace_time
        self.last_results: Dict[str, JobResult] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """
        Create the scheduler, register every job and start it.

        NOTE: Must be called from within a running event loop (the app
        lifespan), AsyncIOScheduler binds to it.
        """
        if self.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Combine multiple missed runs into one
                "max_instances": 1,  # Only one instance of each job at a time
                "misfire_grace_time": self.misfire_grace_time,
            },
            timezone="UTC",
        )

        for job_name, schedule in JOB_SCHEDULES.items():
            self._scheduler.add_job(
                func=self._run_scheduled,
                args=[job_name],
                trigger=CronTrigger(timezone="UTC", **schedule["cron"]),
                id=job_name,
                name=schedule["name"],
                replace_existing=True,
            )
            logger.info(f"Registered {job_name} job ({schedule['cron']})")

        self._scheduler.start()
        logger.info(f"Scheduler started with {len(JOB_SCHEDULES)} subscription jobs")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler, waiting for running jobs by default."""
        if not self.running:
            logger.info("Scheduler not running")
            self._scheduler = None
            return
        logger.info("Shutting down scheduler...")
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Scheduler shut down successfully")

    async def run_job_now(self, job_name: str) -> JobResult:
        """
        Run a job immediately, outside its schedule.

        Raises:
            ResourceNotFoundError: If job_name is not a subscription job
        """
        job = self.jobs.jobs.get(job_name)
        if job is None:
            raise ResourceNotFoundError(
                message=f"Unknown job: {job_name}",
                job_name=job_name,
            )
        result = await job()
        self.last_results[job_name] = result
        return result

    def status(self) -> Dict[str, Any]:
        """Scheduler state, next run times and last results."""
        jobs = []
        for job_name, schedule in JOB_SCHEDULES.items():
            scheduled = self._scheduler.get_job(job_name) if self._scheduler else None
            last = self.last_results.get(job_name)
            jobs.append(
                {
                    "id": job_name,
                    "name": schedule["name"],
                    "next_run_time": (
                        str(scheduled.next_run_time)
                        if scheduled is not None and scheduled.next_run_time
                        else None
                    ),
                    "trigger": str(scheduled.trigger) if scheduled is not None else None,
                    "last_result": last.to_dict() if last else None,
                }
            )
        return {
            "running": self.running,
            "jobs": jobs,
            "message": "Scheduler is running" if self.running else "Scheduler not running",
        }

    async def _run_scheduled(self, job_name: str) -> None:
        result = await self.run_job_now(job_name)
        if result.errors:
            logger.warning(
                f"Scheduled job {job_name} finished with {len(result.errors)} error(s)",
                extra={"job": job_name, "errors": len(result.errors)},
            )
