"""
Unit tests for SubscriptionScheduler.

WHAT: Job registration, manual runs and the status report.
"""

import pytest

from subscription_engine.core.exceptions import ResourceNotFoundError
from subscription_engine.services.scheduler import JOB_SCHEDULES, SubscriptionScheduler


class TestSubscriptionScheduler:
    """Tests for SubscriptionScheduler."""

    def test_every_job_has_a_schedule(self, jobs):
        assert set(JOB_SCHEDULES) == set(jobs.jobs)

    @pytest.mark.asyncio
    async def test_start_registers_jobs_and_shutdown_stops(self, jobs):
        scheduler = SubscriptionScheduler(jobs)

        scheduler.start()
        try:
            status = scheduler.status()
            assert status["running"] is True
            assert {job["id"] for job in status["jobs"]} == set(JOB_SCHEDULES)
            assert all(job["next_run_time"] for job in status["jobs"])
        finally:
            scheduler.shutdown(wait=False)

        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_run_job_now_records_last_result(self, jobs):
        scheduler = SubscriptionScheduler(jobs)

        result = await scheduler.run_job_now("process_expired_subscriptions")

        assert result.success is True
        status = scheduler.status()
        assert status["running"] is False
        expired = next(job for job in status["jobs"] if job["id"] == "process_expired_subscriptions")
        assert expired["last_result"]["job"] == "process_expired_subscriptions"
        assert expired["next_run_time"] is None

    @pytest.mark.asyncio
    async def test_unknown_job(self, jobs):
        with pytest.raises(ResourceNotFoundError):
            await SubscriptionScheduler(jobs).run_job_now("send_newsletter")
