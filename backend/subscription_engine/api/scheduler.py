"""
Scheduler operations endpoints.

WHAT: Scheduler status and manual job triggers.

WHY: Operators need to rerun a job after an outage (e.g. a missed
expiry run) without waiting for its next cron slot.

SECURITY: Triggers require the X-Scheduler-Secret header to match
SCHEDULER_SECRET. With no secret configured, triggers are disabled.
"""

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header

from subscription_engine.core.config import Settings
from subscription_engine.core.deps import get_scheduler, get_settings
from subscription_engine.core.exceptions import AuthorizationError
from subscription_engine.services.scheduler import SubscriptionScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduler", tags=["Scheduler"])


def require_scheduler_secret(
    x_scheduler_secret: Optional[str] = Header(None, alias="X-Scheduler-Secret"),
    config: Settings = Depends(get_settings),
) -> None:
    """
    Check the scheduler secret header.

    Raises:
        AuthorizationError: If no secret is configured or the header does not match
    """
    expected = config.SCHEDULER_SECRET
    if not expected:
        raise AuthorizationError(message="Manual job triggers are disabled")
    if not x_scheduler_secret or not hmac.compare_digest(x_scheduler_secret, expected):
        logger.warning("Rejected job trigger with an invalid scheduler secret")
        raise AuthorizationError(message="Invalid scheduler secret")


@router.get("/status", summary="Scheduler status")
async def scheduler_status(
    scheduler: SubscriptionScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    return scheduler.status()


@router.post(
    "/jobs/{job_name}/run",
    summary="Run a job now",
    dependencies=[Depends(require_scheduler_secret)],
)
async def run_job(
    job_name: str,
    scheduler: SubscriptionScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    """
    Run a subscription job immediately.

    Returns:
        The job result: counts, per-item errors and timing
    """
    logger.info(f"Manual trigger for job {job_name}")
    result = await scheduler.run_job_now(job_name)
    return result.to_dict()
