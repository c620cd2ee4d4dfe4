"""
Deposit Retry Job
Periodically retries stuck PayPal deposits and expires abandoned checkouts
"""

import logging
from typing import Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.deposit_reconciliation import deposit_reconciliation_service

logger = logging.getLogger(__name__)

DEPOSIT_RETRY_JOB_ID = "paypal_deposit_retry"


async def retry_stuck_deposits():
    """Scheduled entry point; failures are logged so the scheduler keeps running"""
    try:
        logger.info("🔄 DEPOSIT_RETRY_JOB: Starting scheduled retry...")
        result = await deposit_reconciliation_service.retry_pending_deposits(
            max_attempts=Config.DEPOSIT_RETRY_MAX_ATTEMPTS,
            max_age_mins=Config.DEPOSIT_RETRY_MAX_AGE_MINUTES,
            limit_per_run=Config.DEPOSIT_RETRY_LIMIT_PER_RUN,
        )
        if result.get("success"):
            logger.info(
                f"✅ DEPOSIT_RETRY_JOB: processed={result.get('processed', 0)} failed={result.get('failed', 0)}"
            )
        else:
            logger.error(f"❌ DEPOSIT_RETRY_JOB: scan failed - {result.get('error')}")
        return result
    except Exception as e:
        logger.error(f"❌ DEPOSIT_RETRY_JOB: Retry run failed - {e}", exc_info=True)
        return {"success": False, "processed": 0, "failed": 0, "error": str(e)}


def create_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,  # Collapse missed runs into one
            "max_instances": 1,
            "misfire_grace_time": 120,
        },
        timezone="UTC",
    )


def schedule_deposit_retry(scheduler: AsyncIOScheduler, interval_minutes: Optional[int] = None):
    """Register the retry job on an existing scheduler"""
    minutes = interval_minutes or Config.DEPOSIT_RETRY_INTERVAL_MINUTES
    scheduler.add_job(
        retry_stuck_deposits,
        trigger=IntervalTrigger(minutes=minutes),
        id=DEPOSIT_RETRY_JOB_ID,
        name="🔄 PayPal Deposit Retry - Reprocess Stuck Deposits",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"✅ Scheduled PayPal deposit retry job (every {minutes} minutes)")
