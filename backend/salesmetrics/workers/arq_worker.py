"""ARQ worker - background batch jobs.

WHAT:
    Runs the long-lived batch jobs of the sales metrics core:
    - recompute_local_dates_job: re-derive local buckets after a timezone change
    - backfill_identities_job: fill null setter/sales rep user ids
    - cleanup_expired_sessions_job: purge expired attribution sessions (hourly cron)

WHY:
    Each job walks a whole account in fixed-size batches. Batch failures are
    isolated inside the services; the job returns the summary dict so results
    are visible through arq's job result store.

USAGE:
    # Start worker
    arq salesmetrics.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m salesmetrics.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - salesmetrics/services/local_date_service.py
    - salesmetrics/services/identity_resolution_service.py
    - salesmetrics/services/attribution_linker.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID

from arq import cron

from salesmetrics.database import get_sync_session
from salesmetrics.deps import get_settings
from salesmetrics.models import Account
from salesmetrics.services import attribution_linker, identity_resolution_service, local_date_service
from salesmetrics.telemetry import capture_exception, init_sentry
from salesmetrics.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# JOB BODIES (sync, run in a thread)
# =============================================================================

def _recompute_local_dates(account_id: str, max_passes: int = 3) -> Dict[str, Any]:
    settings = get_settings()
    with get_sync_session() as db:
        account = db.get(Account, UUID(account_id))
        if not account:
            return {"success": False, "error": "Account not found"}

        tz_name = account.business_timezone
        for attempt in range(1, max_passes + 1):
            summary = local_date_service.recompute_for_account(
                db, account.id, tz_name, batch_size=settings.BATCH_SIZE
            )
            db.refresh(account)
            if account.business_timezone == tz_name or attempt == max_passes:
                break
            # Timezone changed mid-run; rows stamped so far use the old zone
            logger.info(
                "[ARQ] Timezone for %s changed during recompute (%s -> %s), restarting",
                account_id, tz_name, account.business_timezone,
            )
            tz_name = account.business_timezone

        return {"success": summary.failed == 0, "timezone": tz_name, **summary.to_dict()}


def _backfill_identities(account_id: str) -> Dict[str, Any]:
    settings = get_settings()
    with get_sync_session() as db:
        if not db.get(Account, UUID(account_id)):
            return {"success": False, "error": "Account not found"}
        report = identity_resolution_service.backfill(db, UUID(account_id), batch_size=settings.BATCH_SIZE)
        return {"success": report.failed == 0, **report.to_dict()}


def _cleanup_expired_sessions() -> Dict[str, Any]:
    settings = get_settings()
    with get_sync_session() as db:
        result = attribution_linker.cleanup_expired(db, batch_size=settings.BATCH_SIZE)
        return {"success": result.failed == 0, **result.to_dict()}


# =============================================================================
# JOBS
# =============================================================================

async def recompute_local_dates_job(ctx: Dict, account_id: str) -> Dict:
    """Re-derive local date buckets for every row of one account.

    Args:
        ctx: ARQ context
        account_id: Account UUID string

    Returns:
        Batch summary dict ({processed, succeeded, failed, reasons})
    """
    logger.info("[ARQ] Recomputing local dates for account %s", account_id)
    try:
        return await asyncio.to_thread(_recompute_local_dates, account_id)
    except Exception as e:
        logger.exception("[ARQ] Local date recompute failed for account %s", account_id)
        capture_exception(e, extra={"job": "recompute_local_dates", "account_id": account_id})
        raise


async def backfill_identities_job(ctx: Dict, account_id: str) -> Dict:
    """Fill null setter/sales rep user ids for one account."""
    logger.info("[ARQ] Backfilling identities for account %s", account_id)
    try:
        return await asyncio.to_thread(_backfill_identities, account_id)
    except Exception as e:
        logger.exception("[ARQ] Identity backfill failed for account %s", account_id)
        capture_exception(e, extra={"job": "backfill_identities", "account_id": account_id})
        raise


async def cleanup_expired_sessions_job(ctx: Dict) -> Dict:
    """Delete expired attribution sessions and log remaining statistics."""
    try:
        return await asyncio.to_thread(_cleanup_expired_sessions)
    except Exception as e:
        logger.exception("[ARQ] Attribution session cleanup failed")
        capture_exception(e, extra={"job": "cleanup_expired_sessions"})
        raise


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize telemetry and log config."""
    import platform

    init_sentry()
    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Queue: {QUEUE_NAME}")
    logger.info("=" * 60)

    ctx['startup_time'] = datetime.now(timezone.utc)
    ctx['jobs_processed'] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get('jobs_processed', 0)
    uptime = datetime.now(timezone.utc) - ctx.get('startup_time', datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx['jobs_processed'] = ctx.get('jobs_processed', 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=4: batch jobs are DB-bound, keep pool pressure low
    - job_timeout=1800: large accounts take a while to recompute
    - max_tries=3: batches are idempotent, so retries are safe
    """

    functions = [
        recompute_local_dates_job,
        backfill_identities_job,
        cleanup_expired_sessions_job,
    ]

    cron_jobs = [
        cron(cleanup_expired_sessions_job, minute={5}, run_at_startup=False, unique=True),
    ]

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = 4
    job_timeout = 1800
    keep_result = 3600
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30

    queue_name = QUEUE_NAME
