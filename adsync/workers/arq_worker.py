"""ARQ async worker - sync job processor and scheduler.

WHAT:
    Job entry points over the SyncEngine plus the cron schedule:

        sync_entities_job      one account, entity hierarchy
        sync_insights_job      one account, date range, DAILY | HOURLY
        rebuild_rollups_job    one branch (or all branches), date range
        dispatch_job           many accounts, batched by SyncDispatcher

        scheduled_entity_sync       hourly at :00
        scheduled_daily_insights    hourly at :20
        scheduled_hourly_insights   every 30 minutes at :05 / :35
        scheduled_hourly_cleanup    daily at 01:00 UTC

ARCHITECTURE:
    ┌─────────────────┐   ctx["engine"]   ┌──────────────┐
    │  arq_worker.py  │──────────────────▶│  SyncEngine  │
    │  (orchestrator) │                   │ (per-account │
    └─────────────────┘                   │  services)   │
                                          └──────────────┘

WHY:
    - The worker only orchestrates: parse arguments, call one engine entry
      point, report a dict. Sync logic lives in adsync/services.
    - One SyncEngine per worker process, built at startup, so the rate
      limiter state is shared by every job the process runs.

USAGE:
    arq adsync.workers.arq_worker.WorkerSettings

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - adsync/engine.py
    - adsync/services/dispatch_service.py
"""

from __future__ import annotations

import logging
import platform
from datetime import date, datetime, timezone
from typing import Dict, List, Optional
from uuid import UUID

from arq import Retry, cron

from adsync.deps import get_settings
from adsync.engine import SyncEngine
from adsync.models import Granularity
from adsync.services.dispatch_service import JobType, SyncDispatcher
from adsync.telemetry import capture_exception, init_observability
from adsync.utils.dates import account_today, date_range, parse_date
from adsync.utils.tasks import drain_background_tasks
from adsync.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


MAX_TRIES = 3
RETRY_DEFER_SECONDS = 60


def _engine(ctx: Dict) -> SyncEngine:
    return ctx["engine"]


def _retry_or_raise(ctx: Dict, error: Exception) -> None:
    """ARQ re-runs a job only on Retry; the last try re-raises the original error."""
    job_try = ctx.get("job_try", 1)
    if job_try < MAX_TRIES:
        raise Retry(defer=RETRY_DEFER_SECONDS * job_try) from error
    raise error


def _optional_date(value: Optional[str]) -> Optional[date]:
    return parse_date(value) if value else None


# =============================================================================
# JOBS
# =============================================================================

async def sync_entities_job(
    ctx: Dict,
    account_id: str,
    force_full_sync: bool = False,
    tiers: Optional[List[str]] = None,
) -> Dict:
    """Sync the entity hierarchy of one account.

    Failures are retried through arq.Retry with a growing defer; the last
    try re-raises the original error.
    """
    logger.info("[ARQ] Entity sync for account %s (force_full=%s)", account_id, force_full_sync)
    try:
        result = await _engine(ctx).sync_entities(UUID(account_id), force_full_sync=force_full_sync, tiers=tiers)
    except Exception as e:
        logger.exception("[ARQ] Entity sync failed for %s: %s", account_id, e)
        capture_exception(e, extra={"operation": "sync_entities_job", "account_id": account_id})
        _retry_or_raise(ctx, e)
    return {"success": result.success, **result.to_dict()}


async def sync_insights_job(
    ctx: Dict,
    account_id: str,
    date_start: str,
    date_end: str,
    granularity: str = Granularity.DAILY.value,
    skip_breakdowns: bool = False,
) -> Dict:
    """Sync insights of one account for an inclusive date range."""
    logger.info(
        "[ARQ] %s insights for account %s: %s..%s", granularity, account_id, date_start, date_end,
    )
    try:
        result = await _engine(ctx).sync_insights(
            UUID(account_id),
            parse_date(date_start),
            parse_date(date_end),
            granularity=Granularity(granularity),
            skip_breakdowns=skip_breakdowns,
        )
    except Exception as e:
        logger.exception("[ARQ] Insights sync failed for %s: %s", account_id, e)
        capture_exception(e, extra={"operation": "sync_insights_job", "account_id": account_id})
        _retry_or_raise(ctx, e)
    return {"success": result.success, **result.to_dict()}


async def rebuild_rollups_job(
    ctx: Dict,
    date_start: str,
    date_end: Optional[str] = None,
    branch_id: Optional[str] = None,
) -> Dict:
    """Recompute branch rollups; every branch when `branch_id` is omitted."""
    engine = _engine(ctx)
    start = parse_date(date_start)
    end = parse_date(date_end) if date_end else start

    if branch_id:
        rows = await engine.rebuild_rollups(UUID(branch_id), start, end)
        return {"branch_id": branch_id, "rows": rows}

    summaries = [await engine.aggregate_all(day) for day in date_range(start, end)]
    return {"days": summaries}


async def dispatch_job(
    ctx: Dict,
    account_ids: List[str],
    job_type: str,
    date_start: Optional[str] = None,
    date_end: Optional[str] = None,
) -> Dict:
    """Run one job type for many accounts in bounded concurrent batches."""
    start, end = _optional_date(date_start), _optional_date(date_end)
    window = (start, end or start) if start else None
    summary = await SyncDispatcher(_engine(ctx)).dispatch(
        [UUID(a) for a in account_ids], JobType(job_type), date_range=window,
    )
    return summary.to_dict()


# =============================================================================
# SCHEDULED JOBS
# =============================================================================

async def _dispatch_all(ctx: Dict, job_type: JobType) -> Dict:
    engine = _engine(ctx)
    accounts = await engine.list_accounts()
    if not accounts:
        logger.info("[ARQ] No accounts for scheduled %s", job_type.value)
        return {"accounts": 0}
    summary = await SyncDispatcher(engine).dispatch([a.id for a in accounts], job_type)
    return summary.to_dict()


async def scheduled_entity_sync(ctx: Dict) -> Dict:
    """Incremental entity sync for every account."""
    return await _dispatch_all(ctx, JobType.CAMPAIGN)


async def scheduled_daily_insights(ctx: Dict) -> Dict:
    """Daily insights (yesterday..today per account timezone) for every account."""
    return await _dispatch_all(ctx, JobType.INSIGHT)


async def scheduled_hourly_insights(ctx: Dict) -> Dict:
    """Hourly insights for every account."""
    return await _dispatch_all(ctx, JobType.INSIGHT_HOUR)


async def scheduled_hourly_cleanup(ctx: Dict) -> Dict:
    """Drop hourly rows older than yesterday."""
    engine = _engine(ctx)
    today = account_today(engine.settings.DEFAULT_TIMEZONE, engine.clock())
    try:
        deleted = await engine.cleanup_hourly_insights(today)
    except Exception as e:
        logger.exception("[ARQ] Hourly cleanup failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_hourly_cleanup"})
        return {"error": str(e)}
    return {"deleted": deleted}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - observability + engine."""
    settings = get_settings()
    status = init_observability(log_level=settings.LOG_LEVEL, sentry_dsn=settings.SENTRY_DSN)

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", QUEUE_NAME)
    logger.info("[ARQ] Observability: %s", status)
    logger.info("=" * 60)

    ctx["engine"] = SyncEngine.from_settings(settings)
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - let background rollups finish, close HTTP clients."""
    await drain_background_tasks(timeout=30)
    engine: Optional[SyncEngine] = ctx.get("engine")
    if engine is not None:
        await engine.close()

    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))
    logger.info("[ARQ] Worker shutting down: jobs=%d uptime=%s", ctx.get("jobs_processed", 0), uptime)


async def on_job_end(ctx: Dict) -> None:
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=10: up to 10 jobs concurrently (accounts are independent)
    - job_timeout=1800: large accounts with breakdowns take a while
    - max_tries=MAX_TRIES: jobs raise Retry on failure until the last try
    """

    functions = [
        sync_entities_job,
        sync_insights_job,
        rebuild_rollups_job,
        dispatch_job,
    ]

    cron_jobs = [
        cron(scheduled_entity_sync, minute={0}),
        cron(scheduled_daily_insights, minute={20}),
        cron(scheduled_hourly_insights, minute={5, 35}),
        cron(scheduled_hourly_cleanup, hour={1}, minute={0}),
    ]

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = 10
    job_timeout = 1800
    keep_result = 3600
    retry_jobs = True
    max_tries = MAX_TRIES
    health_check_interval = 30

    queue_name = QUEUE_NAME
