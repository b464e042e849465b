"""Sync Dispatcher - runs work items for many accounts in bounded batches.

WHAT:
    `dispatch(account_ids, job_type, date_range?)` runs one unit of work per
    account through the SyncEngine:

        campaign      ──▶ entity sync
        insight       ──▶ daily insights
        insight_hour  ──▶ hourly insights
        full          ──▶ entity sync, then daily, then hourly insights

    Accounts run ACCOUNT_BATCH_SIZE at a time; batches run one after another.

WHY:
    Accounts are independent units of work. A failing account is recorded in
    the summary and captured; it never stops the other accounts. Within one
    account entity sync completes before insights read the ad table.

REFERENCES:
    - adsync/engine.py (entry points)
    - adsync/workers/arq_worker.py (dispatch_job and the cron jobs)
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from adsync.exceptions import AccountNotFoundError
from adsync.models import Granularity, PlatformAccount
from adsync.services.insights_sync_service import InsightsSyncResult
from adsync.services.notifier import SyncReport
from adsync.telemetry import capture_exception, capture_message
from adsync.utils.dates import default_sync_range
from adsync.utils.tasks import spawn_background

logger = logging.getLogger(__name__)


class JobType(str, enum.Enum):
    CAMPAIGN = "campaign"
    INSIGHT = "insight"
    INSIGHT_HOUR = "insight_hour"
    FULL = "full"


@dataclass
class DispatchItem:
    account_id: UUID
    job_type: JobType
    ok: bool = True
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": str(self.account_id),
            "job_type": self.job_type.value,
            "ok": self.ok,
            "detail": self.detail,
            "error": self.error,
        }


@dataclass
class DispatchSummary:
    accounts: int = 0
    items: List[DispatchItem] = field(default_factory=list)

    @property
    def errors(self) -> List[DispatchItem]:
        return [item for item in self.items if not item.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accounts": self.accounts,
            "items": [item.to_dict() for item in self.items],
            "errors": len(self.errors),
        }


def build_report(account: PlatformAccount, result: InsightsSyncResult, day: date) -> SyncReport:
    totals = result.daily_totals.get(day) or {}
    return SyncReport(
        account_name=account.name or account.external_id,
        date=day,
        ads_count=len(totals.get("ads") or ()),
        total_spend=totals.get("spend", 0),
        total_impressions=totals.get("impressions", 0),
        total_clicks=totals.get("clicks", 0),
        total_reach=totals.get("reach", 0),
        currency=account.currency,
    )


class SyncDispatcher:
    """Caller-level fan-out over accounts (the engine itself is per account)."""

    def __init__(self, engine, batch_size: Optional[int] = None, default_timezone: Optional[str] = None):
        self.engine = engine
        self.batch_size = batch_size or engine.settings.ACCOUNT_BATCH_SIZE
        self.default_timezone = default_timezone or engine.settings.DEFAULT_TIMEZONE

    async def dispatch(
        self,
        account_ids: Sequence[UUID],
        job_type: JobType,
        date_range: Optional[Tuple[date, date]] = None,
        force_full_sync: bool = False,
    ) -> DispatchSummary:
        job_type = JobType(job_type)
        summary = DispatchSummary(accounts=len(account_ids))
        logger.info(
            "[DISPATCH] %s for %d accounts (batch size %d)", job_type.value, len(account_ids), self.batch_size,
        )

        for start in range(0, len(account_ids), self.batch_size):
            batch = list(account_ids[start:start + self.batch_size])
            results = await asyncio.gather(
                *[self._run_account(account_id, job_type, date_range, force_full_sync) for account_id in batch]
            )
            for items in results:
                summary.items.extend(items)

        logger.info(
            "[DISPATCH] %s done: %d items, %d errors", job_type.value, len(summary.items), len(summary.errors),
        )
        if summary.errors:
            capture_message(
                f"Dispatch {job_type.value}: {len(summary.errors)} failed items over {len(account_ids)} accounts",
                level="warning",
                extra={"errors": [item.to_dict() for item in summary.errors[:20]]},
            )
        return summary

    async def _run_account(
        self,
        account_id: UUID,
        job_type: JobType,
        date_range: Optional[Tuple[date, date]],
        force_full_sync: bool,
    ) -> List[DispatchItem]:
        items: List[DispatchItem] = []
        try:
            account = await self.engine.get_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            start, end = date_range or default_sync_range(
                account.timezone, self.engine.clock(), default=self.default_timezone,
            )

            if job_type in (JobType.CAMPAIGN, JobType.FULL):
                entity_result = await self.engine.sync_entities(account_id, force_full_sync=force_full_sync)
                items.append(DispatchItem(account_id, JobType.CAMPAIGN, detail=entity_result.to_dict()))

            if job_type in (JobType.INSIGHT, JobType.FULL):
                daily = await self.engine.sync_insights(account_id, start, end, Granularity.DAILY)
                items.append(DispatchItem(account_id, JobType.INSIGHT, detail=daily.to_dict()))
                self._notify(account, daily, end)

            if job_type in (JobType.INSIGHT_HOUR, JobType.FULL):
                hourly = await self.engine.sync_insights(account_id, start, end, Granularity.HOURLY)
                items.append(DispatchItem(account_id, JobType.INSIGHT_HOUR, detail=hourly.to_dict()))
        except Exception as e:
            logger.error("[DISPATCH] %s failed for account %s: %s", job_type.value, account_id, e)
            capture_exception(e, extra={"operation": "dispatch", "job_type": job_type.value, "account_id": str(account_id)})
            items.append(DispatchItem(account_id, job_type, ok=False, error=str(e)))
        return items

    def _notify(self, account: PlatformAccount, result: InsightsSyncResult, day: date) -> None:
        if result.rows_written == 0:
            return
        spawn_background(
            self.engine.notifier.send_report(build_report(account, result, day)),
            name=f"notify:{account.id}:{day.isoformat()}",
            extra={"account_id": str(account.id)},
        )
