"""Rollup Aggregator - per-branch daily summary rows.

WHAT:
    For one (branch, date): group the branch's accounts by platform, sum the
    daily insight rows of that date per platform, and upsert one
    `branch_daily_stats` row per (branch, date, platform).

WHY:
    - Recomputed from scratch every call and written with an upsert, so
      re-running a date overwrites instead of accumulating.
    - Ranges are a loop over the single-date operation; each day can be
      retried in isolation.

REFERENCES:
    - adsync/services/insights_sync_service.py (background trigger after DAILY passes)
    - adsync/workers/arq_worker.py (rebuild_rollups_job)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

from adsync.exceptions import AccountNotFoundError
from adsync.models import Branch
from adsync.services.sync_store import SyncStore
from adsync.telemetry import capture_exception
from adsync.utils.dates import date_range

logger = logging.getLogger(__name__)

ROLLUP_TABLE = "branch_daily_stats"
ROLLUP_KEY = ["branch_id", "date", "platform"]
ROLLUP_UPDATE = [
    "spend", "impressions", "clicks", "reach", "results", "conversions",
    "ad_account_count", "ads_count", "updated_at",
]


def match_branch(account_name: Optional[str], branches: Sequence[Branch]) -> Optional[Branch]:
    """First branch with a keyword contained in the account name (case-insensitive)."""
    if not account_name:
        return None
    name = account_name.lower()
    for branch in branches:
        for keyword in branch.auto_match_keywords or []:
            if keyword and str(keyword).lower() in name:
                return branch
    return None


class RollupAggregator:
    def __init__(self, store: SyncStore, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self.clock = clock

    async def aggregate(self, branch_id: UUID, day: date) -> List[Dict[str, Any]]:
        """Recompute and upsert the rows of one branch for one date."""
        accounts = await self.store.get_branch_accounts(branch_id)
        by_platform: Dict[str, List[UUID]] = defaultdict(list)
        for account in accounts:
            by_platform[str(account.platform)].append(account.id)

        rows = []
        now = self.clock()
        for platform in sorted(by_platform):
            account_ids = by_platform[platform]
            totals = await self.store.sum_insights(account_ids, day)
            rows.append({
                "id": uuid4(),
                "branch_id": branch_id,
                "date": day,
                "platform": platform,
                "spend": totals["spend"],
                "impressions": totals["impressions"],
                "clicks": totals["clicks"],
                "reach": totals["reach"],
                "results": totals["results"],
                "conversions": totals["conversions"],
                "ad_account_count": len(account_ids),
                "ads_count": totals["ads_count"],
                "updated_at": now,
            })

        if rows:
            await self.store.bulk_upsert(ROLLUP_TABLE, rows, ROLLUP_KEY, ROLLUP_UPDATE)
        await self.store.commit()
        logger.info(
            "[ROLLUP] Branch %s %s: %d platform rows (%d accounts)",
            branch_id, day.isoformat(), len(rows), len(accounts),
        )
        return rows

    async def aggregate_range(self, branch_id: UUID, start: date, end: date) -> int:
        """One aggregate() per day, inclusive. Returns rows written."""
        written = 0
        for day in date_range(start, end):
            written += len(await self.aggregate(branch_id, day))
        return written

    async def aggregate_all(self, day: date) -> Dict[str, Any]:
        """Aggregate every branch for one date; one failing branch does not stop the rest."""
        summary: Dict[str, Any] = {"date": day.isoformat(), "branches": 0, "rows": 0, "errors": []}
        # Ids are read up front: a rollback expires the Branch rows
        branch_ids = [branch.id for branch in await self.store.list_branches()]
        for branch_id in branch_ids:
            try:
                summary["rows"] += len(await self.aggregate(branch_id, day))
                summary["branches"] += 1
            except Exception as e:
                await self.store.rollback()
                logger.error("[ROLLUP] Branch %s failed for %s: %s", branch_id, day.isoformat(), e)
                capture_exception(e, extra={
                    "operation": "rollup",
                    "branch_id": str(branch_id),
                    "date": day.isoformat(),
                })
                summary["errors"].append(f"{branch_id}: {e}")
        return summary

    async def resolve_branch_for_account(self, account_id: UUID) -> Optional[UUID]:
        """The account's branch, auto-assigned from keywords when it has none."""
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        if account.branch_id is not None:
            return account.branch_id

        branch = match_branch(account.name, await self.store.list_branches())
        if branch is None:
            return None
        branch_id, branch_name = branch.id, branch.name
        await self.store.set_account_branch(account_id, branch_id)
        await self.store.commit()
        logger.info("[ROLLUP] Assigned account %s to branch %s", account_id, branch_name)
        return branch_id

    async def aggregate_for_account(self, account_id: UUID, start: date, end: date) -> int:
        """Rebuild the range for the branch the account belongs to."""
        branch_id = await self.resolve_branch_for_account(account_id)
        if branch_id is None:
            logger.info("[ROLLUP] Account %s has no branch, skipping rollup", account_id)
            return 0
        return await self.aggregate_range(branch_id, start, end)
