"""Insights Sync Service - daily/hourly metrics, breakdowns and growth.

WHAT:
    Pulls ad-level performance for one account and writes it through the bulk
    upsert primitive:

        DAILY   ──▶ one fetch per 50-ad chunk for the whole date range
                    (time_increment=1), then device / age-gender / region
                    breakdowns fetched in parallel per chunk
        HOURLY  ──▶ one fetch per calendar day per 50-ad chunk, growth vs the
                    preceding hour slot computed before writing

WHY:
    - The platform aggregates hourly stats over the whole requested range, so
      hourly passes must ask for one day at a time.
    - Chunking bounds request and response size.
    - Each chunk is its own unit: a failed fetch or write is logged, captured
      and skipped; the result is a count of rows written, not pass/fail.
    - Breakdown rows are delete-then-insert per parent insight, because the
      set of dimension values for an ad-day changes between passes.
    - After a DAILY pass that wrote rows, the branch rollup is triggered as a
      background task (which also auto-assigns a branchless account); its
      failure never reaches the caller.

REFERENCES:
    - adsync/services/mappers.py (row mapping, merge, growth)
    - adsync/services/rollup_service.py (what the trigger runs)
    - adsync/utils/tasks.py (background trigger)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from adsync.exceptions import AccountNotFoundError, MissingCredentialError
from adsync.models import BreakdownType, Granularity
from adsync.services import mappers
from adsync.services.credentials import CredentialProvider
from adsync.services.mappers import AdRef
from adsync.services.platforms.base import DateRange, InsightsQuery, PlatformAdapter, RawRecord
from adsync.services.platforms.registry import PlatformRegistry
from adsync.services.sync_store import SyncStore
from adsync.telemetry import capture_exception
from adsync.utils.dates import date_range, parse_date, previous_hour_slot
from adsync.utils.tasks import spawn_background

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50

INSIGHT_KEY = [
    "platform_account_id", "unified_campaign_id", "unified_ad_group_id", "unified_ad_id", "date",
]
HOURLY_KEY = INSIGHT_KEY + ["hour"]

DAILY_UPDATE = [
    "spend", "impressions", "clicks", "reach", "results", "conversions", "platform_metrics", "synced_at",
]
HOURLY_UPDATE = [
    "hour_slot", "spend", "impressions", "clicks", "results", "conversions",
    "spend_growth", "impressions_growth", "clicks_growth", "results_growth", "conversions_growth",
    "platform_metrics", "synced_at",
]

BREAKDOWN_SPECS: Dict[BreakdownType, Tuple[str, List[str], Callable[..., Dict[str, Any]]]] = {
    BreakdownType.device: (
        "unified_insight_devices", ["unified_insight_id", "device"], mappers.map_device_breakdown,
    ),
    BreakdownType.age_gender: (
        "unified_insight_age_gender", ["unified_insight_id", "age", "gender"], mappers.map_age_gender_breakdown,
    ),
    BreakdownType.region: (
        "unified_insight_regions", ["unified_insight_id", "region", "country"], mappers.map_region_breakdown,
    ),
}
BREAKDOWN_UPDATE = ["spend", "impressions", "clicks", "results"]

RollupTrigger = Callable[[UUID, date, date], Awaitable[Any]]


def chunked(items: Sequence[str], size: int) -> List[List[str]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class InsightsSyncResult:
    """Outcome of one insights pass. `rows_written` is the headline number."""
    account_id: UUID
    granularity: Granularity
    date_start: date
    date_end: date
    ads_selected: int = 0
    rows_written: int = 0
    breakdown_rows: int = 0
    chunks: int = 0
    failed_chunks: int = 0
    errors: List[str] = field(default_factory=list)
    daily_totals: Dict[date, Dict[str, Any]] = field(default_factory=dict)
    rollup_scheduled: bool = False

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    def add_totals(self, rows: Sequence[Dict[str, Any]]) -> None:
        for row in rows:
            totals = self.daily_totals.setdefault(row["date"], {
                "ads": set(), "spend": Decimal("0"), "impressions": 0, "clicks": 0, "reach": 0,
            })
            totals["ads"].add(row["unified_ad_id"])
            totals["spend"] += row.get("spend") or 0
            totals["impressions"] += row.get("impressions") or 0
            totals["clicks"] += row.get("clicks") or 0
            totals["reach"] += row.get("reach") or 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": str(self.account_id),
            "granularity": self.granularity.value,
            "date_start": self.date_start.isoformat(),
            "date_end": self.date_end.isoformat(),
            "ads_selected": self.ads_selected,
            "rows_written": self.rows_written,
            "breakdown_rows": self.breakdown_rows,
            "chunks": self.chunks,
            "failed_chunks": self.failed_chunks,
            "errors": list(self.errors),
        }

    def __repr__(self):
        return (
            f"InsightsSyncResult({self.granularity.value}, rows_written={self.rows_written}, "
            f"breakdown_rows={self.breakdown_rows}, failed_chunks={self.failed_chunks})"
        )


@dataclass
class _Pass:
    """Per-call state. Holds plain account values only: a rollback expires ORM rows."""
    account_id: UUID
    account_external_id: str
    token: str
    adapter: PlatformAdapter
    ads: Dict[str, AdRef]
    now: datetime


# =============================================================================
# SERVICE
# =============================================================================

class InsightsSyncService:
    """Insights sync for one unit of work (one store/session)."""

    def __init__(
        self,
        store: SyncStore,
        registry: PlatformRegistry,
        credentials: CredentialProvider,
        rollup_trigger: Optional[RollupTrigger] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.registry = registry
        self.credentials = credentials
        self.rollup_trigger = rollup_trigger
        self.chunk_size = chunk_size
        self.clock = clock

    async def sync_insights(
        self,
        account_id: UUID,
        date_start: date,
        date_end: date,
        granularity: Granularity = Granularity.DAILY,
        ad_external_ids: Optional[Sequence[str]] = None,
        skip_breakdowns: bool = False,
    ) -> InsightsSyncResult:
        """Sync insights of one account for an inclusive date range.

        Args:
            account_id: Internal platform account id
            date_start / date_end: Inclusive range, account calendar dates
            granularity: DAILY or HOURLY
            ad_external_ids: Restrict to these ads. For DAILY this also
                bypasses the deliverable-status filter (ad-level sync)
            skip_breakdowns: DAILY only; do not refresh breakdown rows

        Raises:
            AccountNotFoundError / MissingCredentialError before any fetch
        """
        granularity = Granularity(granularity)
        date_start, date_end = parse_date(date_start), parse_date(date_end)
        window = DateRange(date_start, date_end)

        result = InsightsSyncResult(
            account_id=account_id, granularity=granularity, date_start=date_start, date_end=date_end,
        )
        sync_pass = await self._begin(account_id, granularity, ad_external_ids)
        result.ads_selected = len(sync_pass.ads)

        logger.info(
            "[INSIGHTS_SYNC] Account %s (%s): %s %s..%s, %d ads",
            account_id, sync_pass.account_external_id, granularity.value,
            date_start, date_end, len(sync_pass.ads),
        )
        if not sync_pass.ads:
            logger.info("[INSIGHTS_SYNC] No eligible ads for account %s, nothing to fetch", account_id)
            return result

        chunks = chunked(sorted(sync_pass.ads.keys()), self.chunk_size)
        if granularity == Granularity.HOURLY:
            for day in date_range(date_start, date_end):
                for chunk in chunks:
                    await self._run_chunk(result, sync_pass, chunk, DateRange(day, day), self._write_hourly)
        else:
            for chunk in chunks:
                written_keys = await self._run_chunk(result, sync_pass, chunk, window, self._write_daily)
                if written_keys and not skip_breakdowns:
                    await self._sync_breakdowns(result, sync_pass, chunk, window, written_keys)

            if result.rows_written > 0:
                self._schedule_rollup(result, account_id, date_start, date_end)

        logger.info("[INSIGHTS_SYNC] Account %s done: %r", account_id, result)
        return result

    async def cleanup_hourly_insights(self, today: Optional[date] = None, account_id: Optional[UUID] = None) -> int:
        """Delete hourly rows older than yesterday."""
        today = today or self.clock().date()
        cutoff = today - timedelta(days=1)
        deleted = await self.store.delete_hourly_before(cutoff, account_id=account_id)
        await self.store.commit()
        logger.info("[INSIGHTS_SYNC] Deleted %d hourly rows before %s", deleted, cutoff)
        return deleted

    # -------------------------------------------------------------------------
    # pass setup
    # -------------------------------------------------------------------------

    async def _begin(
        self, account_id: UUID, granularity: Granularity, ad_external_ids: Optional[Sequence[str]]
    ) -> _Pass:
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        token = await self.credentials.get_active_credential(account_id)
        if not token:
            raise MissingCredentialError(account_id)

        adapter = self.registry.get_adapter(account.platform)

        statuses: Optional[Sequence[str]] = mappers.DELIVERABLE_STATUSES
        if granularity == Granularity.DAILY and ad_external_ids:
            statuses = None
        ads = await self.store.list_ads_for_insights(
            account_id,
            effective_statuses=statuses,
            external_ids=list(ad_external_ids) if ad_external_ids else None,
        )
        return _Pass(
            account_id=account.id,
            account_external_id=account.external_id,
            token=token,
            adapter=adapter,
            ads=ads,
            now=self.clock(),
        )

    async def _run_chunk(
        self,
        result: InsightsSyncResult,
        sync_pass: _Pass,
        chunk: List[str],
        window: DateRange,
        write: Callable[[_Pass, List[RawRecord]], Awaitable[List[Dict[str, Any]]]],
    ) -> Set[Tuple[UUID, date]]:
        """Fetch + write one chunk. Failures are contained to the chunk."""
        result.chunks += 1
        try:
            raw = await sync_pass.adapter.fetch_insights(InsightsQuery(
                account_external_id=sync_pass.account_external_id,
                token=sync_pass.token,
                date_range=window,
                level="ad",
                granularity=result.granularity,
                ad_ids=chunk,
            ))
            rows = await write(sync_pass, raw)
            written = await self.store.bulk_upsert(
                "unified_hourly_insights" if result.granularity == Granularity.HOURLY else "unified_insights",
                rows,
                HOURLY_KEY if result.granularity == Granularity.HOURLY else INSIGHT_KEY,
                HOURLY_UPDATE if result.granularity == Granularity.HOURLY else DAILY_UPDATE,
            )
            await self.store.commit()
        except Exception as e:
            await self.store.rollback()
            result.failed_chunks += 1
            result.errors.append(f"{window.start}..{window.end} chunk {chunk[0]}..{chunk[-1]}: {e}")
            logger.error(
                "[INSIGHTS_SYNC] Chunk of %d ads (%s..%s) failed for account %s: %s",
                len(chunk), window.start, window.end, sync_pass.account_id, e,
            )
            capture_exception(e, extra={
                "operation": "insights_sync",
                "granularity": result.granularity.value,
                "account_id": str(sync_pass.account_id),
                "date_start": window.start.isoformat(),
                "date_end": window.end.isoformat(),
                "chunk_size": len(chunk),
            })
            return set()

        result.rows_written += written
        result.add_totals(rows)
        logger.debug(
            "[INSIGHTS_SYNC] %s..%s: %d raw -> %d rows for %d ads",
            window.start, window.end, len(raw), written, len(chunk),
        )
        return {(row["unified_ad_id"], row["date"]) for row in rows}

    def _map_rows(
        self,
        sync_pass: _Pass,
        raw_records: Sequence[RawRecord],
        mapper: Callable[[RawRecord, AdRef, UUID, datetime], Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        rows = []
        for raw in raw_records:
            ref = sync_pass.ads.get(str(raw.get("ad_id")))
            if ref is None:
                logger.debug("[INSIGHTS_SYNC] Skipping insight for unknown ad %s", raw.get("ad_id"))
                continue
            try:
                rows.append(mapper(raw, ref, sync_pass.account_id, sync_pass.now))
            except Exception as e:
                logger.debug("[INSIGHTS_SYNC] Skipping unmappable insight for ad %s: %s", raw.get("ad_id"), e)
        return rows

    # -------------------------------------------------------------------------
    # writers
    # -------------------------------------------------------------------------

    async def _write_daily(self, sync_pass: _Pass, raw_records: List[RawRecord]) -> List[Dict[str, Any]]:
        rows = self._map_rows(sync_pass, raw_records, mappers.map_daily_insight)
        return mappers.merge_rows(rows, INSIGHT_KEY)

    async def _write_hourly(self, sync_pass: _Pass, raw_records: List[RawRecord]) -> List[Dict[str, Any]]:
        rows = mappers.merge_rows(
            self._map_rows(sync_pass, raw_records, mappers.map_hourly_insight), HOURLY_KEY,
        )
        batch = {(row["unified_ad_id"], row["date"], row["hour"]): row for row in rows}

        # Previous slots not in this batch (hour 0 -> prior day hour 23, gaps)
        missing_slots = set()
        for ad_id, day, hour in batch:
            prev_day, prev_hour = previous_hour_slot(day, hour)
            if (ad_id, prev_day, prev_hour) not in batch:
                missing_slots.add((prev_day, prev_hour))
        stored = await self.store.load_hourly_rows(
            sync_pass.account_id, sorted({ad_id for ad_id, _, _ in batch}), missing_slots,
        )

        for (ad_id, day, hour), row in batch.items():
            prev_key = (ad_id, *previous_hour_slot(day, hour))
            previous = batch.get(prev_key) or stored.get(prev_key)
            row.update(mappers.compute_growth(row, previous))
        return rows

    # -------------------------------------------------------------------------
    # breakdowns
    # -------------------------------------------------------------------------

    async def _sync_breakdowns(
        self,
        result: InsightsSyncResult,
        sync_pass: _Pass,
        chunk: List[str],
        window: DateRange,
        written_keys: Set[Tuple[UUID, date]],
    ) -> None:
        """Refresh device / age-gender / region rows for the ad-days just written."""
        insight_ids = await self.store.load_insight_ids(
            sync_pass.account_id,
            sorted({ad_id for ad_id, _ in written_keys}),
            sorted({day for _, day in written_keys}),
        )
        insight_ids = {key: value for key, value in insight_ids.items() if key in written_keys}
        if not insight_ids:
            return

        kinds = list(BREAKDOWN_SPECS.keys())
        fetched = await asyncio.gather(
            *[
                sync_pass.adapter.fetch_insights(InsightsQuery(
                    account_external_id=sync_pass.account_external_id,
                    token=sync_pass.token,
                    date_range=window,
                    level="ad",
                    granularity=Granularity.DAILY,
                    breakdowns=kind,
                    ad_ids=chunk,
                ))
                for kind in kinds
            ],
            return_exceptions=True,
        )

        for kind, raw_records in zip(kinds, fetched):
            if isinstance(raw_records, BaseException):
                logger.warning(
                    "[INSIGHTS_SYNC] %s breakdown fetch failed for account %s: %s",
                    kind.value, sync_pass.account_id, raw_records,
                )
                capture_exception(raw_records, extra={
                    "operation": "insights_breakdown",
                    "breakdown": kind.value,
                    "account_id": str(sync_pass.account_id),
                })
                result.errors.append(f"breakdown {kind.value}: {raw_records}")
                continue
            try:
                result.breakdown_rows += await self._replace_breakdowns(
                    sync_pass, kind, raw_records, insight_ids,
                )
                await self.store.commit()
            except Exception as e:
                await self.store.rollback()
                logger.error(
                    "[INSIGHTS_SYNC] %s breakdown write failed for account %s: %s",
                    kind.value, sync_pass.account_id, e,
                )
                capture_exception(e, extra={
                    "operation": "insights_breakdown",
                    "breakdown": kind.value,
                    "account_id": str(sync_pass.account_id),
                })
                result.errors.append(f"breakdown {kind.value}: {e}")

    async def _replace_breakdowns(
        self,
        sync_pass: _Pass,
        kind: BreakdownType,
        raw_records: Sequence[RawRecord],
        insight_ids: Dict[Tuple[UUID, date], UUID],
    ) -> int:
        table, key, mapper = BREAKDOWN_SPECS[kind]
        rows = []
        for raw in raw_records:
            try:
                ad_external_id, day = mappers.insight_key(raw)
            except (KeyError, ValueError):
                continue
            ref = sync_pass.ads.get(ad_external_id)
            insight_id = insight_ids.get((ref.ad_id, day)) if ref else None
            if insight_id is None:
                continue
            rows.append(mapper(raw, insight_id))

        await self.store.delete_breakdowns(table, list(insight_ids.values()))
        return await self.store.bulk_upsert(table, mappers.merge_rows(rows, key), key, BREAKDOWN_UPDATE)

    # -------------------------------------------------------------------------
    # follow-ups
    # -------------------------------------------------------------------------

    def _schedule_rollup(self, result: InsightsSyncResult, account_id: UUID, start: date, end: date) -> None:
        if self.rollup_trigger is None:
            return
        trigger = self.rollup_trigger

        async def _run() -> None:
            await trigger(account_id, start, end)

        spawn_background(
            _run(),
            name=f"rollup:{account_id}:{start}:{end}",
            extra={"account_id": str(account_id), "date_start": start.isoformat(), "date_end": end.isoformat()},
        )
        result.rollup_scheduled = True
