"""Sync Store - every read and state transition the sync services need.

WHAT:
    A thin repository over one AsyncSession:
    - externalId -> internalId maps for the entity hierarchy
    - soft-delete (tombstone) and cascading status demotion updates
    - insight lookups (previous hour slots, parent insight ids)
    - rollup aggregation queries
    - `bulk_upsert()`, delegating to the bulk upsert primitive

WHY:
    Sync services stay free of SQL and are tested against an in-memory
    store with the same method surface (adsync/tests/fakes.py).

REFERENCES:
    - adsync/services/bulk_upsert.py
    - adsync/models.py
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type
from uuid import UUID

from sqlalchemy import and_, delete, distinct, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.models import (
    Branch,
    PlatformAccount,
    UnifiedAd,
    UnifiedAdGroup,
    UnifiedCampaign,
    UnifiedHourlyInsight,
    UnifiedInsight,
    UnifiedStatus,
    TABLES,
)
from adsync.services.bulk_upsert import BulkUpserter
from adsync.services.mappers import AdRef

logger = logging.getLogger(__name__)

HourlyKey = Tuple[UUID, date, int]


def _model(table: str) -> Type[Any]:
    try:
        return TABLES[table]
    except KeyError:
        raise ValueError(f"Unknown table: {table}") from None


class SyncStore:
    """Repository used by entity/insights/rollup services for one unit of work."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.upserter = BulkUpserter(session)

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    # =========================================================================
    # WRITES
    # =========================================================================

    async def bulk_upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        unique_columns: Sequence[str],
        update_columns: Sequence[str],
    ) -> int:
        return await self.upserter.execute(table, rows, unique_columns, update_columns)

    # =========================================================================
    # ACCOUNTS & BRANCHES
    # =========================================================================

    async def get_account(self, account_id: UUID) -> Optional[PlatformAccount]:
        return await self.session.get(PlatformAccount, account_id)

    async def list_accounts(self, platform: Optional[str] = None) -> List[PlatformAccount]:
        stmt = select(PlatformAccount).order_by(PlatformAccount.created_at)
        if platform:
            stmt = stmt.where(PlatformAccount.platform == platform)
        return list((await self.session.execute(stmt)).scalars().all())

    async def update_account_synced_at(self, account_id: UUID, synced_at: datetime) -> None:
        await self.session.execute(
            update(PlatformAccount).where(PlatformAccount.id == account_id).values(synced_at=synced_at)
        )

    async def set_account_branch(self, account_id: UUID, branch_id: UUID) -> None:
        await self.session.execute(
            update(PlatformAccount).where(PlatformAccount.id == account_id).values(branch_id=branch_id)
        )

    async def list_branches(self) -> List[Branch]:
        result = await self.session.execute(select(Branch).order_by(Branch.name))
        return list(result.scalars().all())

    async def get_branch_accounts(self, branch_id: UUID) -> List[PlatformAccount]:
        result = await self.session.execute(
            select(PlatformAccount).where(PlatformAccount.branch_id == branch_id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # ENTITY HIERARCHY
    # =========================================================================

    async def count_entities(self, table: str, account_id: UUID) -> int:
        model = _model(table)
        result = await self.session.execute(
            select(func.count()).select_from(model).where(model.platform_account_id == account_id)
        )
        return int(result.scalar_one())

    async def load_id_map(self, table: str, account_id: UUID) -> Dict[str, UUID]:
        """external_id -> id for every row of the account (tombstoned rows included)."""
        model = _model(table)
        result = await self.session.execute(
            select(model.external_id, model.id).where(model.platform_account_id == account_id)
        )
        return {external_id: internal_id for external_id, internal_id in result.all()}

    async def load_ad_group_refs(self, account_id: UUID) -> Dict[str, Tuple[UUID, UUID]]:
        """ad group external_id -> (ad group id, campaign id)."""
        result = await self.session.execute(
            select(UnifiedAdGroup.external_id, UnifiedAdGroup.id, UnifiedAdGroup.unified_campaign_id)
            .where(UnifiedAdGroup.platform_account_id == account_id)
        )
        return {external_id: (ad_group_id, campaign_id) for external_id, ad_group_id, campaign_id in result.all()}

    async def tombstone_missing(
        self, table: str, account_id: UUID, keep_external_ids: Iterable[str], now: datetime
    ) -> int:
        """Soft-delete live rows of the account whose external id was not fetched."""
        model = _model(table)
        keep = list(keep_external_ids)
        conditions = [model.platform_account_id == account_id, model.deleted_at.is_(None)]
        if keep:
            conditions.append(model.external_id.not_in(keep))
        values: Dict[str, Any] = {"deleted_at": now, "synced_at": now}
        if hasattr(model, "status"):
            values["status"] = UnifiedStatus.DELETED
        result = await self.session.execute(
            update(model).where(and_(*conditions)).values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def demote_ended_campaigns(self, account_id: UUID, now: datetime) -> int:
        result = await self.session.execute(
            update(UnifiedCampaign)
            .where(
                UnifiedCampaign.platform_account_id == account_id,
                UnifiedCampaign.status == UnifiedStatus.ACTIVE,
                UnifiedCampaign.deleted_at.is_(None),
                UnifiedCampaign.end_time.is_not(None),
                UnifiedCampaign.end_time < now,
            )
            .values(status=UnifiedStatus.PAUSED, effective_status="PAUSED")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def demote_orphaned_ad_groups(self, account_id: UUID, now: datetime) -> int:
        """ACTIVE ad groups whose campaign is not live (or which ended themselves) -> PAUSED."""
        live_campaigns = select(UnifiedCampaign.id).where(
            UnifiedCampaign.platform_account_id == account_id,
            UnifiedCampaign.status == UnifiedStatus.ACTIVE,
            UnifiedCampaign.deleted_at.is_(None),
            or_(UnifiedCampaign.end_time.is_(None), UnifiedCampaign.end_time >= now),
        )
        result = await self.session.execute(
            update(UnifiedAdGroup)
            .where(
                UnifiedAdGroup.platform_account_id == account_id,
                UnifiedAdGroup.status == UnifiedStatus.ACTIVE,
                UnifiedAdGroup.deleted_at.is_(None),
                or_(
                    UnifiedAdGroup.unified_campaign_id.not_in(live_campaigns),
                    and_(UnifiedAdGroup.end_time.is_not(None), UnifiedAdGroup.end_time < now),
                ),
            )
            .values(status=UnifiedStatus.PAUSED, effective_status="PAUSED")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def demote_orphaned_ads(self, account_id: UUID, now: datetime) -> int:
        """ACTIVE ads whose ad group is not ACTIVE -> PAUSED."""
        live_ad_groups = select(UnifiedAdGroup.id).where(
            UnifiedAdGroup.platform_account_id == account_id,
            UnifiedAdGroup.status == UnifiedStatus.ACTIVE,
            UnifiedAdGroup.deleted_at.is_(None),
        )
        result = await self.session.execute(
            update(UnifiedAd)
            .where(
                UnifiedAd.platform_account_id == account_id,
                UnifiedAd.status == UnifiedStatus.ACTIVE,
                UnifiedAd.deleted_at.is_(None),
                UnifiedAd.unified_ad_group_id.not_in(live_ad_groups),
            )
            .values(status=UnifiedStatus.PAUSED, effective_status="PAUSED")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    # =========================================================================
    # INSIGHTS
    # =========================================================================

    async def list_ads_for_insights(
        self,
        account_id: UUID,
        effective_statuses: Optional[Sequence[str]] = None,
        external_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, AdRef]:
        """ad external_id -> AdRef for non-deleted ads, optionally filtered."""
        stmt = select(
            UnifiedAd.external_id, UnifiedAd.id, UnifiedAd.unified_ad_group_id, UnifiedAd.unified_campaign_id
        ).where(UnifiedAd.platform_account_id == account_id, UnifiedAd.deleted_at.is_(None))
        if effective_statuses is not None:
            stmt = stmt.where(UnifiedAd.effective_status.in_(list(effective_statuses)))
        if external_ids is not None:
            stmt = stmt.where(UnifiedAd.external_id.in_(list(external_ids)))
        result = await self.session.execute(stmt.order_by(UnifiedAd.external_id))
        return {
            external_id: AdRef(ad_id, ad_group_id, campaign_id)
            for external_id, ad_id, ad_group_id, campaign_id in result.all()
        }

    async def load_hourly_rows(
        self, account_id: UUID, ad_ids: Sequence[UUID], slots: Iterable[Tuple[date, int]]
    ) -> Dict[HourlyKey, Dict[str, Any]]:
        """Stored hourly metrics keyed by (ad id, date, hour) for the given slots."""
        wanted = set(slots)
        if not ad_ids or not wanted:
            return {}
        result = await self.session.execute(
            select(
                UnifiedHourlyInsight.unified_ad_id,
                UnifiedHourlyInsight.date,
                UnifiedHourlyInsight.hour,
                UnifiedHourlyInsight.spend,
                UnifiedHourlyInsight.impressions,
                UnifiedHourlyInsight.clicks,
                UnifiedHourlyInsight.results,
                UnifiedHourlyInsight.conversions,
            ).where(
                UnifiedHourlyInsight.platform_account_id == account_id,
                UnifiedHourlyInsight.unified_ad_id.in_(list(ad_ids)),
                UnifiedHourlyInsight.date.in_(sorted({day for day, _ in wanted})),
            )
        )
        rows: Dict[HourlyKey, Dict[str, Any]] = {}
        for ad_id, day, hour, spend, impressions, clicks, results, conversions in result.all():
            if (day, hour) in wanted:
                rows[(ad_id, day, hour)] = {
                    "spend": spend,
                    "impressions": impressions,
                    "clicks": clicks,
                    "results": results,
                    "conversions": conversions,
                }
        return rows

    async def load_insight_ids(
        self, account_id: UUID, ad_ids: Sequence[UUID], dates: Sequence[date]
    ) -> Dict[Tuple[UUID, date], UUID]:
        """(ad id, date) -> daily insight id."""
        if not ad_ids or not dates:
            return {}
        result = await self.session.execute(
            select(UnifiedInsight.unified_ad_id, UnifiedInsight.date, UnifiedInsight.id).where(
                UnifiedInsight.platform_account_id == account_id,
                UnifiedInsight.unified_ad_id.in_(list(ad_ids)),
                UnifiedInsight.date.in_(list(dates)),
            )
        )
        return {(ad_id, day): insight_id for ad_id, day, insight_id in result.all()}

    async def delete_breakdowns(self, table: str, insight_ids: Sequence[UUID]) -> int:
        if not insight_ids:
            return 0
        model = _model(table)
        result = await self.session.execute(
            delete(model).where(model.unified_insight_id.in_(list(insight_ids)))
        )
        return result.rowcount or 0

    async def delete_hourly_before(self, cutoff: date, account_id: Optional[UUID] = None) -> int:
        stmt = delete(UnifiedHourlyInsight).where(UnifiedHourlyInsight.date < cutoff)
        if account_id is not None:
            stmt = stmt.where(UnifiedHourlyInsight.platform_account_id == account_id)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def sum_insights(self, account_ids: Sequence[UUID], day: date) -> Dict[str, Any]:
        """Totals over daily insight rows of the accounts for one date."""
        totals = {
            "spend": Decimal("0"), "impressions": 0, "clicks": 0, "reach": 0,
            "results": 0, "conversions": 0, "ads_count": 0,
        }
        if not account_ids:
            return totals
        result = await self.session.execute(
            select(
                func.coalesce(func.sum(UnifiedInsight.spend), 0),
                func.coalesce(func.sum(UnifiedInsight.impressions), 0),
                func.coalesce(func.sum(UnifiedInsight.clicks), 0),
                func.coalesce(func.sum(UnifiedInsight.reach), 0),
                func.coalesce(func.sum(UnifiedInsight.results), 0),
                func.coalesce(func.sum(UnifiedInsight.conversions), 0),
                func.count(distinct(UnifiedInsight.unified_ad_id)),
            ).where(
                UnifiedInsight.platform_account_id.in_(list(account_ids)),
                UnifiedInsight.date == day,
            )
        )
        spend, impressions, clicks, reach, results, conversions, ads_count = result.one()
        totals.update(
            spend=Decimal(str(spend)),
            impressions=int(impressions),
            clicks=int(clicks),
            reach=int(reach),
            results=int(results),
            conversions=int(conversions),
            ads_count=int(ads_count),
        )
        return totals
