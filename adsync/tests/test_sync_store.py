"""Sync store tests on a real async session

WHAT: SyncStore SQL (tombstones, demotion cascade, insight lookups, sums) and the
      services' commit/rollback paths, run against SQLite through aiosqlite
WHY: The in-memory _FakeStore mirrors the store surface but cannot catch SQL
     mistakes or ORM state that expires on rollback
NOTE:
    SQLite has no CAST(... AS "UnifiedStatus"), so _SqliteSyncStore writes
    upserts with the SQLite ON CONFLICT insert instead of the raw statement
    builder (covered on its own in tests_unit/test_bulk_upsert_builder.py).
REFERENCES:
    - adsync/services/sync_store.py
    - adsync/services/insights_sync_service.py
    - adsync/services/rollup_service.py
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Mapping, Sequence, Set
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from adsync.models import (
    Base,
    Branch,
    BranchDailyStat,
    PlatformAccount,
    TABLES,
    UnifiedAd,
    UnifiedAdGroup,
    UnifiedCampaign,
    UnifiedHourlyInsight,
    UnifiedInsight,
    UnifiedStatus,
)
from adsync.services.bulk_upsert import ColumnKind, column_kind
from adsync.services.insights_sync_service import InsightsSyncService
from adsync.services.rollup_service import RollupAggregator
from adsync.services.sync_store import SyncStore

from adsync.tests.fakes import NOW, _FakeCredentials, daily_record

TEST_DATABASE_URL = "sqlite+aiosqlite://"
DAY = date(2024, 3, 10)


def _coerce(column: str, value: Any) -> Any:
    kind = column_kind(column)
    return value if kind is ColumnKind.JSONB else kind.coerce(value)


class _SqliteSyncStore(SyncStore):
    """SyncStore whose upserts use SQLite's ON CONFLICT.

    `poisoned_upserts` holds 1-based upsert call numbers that raise after the
    rows were written, so the caller's rollback has something to undo.
    """

    def __init__(self, session: AsyncSession, poisoned_upserts: Set[int] = frozenset()):
        super().__init__(session)
        self.poisoned_upserts = set(poisoned_upserts)
        self.upserts = 0
        self.rollbacks = 0

    async def rollback(self) -> None:
        self.rollbacks += 1
        await super().rollback()

    async def bulk_upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        unique_columns: Sequence[str],
        update_columns: Sequence[str],
    ) -> int:
        if not rows:
            return 0
        self.upserts += 1
        stmt = insert(TABLES[table].__table__).values(
            [{column: _coerce(column, value) for column, value in row.items()} for row in rows]
        )
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(unique_columns),
                set_={column: stmt.excluded[column] for column in update_columns},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(unique_columns))
        await self.session.execute(stmt)
        if self.upserts in self.poisoned_upserts:
            raise RuntimeError(f"write to {table} failed")
        return len(rows)


@pytest_asyncio.fixture
async def db_session():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def db_account(db_session):
    account = PlatformAccount(
        id=uuid4(), platform="facebook", external_id="act_1001", name="Clinic Hanoi 01", currency="USD",
    )
    db_session.add(account)
    await db_session.commit()
    return account


@pytest.fixture
def sql_store(db_session):
    return _SqliteSyncStore(db_session)


# =============================================================================
# SEED HELPERS
# =============================================================================

def _campaign(account_id, external_id, status=UnifiedStatus.ACTIVE, end_time=None, deleted_at=None):
    return UnifiedCampaign(
        id=uuid4(), platform_account_id=account_id, external_id=external_id, name=f"Campaign {external_id}",
        status=status, effective_status=status.value, end_time=end_time, deleted_at=deleted_at,
    )


def _ad_group(account_id, external_id, campaign_id, status=UnifiedStatus.ACTIVE, end_time=None):
    return UnifiedAdGroup(
        id=uuid4(), platform_account_id=account_id, unified_campaign_id=campaign_id,
        external_id=external_id, name=f"Ad set {external_id}",
        status=status, effective_status=status.value, end_time=end_time,
    )


def _ad(account_id, external_id, ad_group, effective_status="ACTIVE", deleted_at=None):
    status = UnifiedStatus.ACTIVE if effective_status == "ACTIVE" else UnifiedStatus.PAUSED
    return UnifiedAd(
        id=uuid4(), platform_account_id=account_id, unified_campaign_id=ad_group.unified_campaign_id,
        unified_ad_group_id=ad_group.id, external_id=external_id, name=f"Ad {external_id}",
        status=status, effective_status=effective_status, deleted_at=deleted_at,
    )


async def _seed_ads(session, account_id, count):
    campaign = _campaign(account_id, "c1")
    ad_group = _ad_group(account_id, "g1", campaign.id)
    ads = [_ad(account_id, f"ad{i:04d}", ad_group) for i in range(count)]
    session.add_all([campaign, ad_group, *ads])
    await session.commit()
    return ads


async def _statuses(session, model):
    result = await session.execute(select(model.external_id, model.status).order_by(model.external_id))
    return dict(result.all())


async def _count(session, model):
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# =============================================================================
# ENTITY STATE TRANSITIONS
# =============================================================================

class TestTombstones:
    """
    WHAT: Rows missing from a full fetch are soft-deleted, nothing else is touched.
    WHY: A tombstone keeps history and insight references intact.
    """

    async def test_only_missing_live_rows_are_tombstoned(self, db_session, db_account, sql_store):
        earlier = NOW - timedelta(days=3)
        other_account = PlatformAccount(id=uuid4(), platform="facebook", external_id="act_2002", name="Other")
        db_session.add_all([
            other_account,
            _campaign(db_account.id, "c1"),
            _campaign(db_account.id, "c2"),
            _campaign(db_account.id, "c3", status=UnifiedStatus.PAUSED),
            _campaign(db_account.id, "c4", status=UnifiedStatus.DELETED, deleted_at=earlier),
            _campaign(other_account.id, "x1"),
        ])
        await db_session.commit()

        deleted = await sql_store.tombstone_missing("unified_campaigns", db_account.id, ["c1"], NOW)
        await sql_store.commit()

        assert deleted == 2
        assert await _statuses(db_session, UnifiedCampaign) == {
            "c1": UnifiedStatus.ACTIVE,
            "c2": UnifiedStatus.DELETED,
            "c3": UnifiedStatus.DELETED,
            "c4": UnifiedStatus.DELETED,
            "x1": UnifiedStatus.ACTIVE,
        }
        deleted_at = dict((await db_session.execute(
            select(UnifiedCampaign.external_id, UnifiedCampaign.deleted_at)
        )).all())
        assert deleted_at["c1"] is None
        assert deleted_at["c2"] is not None
        assert deleted_at["c4"].replace(tzinfo=None) == earlier.replace(tzinfo=None)

    async def test_empty_fetch_tombstones_every_live_row(self, db_session, db_account, sql_store):
        db_session.add_all([_campaign(db_account.id, "c1"), _campaign(db_account.id, "c2")])
        await db_session.commit()

        assert await sql_store.tombstone_missing("unified_campaigns", db_account.id, [], NOW) == 2

    async def test_unknown_table_is_rejected(self, sql_store, db_account):
        with pytest.raises(ValueError, match="Unknown table"):
            await sql_store.tombstone_missing("users", db_account.id, [], NOW)


class TestDemotionCascade:
    """
    WHAT: Ended campaigns pause, then their ad groups, then their ads.
    WHY: Nothing under a non-live parent may still read as ACTIVE.
    """

    async def test_ended_campaign_pauses_its_ad_group_and_ad(self, db_session, db_account, sql_store):
        ended = _campaign(db_account.id, "c_ended", end_time=NOW - timedelta(days=1))
        running = _campaign(db_account.id, "c_running", end_time=NOW + timedelta(days=30))
        open_ended = _campaign(db_account.id, "c_open")
        g_ended = _ad_group(db_account.id, "g_ended", ended.id)
        g_running = _ad_group(db_account.id, "g_running", running.id)
        g_self_ended = _ad_group(db_account.id, "g_self_ended", open_ended.id, end_time=NOW - timedelta(hours=1))
        db_session.add_all([
            ended, running, open_ended, g_ended, g_running, g_self_ended,
            _ad(db_account.id, "a_ended", g_ended),
            _ad(db_account.id, "a_running", g_running),
            _ad(db_account.id, "a_self_ended", g_self_ended),
        ])
        await db_session.commit()

        assert await sql_store.demote_ended_campaigns(db_account.id, NOW) == 1
        assert await sql_store.demote_orphaned_ad_groups(db_account.id, NOW) == 2
        assert await sql_store.demote_orphaned_ads(db_account.id, NOW) == 2
        await sql_store.commit()

        assert await _statuses(db_session, UnifiedCampaign) == {
            "c_ended": UnifiedStatus.PAUSED,
            "c_open": UnifiedStatus.ACTIVE,
            "c_running": UnifiedStatus.ACTIVE,
        }
        assert await _statuses(db_session, UnifiedAdGroup) == {
            "g_ended": UnifiedStatus.PAUSED,
            "g_running": UnifiedStatus.ACTIVE,
            "g_self_ended": UnifiedStatus.PAUSED,
        }
        assert await _statuses(db_session, UnifiedAd) == {
            "a_ended": UnifiedStatus.PAUSED,
            "a_running": UnifiedStatus.ACTIVE,
            "a_self_ended": UnifiedStatus.PAUSED,
        }
        effective = dict((await db_session.execute(
            select(UnifiedAd.external_id, UnifiedAd.effective_status)
        )).all())
        assert effective["a_ended"] == "PAUSED"

    async def test_second_cascade_is_a_no_op(self, db_session, db_account, sql_store):
        ended = _campaign(db_account.id, "c_ended", end_time=NOW - timedelta(days=1))
        db_session.add_all([ended, _ad_group(db_account.id, "g1", ended.id)])
        await db_session.commit()

        await sql_store.demote_ended_campaigns(db_account.id, NOW)
        await sql_store.demote_orphaned_ad_groups(db_account.id, NOW)

        assert await sql_store.demote_ended_campaigns(db_account.id, NOW) == 0
        assert await sql_store.demote_orphaned_ad_groups(db_account.id, NOW) == 0


# =============================================================================
# INSIGHT LOOKUPS
# =============================================================================

class TestInsightLookups:
    async def test_ads_for_insights_filter_by_status_and_ids(self, db_session, db_account, sql_store):
        campaign = _campaign(db_account.id, "c1")
        ad_group = _ad_group(db_account.id, "g1", campaign.id)
        active = _ad(db_account.id, "a_active", ad_group)
        paused = _ad(db_account.id, "a_paused", ad_group, effective_status="PAUSED")
        gone = _ad(db_account.id, "a_gone", ad_group, deleted_at=NOW)
        db_session.add_all([campaign, ad_group, active, paused, gone])
        await db_session.commit()

        deliverable = await sql_store.list_ads_for_insights(db_account.id, effective_statuses=["ACTIVE"])
        by_id = await sql_store.list_ads_for_insights(db_account.id, external_ids=["a_paused", "a_gone"])

        assert list(deliverable) == ["a_active"]
        assert deliverable["a_active"].ad_id == active.id
        assert deliverable["a_active"].campaign_id == campaign.id
        assert list(by_id) == ["a_paused"]

    async def test_hourly_rows_only_for_requested_slots(self, db_session, db_account, sql_store):
        ad_id, ad_group_id, campaign_id = uuid4(), uuid4(), uuid4()
        for day, hour, spend in [(DAY, 13, "1.50"), (DAY, 14, "2.00"), (DAY - timedelta(days=1), 23, "3.25")]:
            db_session.add(UnifiedHourlyInsight(
                id=uuid4(), platform_account_id=db_account.id, unified_campaign_id=campaign_id,
                unified_ad_group_id=ad_group_id, unified_ad_id=ad_id, date=day, hour=hour,
                hour_slot=f"{hour:02d}:00:00 - {hour:02d}:59:59", spend=Decimal(spend),
                impressions=10, clicks=1, results=0, conversions=0,
            ))
        await db_session.commit()

        rows = await sql_store.load_hourly_rows(
            db_account.id, [ad_id], {(DAY, 13), (DAY - timedelta(days=1), 23)},
        )

        assert set(rows) == {(ad_id, DAY, 13), (ad_id, DAY - timedelta(days=1), 23)}
        assert rows[(ad_id, DAY - timedelta(days=1), 23)]["spend"] == Decimal("3.25")
        assert await sql_store.load_hourly_rows(db_account.id, [], {(DAY, 13)}) == {}

    async def test_sum_insights_over_accounts_for_one_day(self, db_session, db_account, sql_store):
        ads = await _seed_ads(db_session, db_account.id, 2)
        for ad, day, spend in [(ads[0], DAY, "10.00"), (ads[1], DAY, "5.50"), (ads[0], DAY - timedelta(days=1), "99")]:
            db_session.add(UnifiedInsight(
                id=uuid4(), platform_account_id=db_account.id, unified_campaign_id=ad.unified_campaign_id,
                unified_ad_group_id=ad.unified_ad_group_id, unified_ad_id=ad.id, date=day,
                spend=Decimal(spend), impressions=100, clicks=5, reach=80, results=1, conversions=0,
            ))
        await db_session.commit()

        totals = await sql_store.sum_insights([db_account.id], DAY)

        assert totals["spend"] == Decimal("15.5")
        assert totals["impressions"] == 200
        assert totals["ads_count"] == 2
        assert (await sql_store.sum_insights([], DAY))["ads_count"] == 0


# =============================================================================
# SERVICES ON A REAL SESSION
# =============================================================================

def _daily_for_every_ad(query):
    if query.breakdowns is not None:
        return []
    return [daily_record(ad_id, DAY) for ad_id in query.ad_ids]


class TestInsightsRollbackPath:
    """
    WHAT: A failed chunk rolls back and the pass continues with the next chunk.
    WHY: Rollback expires every ORM row in the session; later chunks must not
         read attributes of the expired account.
    """

    async def test_failed_fetch_rolls_back_and_later_chunks_are_written(
        self, db_session, db_account, sql_store, adapter, registry
    ):
        await _seed_ads(db_session, db_account.id, 120)

        def _first_chunk_fails(query):
            if "ad0000" in query.ad_ids:
                raise RuntimeError("graph timeout")
            return _daily_for_every_ad(query)

        adapter.insights_fn = _first_chunk_fails
        service = InsightsSyncService(
            sql_store, registry, _FakeCredentials({db_account.id: "token-123"}), clock=lambda: NOW,
        )

        result = await service.sync_insights(db_account.id, DAY, DAY, skip_breakdowns=True)

        assert result.failed_chunks == 1
        assert result.rows_written == 70
        assert len(adapter.insight_queries()) == 3
        assert sql_store.rollbacks == 1
        assert await _count(db_session, UnifiedInsight) == 70

    async def test_failed_write_is_undone_by_the_rollback(
        self, db_session, db_account, adapter, registry
    ):
        await _seed_ads(db_session, db_account.id, 120)
        store = _SqliteSyncStore(db_session, poisoned_upserts={2})
        adapter.insights_fn = _daily_for_every_ad
        service = InsightsSyncService(
            store, registry, _FakeCredentials({db_account.id: "token-123"}), clock=lambda: NOW,
        )

        result = await service.sync_insights(db_account.id, DAY, DAY, skip_breakdowns=True)

        assert result.failed_chunks == 1
        assert result.rows_written == 70
        assert await _count(db_session, UnifiedInsight) == 70

    async def test_rerun_overwrites_instead_of_duplicating(self, db_session, db_account, sql_store, adapter, registry):
        await _seed_ads(db_session, db_account.id, 3)
        adapter.insights_fn = _daily_for_every_ad
        service = InsightsSyncService(
            sql_store, registry, _FakeCredentials({db_account.id: "token-123"}), clock=lambda: NOW,
        )

        await service.sync_insights(db_account.id, DAY, DAY, skip_breakdowns=True)
        await service.sync_insights(db_account.id, DAY, DAY, skip_breakdowns=True)

        assert await _count(db_session, UnifiedInsight) == 3


class TestRollupOnRealSession:
    """
    WHAT: aggregate_all keeps going after a branch fails and rolls back.
    WHY: Branch rows loaded before the rollback are expired afterwards.
    """

    async def test_branch_failure_does_not_stop_the_next_branch(self, db_session, db_account):
        broken = Branch(id=uuid4(), name="A Broken")
        healthy = Branch(id=uuid4(), name="B Healthy")
        db_session.add_all([broken, healthy])
        db_account.branch_id = healthy.id
        await db_session.commit()
        ads = await _seed_ads(db_session, db_account.id, 1)
        db_session.add(UnifiedInsight(
            id=uuid4(), platform_account_id=db_account.id, unified_campaign_id=ads[0].unified_campaign_id,
            unified_ad_group_id=ads[0].unified_ad_group_id, unified_ad_id=ads[0].id, date=DAY,
            spend=Decimal("12.50"), impressions=100, clicks=5, reach=80, results=2, conversions=1,
        ))
        await db_session.commit()

        store = _SqliteSyncStore(db_session)
        broken_id, healthy_id = broken.id, healthy.id
        real_get_branch_accounts = store.get_branch_accounts

        async def _get_branch_accounts(branch_id):
            if branch_id == broken_id:
                raise RuntimeError("lock timeout")
            return await real_get_branch_accounts(branch_id)

        store.get_branch_accounts = _get_branch_accounts

        summary = await RollupAggregator(store, clock=lambda: NOW).aggregate_all(DAY)

        assert summary["branches"] == 1
        assert len(summary["errors"]) == 1
        assert store.rollbacks == 1
        stats = (await db_session.execute(
            select(BranchDailyStat.branch_id, BranchDailyStat.platform, BranchDailyStat.spend)
        )).all()
        assert [(branch_id, platform) for branch_id, platform, _ in stats] == [(healthy_id, "facebook")]
        assert stats[0][2] == Decimal("12.50")

    async def test_branchless_account_is_assigned_by_keyword(self, db_session, db_account):
        hanoi = Branch(id=uuid4(), name="Hanoi", auto_match_keywords=["hanoi"])
        db_session.add_all([Branch(id=uuid4(), name="Saigon", auto_match_keywords=["saigon"]), hanoi])
        await db_session.commit()

        branch_id = await RollupAggregator(_SqliteSyncStore(db_session)).resolve_branch_for_account(db_account.id)

        assert branch_id == hanoi.id
        stored = (await db_session.execute(
            select(PlatformAccount.branch_id).where(PlatformAccount.id == db_account.id)
        )).scalar_one()
        assert stored == hanoi.id
