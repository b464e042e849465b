"""Sync Engine - composition root.

WHAT:
    Owns the long-lived pieces (one RateLimiter, the PlatformRegistry with its
    HTTP clients, the session factory) and exposes one entry point per unit of
    work. Each entry point opens its own session, builds the services on a
    SyncStore, and closes the session when done.

WHY:
    The rate limiter state must be shared by every adapter call in the
    process, while sessions must not be shared between concurrently running
    accounts. Workers, the dispatcher and tests all go through this class.

USAGE:
    engine = SyncEngine.from_settings()
    await engine.sync_entities(account_id)
    await engine.sync_insights(account_id, date(2024, 3, 1), date(2024, 3, 2))
    await engine.close()
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.database import get_async_engine, get_async_session, get_session_factory
from adsync.deps import Settings, get_settings
from adsync.models import Granularity, PlatformAccount
from adsync.services.credentials import CredentialProvider, DatabaseCredentialProvider
from adsync.services.entity_sync_service import EntitySyncResult, EntitySyncService
from adsync.services.insights_sync_service import InsightsSyncResult, InsightsSyncService
from adsync.services.notifier import LoggingNotifier, Notifier
from adsync.services.platforms import FacebookAdapter, PlatformRegistry
from adsync.services.rate_limiter import RateLimiter
from adsync.services.rollup_service import RollupAggregator
from adsync.services.sync_store import SyncStore

logger = logging.getLogger(__name__)

CredentialsFactory = Callable[[AsyncSession], CredentialProvider]
StoreFactory = Callable[[AsyncSession], SyncStore]


class SyncEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: PlatformRegistry,
        limiter: RateLimiter,
        settings: Optional[Settings] = None,
        notifier: Optional[Notifier] = None,
        credentials_factory: CredentialsFactory = DatabaseCredentialProvider,
        store_factory: StoreFactory = SyncStore,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.limiter = limiter
        self.settings = settings or get_settings()
        self.notifier = notifier or LoggingNotifier()
        self.credentials_factory = credentials_factory
        self.store_factory = store_factory
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, notifier: Optional[Notifier] = None) -> "SyncEngine":
        """Wire the production engine: Postgres sessions + Facebook adapter."""
        settings = settings or get_settings()
        limiter = RateLimiter(
            threshold=settings.RATE_LIMIT_THRESHOLD,
            pause_seconds=settings.RATE_LIMIT_PAUSE_SECONDS,
        )
        registry = PlatformRegistry([
            FacebookAdapter(
                limiter,
                base_url=settings.FACEBOOK_GRAPH_URL,
                page_limit=settings.FACEBOOK_PAGE_LIMIT,
                creative_chunk_size=settings.CREATIVE_CHUNK_SIZE,
                timeout=settings.FACEBOOK_REQUEST_TIMEOUT,
            ),
        ])
        session_factory = get_session_factory(get_async_engine(settings.DATABASE_URL))
        logger.info("[ENGINE] Built sync engine for platforms: %s", ", ".join(registry.platform_codes))
        return cls(session_factory, registry, limiter, settings=settings, notifier=notifier)

    async def close(self) -> None:
        await self.registry.close()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SyncStore]:
        """A fresh session wrapped in a SyncStore; closed on exit."""
        async with get_async_session(self.session_factory) as session:
            yield self.store_factory(session)

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def sync_entities(
        self,
        account_id: UUID,
        force_full_sync: bool = False,
        skip_synced_at_update: bool = False,
        tiers: Optional[Sequence[str]] = None,
    ) -> EntitySyncResult:
        async with self.unit_of_work() as store:
            service = EntitySyncService(
                store,
                self.registry,
                self.credentials_factory(store.session),
                skew_seconds=self.settings.INCREMENTAL_SKEW_SECONDS,
                clock=self.clock,
            )
            return await service.sync_account(
                account_id,
                force_full_sync=force_full_sync,
                skip_synced_at_update=skip_synced_at_update,
                tiers=tiers,
            )

    async def sync_insights(
        self,
        account_id: UUID,
        date_start: date,
        date_end: date,
        granularity: Granularity = Granularity.DAILY,
        ad_external_ids: Optional[Sequence[str]] = None,
        skip_breakdowns: bool = False,
    ) -> InsightsSyncResult:
        async with self.unit_of_work() as store:
            service = InsightsSyncService(
                store,
                self.registry,
                self.credentials_factory(store.session),
                rollup_trigger=self.rollup_for_account,
                chunk_size=self.settings.INSIGHTS_AD_CHUNK_SIZE,
                clock=self.clock,
            )
            return await service.sync_insights(
                account_id,
                date_start,
                date_end,
                granularity=granularity,
                ad_external_ids=ad_external_ids,
                skip_breakdowns=skip_breakdowns,
            )

    async def rollup_for_account(self, account_id: UUID, date_start: date, date_end: date) -> int:
        """Background rollup trigger target; runs on its own session."""
        async with self.unit_of_work() as store:
            return await RollupAggregator(store, clock=self.clock).aggregate_for_account(
                account_id, date_start, date_end,
            )

    async def rebuild_rollups(self, branch_id: UUID, date_start: date, date_end: date) -> int:
        async with self.unit_of_work() as store:
            return await RollupAggregator(store, clock=self.clock).aggregate_range(branch_id, date_start, date_end)

    async def aggregate_all(self, day: date) -> Dict[str, Any]:
        async with self.unit_of_work() as store:
            return await RollupAggregator(store, clock=self.clock).aggregate_all(day)

    async def cleanup_hourly_insights(self, today: Optional[date] = None) -> int:
        async with self.unit_of_work() as store:
            service = InsightsSyncService(
                store, self.registry, self.credentials_factory(store.session), clock=self.clock,
            )
            return await service.cleanup_hourly_insights(today)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_account(self, account_id: UUID) -> Optional[PlatformAccount]:
        async with self.unit_of_work() as store:
            return await store.get_account(account_id)

    async def list_accounts(self, platform: Optional[str] = None) -> List[PlatformAccount]:
        async with self.unit_of_work() as store:
            return await store.list_accounts(platform)
