"""Entity Sync Service - campaigns, ad groups, creatives and ads for one account.

WHAT:
    Reconciles the unified entity tables with the platform for one account:

        ┌───────────┐   ┌───────────┐   ┌───────────┐   ┌──────┐
        │ Campaigns │──▶│ Ad groups │──▶│ Creatives │──▶│ Ads  │
        └───────────┘   └───────────┘   └───────────┘   └──────┘
              │  externalId -> id maps refreshed after each tier  │
              └───────────────────────────────────────────────────┘
                                    │
                         cascading status demotion

WHY:
    - Incremental by default: only entities updated since
      `account.synced_at - 1h` are fetched (clock-skew buffer). A tier runs
      as a full sync when forced or when the account has no rows for it yet.
    - Full syncs tombstone (soft-delete) entities the platform no longer
      returns; incremental syncs never delete.
    - Parents are resolved through externalId -> internalId maps built from
      the store, not foreign keys. Children whose parent is unknown are
      skipped and logged, never failed.
    - Creatives are upserted before ads so each ad row links to an existing
      creative id at write time.
    - After every pass (incremental too) ACTIVE children of non-live parents
      are demoted to PAUSED, because insights selection trusts status.

FAILURE POLICY:
    Tiers commit independently. When a tier fails, earlier tiers stay
    committed, demotion still runs, and the error is re-raised so the caller
    can retry on its next scheduled pass.

REFERENCES:
    - adsync/services/sync_store.py (reads, tombstones, demotions)
    - adsync/services/mappers.py (raw -> row)
    - adsync/services/platforms/base.py (fetch contract)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from adsync.exceptions import AccountNotFoundError, MissingCredentialError
from adsync.models import PlatformAccount
from adsync.services import mappers
from adsync.services.credentials import CredentialProvider
from adsync.services.platforms.base import PlatformAdapter, RawRecord
from adsync.services.platforms.registry import PlatformRegistry
from adsync.services.sync_store import SyncStore
from adsync.telemetry import capture_exception
from adsync.utils.dates import to_unix_seconds

logger = logging.getLogger(__name__)

DEFAULT_SKEW_SECONDS = 3600

CAMPAIGNS = "campaigns"
AD_GROUPS = "ad_groups"
CREATIVES = "creatives"
ADS = "ads"
TIER_ORDER = (CAMPAIGNS, AD_GROUPS, CREATIVES, ADS)

TIER_TABLES = {
    CAMPAIGNS: "unified_campaigns",
    AD_GROUPS: "unified_ad_groups",
    CREATIVES: "unified_ad_creatives",
    ADS: "unified_ads",
}

ENTITY_UNIQUE = ["platform_account_id", "external_id"]
CAMPAIGN_UPDATE = [
    "name", "status", "effective_status", "objective", "daily_budget", "lifetime_budget",
    "start_time", "end_time", "platform_data", "synced_at", "deleted_at",
]
AD_GROUP_UPDATE = [
    "unified_campaign_id", "name", "status", "effective_status", "daily_budget", "lifetime_budget",
    "start_time", "end_time", "targeting", "platform_data", "synced_at", "deleted_at",
]
CREATIVE_UPDATE = ["name", "status", "image_url", "thumbnail_url", "platform_data", "synced_at", "deleted_at"]
AD_UPDATE = [
    "unified_campaign_id", "unified_ad_group_id", "unified_ad_creative_id", "creative_external_id",
    "name", "status", "effective_status", "platform_data", "synced_at", "deleted_at",
]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class TierResult:
    fetched: int = 0
    upserted: int = 0
    skipped: int = 0
    deleted: int = 0
    full_sync: bool = False


@dataclass
class EntitySyncResult:
    """Outcome of one entity sync pass."""
    account_id: UUID
    tiers: Dict[str, TierResult] = field(default_factory=dict)
    demoted: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    synced_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def count(self) -> int:
        return sum(t.upserted for t in self.tiers.values())

    @property
    def deleted(self) -> int:
        return sum(t.deleted for t in self.tiers.values())

    @property
    def skipped(self) -> int:
        return sum(t.skipped for t in self.tiers.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": str(self.account_id),
            "count": self.count,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "demoted": dict(self.demoted),
            "tiers": {name: vars(t).copy() for name, t in self.tiers.items()},
            "errors": list(self.errors),
        }

    def __repr__(self):
        return (
            f"EntitySyncResult(count={self.count}, deleted={self.deleted}, "
            f"skipped={self.skipped}, errors={len(self.errors)})"
        )


@dataclass
class _Pass:
    account: PlatformAccount
    token: str
    adapter: PlatformAdapter
    since: Optional[int]
    force_full_sync: bool
    now: datetime


def _dedupe(records: Sequence[RawRecord]) -> List[RawRecord]:
    """Last occurrence of each external id wins (pages can overlap)."""
    by_id: Dict[str, RawRecord] = {}
    for record in records:
        if record.get("id") is not None:
            by_id[str(record["id"])] = record
    return list(by_id.values())


# =============================================================================
# SERVICE
# =============================================================================

class EntitySyncService:
    """Entity sync for one unit of work (one store/session)."""

    def __init__(
        self,
        store: SyncStore,
        registry: PlatformRegistry,
        credentials: CredentialProvider,
        skew_seconds: int = DEFAULT_SKEW_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.registry = registry
        self.credentials = credentials
        self.skew_seconds = skew_seconds
        self.clock = clock

    async def sync_account(
        self,
        account_id: UUID,
        force_full_sync: bool = False,
        skip_synced_at_update: bool = False,
        tiers: Optional[Sequence[str]] = None,
    ) -> EntitySyncResult:
        """Sync the entity hierarchy of one account.

        Args:
            account_id: Internal platform account id
            force_full_sync: Fetch everything and tombstone what is missing
            skip_synced_at_update: Leave `account.synced_at` untouched
            tiers: Subset of TIER_ORDER to run (always run in canonical order)

        Raises:
            AccountNotFoundError / MissingCredentialError before any fetch
            The first tier failure, after demotion has run
        """
        selected = [t for t in TIER_ORDER if tiers is None or t in tiers]
        sync_pass = await self._begin(account_id, force_full_sync)
        result = EntitySyncResult(account_id=account_id)

        logger.info(
            "[ENTITY_SYNC] Account %s (%s): tiers=%s force_full=%s since=%s",
            account_id, sync_pass.account.external_id, ",".join(selected),
            force_full_sync, sync_pass.since,
        )

        handlers = {
            CAMPAIGNS: self._sync_campaigns,
            AD_GROUPS: self._sync_ad_groups,
            CREATIVES: self._sync_creatives,
            ADS: self._sync_ads,
        }

        failure: Optional[BaseException] = None
        for tier in selected:
            try:
                result.tiers[tier] = await handlers[tier](sync_pass)
                await self.store.commit()
            except Exception as e:
                await self.store.rollback()
                logger.error("[ENTITY_SYNC] Tier %s failed for account %s: %s", tier, account_id, e)
                capture_exception(e, extra={
                    "operation": "entity_sync",
                    "tier": tier,
                    "account_id": str(account_id),
                })
                result.errors.append(f"{tier}: {e}")
                failure = e
                break

        result.demoted = await self.propagate_staleness(account_id, sync_pass.now)
        await self.store.commit()

        if failure is not None:
            raise failure

        if not skip_synced_at_update:
            await self.store.update_account_synced_at(account_id, sync_pass.now)
            await self.store.commit()
        result.synced_at = sync_pass.now

        logger.info(
            "[ENTITY_SYNC] Account %s done: upserted=%d deleted=%d skipped=%d demoted=%s",
            account_id, result.count, result.deleted, result.skipped, result.demoted,
        )
        return result

    async def propagate_staleness(self, account_id: UUID, now: Optional[datetime] = None) -> Dict[str, int]:
        """Demote ACTIVE entities whose parent is no longer live (top-down)."""
        now = now or self.clock()
        demoted = {
            CAMPAIGNS: await self.store.demote_ended_campaigns(account_id, now),
            AD_GROUPS: await self.store.demote_orphaned_ad_groups(account_id, now),
            ADS: await self.store.demote_orphaned_ads(account_id, now),
        }
        if any(demoted.values()):
            logger.info("[ENTITY_SYNC] Demoted to PAUSED for account %s: %s", account_id, demoted)
        return demoted

    # -------------------------------------------------------------------------
    # pass setup
    # -------------------------------------------------------------------------

    async def _begin(self, account_id: UUID, force_full_sync: bool) -> _Pass:
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        token = await self.credentials.get_active_credential(account_id)
        if not token:
            raise MissingCredentialError(account_id)

        adapter = self.registry.get_adapter(account.platform)
        since = None
        if account.synced_at is not None:
            since = to_unix_seconds(account.synced_at - timedelta(seconds=self.skew_seconds))

        return _Pass(
            account=account,
            token=token,
            adapter=adapter,
            since=since,
            force_full_sync=force_full_sync,
            now=self.clock(),
        )

    async def _is_full(self, sync_pass: _Pass, tier: str) -> bool:
        if sync_pass.force_full_sync or sync_pass.since is None:
            return True
        return await self.store.count_entities(TIER_TABLES[tier], sync_pass.account.id) == 0

    async def _finish_tier(
        self,
        sync_pass: _Pass,
        tier: str,
        tier_result: TierResult,
        rows: List[Dict[str, Any]],
        update_columns: List[str],
        fetched_ids: Sequence[str],
    ) -> TierResult:
        table = TIER_TABLES[tier]
        tier_result.upserted = await self.store.bulk_upsert(table, rows, ENTITY_UNIQUE, update_columns)
        if tier_result.full_sync:
            tier_result.deleted = await self.store.tombstone_missing(
                table, sync_pass.account.id, fetched_ids, sync_pass.now
            )
        logger.info(
            "[ENTITY_SYNC] %s for %s: fetched=%d upserted=%d skipped=%d deleted=%d full=%s",
            tier, sync_pass.account.external_id, tier_result.fetched, tier_result.upserted,
            tier_result.skipped, tier_result.deleted, tier_result.full_sync,
        )
        return tier_result

    # -------------------------------------------------------------------------
    # tiers
    # -------------------------------------------------------------------------

    async def _sync_campaigns(self, sync_pass: _Pass) -> TierResult:
        account = sync_pass.account
        tier_result = TierResult(full_sync=await self._is_full(sync_pass, CAMPAIGNS))
        raw_campaigns = _dedupe(await sync_pass.adapter.fetch_campaigns(
            account.external_id, sync_pass.token, since=None if tier_result.full_sync else sync_pass.since,
        ))
        tier_result.fetched = len(raw_campaigns)

        rows = []
        for raw in raw_campaigns:
            try:
                rows.append(mappers.map_campaign(raw, account.id, account.currency, sync_pass.now))
            except Exception as e:
                tier_result.skipped += 1
                logger.debug("[ENTITY_SYNC] Skipping unmappable campaign %s: %s", raw.get("id"), e)

        return await self._finish_tier(
            sync_pass, CAMPAIGNS, tier_result, rows, CAMPAIGN_UPDATE, [str(r["id"]) for r in raw_campaigns],
        )

    async def _sync_ad_groups(self, sync_pass: _Pass) -> TierResult:
        account = sync_pass.account
        tier_result = TierResult(full_sync=await self._is_full(sync_pass, AD_GROUPS))
        raw_ad_groups = _dedupe(await sync_pass.adapter.fetch_ad_groups(
            account.external_id, sync_pass.token, since=None if tier_result.full_sync else sync_pass.since,
        ))
        tier_result.fetched = len(raw_ad_groups)

        campaign_ids = await self.store.load_id_map(TIER_TABLES[CAMPAIGNS], account.id)
        rows = []
        for raw in raw_ad_groups:
            campaign_id = campaign_ids.get(str(raw.get("campaign_id")))
            if campaign_id is None:
                tier_result.skipped += 1
                logger.info(
                    "[ENTITY_SYNC] Skipping ad group %s: campaign %s not found",
                    raw.get("id"), raw.get("campaign_id"),
                )
                continue
            try:
                rows.append(mappers.map_ad_group(raw, account.id, campaign_id, account.currency, sync_pass.now))
            except Exception as e:
                tier_result.skipped += 1
                logger.debug("[ENTITY_SYNC] Skipping unmappable ad group %s: %s", raw.get("id"), e)

        return await self._finish_tier(
            sync_pass, AD_GROUPS, tier_result, rows, AD_GROUP_UPDATE, [str(r["id"]) for r in raw_ad_groups],
        )

    async def _sync_creatives(self, sync_pass: _Pass) -> TierResult:
        """Full pass: every account creative. Incremental: nothing up front.

        Creatives are immutable on the platform (an edit produces a new
        creative), so incremental passes only need the creatives that new or
        changed ads reference; `_sync_ads` fetches those by id.
        """
        tier_result = TierResult(full_sync=await self._is_full(sync_pass, CREATIVES))
        if not tier_result.full_sync:
            return tier_result

        account = sync_pass.account
        raw_creatives = _dedupe(await sync_pass.adapter.fetch_ad_creatives(account.external_id, sync_pass.token))
        tier_result.fetched = len(raw_creatives)
        rows = self._map_creatives(raw_creatives, sync_pass, tier_result)
        return await self._finish_tier(
            sync_pass, CREATIVES, tier_result, rows, CREATIVE_UPDATE, [str(r["id"]) for r in raw_creatives],
        )

    def _map_creatives(self, raw_creatives: Sequence[RawRecord], sync_pass: _Pass, tier_result: TierResult):
        rows = []
        for raw in raw_creatives:
            try:
                rows.append(mappers.map_creative(raw, sync_pass.account.id, sync_pass.now))
            except Exception as e:
                tier_result.skipped += 1
                logger.debug("[ENTITY_SYNC] Skipping unmappable creative %s: %s", raw.get("id"), e)
        return rows

    async def _sync_ads(self, sync_pass: _Pass) -> TierResult:
        account = sync_pass.account
        tier_result = TierResult(full_sync=await self._is_full(sync_pass, ADS))
        raw_ads = _dedupe(await sync_pass.adapter.fetch_ads(
            account.external_id, sync_pass.token, since=None if tier_result.full_sync else sync_pass.since,
        ))
        tier_result.fetched = len(raw_ads)

        creative_ids = await self._ensure_creatives(sync_pass, raw_ads)
        ad_group_refs = await self.store.load_ad_group_refs(account.id)

        rows = []
        for raw in raw_ads:
            ref: Optional[Tuple[UUID, UUID]] = ad_group_refs.get(str(raw.get("adset_id")))
            if ref is None:
                tier_result.skipped += 1
                logger.warning(
                    "[ENTITY_SYNC] Skipping ad %s: ad group %s not found",
                    raw.get("id"), raw.get("adset_id"),
                )
                continue
            ad_group_id, campaign_id = ref
            creative_id = creative_ids.get(mappers.creative_external_id(raw) or "")
            try:
                rows.append(mappers.map_ad(raw, account.id, campaign_id, ad_group_id, creative_id, sync_pass.now))
            except Exception as e:
                tier_result.skipped += 1
                logger.debug("[ENTITY_SYNC] Skipping unmappable ad %s: %s", raw.get("id"), e)

        return await self._finish_tier(
            sync_pass, ADS, tier_result, rows, AD_UPDATE, [str(r["id"]) for r in raw_ads],
        )

    async def _ensure_creatives(self, sync_pass: _Pass, raw_ads: Sequence[RawRecord]) -> Dict[str, UUID]:
        """Creative id map covering every creative the ads reference.

        Creatives not stored yet are fetched by id and upserted first, so the
        ad rows can carry the link in the same write.
        """
        account = sync_pass.account
        creative_ids = await self.store.load_id_map(TIER_TABLES[CREATIVES], account.id)
        referenced = {mappers.creative_external_id(raw) for raw in raw_ads} - {None}
        missing = sorted(c for c in referenced if c not in creative_ids)
        if not missing:
            return creative_ids

        raw_creatives = _dedupe(await sync_pass.adapter.fetch_ad_creatives(
            account.external_id, sync_pass.token, creative_ids=missing,
        ))
        rows = self._map_creatives(raw_creatives, sync_pass, TierResult())
        written = await self.store.bulk_upsert(TIER_TABLES[CREATIVES], rows, ENTITY_UNIQUE, CREATIVE_UPDATE)
        logger.info(
            "[ENTITY_SYNC] Linked %d/%d missing creatives for %s",
            written, len(missing), account.external_id,
        )
        return await self.store.load_id_map(TIER_TABLES[CREATIVES], account.id)
