"""In-memory doubles for sync service tests.

_FakeStore mirrors the SyncStore method surface over plain dicts, so the
entity / insights / rollup services run end to end without Postgres.
_FakeAdapter serves canned platform records and records every call.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

from adsync.models import UnifiedStatus
from adsync.services.mappers import AdRef
from adsync.services.platforms.base import InsightsQuery, PlatformAdapter, TokenInfo
from adsync.utils.dates import parse_platform_datetime, to_unix_seconds

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_account(**overrides) -> SimpleNamespace:
    values = dict(
        id=uuid4(),
        platform="facebook",
        external_id="act_1001",
        name="Clinic Hanoi 01",
        currency="USD",
        timezone="UTC",
        branch_id=None,
        synced_at=None,
        created_at=NOW,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def make_branch(name: str, keywords: Sequence[str] = ()) -> SimpleNamespace:
    return SimpleNamespace(id=uuid4(), name=name, code=None, auto_match_keywords=list(keywords))


class _FakeStore:
    """Dict-backed SyncStore. Tables are {unique key tuple: row dict}."""

    def __init__(self, accounts=(), branches=()):
        self.session = None
        self.accounts: Dict[UUID, SimpleNamespace] = {a.id: a for a in accounts}
        self.branches: List[SimpleNamespace] = list(branches)
        self.tables: Dict[str, Dict[tuple, Dict[str, Any]]] = {}
        self.commits = 0
        self.rollbacks = 0
        self.upsert_calls: List[tuple] = []
        self.deleted_breakdowns: List[tuple] = []
        self.fail_upsert_tables: set = set()

    # -- helpers for tests ---------------------------------------------------

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return list(self.tables.get(table, {}).values())

    def by_external_id(self, table: str, external_id: str) -> Dict[str, Any]:
        return next(r for r in self.rows(table) if r["external_id"] == external_id)

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return {name: [dict(r) for r in rows.values()] for name, rows in self.tables.items()}

    # -- transactions --------------------------------------------------------

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    # -- writes --------------------------------------------------------------

    async def bulk_upsert(self, table, rows, unique_columns, update_columns):
        self.upsert_calls.append((table, len(rows)))
        if table in self.fail_upsert_tables:
            raise RuntimeError(f"write to {table} failed")
        if not rows:
            return 0

        keys = [tuple(row[c] for c in unique_columns) for row in rows]
        if len(set(keys)) != len(keys):
            raise ValueError("ON CONFLICT DO UPDATE command cannot affect row a second time")

        stored = self.tables.setdefault(table, {})
        for key, row in zip(keys, rows):
            existing = stored.get(key)
            if existing is None:
                stored[key] = dict(row)
            else:
                for column in update_columns:
                    existing[column] = row[column]
        return len(rows)

    # -- accounts & branches -------------------------------------------------

    async def get_account(self, account_id):
        return self.accounts.get(account_id)

    async def list_accounts(self, platform=None):
        return [a for a in self.accounts.values() if platform is None or a.platform == platform]

    async def update_account_synced_at(self, account_id, synced_at):
        self.accounts[account_id].synced_at = synced_at

    async def set_account_branch(self, account_id, branch_id):
        self.accounts[account_id].branch_id = branch_id

    async def list_branches(self):
        return sorted(self.branches, key=lambda b: b.name)

    async def get_branch_accounts(self, branch_id):
        return [a for a in self.accounts.values() if a.branch_id == branch_id]

    # -- entity hierarchy ----------------------------------------------------

    def _account_rows(self, table, account_id):
        return [r for r in self.rows(table) if r["platform_account_id"] == account_id]

    async def count_entities(self, table, account_id):
        return len(self._account_rows(table, account_id))

    async def load_id_map(self, table, account_id):
        return {r["external_id"]: r["id"] for r in self._account_rows(table, account_id)}

    async def load_ad_group_refs(self, account_id):
        return {
            r["external_id"]: (r["id"], r["unified_campaign_id"])
            for r in self._account_rows("unified_ad_groups", account_id)
        }

    async def tombstone_missing(self, table, account_id, keep_external_ids, now):
        keep = set(keep_external_ids)
        deleted = 0
        for row in self._account_rows(table, account_id):
            if row["deleted_at"] is None and row["external_id"] not in keep:
                row.update(deleted_at=now, synced_at=now)
                if "status" in row:
                    row["status"] = UnifiedStatus.DELETED
                deleted += 1
        return deleted

    @staticmethod
    def _pause(row):
        row["status"] = UnifiedStatus.PAUSED
        row["effective_status"] = "PAUSED"

    @staticmethod
    def _live(row):
        return row["status"] == UnifiedStatus.ACTIVE and row["deleted_at"] is None

    async def demote_ended_campaigns(self, account_id, now):
        demoted = 0
        for row in self._account_rows("unified_campaigns", account_id):
            if self._live(row) and row["end_time"] is not None and row["end_time"] < now:
                self._pause(row)
                demoted += 1
        return demoted

    async def demote_orphaned_ad_groups(self, account_id, now):
        live_campaigns = {
            r["id"] for r in self._account_rows("unified_campaigns", account_id)
            if self._live(r) and (r["end_time"] is None or r["end_time"] >= now)
        }
        demoted = 0
        for row in self._account_rows("unified_ad_groups", account_id):
            ended = row["end_time"] is not None and row["end_time"] < now
            if self._live(row) and (row["unified_campaign_id"] not in live_campaigns or ended):
                self._pause(row)
                demoted += 1
        return demoted

    async def demote_orphaned_ads(self, account_id, now):
        live_ad_groups = {r["id"] for r in self._account_rows("unified_ad_groups", account_id) if self._live(r)}
        demoted = 0
        for row in self._account_rows("unified_ads", account_id):
            if self._live(row) and row["unified_ad_group_id"] not in live_ad_groups:
                self._pause(row)
                demoted += 1
        return demoted

    # -- insights ------------------------------------------------------------

    async def list_ads_for_insights(self, account_id, effective_statuses=None, external_ids=None):
        ads = {}
        for row in sorted(self._account_rows("unified_ads", account_id), key=lambda r: r["external_id"]):
            if row["deleted_at"] is not None:
                continue
            if effective_statuses is not None and row["effective_status"] not in effective_statuses:
                continue
            if external_ids is not None and row["external_id"] not in external_ids:
                continue
            ads[row["external_id"]] = AdRef(row["id"], row["unified_ad_group_id"], row["unified_campaign_id"])
        return ads

    async def load_hourly_rows(self, account_id, ad_ids, slots):
        wanted = set(slots)
        ad_ids = set(ad_ids)
        return {
            (r["unified_ad_id"], r["date"], r["hour"]): {
                k: r[k] for k in ("spend", "impressions", "clicks", "results", "conversions")
            }
            for r in self._account_rows("unified_hourly_insights", account_id)
            if r["unified_ad_id"] in ad_ids and (r["date"], r["hour"]) in wanted
        }

    async def load_insight_ids(self, account_id, ad_ids, dates):
        ad_ids, dates = set(ad_ids), set(dates)
        return {
            (r["unified_ad_id"], r["date"]): r["id"]
            for r in self._account_rows("unified_insights", account_id)
            if r["unified_ad_id"] in ad_ids and r["date"] in dates
        }

    async def delete_breakdowns(self, table, insight_ids):
        ids = set(insight_ids)
        stored = self.tables.get(table, {})
        doomed = [key for key, row in stored.items() if row["unified_insight_id"] in ids]
        for key in doomed:
            del stored[key]
        self.deleted_breakdowns.append((table, len(doomed)))
        return len(doomed)

    async def delete_hourly_before(self, cutoff, account_id=None):
        stored = self.tables.get("unified_hourly_insights", {})
        doomed = [
            key for key, row in stored.items()
            if row["date"] < cutoff and (account_id is None or row["platform_account_id"] == account_id)
        ]
        for key in doomed:
            del stored[key]
        return len(doomed)

    async def sum_insights(self, account_ids, day):
        rows = [
            r for r in self.rows("unified_insights")
            if r["platform_account_id"] in set(account_ids) and r["date"] == day
        ]
        return {
            "spend": sum((Decimal(str(r["spend"])) for r in rows), Decimal("0")),
            "impressions": sum(r["impressions"] for r in rows),
            "clicks": sum(r["clicks"] for r in rows),
            "reach": sum(r["reach"] for r in rows),
            "results": sum(r["results"] for r in rows),
            "conversions": sum(r["conversions"] for r in rows),
            "ads_count": len({r["unified_ad_id"] for r in rows}),
        }


class _FakeCredentials:
    def __init__(self, tokens: Optional[Dict[UUID, str]] = None):
        self.tokens = tokens or {}

    async def get_active_credential(self, account_id):
        return self.tokens.get(account_id)


def _updated_after(record, since):
    if since is None or not record.get("updated_time"):
        return True
    return to_unix_seconds(parse_platform_datetime(record["updated_time"])) > since


class _FakeAdapter(PlatformAdapter):
    """Serves `campaigns` / `ad_groups` / `ads` / `creatives` lists.

    `since` is honoured through each record's `updated_time`, like the Graph
    filter. Insights come from `insights_fn(query)`. `fail` maps a method
    name to the exception it raises.
    """

    platform_code = "facebook"

    def __init__(
        self,
        campaigns=(),
        ad_groups=(),
        ads=(),
        creatives=(),
        insights_fn: Optional[Callable[[InsightsQuery], List[Dict[str, Any]]]] = None,
    ):
        self.campaigns = list(campaigns)
        self.ad_groups = list(ad_groups)
        self.ads = list(ads)
        self.creatives = list(creatives)
        self.insights_fn = insights_fn or (lambda query: [])
        self.fail: Dict[str, BaseException] = {}
        self.calls: List[tuple] = []

    def _check(self, name):
        if name in self.fail:
            raise self.fail[name]

    async def fetch_campaigns(self, account_external_id, token, since=None):
        self.calls.append(("campaigns", since))
        self._check("fetch_campaigns")
        return [dict(r) for r in self.campaigns if _updated_after(r, since)]

    async def fetch_ad_groups(self, account_external_id, token, since=None, campaign_ids=None):
        self.calls.append(("ad_groups", since))
        self._check("fetch_ad_groups")
        return [dict(r) for r in self.ad_groups if _updated_after(r, since)]

    async def fetch_ads(self, account_external_id, token, since=None, campaign_ids=None, ad_group_ids=None):
        self.calls.append(("ads", since))
        self._check("fetch_ads")
        return [dict(r) for r in self.ads if _updated_after(r, since)]

    async def fetch_ad_creatives(self, account_external_id, token, creative_ids=None):
        self.calls.append(("creatives", tuple(creative_ids) if creative_ids else None))
        self._check("fetch_ad_creatives")
        if creative_ids is None:
            return [dict(r) for r in self.creatives]
        return [dict(r) for r in self.creatives if r["id"] in creative_ids]

    async def fetch_insights(self, query):
        self.calls.append(("insights", query))
        self._check("fetch_insights")
        return self.insights_fn(query)

    async def validate_token(self, token):
        return TokenInfo(external_id="1", name="test")

    def insight_queries(self, breakdowns=False) -> List[InsightsQuery]:
        return [
            q for name, q in self.calls
            if name == "insights" and (q.breakdowns is not None) == breakdowns
        ]


def campaign(external_id, status="ACTIVE", stop_time=None, updated_time="2024-01-01T00:00:00+0000", **extra):
    return dict(
        id=external_id, name=f"Campaign {external_id}", status=status, effective_status=status,
        stop_time=stop_time, updated_time=updated_time, **extra,
    )


def ad_group(external_id, campaign_id, status="ACTIVE", updated_time="2024-01-01T00:00:00+0000", **extra):
    return dict(
        id=external_id, campaign_id=campaign_id, name=f"Ad set {external_id}", status=status,
        effective_status=status, updated_time=updated_time, **extra,
    )


def ad(external_id, adset_id, creative_id=None, status="ACTIVE", updated_time="2024-01-01T00:00:00+0000"):
    record = dict(
        id=external_id, adset_id=adset_id, name=f"Ad {external_id}", status=status,
        effective_status=status, updated_time=updated_time,
    )
    if creative_id:
        record["creative"] = {"id": creative_id}
    return record


def creative(external_id, **extra):
    return dict(id=external_id, name=f"Creative {external_id}", thumbnail_url=f"https://cdn/{external_id}.jpg", **extra)


def seed_ads(store: _FakeStore, account, count: int, effective_status="ACTIVE", prefix="ad") -> List[str]:
    """Store `count` ads (one campaign, one ad group) and return their external ids."""
    campaign_id, ad_group_id = uuid4(), uuid4()
    stored = store.tables.setdefault("unified_ads", {})
    external_ids = []
    for i in range(count):
        external_id = f"{prefix}{i:04d}"
        stored[(account.id, external_id)] = {
            "id": uuid4(),
            "platform_account_id": account.id,
            "unified_campaign_id": campaign_id,
            "unified_ad_group_id": ad_group_id,
            "external_id": external_id,
            "status": UnifiedStatus.ACTIVE if effective_status == "ACTIVE" else UnifiedStatus.PAUSED,
            "effective_status": effective_status,
            "deleted_at": None,
        }
        external_ids.append(external_id)
    return external_ids


def daily_record(ad_id: str, day: date, spend="10.00", impressions=100, clicks=5, reach=80, **extra):
    return dict(
        ad_id=ad_id, date_start=day.isoformat(), date_stop=day.isoformat(),
        spend=spend, impressions=str(impressions), clicks=str(clicks), reach=str(reach), **extra,
    )


def hourly_record(ad_id: str, day: date, hour: int, spend="10.00", impressions=100, clicks=5):
    return dict(
        ad_id=ad_id, date_start=day.isoformat(), date_stop=day.isoformat(),
        hourly_stats_aggregated_by_advertiser_time_zone=f"{hour:02d}:00:00 - {hour:02d}:59:59",
        spend=spend, impressions=str(impressions), clicks=str(clicks),
    )
