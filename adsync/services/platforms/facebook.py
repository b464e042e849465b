"""Facebook Marketing API adapter.

WHAT:
    Async Graph API client (httpx) plus the PlatformAdapter implementation
    that maps engine fetch calls to Graph endpoints and fields.

WHY:
    - Every request passes through the shared RateLimiter: wait before the
      call, record the utilization the response headers report after it
    - Pagination (`paging.next`) is followed transparently
    - Graph error payloads are translated into the PlatformError family so
      the sync services can decide what is retryable

RATE LIMITS:
    Utilization is read from (first match wins):
    - x-fb-ads-insights-throttle: max(acc_id_util_pct, app_id_util_pct)
    - x-business-use-case-usage: max(call_count, total_cputime, total_time)
    - x-app-usage: max(call_count, total_cputime, total_time)
    Throttling error codes (4, 17, 32, 613, 80000-80014) pause the account at
    100% and are retried up to MAX_ATTEMPTS times.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/overview/rate-limiting
    - https://developers.facebook.com/docs/marketing-api/insights
    - adsync/services/rate_limiter.py
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import httpx

from adsync.exceptions import (
    PlatformAuthenticationError,
    PlatformError,
    PlatformPermissionError,
    PlatformRateLimitError,
    PlatformValidationError,
)
from adsync.models import BreakdownType, Granularity, PlatformCode
from adsync.services.platforms.base import InsightsQuery, PlatformAdapter, RawRecord, TokenInfo
from adsync.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_URL = "https://graph.facebook.com/v19.0"
MAX_ATTEMPTS = 3

CAMPAIGN_FIELDS = (
    "id,account_id,name,objective,status,effective_status,daily_budget,lifetime_budget,"
    "start_time,stop_time,buying_type,bid_strategy,issues_info"
)
AD_GROUP_FIELDS = (
    "id,campaign_id,name,status,effective_status,daily_budget,lifetime_budget,"
    "start_time,end_time,targeting,bid_amount,billing_event,optimization_goal"
)
AD_FIELDS = "id,adset_id,campaign_id,name,status,effective_status,creative{id},created_time,updated_time"
CREATIVE_FIELDS = "id,name,status,thumbnail_url,image_url,object_story_spec,asset_feed_spec"
INSIGHT_FIELDS = [
    "ad_id", "adset_id", "campaign_id", "date_start", "date_stop",
    "spend", "impressions", "clicks", "reach", "actions", "action_values",
    "cpc", "cpm", "ctr",
]
AD_ACCOUNT_FIELDS = "id,name,account_status,currency,timezone_name,business_id,business_name"

HOURLY_BREAKDOWN = "hourly_stats_aggregated_by_advertiser_time_zone"
BREAKDOWN_PARAMS = {
    BreakdownType.device: "device_platform",
    BreakdownType.age_gender: "age,gender",
    BreakdownType.region: "country,region",
}

AUTH_ERROR_CODES = {102, 190}
VALIDATION_ERROR_CODES = {100}
THROTTLE_ERROR_CODES = {4, 17, 32, 613}


# =============================================================================
# HEADER / ERROR PARSING
# =============================================================================

def _max_usage(values: Iterable[Any]) -> Optional[float]:
    numbers = []
    for value in values:
        try:
            numbers.append(float(value))
        except (TypeError, ValueError):
            continue
    return max(numbers) if numbers else None


def parse_utilization(headers: Mapping[str, str]) -> Optional[float]:
    """Utilization percent reported on a Graph response, or None if absent."""
    raw = headers.get("x-fb-ads-insights-throttle")
    if raw:
        try:
            data = json.loads(raw)
            pct = _max_usage([data.get("acc_id_util_pct"), data.get("app_id_util_pct")])
            if pct is not None:
                return pct
        except (ValueError, AttributeError):
            logger.debug("[FB_ADAPTER] Unparseable insights throttle header: %s", raw)

    raw = headers.get("x-business-use-case-usage")
    if raw:
        try:
            data = json.loads(raw)
            values = []
            for entries in data.values():
                for entry in entries or []:
                    values.extend([entry.get("call_count"), entry.get("total_cputime"), entry.get("total_time")])
            pct = _max_usage(values)
            if pct is not None:
                return pct
        except (ValueError, AttributeError):
            logger.debug("[FB_ADAPTER] Unparseable business usage header: %s", raw)

    raw = headers.get("x-app-usage")
    if raw:
        try:
            data = json.loads(raw)
            return _max_usage([data.get("call_count"), data.get("total_cputime"), data.get("total_time")])
        except (ValueError, AttributeError):
            logger.debug("[FB_ADAPTER] Unparseable app usage header: %s", raw)

    return None


def _is_throttle_code(code: Optional[int]) -> bool:
    return code is not None and (code in THROTTLE_ERROR_CODES or 80000 <= code <= 80014)


def raise_for_graph_error(response: httpx.Response, context: str) -> None:
    """Translate a failed Graph response into a PlatformError subclass."""
    if response.status_code < 400:
        return

    try:
        payload = response.json()
    except ValueError:
        payload = {}
    error = payload.get("error", {}) if isinstance(payload, dict) else {}
    code = error.get("code")
    message = error.get("message") or response.text[:300] or f"HTTP {response.status_code}"
    status = response.status_code

    logger.error(
        "[FB_ADAPTER] API error while %s: HTTP %s, Code %s, Message: %s",
        context, status, code, message,
    )

    kwargs = {"code": code, "status_code": status, "payload": payload}
    if _is_throttle_code(code) or status == 429:
        raise PlatformRateLimitError(f"Facebook API throttled while {context}: {message}", **kwargs)
    if code in AUTH_ERROR_CODES or status == 401:
        raise PlatformAuthenticationError(f"Facebook API: authentication failed while {context}: {message}", **kwargs)
    if (code is not None and (code == 10 or 200 <= code <= 299)) or status == 403:
        raise PlatformPermissionError(f"Facebook API: permission denied while {context}: {message}", **kwargs)
    if code in VALIDATION_ERROR_CODES or status == 400:
        raise PlatformValidationError(f"Facebook API: invalid request while {context}: {message}", **kwargs)
    raise PlatformError(f"Facebook API: {message}", **kwargs)


def _filtering(filters: List[Dict[str, Any]]) -> Dict[str, str]:
    return {"filtering": json.dumps(filters)} if filters else {}


# =============================================================================
# GRAPH CLIENT
# =============================================================================

class FacebookGraphClient:
    """Minimal async Graph API client with rate limiting and pagination.

    Usage:
        async with httpx.AsyncClient() as http:
            client = FacebookGraphClient(limiter, http_client=http)
            rows = await client.get_all("/act_123/campaigns", token, {"fields": "id,name"}, throttle_key="act_123")
    """

    def __init__(
        self,
        limiter: RateLimiter,
        base_url: str = DEFAULT_GRAPH_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.limiter = limiter
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self.max_attempts = max_attempts

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _request(
        self,
        url: str,
        throttle_key: str,
        params: Optional[Dict[str, Any]],
        context: str,
    ) -> Dict[str, Any]:
        for attempt in range(1, self.max_attempts + 1):
            await self.limiter.wait_if_needed(throttle_key)
            try:
                response = await self._http.get(url, params=params)
            except httpx.HTTPError as e:
                raise PlatformError(f"Facebook API: network error while {context}: {e}") from e

            self.limiter.record_usage(throttle_key, parse_utilization(response.headers))

            try:
                raise_for_graph_error(response, context)
            except PlatformRateLimitError:
                if attempt >= self.max_attempts:
                    raise
                # Backoff grows per attempt: 30s, then 60s
                self.limiter.pause(throttle_key, self.limiter.pause_seconds * attempt)
                logger.warning(
                    "[FB_ADAPTER] Throttled while %s (attempt %d/%d), retrying after cooldown",
                    context, attempt, self.max_attempts,
                )
                continue
            return response.json()

        raise PlatformError(f"Facebook API: exhausted retries while {context}")

    async def get(
        self,
        endpoint: str,
        token: str,
        params: Optional[Dict[str, Any]] = None,
        throttle_key: str = "app",
    ) -> Dict[str, Any]:
        query = dict(params or {})
        query["access_token"] = token
        return await self._request(f"{self.base_url}{endpoint}", throttle_key, query, f"GET {endpoint}")

    async def get_all(
        self,
        endpoint: str,
        token: str,
        params: Optional[Dict[str, Any]] = None,
        throttle_key: str = "app",
    ) -> List[RawRecord]:
        """GET a list edge and follow `paging.next` until exhausted."""
        page = await self.get(endpoint, token, params, throttle_key)
        records: List[RawRecord] = list(page.get("data", []))
        next_url = (page.get("paging") or {}).get("next")
        pages = 1
        while next_url:
            # `next` already carries every query parameter, token included
            page = await self._request(next_url, throttle_key, None, f"GET {endpoint} page {pages + 1}")
            records.extend(page.get("data", []))
            next_url = (page.get("paging") or {}).get("next")
            pages += 1
        if pages > 1:
            logger.debug("[FB_ADAPTER] %s: %d records over %d pages", endpoint, len(records), pages)
        return records


# =============================================================================
# ADAPTER
# =============================================================================

class FacebookAdapter(PlatformAdapter):
    """PlatformAdapter for Facebook / Meta ad accounts.

    Account external ids are normalised to the `act_<id>` form used by the
    Graph API; the same string is the rate-limiter key for the account.
    """

    platform_code = PlatformCode.facebook.value

    def __init__(
        self,
        limiter: RateLimiter,
        base_url: str = DEFAULT_GRAPH_URL,
        page_limit: int = 1000,
        creative_chunk_size: int = 50,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        self.client = FacebookGraphClient(limiter, base_url=base_url, http_client=http_client, timeout=timeout)
        self.page_limit = page_limit
        self.creative_chunk_size = creative_chunk_size

    async def close(self) -> None:
        await self.client.close()

    @staticmethod
    def account_path(account_external_id: str) -> str:
        account_external_id = str(account_external_id)
        if account_external_id.startswith("act_"):
            return account_external_id
        return f"act_{account_external_id}"

    # ------------------------------------------------------------------ entities

    async def fetch_campaigns(self, account_external_id, token, since=None):
        account = self.account_path(account_external_id)
        filters = []
        if since:
            filters.append({"field": "updated_time", "operator": "GREATER_THAN", "value": since})
        params = {"fields": CAMPAIGN_FIELDS, "limit": self.page_limit, **_filtering(filters)}
        campaigns = await self.client.get_all(f"/{account}/campaigns", token, params, throttle_key=account)
        logger.info("[FB_ADAPTER] Fetched %d campaigns for %s (since=%s)", len(campaigns), account, since)
        return campaigns

    async def fetch_ad_groups(self, account_external_id, token, since=None, campaign_ids=None):
        account = self.account_path(account_external_id)
        filters = []
        if since:
            filters.append({"field": "updated_time", "operator": "GREATER_THAN", "value": since})
        if campaign_ids:
            filters.append({"field": "campaign.id", "operator": "IN", "value": list(campaign_ids)})
        params = {"fields": AD_GROUP_FIELDS, "limit": self.page_limit, **_filtering(filters)}
        ad_groups = await self.client.get_all(f"/{account}/adsets", token, params, throttle_key=account)
        logger.info("[FB_ADAPTER] Fetched %d ad sets for %s (since=%s)", len(ad_groups), account, since)
        return ad_groups

    async def fetch_ads(self, account_external_id, token, since=None, campaign_ids=None, ad_group_ids=None):
        account = self.account_path(account_external_id)
        filters = []
        if since:
            filters.append({"field": "updated_time", "operator": "GREATER_THAN", "value": since})
        if campaign_ids:
            filters.append({"field": "campaign.id", "operator": "IN", "value": list(campaign_ids)})
        if ad_group_ids:
            filters.append({"field": "adset.id", "operator": "IN", "value": list(ad_group_ids)})
        params = {"fields": AD_FIELDS, "limit": self.page_limit, **_filtering(filters)}
        ads = await self.client.get_all(f"/{account}/ads", token, params, throttle_key=account)
        logger.info("[FB_ADAPTER] Fetched %d ads for %s (since=%s)", len(ads), account, since)
        return ads

    async def fetch_ad_creatives(self, account_external_id, token, creative_ids=None):
        account = self.account_path(account_external_id)
        if not creative_ids:
            params = {"fields": CREATIVE_FIELDS, "limit": self.page_limit}
            return await self.client.get_all(f"/{account}/adcreatives", token, params, throttle_key=account)

        creatives: List[RawRecord] = []
        ids = list(dict.fromkeys(str(i) for i in creative_ids))
        for start in range(0, len(ids), self.creative_chunk_size):
            chunk = ids[start:start + self.creative_chunk_size]
            data = await self.client.get(
                "/", token, {"ids": ",".join(chunk), "fields": CREATIVE_FIELDS}, throttle_key=account,
            )
            creatives.extend(value for value in data.values() if isinstance(value, dict))
        logger.info("[FB_ADAPTER] Fetched %d/%d creatives by id for %s", len(creatives), len(ids), account)
        return creatives

    # ------------------------------------------------------------------ insights

    async def fetch_insights(self, query: InsightsQuery) -> List[RawRecord]:
        account = self.account_path(query.account_external_id)
        fields = list(INSIGHT_FIELDS)
        params: Dict[str, Any] = {
            "level": query.level,
            "time_range": json.dumps({
                "since": query.date_range.start.isoformat(),
                "until": query.date_range.end.isoformat(),
            }),
            "limit": self.page_limit,
        }

        filters = []
        if query.campaign_ids:
            filters.append({"field": "campaign.id", "operator": "IN", "value": list(query.campaign_ids)})
        if query.ad_ids:
            filters.append({"field": "ad.id", "operator": "IN", "value": list(query.ad_ids)})
        params.update(_filtering(filters))

        if query.granularity == Granularity.HOURLY:
            # Reach is not available with the hourly breakdown
            fields.remove("reach")
            params["breakdowns"] = HOURLY_BREAKDOWN
        else:
            params["time_increment"] = 1
            if query.breakdowns is not None:
                params["breakdowns"] = BREAKDOWN_PARAMS[BreakdownType(query.breakdowns)]

        params["fields"] = ",".join(fields)
        return await self.client.get_all(f"/{account}/insights", query.token, params, throttle_key=account)

    # ------------------------------------------------------------------ accounts

    async def validate_token(self, token: str) -> TokenInfo:
        data = await self.client.get("/me", token, {"fields": "id,name"})
        return TokenInfo(external_id=str(data.get("id")), name=data.get("name") or "")

    async def fetch_ad_accounts(self, token: str) -> List[RawRecord]:
        """Ad accounts reachable with the token."""
        return await self.client.get_all(
            "/me/adaccounts", token, {"fields": AD_ACCOUNT_FIELDS, "limit": 500},
        )
