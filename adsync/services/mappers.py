"""Raw platform record -> unified row mapping.

WHAT:
    Pure functions turning Facebook Graph records into the row dicts written
    by the bulk upsert primitive (entities, daily/hourly insights, breakdowns)
    plus the metric helpers shared by the sync services (results extraction,
    duplicate merging, hour-over-hour growth).

WHY:
    Keeping the mapping pure (no I/O, no session) makes every rule here
    unit-testable and keeps the sync services about ordering and failure
    policy only.

NOTES:
    - Every mapper of one kind returns the same key set, as required by
      `build_upsert` (columns come from the first row).
    - New rows get a fresh UUID `id`; on conflict the id column is never in
      the update set, so existing rows keep theirs.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from adsync.models import UnifiedStatus
from adsync.utils.dates import hour_slot_label, parse_date, parse_hour_slot, parse_platform_datetime

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


# =============================================================================
# STATUS & BUDGETS
# =============================================================================

STATUS_MAP: Dict[str, UnifiedStatus] = {
    "ACTIVE": UnifiedStatus.ACTIVE,
    "PAUSED": UnifiedStatus.PAUSED,
    "DELETED": UnifiedStatus.DELETED,
    "ARCHIVED": UnifiedStatus.ARCHIVED,
    "IN_PROCESS": UnifiedStatus.ACTIVE,
    "WITH_ISSUES": UnifiedStatus.PAUSED,
    "CAMPAIGN_PAUSED": UnifiedStatus.PAUSED,
    "ADSET_PAUSED": UnifiedStatus.PAUSED,
    "PENDING_REVIEW": UnifiedStatus.PAUSED,
    "DISAPPROVED": UnifiedStatus.PAUSED,
    "PREAPPROVED": UnifiedStatus.PAUSED,
    "PENDING_BILLING_INFO": UnifiedStatus.PAUSED,
}

# Effective statuses that still deliver impressions.
DELIVERABLE_STATUSES = ("ACTIVE", "IN_PROCESS", "WITH_ISSUES")

# Currencies whose minor unit is the major unit (budgets are not in cents).
ZERO_DECIMAL_CURRENCIES = frozenset({"VND", "JPY", "KRW", "CLP", "PYG", "ISK"})


def map_status(raw_status: Optional[str]) -> UnifiedStatus:
    if not raw_status:
        return UnifiedStatus.UNKNOWN
    status = STATUS_MAP.get(str(raw_status).upper())
    if status is None:
        logger.warning("[MAPPER] Unknown platform status %s, mapping to UNKNOWN", raw_status)
        return UnifiedStatus.UNKNOWN
    return status


def parse_budget(value: Any, currency: Optional[str]) -> Optional[Decimal]:
    """Platform budgets are minor units; zero-decimal currencies are not divided."""
    if value in (None, "", "0", 0):
        return None
    divisor = 1 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 100
    return Decimal(str(value)) / divisor


def _raw_status(raw: Mapping[str, Any]) -> Optional[str]:
    return raw.get("effective_status") or raw.get("status")


# =============================================================================
# ENTITIES
# =============================================================================

def map_campaign(raw: Mapping[str, Any], account_id: uuid.UUID, currency: Optional[str], now: datetime) -> Row:
    return {
        "id": uuid.uuid4(),
        "platform_account_id": account_id,
        "external_id": str(raw["id"]),
        "name": raw.get("name") or str(raw["id"]),
        "status": map_status(_raw_status(raw)),
        "effective_status": raw.get("effective_status"),
        "objective": raw.get("objective"),
        "daily_budget": parse_budget(raw.get("daily_budget"), currency),
        "lifetime_budget": parse_budget(raw.get("lifetime_budget"), currency),
        "start_time": parse_platform_datetime(raw.get("start_time")),
        "end_time": parse_platform_datetime(raw.get("stop_time")),
        "platform_data": {
            "buying_type": raw.get("buying_type"),
            "bid_strategy": raw.get("bid_strategy"),
            "issues_info": raw.get("issues_info"),
            "raw_status": raw.get("status"),
        },
        "synced_at": now,
        "deleted_at": None,
    }


def map_ad_group(
    raw: Mapping[str, Any],
    account_id: uuid.UUID,
    campaign_id: uuid.UUID,
    currency: Optional[str],
    now: datetime,
) -> Row:
    return {
        "id": uuid.uuid4(),
        "platform_account_id": account_id,
        "unified_campaign_id": campaign_id,
        "external_id": str(raw["id"]),
        "name": raw.get("name") or str(raw["id"]),
        "status": map_status(_raw_status(raw)),
        "effective_status": raw.get("effective_status"),
        "daily_budget": parse_budget(raw.get("daily_budget"), currency),
        "lifetime_budget": parse_budget(raw.get("lifetime_budget"), currency),
        "start_time": parse_platform_datetime(raw.get("start_time")),
        "end_time": parse_platform_datetime(raw.get("end_time") or raw.get("stop_time")),
        "targeting": raw.get("targeting"),
        "platform_data": {
            "bid_amount": raw.get("bid_amount"),
            "billing_event": raw.get("billing_event"),
            "optimization_goal": raw.get("optimization_goal"),
            "raw_status": raw.get("status"),
        },
        "synced_at": now,
        "deleted_at": None,
    }


def extract_thumbnail(raw: Mapping[str, Any]) -> Optional[str]:
    """thumbnail_url -> link_data.picture -> video_data.image_url -> asset_feed_spec.images[0].url"""
    if raw.get("thumbnail_url"):
        return raw["thumbnail_url"]
    story = raw.get("object_story_spec") or {}
    picture = (story.get("link_data") or {}).get("picture")
    if picture:
        return picture
    video_image = (story.get("video_data") or {}).get("image_url")
    if video_image:
        return video_image
    images = (raw.get("asset_feed_spec") or {}).get("images") or []
    if images and isinstance(images[0], Mapping) and images[0].get("url"):
        return images[0]["url"]
    return None


def map_creative(raw: Mapping[str, Any], account_id: uuid.UUID, now: datetime) -> Row:
    thumbnail = extract_thumbnail(raw)
    return {
        "id": uuid.uuid4(),
        "platform_account_id": account_id,
        "external_id": str(raw["id"]),
        "name": raw.get("name"),
        "status": map_status(raw.get("status")) if raw.get("status") else UnifiedStatus.ACTIVE,
        "image_url": raw.get("image_url") or thumbnail,
        "thumbnail_url": thumbnail,
        "platform_data": {
            "object_story_spec": raw.get("object_story_spec"),
            "asset_feed_spec": raw.get("asset_feed_spec"),
        },
        "synced_at": now,
        "deleted_at": None,
    }


def creative_external_id(raw_ad: Mapping[str, Any]) -> Optional[str]:
    creative = raw_ad.get("creative")
    if isinstance(creative, Mapping) and creative.get("id"):
        return str(creative["id"])
    return None


def map_ad(
    raw: Mapping[str, Any],
    account_id: uuid.UUID,
    campaign_id: uuid.UUID,
    ad_group_id: uuid.UUID,
    creative_id: Optional[uuid.UUID],
    now: datetime,
) -> Row:
    return {
        "id": uuid.uuid4(),
        "platform_account_id": account_id,
        "unified_campaign_id": campaign_id,
        "unified_ad_group_id": ad_group_id,
        "unified_ad_creative_id": creative_id,
        "creative_external_id": creative_external_id(raw),
        "external_id": str(raw["id"]),
        "name": raw.get("name") or str(raw["id"]),
        "status": map_status(_raw_status(raw)),
        "effective_status": raw.get("effective_status"),
        "platform_data": {
            "created_time": raw.get("created_time"),
            "updated_time": raw.get("updated_time"),
            "raw_status": raw.get("status"),
        },
        "synced_at": now,
        "deleted_at": None,
    }


# =============================================================================
# METRICS
# =============================================================================

RESULT_ACTION_TYPES = frozenset({
    "onsite_conversion.messaging_conversation_started_7d",
    "onsite_conversion.messaging_first_reply",
    "lead",
    "purchase",
    "onsite_conversion.lead",
    "onsite_conversion.purchase",
    "onsite_web_lead",
    "onsite_web_purchase",
    "offsite_complete_registration_add_meta_leads",
})
CONVERSION_ACTION_TYPES = frozenset({"omni_complete_registration"})

METRIC_SUM_FIELDS = ("spend", "impressions", "clicks", "results", "conversions")


def _number(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _sum_actions(actions: Optional[Iterable[Mapping[str, Any]]], action_types: frozenset) -> int:
    if not actions:
        return 0
    total = sum(
        (_number(a.get("value")) for a in actions if a.get("action_type") in action_types),
        Decimal("0"),
    )
    return int(total)


def extract_results(actions: Optional[Iterable[Mapping[str, Any]]]) -> int:
    return _sum_actions(actions, RESULT_ACTION_TYPES)


def extract_conversions(actions: Optional[Iterable[Mapping[str, Any]]]) -> int:
    return _sum_actions(actions, CONVERSION_ACTION_TYPES)


class AdRef(NamedTuple):
    """Internal ids of a locally known ad."""
    ad_id: uuid.UUID
    ad_group_id: uuid.UUID
    campaign_id: uuid.UUID


def map_daily_insight(raw: Mapping[str, Any], ref: AdRef, account_id: uuid.UUID, now: datetime) -> Row:
    actions = raw.get("actions")
    return {
        "id": uuid.uuid4(),
        "platform_account_id": account_id,
        "unified_campaign_id": ref.campaign_id,
        "unified_ad_group_id": ref.ad_group_id,
        "unified_ad_id": ref.ad_id,
        "date": parse_date(raw["date_start"]),
        "spend": _number(raw.get("spend")),
        "impressions": int(_number(raw.get("impressions"))),
        "clicks": int(_number(raw.get("clicks"))),
        "reach": int(_number(raw.get("reach"))),
        "results": extract_results(actions),
        "conversions": extract_conversions(actions),
        "platform_metrics": {
            "raw_actions": actions,
            "raw_action_values": raw.get("action_values"),
            "cpc": raw.get("cpc"),
            "cpm": raw.get("cpm"),
            "ctr": raw.get("ctr"),
        },
        "synced_at": now,
    }


def map_hourly_insight(raw: Mapping[str, Any], ref: AdRef, account_id: uuid.UUID, now: datetime) -> Row:
    actions = raw.get("actions")
    hour = parse_hour_slot(raw.get("hourly_stats_aggregated_by_advertiser_time_zone"))
    return {
        "id": uuid.uuid4(),
        "platform_account_id": account_id,
        "unified_campaign_id": ref.campaign_id,
        "unified_ad_group_id": ref.ad_group_id,
        "unified_ad_id": ref.ad_id,
        "date": parse_date(raw["date_start"]),
        "hour": hour,
        "hour_slot": hour_slot_label(hour),
        "spend": _number(raw.get("spend")),
        "impressions": int(_number(raw.get("impressions"))),
        "clicks": int(_number(raw.get("clicks"))),
        "results": extract_results(actions),
        "conversions": extract_conversions(actions),
        "platform_metrics": {"raw_actions": actions},
        "synced_at": now,
    }


def merge_rows(rows: Sequence[Row], key_columns: Sequence[str]) -> List[Row]:
    """Merge rows sharing a key: metric fields summed, reach takes the max.

    A single INSERT ... ON CONFLICT cannot touch the same key twice, so
    duplicates from the platform are folded before writing. Order of first
    appearance is preserved.
    """
    merged: Dict[Tuple[Any, ...], Row] = {}
    for row in rows:
        key = tuple(row[c] for c in key_columns)
        existing = merged.get(key)
        if existing is None:
            merged[key] = dict(row)
            continue
        for field in METRIC_SUM_FIELDS:
            if field in row:
                existing[field] = (existing.get(field) or 0) + (row.get(field) or 0)
        if "reach" in row:
            existing["reach"] = max(existing.get("reach") or 0, row.get("reach") or 0)
    return list(merged.values())


# =============================================================================
# HOURLY GROWTH
# =============================================================================

GROWTH_FIELDS = ("spend", "impressions", "clicks", "results", "conversions")


def safe_diff(current: Any, previous: Any) -> Any:
    """current - previous; missing current -> None; missing previous -> current.

    A measured 0 is a value, not a gap: 20 -> 0 yields -20.
    """
    if current is None:
        return None
    if previous is None:
        return current
    return current - previous


def compute_growth(current: Mapping[str, Any], previous: Optional[Mapping[str, Any]]) -> Row:
    return {
        f"{field}_growth": safe_diff(current.get(field), previous.get(field) if previous else None)
        for field in GROWTH_FIELDS
    }


# =============================================================================
# BREAKDOWNS
# =============================================================================

def _breakdown_metrics(raw: Mapping[str, Any]) -> Row:
    return {
        "spend": _number(raw.get("spend")),
        "impressions": int(_number(raw.get("impressions"))),
        "clicks": int(_number(raw.get("clicks"))),
        "results": extract_results(raw.get("actions")),
    }


def map_device_breakdown(raw: Mapping[str, Any], insight_id: uuid.UUID) -> Row:
    return {
        "id": uuid.uuid4(),
        "unified_insight_id": insight_id,
        "device": raw.get("device_platform") or raw.get("impression_device") or "unknown",
        **_breakdown_metrics(raw),
    }


def map_age_gender_breakdown(raw: Mapping[str, Any], insight_id: uuid.UUID) -> Row:
    return {
        "id": uuid.uuid4(),
        "unified_insight_id": insight_id,
        "age": raw.get("age") or "unknown",
        "gender": raw.get("gender") or "unknown",
        **_breakdown_metrics(raw),
    }


def map_region_breakdown(raw: Mapping[str, Any], insight_id: uuid.UUID) -> Row:
    return {
        "id": uuid.uuid4(),
        "unified_insight_id": insight_id,
        "region": raw.get("region") or "unknown",
        "country": raw.get("country") or "unknown",
        **_breakdown_metrics(raw),
    }


def insight_key(raw: Mapping[str, Any]) -> Tuple[str, date]:
    """(ad external id, date) a raw insight/breakdown record belongs to."""
    return str(raw["ad_id"]), parse_date(raw["date_start"])
