"""
Platform Record Mapping Tests (Unit)
====================================

WHAT: Unit tests for raw Graph record -> unified row mapping and metric helpers.
WHY: Status mapping drives insights selection and demotion; budget and result
extraction feed every report. Regressions here are silent data errors.

REFERENCES:
- adsync/services/mappers.py
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

from adsync.models import UnifiedStatus
from adsync.services import mappers
from adsync.services.mappers import AdRef

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
ACCOUNT_ID = uuid4()
REF = AdRef(uuid4(), uuid4(), uuid4())


def test_effective_status_wins_over_configured_status() -> None:
    """A campaign configured ACTIVE but paused upstream maps to PAUSED."""
    row = mappers.map_campaign(
        {"id": 1, "status": "ACTIVE", "effective_status": "CAMPAIGN_PAUSED"}, ACCOUNT_ID, "USD", NOW,
    )

    assert row["status"] == UnifiedStatus.PAUSED
    assert row["external_id"] == "1"
    assert row["name"] == "1"
    assert row["platform_data"]["raw_status"] == "ACTIVE"


def test_unknown_status_maps_to_unknown() -> None:
    assert mappers.map_status("SOMETHING_NEW") == UnifiedStatus.UNKNOWN
    assert mappers.map_status(None) == UnifiedStatus.UNKNOWN
    assert mappers.map_status("in_process") == UnifiedStatus.ACTIVE


def test_budgets_are_minor_units_except_zero_decimal_currencies() -> None:
    assert mappers.parse_budget("2500", "USD") == Decimal("25")
    assert mappers.parse_budget("250000", "VND") == Decimal("250000")
    assert mappers.parse_budget("0", "USD") is None
    assert mappers.parse_budget(None, "USD") is None


def test_campaign_stop_time_becomes_end_time() -> None:
    row = mappers.map_campaign(
        {"id": "c1", "name": "Spring", "stop_time": "2024-03-01T00:00:00+0700"}, ACCOUNT_ID, "USD", NOW,
    )

    assert row["end_time"] == datetime(2024, 2, 29, 17, 0, tzinfo=timezone.utc)


def test_ad_carries_creative_external_id() -> None:
    creative_id = uuid4()
    row = mappers.map_ad(
        {"id": "a1", "effective_status": "ACTIVE", "creative": {"id": 987}},
        ACCOUNT_ID, REF.campaign_id, REF.ad_group_id, creative_id, NOW,
    )

    assert row["creative_external_id"] == "987"
    assert row["unified_ad_creative_id"] == creative_id
    assert mappers.creative_external_id({"creative": None}) is None


def test_thumbnail_fallback_chain() -> None:
    assert mappers.extract_thumbnail({"thumbnail_url": "t"}) == "t"
    assert mappers.extract_thumbnail({"object_story_spec": {"link_data": {"picture": "p"}}}) == "p"
    assert mappers.extract_thumbnail({"object_story_spec": {"video_data": {"image_url": "v"}}}) == "v"
    assert mappers.extract_thumbnail({"asset_feed_spec": {"images": [{"url": "a"}]}}) == "a"
    assert mappers.extract_thumbnail({}) is None


def test_results_and_conversions_from_actions() -> None:
    actions = [
        {"action_type": "onsite_conversion.messaging_conversation_started_7d", "value": "4"},
        {"action_type": "lead", "value": "2"},
        {"action_type": "link_click", "value": "40"},
        {"action_type": "omni_complete_registration", "value": "3"},
    ]

    assert mappers.extract_results(actions) == 6
    assert mappers.extract_conversions(actions) == 3
    assert mappers.extract_results(None) == 0


def test_daily_insight_coerces_platform_strings() -> None:
    row = mappers.map_daily_insight(
        {"ad_id": "a1", "date_start": "2024-03-10", "spend": "12.50", "impressions": "1000", "clicks": "", "reach": None},
        REF, ACCOUNT_ID, NOW,
    )

    assert row["date"] == date(2024, 3, 10)
    assert row["spend"] == Decimal("12.50")
    assert row["impressions"] == 1000
    assert row["clicks"] == 0
    assert row["reach"] == 0
    assert row["unified_ad_id"] == REF.ad_id


def test_hourly_insight_reads_hour_slot() -> None:
    row = mappers.map_hourly_insight(
        {
            "ad_id": "a1",
            "date_start": "2024-03-10",
            "hourly_stats_aggregated_by_advertiser_time_zone": "07:00:00 - 07:59:59",
            "spend": "3",
        },
        REF, ACCOUNT_ID, NOW,
    )

    assert row["hour"] == 7
    assert row["hour_slot"] == "07:00:00 - 07:59:59"


def test_merge_rows_sums_metrics_and_keeps_max_reach() -> None:
    """Duplicate keys in one batch are folded before the upsert."""
    rows = [
        {"k": 1, "spend": Decimal("1.5"), "impressions": 10, "reach": 7},
        {"k": 2, "spend": Decimal("4"), "impressions": 1, "reach": 1},
        {"k": 1, "spend": Decimal("2.5"), "impressions": 5, "reach": 9},
    ]

    merged = mappers.merge_rows(rows, ["k"])

    assert [r["k"] for r in merged] == [1, 2]
    assert merged[0]["spend"] == Decimal("4.0")
    assert merged[0]["impressions"] == 15
    assert merged[0]["reach"] == 9
    assert rows[0]["spend"] == Decimal("1.5")


def test_growth_semantics() -> None:
    assert mappers.safe_diff(Decimal("150"), Decimal("100")) == Decimal("50")
    assert mappers.safe_diff(Decimal("150"), None) == Decimal("150")
    assert mappers.safe_diff(None, 10) is None

    growth = mappers.compute_growth({"spend": Decimal("5"), "impressions": 40, "clicks": 0}, None)
    assert growth["spend_growth"] == Decimal("5")
    assert growth["impressions_growth"] == 40
    assert growth["clicks_growth"] == 0
    assert growth["results_growth"] is None
    assert set(growth) == {f"{f}_growth" for f in mappers.GROWTH_FIELDS}


def test_drop_to_zero_keeps_negative_growth() -> None:
    """A measured zero after a busy hour is a real decrease."""
    growth = mappers.compute_growth(
        {"spend": Decimal("0"), "impressions": 0, "clicks": 0, "results": 0, "conversions": 0},
        {"spend": Decimal("20"), "impressions": 300, "clicks": 7, "results": 0, "conversions": 1},
    )

    assert growth["spend_growth"] == Decimal("-20")
    assert growth["impressions_growth"] == -300
    assert growth["clicks_growth"] == -7
    assert growth["results_growth"] == 0
    assert growth["conversions_growth"] == -1


def test_breakdown_rows_default_unknown_dimensions() -> None:
    insight_id = uuid4()

    device = mappers.map_device_breakdown({"spend": "1"}, insight_id)
    region = mappers.map_region_breakdown({"region": "Hanoi", "country": "VN"}, insight_id)
    age_gender = mappers.map_age_gender_breakdown({"age": "25-34"}, insight_id)

    assert device["device"] == "unknown"
    assert (region["region"], region["country"]) == ("Hanoi", "VN")
    assert (age_gender["age"], age_gender["gender"]) == ("25-34", "unknown")
    assert device["unified_insight_id"] == insight_id
