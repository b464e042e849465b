"""SQLAlchemy ORM models and enums.

This module defines the unified sync schema. Every synced table carries the
owning `platform_account_id` plus a platform-assigned `external_id`, and all
natural keys are enforced with composite unique constraints so that the bulk
upsert primitive can target them with ON CONFLICT.

Parent/child references between campaigns, ad groups and ads are plain UUID
columns resolved by the sync services through externalId -> internalId maps,
not enforced foreign keys: the platform may hand us children before parents.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Index,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (test databases)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class PlatformCode(str, enum.Enum):
    facebook = "facebook"
    google = "google"
    tiktok = "tiktok"


class UnifiedStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DELETED = "DELETED"
    ARCHIVED = "ARCHIVED"
    UNKNOWN = "UNKNOWN"


class Granularity(str, enum.Enum):
    DAILY = "DAILY"
    HOURLY = "HOURLY"


class BreakdownType(str, enum.Enum):
    device = "device"
    age_gender = "age_gender"
    region = "region"


def _status_enum() -> Enum:
    # The database type is named "UnifiedStatus"; bulk upserts cast to it by name.
    return Enum(
        UnifiedStatus,
        name="UnifiedStatus",
        values_callable=lambda obj: [e.value for e in obj],
    )


# Grouping & accounts -------------------------------------------

class Branch(Base):
    """A reporting group of ad accounts (e.g. a physical branch/location).

    `auto_match_keywords` lets newly synced accounts be attached to a branch
    by name without manual assignment.
    """
    __tablename__ = "branches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    code = Column(String, nullable=True, unique=True)
    auto_match_keywords = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class PlatformAccount(Base):
    """An ad account on an external platform."""
    __tablename__ = "platform_accounts"
    __table_args__ = (
        UniqueConstraint("platform", "external_id", name="uq_platform_accounts_platform_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(String, nullable=False, default=PlatformCode.facebook.value)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    currency = Column(String, nullable=True)
    timezone = Column(String, nullable=True)
    account_status = Column(Integer, nullable=True)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class PlatformCredential(Base):
    """Access token for an account. Storage/rotation is handled elsewhere."""
    __tablename__ = "platform_credentials"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False)
    access_token = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


# Entity hierarchy ----------------------------------------------

class UnifiedCampaign(Base):
    __tablename__ = "unified_campaigns"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "external_id", name="uq_unified_campaigns_account_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(_status_enum(), nullable=False, default=UnifiedStatus.UNKNOWN)
    effective_status = Column(String, nullable=True)
    objective = Column(String, nullable=True)
    daily_budget = Column(Numeric(18, 2), nullable=True)
    lifetime_budget = Column(Numeric(18, 2), nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    platform_data = Column(JSONType, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class UnifiedAdGroup(Base):
    """Ad set (Facebook) / ad group. `unified_campaign_id` is resolved by sync."""
    __tablename__ = "unified_ad_groups"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "external_id", name="uq_unified_ad_groups_account_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False)
    unified_campaign_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(_status_enum(), nullable=False, default=UnifiedStatus.UNKNOWN)
    effective_status = Column(String, nullable=True)
    daily_budget = Column(Numeric(18, 2), nullable=True)
    lifetime_budget = Column(Numeric(18, 2), nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    targeting = Column(JSONType, nullable=True)
    platform_data = Column(JSONType, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class UnifiedAdCreative(Base):
    __tablename__ = "unified_ad_creatives"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "external_id", name="uq_unified_ad_creatives_account_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    status = Column(_status_enum(), nullable=False, default=UnifiedStatus.UNKNOWN)
    image_url = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    platform_data = Column(JSONType, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class UnifiedAd(Base):
    """An ad. The creative link is nullable and resolved by external creative id."""
    __tablename__ = "unified_ads"
    __table_args__ = (
        UniqueConstraint("platform_account_id", "external_id", name="uq_unified_ads_account_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False)
    unified_campaign_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    unified_ad_group_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    unified_ad_creative_id = Column(UUID(as_uuid=True), nullable=True)
    creative_external_id = Column(String, nullable=True)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(_status_enum(), nullable=False, default=UnifiedStatus.UNKNOWN)
    effective_status = Column(String, nullable=True)
    platform_data = Column(JSONType, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


# Metrics -------------------------------------------------------

class UnifiedInsight(Base):
    """Daily performance row per (account, campaign, ad group, ad, date)."""
    __tablename__ = "unified_insights"
    __table_args__ = (
        UniqueConstraint(
            "platform_account_id", "unified_campaign_id", "unified_ad_group_id", "unified_ad_id", "date",
            name="uq_unified_insights_key",
        ),
        Index("ix_unified_insights_account_date", "platform_account_id", "date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False)
    unified_campaign_id = Column(UUID(as_uuid=True), nullable=False)
    unified_ad_group_id = Column(UUID(as_uuid=True), nullable=False)
    unified_ad_id = Column(UUID(as_uuid=True), nullable=False)
    date = Column(Date, nullable=False)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    reach = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)
    conversions = Column(BigInteger, nullable=False, default=0)
    platform_metrics = Column(JSONType, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)


class UnifiedHourlyInsight(Base):
    """Hourly performance row plus hour-over-hour growth deltas.

    `hour_slot` keeps the platform label ("14:00:00 - 14:59:59"); `hour` is the
    parsed integer used in the unique key and for predecessor lookups.
    """
    __tablename__ = "unified_hourly_insights"
    __table_args__ = (
        UniqueConstraint(
            "platform_account_id", "unified_campaign_id", "unified_ad_group_id", "unified_ad_id", "date", "hour",
            name="uq_unified_hourly_insights_key",
        ),
        Index("ix_unified_hourly_insights_ad_date", "unified_ad_id", "date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform_account_id = Column(UUID(as_uuid=True), ForeignKey("platform_accounts.id"), nullable=False)
    unified_campaign_id = Column(UUID(as_uuid=True), nullable=False)
    unified_ad_group_id = Column(UUID(as_uuid=True), nullable=False)
    unified_ad_id = Column(UUID(as_uuid=True), nullable=False)
    date = Column(Date, nullable=False)
    hour = Column(Integer, nullable=False)
    hour_slot = Column(String, nullable=False)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)
    conversions = Column(BigInteger, nullable=False, default=0)
    spend_growth = Column(Numeric(18, 4), nullable=True)
    impressions_growth = Column(BigInteger, nullable=True)
    clicks_growth = Column(BigInteger, nullable=True)
    results_growth = Column(BigInteger, nullable=True)
    conversions_growth = Column(BigInteger, nullable=True)
    platform_metrics = Column(JSONType, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)


class UnifiedInsightDevice(Base):
    __tablename__ = "unified_insight_devices"
    __table_args__ = (
        UniqueConstraint("unified_insight_id", "device", name="uq_unified_insight_devices_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    unified_insight_id = Column(UUID(as_uuid=True), ForeignKey("unified_insights.id", ondelete="CASCADE"), nullable=False)
    device = Column(String, nullable=False)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)


class UnifiedInsightAgeGender(Base):
    __tablename__ = "unified_insight_age_gender"
    __table_args__ = (
        UniqueConstraint("unified_insight_id", "age", "gender", name="uq_unified_insight_age_gender_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    unified_insight_id = Column(UUID(as_uuid=True), ForeignKey("unified_insights.id", ondelete="CASCADE"), nullable=False)
    age = Column(String, nullable=False)
    gender = Column(String, nullable=False)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)


class UnifiedInsightRegion(Base):
    __tablename__ = "unified_insight_regions"
    __table_args__ = (
        UniqueConstraint("unified_insight_id", "region", "country", name="uq_unified_insight_regions_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    unified_insight_id = Column(UUID(as_uuid=True), ForeignKey("unified_insights.id", ondelete="CASCADE"), nullable=False)
    region = Column(String, nullable=False)
    country = Column(String, nullable=False)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)


# Rollups -------------------------------------------------------

class BranchDailyStat(Base):
    """Recomputed-from-scratch summary per (branch, date, platform)."""
    __tablename__ = "branch_daily_stats"
    __table_args__ = (
        UniqueConstraint("branch_id", "date", "platform", name="uq_branch_daily_stats_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=False)
    date = Column(Date, nullable=False)
    platform = Column(String, nullable=False)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    reach = Column(BigInteger, nullable=False, default=0)
    results = Column(BigInteger, nullable=False, default=0)
    conversions = Column(BigInteger, nullable=False, default=0)
    ad_account_count = Column(Integer, nullable=False, default=0)
    ads_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# Lookup used by the bulk upsert primitive and the stores to address tables by name.
TABLES = {
    model.__tablename__: model
    for model in (
        Branch,
        PlatformAccount,
        PlatformCredential,
        UnifiedCampaign,
        UnifiedAdGroup,
        UnifiedAdCreative,
        UnifiedAd,
        UnifiedInsight,
        UnifiedHourlyInsight,
        UnifiedInsightDevice,
        UnifiedInsightAgeGender,
        UnifiedInsightRegion,
        BranchDailyStat,
    )
}
