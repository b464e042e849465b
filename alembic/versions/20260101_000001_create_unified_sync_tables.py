"""Create unified sync tables (accounts, entity hierarchy, insights, rollups)

Revision ID: 20260101_000001
Revises:
Create Date: 2026-01-01 00:00:00.000000

WHAT:
    Creates the schema written by the sync engine:
    - branches, platform_accounts, platform_credentials
    - unified_campaigns / unified_ad_groups / unified_ad_creatives / unified_ads
    - unified_insights, unified_hourly_insights
    - unified_insight_devices / _age_gender / _regions (breakdowns)
    - branch_daily_stats (rollups)

WHY:
    Every natural key is a composite UNIQUE constraint so the bulk upsert can
    target it with ON CONFLICT. Entity parent references are plain UUID
    columns (resolved by the sync services), not foreign keys.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20260101_000001"
down_revision = None
branch_labels = None
depends_on = None


STATUS_VALUES = ("ACTIVE", "PAUSED", "DELETED", "ARCHIVED", "UNKNOWN")


def _status_column() -> sa.Column:
    return sa.Column(
        "status",
        postgresql.ENUM(*STATUS_VALUES, name="UnifiedStatus", create_type=False),
        nullable=False,
        server_default="UNKNOWN",
    )


def _uuid(name: str, *args, **kwargs) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), *args, **kwargs)


def _ts(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kwargs)


def _metric_columns(with_reach: bool = True) -> list:
    columns = [
        sa.Column("spend", sa.Numeric(18, 4), nullable=False, server_default="0"),
        sa.Column("impressions", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("clicks", sa.BigInteger(), nullable=False, server_default="0"),
    ]
    if with_reach:
        columns.append(sa.Column("reach", sa.BigInteger(), nullable=False, server_default="0"))
    columns += [
        sa.Column("results", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("conversions", sa.BigInteger(), nullable=False, server_default="0"),
    ]
    return columns


def _breakdown_metric_columns() -> list:
    return [
        sa.Column("spend", sa.Numeric(18, 4), nullable=False, server_default="0"),
        sa.Column("impressions", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("clicks", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("results", sa.BigInteger(), nullable=False, server_default="0"),
    ]


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Status enum
    # =========================================================================
    # WHAT: Shared "UnifiedStatus" type (bulk upserts cast to it by name)
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE "UnifiedStatus" AS ENUM ('ACTIVE', 'PAUSED', 'DELETED', 'ARCHIVED', 'UNKNOWN');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # =========================================================================
    # STEP 2: Branches, accounts, credentials
    # =========================================================================
    op.create_table(
        "branches",
        _uuid("id", primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=True, unique=True),
        sa.Column("auto_match_keywords", postgresql.JSONB(), nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )

    op.create_table(
        "platform_accounts",
        _uuid("id", primary_key=True),
        sa.Column("platform", sa.String(), nullable=False, server_default="facebook"),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("currency", sa.String(), nullable=True),
        sa.Column("timezone", sa.String(), nullable=True),
        sa.Column("account_status", sa.Integer(), nullable=True),
        _uuid("branch_id", sa.ForeignKey("branches.id"), nullable=True),
        _ts("synced_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        sa.UniqueConstraint("platform", "external_id", name="uq_platform_accounts_platform_external"),
    )

    op.create_table(
        "platform_credentials",
        _uuid("id", primary_key=True),
        _uuid("platform_account_id", sa.ForeignKey("platform_accounts.id"), nullable=False),
        sa.Column("access_token", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        _ts("expires_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
    )
    op.create_index("ix_platform_credentials_account", "platform_credentials", ["platform_account_id"])

    # =========================================================================
    # STEP 3: Entity hierarchy
    # =========================================================================
    # WHY no FKs between tiers: children can arrive before their parents
    op.create_table(
        "unified_campaigns",
        _uuid("id", primary_key=True),
        _uuid("platform_account_id", sa.ForeignKey("platform_accounts.id"), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        _status_column(),
        sa.Column("effective_status", sa.String(), nullable=True),
        sa.Column("objective", sa.String(), nullable=True),
        sa.Column("daily_budget", sa.Numeric(18, 2), nullable=True),
        sa.Column("lifetime_budget", sa.Numeric(18, 2), nullable=True),
        _ts("start_time", nullable=True),
        _ts("end_time", nullable=True),
        sa.Column("platform_data", postgresql.JSONB(), nullable=True),
        _ts("synced_at", nullable=True),
        _ts("deleted_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        sa.UniqueConstraint("platform_account_id", "external_id", name="uq_unified_campaigns_account_external"),
    )

    op.create_table(
        "unified_ad_groups",
        _uuid("id", primary_key=True),
        _uuid("platform_account_id", sa.ForeignKey("platform_accounts.id"), nullable=False),
        _uuid("unified_campaign_id", nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        _status_column(),
        sa.Column("effective_status", sa.String(), nullable=True),
        sa.Column("daily_budget", sa.Numeric(18, 2), nullable=True),
        sa.Column("lifetime_budget", sa.Numeric(18, 2), nullable=True),
        _ts("start_time", nullable=True),
        _ts("end_time", nullable=True),
        sa.Column("targeting", postgresql.JSONB(), nullable=True),
        sa.Column("platform_data", postgresql.JSONB(), nullable=True),
        _ts("synced_at", nullable=True),
        _ts("deleted_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        sa.UniqueConstraint("platform_account_id", "external_id", name="uq_unified_ad_groups_account_external"),
    )
    op.create_index("ix_unified_ad_groups_unified_campaign_id", "unified_ad_groups", ["unified_campaign_id"])

    op.create_table(
        "unified_ad_creatives",
        _uuid("id", primary_key=True),
        _uuid("platform_account_id", sa.ForeignKey("platform_accounts.id"), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        _status_column(),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("thumbnail_url", sa.String(), nullable=True),
        sa.Column("platform_data", postgresql.JSONB(), nullable=True),
        _ts("synced_at", nullable=True),
        _ts("deleted_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        sa.UniqueConstraint("platform_account_id", "external_id", name="uq_unified_ad_creatives_account_external"),
    )

    op.create_table(
        "unified_ads",
        _uuid("id", primary_key=True),
        _uuid("platform_account_id", sa.ForeignKey("platform_accounts.id"), nullable=False),
        _uuid("unified_campaign_id", nullable=False),
        _uuid("unified_ad_group_id", nullable=False),
        _uuid("unified_ad_creative_id", nullable=True),
        sa.Column("creative_external_id", sa.String(), nullable=True),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        _status_column(),
        sa.Column("effective_status", sa.String(), nullable=True),
        sa.Column("platform_data", postgresql.JSONB(), nullable=True),
        _ts("synced_at", nullable=True),
        _ts("deleted_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        sa.UniqueConstraint("platform_account_id", "external_id", name="uq_unified_ads_account_external"),
    )
    op.create_index("ix_unified_ads_unified_campaign_id", "unified_ads", ["unified_campaign_id"])
    op.create_index("ix_unified_ads_unified_ad_group_id", "unified_ads", ["unified_ad_group_id"])

    # =========================================================================
    # STEP 4: Insights
    # =========================================================================
    op.create_table(
        "unified_insights",
        _uuid("id", primary_key=True),
        _uuid("platform_account_id", sa.ForeignKey("platform_accounts.id"), nullable=False),
        _uuid("unified_campaign_id", nullable=False),
        _uuid("unified_ad_group_id", nullable=False),
        _uuid("unified_ad_id", nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        *_metric_columns(with_reach=True),
        sa.Column("platform_metrics", postgresql.JSONB(), nullable=True),
        _ts("synced_at", nullable=True),
        sa.UniqueConstraint(
            "platform_account_id", "unified_campaign_id", "unified_ad_group_id", "unified_ad_id", "date",
            name="uq_unified_insights_key",
        ),
    )
    op.create_index("ix_unified_insights_account_date", "unified_insights", ["platform_account_id", "date"])

    op.create_table(
        "unified_hourly_insights",
        _uuid("id", primary_key=True),
        _uuid("platform_account_id", sa.ForeignKey("platform_accounts.id"), nullable=False),
        _uuid("unified_campaign_id", nullable=False),
        _uuid("unified_ad_group_id", nullable=False),
        _uuid("unified_ad_id", nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("hour", sa.Integer(), nullable=False),
        sa.Column("hour_slot", sa.String(), nullable=False),
        *_metric_columns(with_reach=False),
        sa.Column("spend_growth", sa.Numeric(18, 4), nullable=True),
        sa.Column("impressions_growth", sa.BigInteger(), nullable=True),
        sa.Column("clicks_growth", sa.BigInteger(), nullable=True),
        sa.Column("results_growth", sa.BigInteger(), nullable=True),
        sa.Column("conversions_growth", sa.BigInteger(), nullable=True),
        sa.Column("platform_metrics", postgresql.JSONB(), nullable=True),
        _ts("synced_at", nullable=True),
        sa.UniqueConstraint(
            "platform_account_id", "unified_campaign_id", "unified_ad_group_id", "unified_ad_id", "date", "hour",
            name="uq_unified_hourly_insights_key",
        ),
    )
    op.create_index("ix_unified_hourly_insights_ad_date", "unified_hourly_insights", ["unified_ad_id", "date"])

    # =========================================================================
    # STEP 5: Breakdowns (replaced per pass, cascade with the parent insight)
    # =========================================================================
    op.create_table(
        "unified_insight_devices",
        _uuid("id", primary_key=True),
        _uuid("unified_insight_id", sa.ForeignKey("unified_insights.id", ondelete="CASCADE"), nullable=False),
        sa.Column("device", sa.String(), nullable=False),
        *_breakdown_metric_columns(),
        sa.UniqueConstraint("unified_insight_id", "device", name="uq_unified_insight_devices_key"),
    )

    op.create_table(
        "unified_insight_age_gender",
        _uuid("id", primary_key=True),
        _uuid("unified_insight_id", sa.ForeignKey("unified_insights.id", ondelete="CASCADE"), nullable=False),
        sa.Column("age", sa.String(), nullable=False),
        sa.Column("gender", sa.String(), nullable=False),
        *_breakdown_metric_columns(),
        sa.UniqueConstraint("unified_insight_id", "age", "gender", name="uq_unified_insight_age_gender_key"),
    )

    op.create_table(
        "unified_insight_regions",
        _uuid("id", primary_key=True),
        _uuid("unified_insight_id", sa.ForeignKey("unified_insights.id", ondelete="CASCADE"), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("country", sa.String(), nullable=False),
        *_breakdown_metric_columns(),
        sa.UniqueConstraint("unified_insight_id", "region", "country", name="uq_unified_insight_regions_key"),
    )

    # =========================================================================
    # STEP 6: Rollups
    # =========================================================================
    op.create_table(
        "branch_daily_stats",
        _uuid("id", primary_key=True),
        _uuid("branch_id", sa.ForeignKey("branches.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("platform", sa.String(), nullable=False),
        *_metric_columns(with_reach=True),
        sa.Column("ad_account_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ads_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("updated_at", server_default=sa.func.now()),
        sa.UniqueConstraint("branch_id", "date", "platform", name="uq_branch_daily_stats_key"),
    )


def downgrade() -> None:
    op.drop_table("branch_daily_stats")
    op.drop_table("unified_insight_regions")
    op.drop_table("unified_insight_age_gender")
    op.drop_table("unified_insight_devices")
    op.drop_index("ix_unified_hourly_insights_ad_date", table_name="unified_hourly_insights")
    op.drop_table("unified_hourly_insights")
    op.drop_index("ix_unified_insights_account_date", table_name="unified_insights")
    op.drop_table("unified_insights")
    op.drop_index("ix_unified_ads_unified_ad_group_id", table_name="unified_ads")
    op.drop_index("ix_unified_ads_unified_campaign_id", table_name="unified_ads")
    op.drop_table("unified_ads")
    op.drop_table("unified_ad_creatives")
    op.drop_index("ix_unified_ad_groups_unified_campaign_id", table_name="unified_ad_groups")
    op.drop_table("unified_ad_groups")
    op.drop_table("unified_campaigns")
    op.drop_index("ix_platform_credentials_account", table_name="platform_credentials")
    op.drop_table("platform_credentials")
    op.drop_table("platform_accounts")
    op.drop_table("branches")
    op.execute('DROP TYPE IF EXISTS "UnifiedStatus"')
