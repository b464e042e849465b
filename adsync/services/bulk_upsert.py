"""Bulk Upsert Primitive - one multi-row INSERT ... ON CONFLICT per call.

WHAT:
    Builds and executes a single parameterized statement:

        INSERT INTO "t" ("a", "b", ...)
        VALUES (CAST(:p0_0 AS uuid), CAST(:p0_1 AS numeric), ...), (...)
        ON CONFLICT ("a", ...) DO UPDATE SET "b" = CAST(EXCLUDED."b" AS numeric), ...

WHY:
    - The only write path for sync data: every entity, insight and breakdown
      table is written through `BulkUpserter.execute`, so a retried pass with
      the same composite keys overwrites instead of duplicating
    - Values arrive loosely typed from the platform (numbers as strings,
      nested objects). Each column is coerced in Python AND cast explicitly in
      the SQL text, driven by the COLUMN_KINDS registry below rather than
      per-call branching
    - One statement per call: a batch applies completely or not at all

REFERENCES:
    - adsync/services/sync_store.py (the only caller)
    - https://www.postgresql.org/docs/current/sql-insert.html#SQL-ON-CONFLICT
"""

from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.utils.dates import parse_date, parse_platform_datetime

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

# PostgreSQL wire protocol limit on bind parameters per statement (asyncpg enforces it)
MAX_BIND_PARAMS = 32767


# =============================================================================
# COLUMN KINDS
# =============================================================================

def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return str(value.value)
    return str(value)


def _to_uuid(value: Any) -> Optional[UUID]:
    if value is None or value == "":
        return None
    return value if isinstance(value, UUID) else UUID(str(value))


def _to_numeric(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _to_integer(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    # "12", "12.0", Decimal("12") all land here
    return int(Decimal(str(value)))


def _to_boolean(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes")
    return bool(value)


def _to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    return parse_date(value)


def _to_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return parse_platform_datetime(str(value))


class ColumnKind(enum.Enum):
    """SQL cast target + Python coercion for one class of column."""
    TEXT = ("text", _to_text)
    UUID = ("uuid", _to_uuid)
    NUMERIC = ("numeric", _to_numeric)
    INTEGER = ("integer", _to_integer)
    BIGINT = ("bigint", _to_integer)
    BOOLEAN = ("boolean", _to_boolean)
    JSONB = ("jsonb", _to_json)
    DATE = ("date", _to_date)
    TIMESTAMP = ("timestamptz", _to_timestamp)
    STATUS = ('"UnifiedStatus"', _to_text)

    def __init__(self, sql_type: str, coerce: Callable[[Any], Any]):
        self.sql_type = sql_type
        self.coerce = coerce


# Column name -> kind. Columns not listed here are bound as text.
COLUMN_KINDS: Dict[str, ColumnKind] = {
    # identities
    "id": ColumnKind.UUID,
    "platform_account_id": ColumnKind.UUID,
    "unified_campaign_id": ColumnKind.UUID,
    "unified_ad_group_id": ColumnKind.UUID,
    "unified_ad_id": ColumnKind.UUID,
    "unified_ad_creative_id": ColumnKind.UUID,
    "unified_insight_id": ColumnKind.UUID,
    "branch_id": ColumnKind.UUID,
    # money
    "daily_budget": ColumnKind.NUMERIC,
    "lifetime_budget": ColumnKind.NUMERIC,
    "spend": ColumnKind.NUMERIC,
    "spend_growth": ColumnKind.NUMERIC,
    # counters
    "hour": ColumnKind.INTEGER,
    "ad_account_count": ColumnKind.INTEGER,
    "ads_count": ColumnKind.INTEGER,
    "impressions": ColumnKind.BIGINT,
    "reach": ColumnKind.BIGINT,
    "clicks": ColumnKind.BIGINT,
    "conversions": ColumnKind.BIGINT,
    "results": ColumnKind.BIGINT,
    "impressions_growth": ColumnKind.BIGINT,
    "clicks_growth": ColumnKind.BIGINT,
    "results_growth": ColumnKind.BIGINT,
    "conversions_growth": ColumnKind.BIGINT,
    # documents
    "platform_data": ColumnKind.JSONB,
    "platform_metrics": ColumnKind.JSONB,
    "creative_data": ColumnKind.JSONB,
    "targeting": ColumnKind.JSONB,
    "creative": ColumnKind.JSONB,
    # time
    "date": ColumnKind.DATE,
    "start_time": ColumnKind.TIMESTAMP,
    "end_time": ColumnKind.TIMESTAMP,
    "synced_at": ColumnKind.TIMESTAMP,
    "created_at": ColumnKind.TIMESTAMP,
    "updated_at": ColumnKind.TIMESTAMP,
    "deleted_at": ColumnKind.TIMESTAMP,
    # enums
    "status": ColumnKind.STATUS,
}


def column_kind(column: str, registry: Mapping[str, ColumnKind] = COLUMN_KINDS) -> ColumnKind:
    return registry.get(column, ColumnKind.TEXT)


# =============================================================================
# STATEMENT BUILDER
# =============================================================================

@dataclass(frozen=True)
class UpsertStatement:
    sql: str
    params: Dict[str, Any]
    row_count: int


def _quote(identifier: str) -> str:
    if not _IDENTIFIER.match(identifier):
        raise ValueError(f"Invalid SQL identifier: {identifier!r}")
    return f'"{identifier}"'


def _cast(expression: str, kind: ColumnKind) -> str:
    if kind is ColumnKind.TEXT:
        return expression
    return f"CAST({expression} AS {kind.sql_type})"


def build_upsert(
    table: str,
    rows: Sequence[Mapping[str, Any]],
    unique_columns: Sequence[str],
    update_columns: Sequence[str],
    registry: Mapping[str, ColumnKind] = COLUMN_KINDS,
) -> UpsertStatement:
    """Build the multi-row upsert for uniformly-shaped rows.

    Columns are taken from the first row; every row must have exactly the
    same keys. An empty `update_columns` produces ON CONFLICT DO NOTHING.

    Raises:
        ValueError: empty rows, non-uniform rows, or unique/update columns
            that are not present in the rows
    """
    if not rows:
        raise ValueError("build_upsert requires at least one row")

    columns = list(rows[0].keys())
    column_set = set(columns)
    for index, row in enumerate(rows):
        if set(row.keys()) != column_set:
            raise ValueError(
                f"Row {index} for {table} has columns {sorted(row.keys())}, expected {sorted(columns)}"
            )

    missing = [c for c in list(unique_columns) + list(update_columns) if c not in column_set]
    if missing:
        raise ValueError(f"Columns {missing} not present in rows for {table}")
    if not unique_columns:
        raise ValueError(f"Upsert into {table} needs at least one unique column")

    kinds = {column: column_kind(column, registry) for column in columns}
    params: Dict[str, Any] = {}
    values_sql: List[str] = []
    for r, row in enumerate(rows):
        placeholders = []
        for c, column in enumerate(columns):
            name = f"p{r}_{c}"
            params[name] = kinds[column].coerce(row[column])
            placeholders.append(_cast(f":{name}", kinds[column]))
        values_sql.append("(" + ", ".join(placeholders) + ")")

    sql = (
        f"INSERT INTO {_quote(table)} ({', '.join(_quote(c) for c in columns)}) "
        f"VALUES {', '.join(values_sql)} "
        f"ON CONFLICT ({', '.join(_quote(c) for c in unique_columns)}) "
    )
    if update_columns:
        assignments = ", ".join(
            f"{_quote(c)} = {_cast(f'EXCLUDED.{_quote(c)}', kinds[c])}" for c in update_columns
        )
        sql += f"DO UPDATE SET {assignments}"
    else:
        sql += "DO NOTHING"

    return UpsertStatement(sql=sql, params=params, row_count=len(rows))


# =============================================================================
# EXECUTOR
# =============================================================================

def _sample(row: Mapping[str, Any], limit: int = 1000) -> str:
    rendered = json.dumps(dict(row), default=str)
    return rendered if len(rendered) <= limit else rendered[:limit] + "..."


class BulkUpserter:
    """Executes upserts on an AsyncSession (caller owns the transaction).

    Large batches are split into several statements so that none exceeds
    `max_params` bind parameters; all of them run in the caller's transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: Mapping[str, ColumnKind] = COLUMN_KINDS,
        max_params: int = MAX_BIND_PARAMS,
    ):
        self.session = session
        self.registry = registry
        self.max_params = max_params

    def rows_per_statement(self, column_count: int) -> int:
        return max(1, self.max_params // max(1, column_count))

    async def execute(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        unique_columns: Sequence[str],
        update_columns: Sequence[str],
    ) -> int:
        """Upsert rows and return the affected row count (0 for no rows)."""
        if not rows:
            return 0

        step = self.rows_per_statement(len(rows[0]))
        affected = 0
        for offset in range(0, len(rows), step):
            batch = rows[offset:offset + step]
            try:
                statement = build_upsert(table, batch, unique_columns, update_columns, self.registry)
                result = await self.session.execute(text(statement.sql), statement.params)
            except Exception:
                logger.error(
                    "[BULK_UPSERT] Failed upserting %d rows into %s. Sample row: %s",
                    len(batch), table, _sample(batch[0]),
                )
                raise
            affected += result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(batch)

        if len(rows) > step:
            logger.debug("[BULK_UPSERT] %s: %d rows split into statements of %d", table, len(rows), step)
        logger.debug("[BULK_UPSERT] %s: %d rows affected", table, affected)
        return affected
