"""Platform adapter capability.

WHAT:
    The contract every ad platform implementation provides to the sync
    services: fetch raw campaign/ad-group/ad/creative/insight records and
    validate tokens.

WHY:
    Sync services only deal in raw dicts + this interface, so a new platform
    is one new adapter registered in PlatformRegistry, not a new sync path.

REFERENCES:
    - adsync/services/platforms/facebook.py (the implementation)
    - adsync/services/platforms/registry.py (lookup by platform code)
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from adsync.models import BreakdownType, Granularity

RawRecord = Dict[str, Any]


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Invalid date range: {self.start} > {self.end}")


@dataclass
class InsightsQuery:
    """Parameters for one insights fetch."""
    account_external_id: str
    token: str
    date_range: DateRange
    level: str = "ad"
    granularity: Granularity = Granularity.DAILY
    breakdowns: Optional[BreakdownType] = None
    campaign_ids: Optional[Sequence[str]] = None
    ad_ids: Optional[Sequence[str]] = None


@dataclass
class TokenInfo:
    external_id: str
    name: str
    extra: Dict[str, Any] = field(default_factory=dict)


class PlatformAdapter(abc.ABC):
    """Per-platform translation of fetch calls into raw records."""

    platform_code: str

    @abc.abstractmethod
    async def fetch_campaigns(
        self, account_external_id: str, token: str, since: Optional[int] = None
    ) -> List[RawRecord]:
        """Campaigns of the account, optionally only those updated after `since` (unix seconds)."""

    @abc.abstractmethod
    async def fetch_ad_groups(
        self,
        account_external_id: str,
        token: str,
        since: Optional[int] = None,
        campaign_ids: Optional[Sequence[str]] = None,
    ) -> List[RawRecord]:
        ...

    @abc.abstractmethod
    async def fetch_ads(
        self,
        account_external_id: str,
        token: str,
        since: Optional[int] = None,
        campaign_ids: Optional[Sequence[str]] = None,
        ad_group_ids: Optional[Sequence[str]] = None,
    ) -> List[RawRecord]:
        ...

    @abc.abstractmethod
    async def fetch_ad_creatives(
        self,
        account_external_id: str,
        token: str,
        creative_ids: Optional[Sequence[str]] = None,
    ) -> List[RawRecord]:
        """All account creatives, or only the given creative ids."""

    @abc.abstractmethod
    async def fetch_insights(self, query: InsightsQuery) -> List[RawRecord]:
        ...

    @abc.abstractmethod
    async def validate_token(self, token: str) -> TokenInfo:
        ...

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None
