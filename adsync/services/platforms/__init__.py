from adsync.services.platforms.base import (
    DateRange,
    InsightsQuery,
    PlatformAdapter,
    RawRecord,
    TokenInfo,
)
from adsync.services.platforms.facebook import FacebookAdapter, FacebookGraphClient
from adsync.services.platforms.registry import PlatformRegistry

__all__ = [
    "DateRange",
    "InsightsQuery",
    "PlatformAdapter",
    "RawRecord",
    "TokenInfo",
    "FacebookAdapter",
    "FacebookGraphClient",
    "PlatformRegistry",
]
