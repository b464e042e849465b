"""Lookup of platform adapters by platform code."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from adsync.exceptions import UnknownPlatformError
from adsync.services.platforms.base import PlatformAdapter

logger = logging.getLogger(__name__)


class PlatformRegistry:
    def __init__(self, adapters: Iterable[PlatformAdapter] = ()):
        self._adapters: Dict[str, PlatformAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: PlatformAdapter) -> None:
        self._adapters[adapter.platform_code] = adapter
        logger.debug("[PLATFORMS] Registered adapter for %s", adapter.platform_code)

    def get_adapter(self, platform_code: str) -> PlatformAdapter:
        adapter = self._adapters.get(str(platform_code))
        if adapter is None:
            raise UnknownPlatformError(str(platform_code))
        return adapter

    @property
    def platform_codes(self) -> List[str]:
        return sorted(self._adapters)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
