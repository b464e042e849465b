"""Sync report notifier interface.

Report formatting and delivery (chat bots, e-mail) live outside the engine;
after a sync pass the engine hands a SyncReport to whatever Notifier the
composition root was given, fire-and-forget.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    account_name: str
    date: date
    ads_count: int
    total_spend: Decimal
    total_impressions: int
    total_clicks: int
    total_reach: int
    currency: Optional[str] = None

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["date"] = self.date.isoformat()
        payload["total_spend"] = str(self.total_spend)
        return payload


class Notifier(Protocol):
    async def send_report(self, report: SyncReport) -> None:
        ...


class LoggingNotifier:
    """Default notifier: reports go to the log."""

    async def send_report(self, report: SyncReport) -> None:
        logger.info(
            "[NOTIFY] %s %s: %d ads, spend=%s %s, impressions=%d, clicks=%d, reach=%d",
            report.account_name, report.date.isoformat(), report.ads_count,
            report.total_spend, report.currency or "", report.total_impressions,
            report.total_clicks, report.total_reach,
        )
