"""Credential provider consumed by the sync services.

Token storage, encryption and refresh live outside the engine; the engine
only asks for the currently active token of an account.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from adsync.models import PlatformCredential


class CredentialProvider(Protocol):
    async def get_active_credential(self, account_id: UUID) -> Optional[str]:
        ...


class DatabaseCredentialProvider:
    """Newest active, unexpired token from `platform_credentials`."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_credential(self, account_id: UUID) -> Optional[str]:
        now = datetime.now(timezone.utc)
        result = await self.session.execute(
            select(PlatformCredential.access_token)
            .where(
                PlatformCredential.platform_account_id == account_id,
                PlatformCredential.is_active.is_(True),
                or_(PlatformCredential.expires_at.is_(None), PlatformCredential.expires_at > now),
            )
            .order_by(PlatformCredential.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
