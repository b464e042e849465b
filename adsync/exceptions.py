"""
Sync Engine Exceptions
======================

Two families:

- PlatformError: raised by platform adapters, mapped from the platform's
  error payload (code/message) or HTTP status.
- SyncError: raised by the engine itself (missing account, no credential,
  no adapter for a platform).

Transient platform failures are caught per chunk/tier by the sync services;
SyncError subclasses are fatal for the call that raised them.
"""

from typing import Any, Dict, Optional


class PlatformError(Exception):
    """Base exception for platform adapter errors."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.payload = payload or {}


class PlatformAuthenticationError(PlatformError):
    """Invalid or expired access token."""
    pass


class PlatformPermissionError(PlatformError):
    """Token lacks permission for the account or object."""
    pass


class PlatformValidationError(PlatformError):
    """Malformed request (bad field, bad filter, unknown id)."""
    pass


class PlatformRateLimitError(PlatformError):
    """The platform throttled the request."""
    pass


class SyncError(Exception):
    """Base exception for sync engine errors."""
    pass


class AccountNotFoundError(SyncError):
    def __init__(self, account_id: Any):
        super().__init__(f"Platform account {account_id} not found")
        self.account_id = account_id


class MissingCredentialError(SyncError):
    """No active credential for the account; nothing can be fetched."""

    def __init__(self, account_id: Any):
        super().__init__(f"No active credential for account {account_id}")
        self.account_id = account_id


class UnknownPlatformError(SyncError):
    def __init__(self, platform: str):
        super().__init__(f"Platform adapter for {platform} not found")
        self.platform = platform
