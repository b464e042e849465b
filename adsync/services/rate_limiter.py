"""
Adaptive Rate Limiter
=====================

Per-account pause/backoff driven by the utilization the platform reports.

WHY THIS FILE EXISTS
--------------------
Ad platforms report how much of an account's API budget has been used on
every response (a percentage, 0-100). Once an account runs hot, further calls
should be delayed before the platform starts rejecting them.

BEHAVIOUR
---------
- `record_usage(account, pct)`: the latest report always overwrites the
  previous one. At or above THRESHOLD the account is paused for PAUSE_SECONDS
  from that moment.
- `pause(account, seconds)`: a forced cooldown (platform throttled us). A later
  cool usage report does not cancel it.
- `wait_if_needed(account)`: sleeps for exactly the remaining cooldown, or
  returns immediately when the account is not paused.
- The limiter delays, it never rejects.

STATE
-----
In-memory and per instance. One instance is owned by the engine's
composition root (adsync/engine.py) and shared by every adapter call. State
is lost on restart; the worst case is one extra burst of calls.

RELATED FILES
-------------
- adsync/services/platforms/facebook.py: parses usage headers, calls this
- adsync/engine.py: owns the single instance
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

THRESHOLD = 70.0
PAUSE_SECONDS = 30.0


@dataclass
class RateLimitState:
    """Last-seen utilization and pause deadline for one account."""
    account_id: str
    utilization_pct: float = 0.0
    paused_until: float = 0.0
    forced_until: float = 0.0
    updated_at: float = 0.0


class RateLimiter:
    """
    In-memory, per-account adaptive limiter.

    USAGE:
        limiter = RateLimiter()
        await limiter.wait_if_needed("act_123")
        response = await client.get(...)
        limiter.record_usage("act_123", 75)

    TESTING:
        Inject `clock` (monotonic seconds) and `sleep` to simulate time.
    """

    def __init__(
        self,
        threshold: float = THRESHOLD,
        pause_seconds: float = PAUSE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.threshold = threshold
        self.pause_seconds = pause_seconds
        self._clock = clock
        self._sleep = sleep
        self._states: Dict[str, RateLimitState] = {}

    def record_usage(self, account_id: str, utilization_pct: Optional[float]) -> None:
        """Record the utilization reported for an account on the latest response."""
        if utilization_pct is None:
            return

        now = self._clock()
        pct = max(0.0, min(float(utilization_pct), 100.0))
        state = self._states.get(account_id)
        if state is None:
            state = RateLimitState(account_id=account_id)
            self._states[account_id] = state

        state.utilization_pct = pct
        state.updated_at = now

        if pct >= self.threshold:
            state.paused_until = now + self.pause_seconds
            logger.warning(
                "[RATE_LIMIT] Account %s at %.1f%% utilization (threshold %.0f%%), pausing %.0fs",
                account_id, pct, self.threshold, self.pause_seconds,
            )
        else:
            state.paused_until = 0.0

    def pause(self, account_id: str, seconds: float) -> None:
        """Force a cooldown, e.g. after the platform rejected a call as throttled."""
        now = self._clock()
        state = self._states.setdefault(account_id, RateLimitState(account_id=account_id))
        state.forced_until = max(state.forced_until, now + seconds)
        state.updated_at = now
        logger.warning("[RATE_LIMIT] Account %s throttled by platform, pausing %.0fs", account_id, seconds)

    def should_pause(self, account_id: str) -> bool:
        return self.get_pause_time(account_id) > 0

    def get_pause_time(self, account_id: str) -> float:
        """Remaining cooldown in seconds (0 when not paused)."""
        state = self._states.get(account_id)
        if state is None:
            return 0.0
        deadline = max(state.paused_until, state.forced_until)
        if not deadline:
            return 0.0
        return max(0.0, deadline - self._clock())

    async def wait_if_needed(self, account_id: str) -> float:
        """Suspend the caller for the remaining cooldown. Returns seconds waited."""
        remaining = self.get_pause_time(account_id)
        if remaining <= 0:
            return 0.0

        logger.info("[RATE_LIMIT] Account %s paused, waiting %.1fs", account_id, remaining)
        await self._sleep(remaining)
        return remaining

    def get_usage(self, account_id: str) -> Optional[float]:
        state = self._states.get(account_id)
        return state.utilization_pct if state else None

    def get_all_states(self) -> Dict[str, RateLimitState]:
        return dict(self._states)

    def reset(self, account_id: Optional[str] = None) -> None:
        if account_id is None:
            self._states.clear()
        else:
            self._states.pop(account_id, None)
