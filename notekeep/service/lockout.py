from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from notekeep.config import Settings
from notekeep.logging import get_logger
from notekeep.service.errors import AccountLockedError, OriginBlockedError
from notekeep.storage.common import AsyncStore
from notekeep.storage.models import utcnow

logger = get_logger(__name__)


def retry_after_seconds(first_failure: Optional[datetime], window: timedelta, now: datetime) -> int:
    if first_failure is None:
        return 0
    return max(0, math.ceil((first_failure + window - now).total_seconds()))


class LockoutGuard:
    """Brute-force protection over the attempt ledger.

    Identifier and origin address are counted independently over a trailing
    window. Counts always come from storage so every process agrees.
    """

    def __init__(
        self,
        db: AsyncStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.window = timedelta(minutes=settings.login_lockout_window_minutes)
        self.max_identifier = settings.login_max_attempts_identifier
        self.max_origin = settings.login_max_attempts_origin
        self.retention = timedelta(days=settings.login_attempt_retention_days)
        self._clock = clock

    async def check(self, identifier: str, origin_address: str) -> int:
        """Raise when either dimension is locked; otherwise return attempts left."""
        now = self._clock()
        since = now - self.window
        identifier = identifier.lower()

        identifier_failures = await self.db.count_failed_attempts_for_identifier(identifier, since)
        if identifier_failures >= self.max_identifier:
            first = await self.db.first_failed_attempt_for_identifier(identifier, since)
            retry_after = retry_after_seconds(first, self.window, now)
            logger.warning(
                "login_identifier_locked",
                identifier=identifier,
                failures=identifier_failures,
                retry_after=retry_after,
            )
            raise AccountLockedError(
                "Too many failed login attempts, please try again later",
                retry_after=retry_after,
                max_attempts=self.max_identifier,
            )

        origin_failures = await self.db.count_failed_attempts_for_origin(origin_address, since)
        if origin_failures >= self.max_origin:
            first = await self.db.first_failed_attempt_for_origin(origin_address, since)
            retry_after = retry_after_seconds(first, self.window, now)
            logger.warning(
                "login_origin_blocked",
                origin_address=origin_address,
                failures=origin_failures,
                retry_after=retry_after,
            )
            raise OriginBlockedError(
                "Too many failed login attempts from this address, please try again later",
                retry_after=retry_after,
                max_attempts=self.max_origin,
            )

        return self.max_identifier - identifier_failures

    async def record_failure(self, identifier: str, origin_address: str) -> int:
        """Append a failed attempt; returns identifier attempts left in the window."""
        now = self._clock()
        await self.db.record_login_attempt(identifier, origin_address, False, now)
        failures = await self.db.count_failed_attempts_for_identifier(
            identifier.lower(), now - self.window
        )
        return max(0, self.max_identifier - failures)

    async def record_success(self, identifier: str, origin_address: str) -> None:
        await self.db.record_login_attempt(identifier, origin_address, True, self._clock())

    async def prune(self) -> int:
        removed = await self.db.prune_login_attempts(self._clock() - self.retention)
        if removed:
            logger.info("login_attempts_pruned", removed=removed)
        return removed
