from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from notekeep.config import Settings
from notekeep.logging import get_logger
from notekeep.service.email import EmailService, send_bounded
from notekeep.service.errors import InvalidTokenError
from notekeep.service.tokens import hash_token, random_hex
from notekeep.storage.common import AsyncStore
from notekeep.storage.models import PasswordResetToken, User, new_id, utcnow

logger = get_logger(__name__)


class PasswordResetService:
    """Single-use emailed reset links.

    Tokens are 32 random bytes, stored hashed, valid for
    ``PASSWORD_RESET_TTL_MINUTES``. A new link is only issued when the
    account's newest unused link is older than
    ``PASSWORD_RESET_INTERVAL_SECONDS``.
    """

    def __init__(
        self,
        db: AsyncStore,
        email: EmailService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.email = email
        self.ttl = timedelta(minutes=settings.password_reset_ttl_minutes)
        self.interval = timedelta(seconds=settings.password_reset_interval_seconds)
        self.email_timeout = settings.email_timeout_seconds
        self._clock = clock

    async def issue(self, user: User) -> bool:
        """Email a reset link to ``user``; False when throttled or undeliverable."""
        if not user.email:
            logger.info("password_reset_skipped", user_id=user.id, reason="no_email")
            return False
        now = self._clock()
        recent = await self.db.latest_active_password_reset(user.id, now)
        if recent is not None and now - recent.created_at < self.interval:
            logger.info("password_reset_skipped", user_id=user.id, reason="too_soon")
            return False

        token = random_hex(32)
        await self.db.create_password_reset(
            PasswordResetToken(
                id=new_id(),
                user_id=user.id,
                token_hash=hash_token(token),
                expires_at=now + self.ttl,
                created_at=now,
            )
        )
        sent = await send_bounded(
            self.email.send_password_reset,
            user.email,
            user.username,
            token,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
            timeout=self.email_timeout,
        )
        logger.info("password_reset_issued", user_id=user.id, sent=sent)
        return sent

    async def lookup(self, token: str) -> PasswordResetToken:
        found = await self.db.get_active_password_reset(hash_token(token.strip()), self._clock())
        if found is None:
            raise InvalidTokenError("Invalid or expired reset token")
        return found

    async def consume(self, reset: PasswordResetToken) -> None:
        """Spend ``reset`` and every other pending link of the same account."""
        if not await self.db.consume_password_reset(reset.id, self._clock()):
            raise InvalidTokenError("Invalid or expired reset token")
        await self.db.invalidate_user_password_resets(reset.user_id, self._clock())

    async def cleanup(self) -> int:
        return await self.db.delete_stale_password_resets(self._clock())
