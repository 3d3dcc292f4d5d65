from __future__ import annotations

import hmac
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from notekeep.config import Settings
from notekeep.logging import get_logger
from notekeep.service.email import EmailService, send_bounded
from notekeep.service.errors import NotFoundError, ValidationError
from notekeep.service.tokens import hash_token
from notekeep.storage.common import AsyncStore
from notekeep.storage.models import OTP_PURPOSES, OneTimeCode, new_id, utcnow

logger = get_logger(__name__)

CODE_DIGITS = 6


@dataclass
class OtpDispatch:
    sent: bool
    wait_seconds: int = 0


def generate_code() -> str:
    value = int.from_bytes(secrets.token_bytes(4), "big") % 10**CODE_DIGITS
    return str(value).zfill(CODE_DIGITS)


class OneTimeCodeService:
    """Emailed six-digit codes for login and for toggling two-factor auth."""

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
        self.ttl = timedelta(minutes=settings.otp_ttl_minutes)
        self.max_attempts = settings.otp_max_attempts
        self.resend_interval = timedelta(seconds=settings.otp_resend_interval_seconds)
        self.email_timeout = settings.email_timeout_seconds
        self._clock = clock

    @staticmethod
    def _check_purpose(purpose: str) -> None:
        if purpose not in OTP_PURPOSES:
            raise ValidationError(
                "Unknown code purpose", detail={"allowed": list(OTP_PURPOSES)}
            )

    async def seconds_until_next_code(self, user_id: str, purpose: str) -> int:
        latest = await self.db.latest_one_time_code(user_id, purpose)
        if latest is None:
            return 0
        remaining = latest.created_at + self.resend_interval - self._clock()
        return max(0, math.ceil(remaining.total_seconds()))

    async def send(self, user_id: str, purpose: str) -> OtpDispatch:
        self._check_purpose(purpose)
        user = await self.db.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not user.email:
            raise ValidationError("An email address is required for two-factor codes")
        if not user.email_verified:
            raise ValidationError("Email address must be verified first")

        wait = await self.seconds_until_next_code(user_id, purpose)
        if wait > 0:
            logger.info("otp_resend_throttled", user_id=user_id, purpose=purpose, wait_seconds=wait)
            return OtpDispatch(sent=False, wait_seconds=wait)

        code = generate_code()
        now = self._clock()
        await self.db.create_one_time_code(
            OneTimeCode(
                id=new_id(),
                user_id=user_id,
                code_hash=hash_token(code),
                purpose=purpose,
                expires_at=now + self.ttl,
                created_at=now,
            )
        )

        sent = await send_bounded(
            self.email.send_one_time_code,
            user.email,
            user.username,
            code,
            purpose,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
            timeout=self.email_timeout,
        )
        logger.info("otp_issued", user_id=user_id, purpose=purpose, sent=sent)
        return OtpDispatch(sent=sent)

    async def verify(self, user_id: str, purpose: str, code: str) -> bool:
        """Check ``code`` against the active code for ``purpose``.

        Each check claims one attempt in the store before comparing, so
        concurrent guesses cannot share a stale counter. Once the ceiling is
        reached the code is discarded and even the correct value fails.
        """
        self._check_purpose(purpose)
        active = await self.db.get_active_one_time_code(user_id, purpose, self._clock())
        if active is None:
            return False
        attempt = await self.db.claim_one_time_code_attempt(active.id, self.max_attempts)
        if attempt is None:
            await self.db.invalidate_one_time_code(active.id)
            logger.warning("otp_attempts_exhausted", user_id=user_id, purpose=purpose)
            return False

        candidate = hash_token("".join(code.split()))
        if not hmac.compare_digest(candidate, active.code_hash):
            logger.info("otp_mismatch", user_id=user_id, purpose=purpose, attempts=attempt)
            return False

        accepted = await self.db.mark_one_time_code_used(active.id, self._clock())
        if accepted:
            logger.info("otp_accepted", user_id=user_id, purpose=purpose)
        return accepted

    async def cleanup(self) -> int:
        return await self.db.delete_stale_one_time_codes(self._clock())
