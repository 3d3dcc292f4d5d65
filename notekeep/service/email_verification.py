from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from notekeep.config import Settings
from notekeep.logging import get_logger
from notekeep.service.email import EmailService, send_bounded
from notekeep.service.errors import ConflictError, InvalidTokenError, NotFoundError, ValidationError
from notekeep.service.tokens import hash_token, random_hex
from notekeep.storage.common import AsyncStore
from notekeep.storage.errors import ConstraintViolation
from notekeep.storage.models import EmailVerificationToken, User, new_id, utcnow

logger = get_logger(__name__)


@dataclass
class VerificationDispatch:
    sent: bool
    email: str


class EmailVerificationService:
    """Emailed links proving ownership of an address.

    A pending token remembers the address it was sent to, so confirming it
    both sets and verifies that address. Only the newest token per user is
    kept.
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
        self.ttl = timedelta(hours=settings.email_verification_ttl_hours)
        self.email_timeout = settings.email_timeout_seconds
        self._clock = clock

    async def send(self, user: User, address: Optional[str] = None) -> VerificationDispatch:
        target = address or user.email
        if not target:
            raise ValidationError("No email address to verify", detail={"field": "email"})
        if address is None and user.email_verified:
            raise ValidationError("Email address is already verified")
        if address is not None:
            owner = await self.db.get_user_by_email(address)
            if owner is not None and owner.id != user.id:
                raise ConflictError("email already exists", detail={"field": "email"})

        token = random_hex(32)
        now = self._clock()
        await self.db.create_email_verification(
            EmailVerificationToken(
                id=new_id(),
                user_id=user.id,
                email=target,
                token_hash=hash_token(token),
                expires_at=now + self.ttl,
                created_at=now,
            )
        )
        sent = await send_bounded(
            self.email.send_email_verification,
            target,
            user.username,
            token,
            ttl_hours=int(self.ttl.total_seconds() // 3600),
            timeout=self.email_timeout,
        )
        logger.info("email_verification_issued", user_id=user.id, sent=sent)
        return VerificationDispatch(sent=sent, email=target)

    async def verify(self, token: str) -> User:
        """Consume ``token`` and mark its address verified on the owning account."""
        pending = await self.db.consume_email_verification(hash_token(token.strip()), self._clock())
        if pending is None:
            raise InvalidTokenError("Invalid or expired verification token")
        try:
            user = await self.db.set_verified_email(pending.user_id, pending.email)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        if user is None:
            raise NotFoundError("User not found")
        logger.info("email_verified", user_id=user.id)
        return user

    async def cleanup(self) -> int:
        return await self.db.delete_expired_email_verifications(self._clock())
