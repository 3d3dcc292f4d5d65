from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from notekeep.config import Settings
from notekeep.logging import get_logger
from notekeep.service.errors import (
    AccountDisabledError,
    InvalidTokenError,
    SessionRevokedError,
)
from notekeep.service.tokens import TokenCodec, hash_token, random_hex
from notekeep.storage.common import AsyncStore
from notekeep.storage.models import RefreshSession, User, utcnow

logger = get_logger(__name__)


@dataclass
class RequestMeta:
    """Where a request came from; recorded on sessions, attempts and devices."""

    origin_address: str = "unknown"
    user_agent: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class SessionInfo:
    id: str
    origin_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    expires_at: datetime
    is_current: bool = False


class SessionManager:
    """Issues access tokens and rotating refresh sessions.

    A refresh token is usable exactly once. Presenting one whose row no longer
    exists means it was already rotated, so somebody else holds a copy; every
    session of that user is revoked and the caller must sign in again.
    """

    def __init__(
        self,
        db: AsyncStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.codec = codec
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl_short = timedelta(days=settings.refresh_token_ttl_days_short)
        self.refresh_ttl_long = timedelta(days=settings.refresh_token_ttl_days_long)
        self._clock = clock

    def _access_token(self, user: User, now: datetime) -> str:
        return self.codec.encode(
            {
                "sub": user.id,
                "username": user.username,
                "role": user.role,
                "token_type": "access",
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int((now + self.access_ttl).timestamp()),
            }
        )

    def _refresh_token(self, user_id: str, remember_me: bool, now: datetime) -> tuple[str, datetime]:
        expires_at = now + (self.refresh_ttl_long if remember_me else self.refresh_ttl_short)
        token = self.codec.encode(
            {
                "sub": user_id,
                "token_type": "refresh",
                "jti": random_hex(32),
                "remember": remember_me,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
            }
        )
        return token, expires_at

    def _pair(self, user: User, refresh_token: str, refresh_expires_at: datetime, now: datetime) -> TokenPair:
        return TokenPair(
            access_token=self._access_token(user, now),
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_at=refresh_expires_at,
        )

    async def issue(self, user: User, *, remember_me: bool, meta: RequestMeta) -> TokenPair:
        now = self._clock()
        refresh_token, expires_at = self._refresh_token(user.id, remember_me, now)
        await self.db.create_refresh_session(
            RefreshSession.new(
                user.id,
                hash_token(refresh_token),
                expires_at - now,
                origin_address=meta.origin_address,
                user_agent=meta.user_agent,
            )
        )
        logger.info("refresh_session_created", user_id=user.id, remember_me=remember_me)
        return self._pair(user, refresh_token, expires_at, now)

    async def rotate(self, refresh_token: str, meta: RequestMeta) -> TokenPair:
        claims = self.codec.decode(refresh_token, token_type="refresh")
        if not claims:
            raise InvalidTokenError("Invalid or expired refresh token")
        user_id = str(claims["sub"])
        old_hash = hash_token(refresh_token)

        existing = await self.db.get_refresh_session_by_hash(old_hash)
        if existing is None:
            await self._revoke_for_reuse(user_id, reason="unknown_token")
            raise SessionRevokedError()
        now = self._clock()
        if existing.user_id != user_id or existing.is_expired(now):
            raise InvalidTokenError("Invalid or expired refresh token")

        user = await self.db.get_user(user_id)
        if user is None:
            await self.db.delete_refresh_session_by_hash(old_hash)
            raise InvalidTokenError("Invalid or expired refresh token")
        if user.is_disabled:
            await self.db.delete_user_refresh_sessions(user_id)
            raise AccountDisabledError()

        remember_me = bool(claims.get("remember", False))
        new_token, expires_at = self._refresh_token(user_id, remember_me, now)
        # outcome must reach the client even past the store timeout
        rotated = await self.db.call_to_completion(
            "rotate_refresh_session",
            old_hash,
            RefreshSession.new(
                user_id,
                hash_token(new_token),
                expires_at - now,
                origin_address=meta.origin_address,
                user_agent=meta.user_agent,
            ),
        )
        if not rotated:
            await self._revoke_for_reuse(user_id, reason="concurrent_rotation")
            raise SessionRevokedError()
        logger.info("refresh_session_rotated", user_id=user_id)
        return self._pair(user, new_token, expires_at, now)

    async def _revoke_for_reuse(self, user_id: str, *, reason: str) -> None:
        revoked = await self.db.delete_user_refresh_sessions(user_id)
        logger.warning(
            "refresh_token_reuse_detected", user_id=user_id, reason=reason, revoked=revoked
        )

    def verify_access(self, access_token: str) -> dict[str, Any]:
        claims = self.codec.decode(access_token, token_type="access")
        if not claims:
            raise InvalidTokenError("Invalid or expired access token")
        return claims

    async def list(self, user_id: str, current_refresh_token: Optional[str] = None) -> List[SessionInfo]:
        current_hash = hash_token(current_refresh_token) if current_refresh_token else None
        rows = await self.db.list_refresh_sessions(user_id, self._clock())
        return [
            SessionInfo(
                id=row.id,
                origin_address=row.origin_address,
                user_agent=row.user_agent,
                created_at=row.created_at,
                expires_at=row.expires_at,
                is_current=current_hash is not None and row.token_hash == current_hash,
            )
            for row in rows
        ]

    async def revoke(self, session_id: str, user_id: str) -> bool:
        removed = await self.db.delete_refresh_session(session_id, user_id)
        if removed:
            logger.info("refresh_session_revoked", user_id=user_id, session_id=session_id)
        return removed

    async def revoke_others(self, user_id: str, current_refresh_token: str) -> int:
        removed = await self.db.delete_other_refresh_sessions(
            user_id, hash_token(current_refresh_token)
        )
        logger.info("refresh_sessions_revoked_others", user_id=user_id, revoked=removed)
        return removed

    async def revoke_all(self, user_id: str) -> int:
        removed = await self.db.delete_user_refresh_sessions(user_id)
        logger.info("refresh_sessions_revoked_all", user_id=user_id, revoked=removed)
        return removed

    async def revoke_token(self, refresh_token: str) -> bool:
        return await self.db.delete_refresh_session_by_hash(hash_token(refresh_token))

    async def cleanup_expired(self) -> int:
        return await self.db.delete_expired_refresh_sessions(self._clock())
