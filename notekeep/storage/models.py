from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

OTP_PURPOSES = ("login", "enable_2fa", "disable_2fa")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    username: str
    email: Optional[str] = None
    email_verified: bool = False
    role: str = "user"
    is_disabled: bool = False
    two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class LoginAttempt:
    """One row of the attempt ledger. Never updated after insert."""

    id: str
    identifier: str
    origin_address: str
    success: bool
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshSession:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    origin_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl: timedelta,
        *,
        origin_address: str | None = None,
        user_agent: str | None = None,
    ) -> "RefreshSession":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + ttl,
            origin_address=origin_address,
            user_agent=user_agent,
            created_at=now,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class OneTimeCode:
    id: str
    user_id: str
    code_hash: str
    purpose: str
    expires_at: datetime
    attempts: int = 0
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime | None = None) -> bool:
        return self.used_at is None and self.expires_at > (now or utcnow())


@dataclass
class RecoveryCode:
    id: str
    user_id: str
    code_hash: str
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    user_agent: Optional[str] = None
    origin_address: Optional[str] = None
    label: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class AuthSettings:
    auth_disabled: bool = False
    allow_registration: bool = True
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class EmailVerificationToken:
    """Pending proof of ownership for ``email``; a newer token replaces it."""

    id: str
    user_id: str
    email: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime | None = None) -> bool:
        return self.used_at is None and self.expires_at > (now or utcnow())
