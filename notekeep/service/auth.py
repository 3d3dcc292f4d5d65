from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Protocol

from notekeep.config import Settings
from notekeep.logging import get_logger
from notekeep.service.email import EmailService
from notekeep.service.email_verification import EmailVerificationService, VerificationDispatch
from notekeep.service.errors import (
    AccountDisabledError,
    ConflictError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    RegistrationClosedError,
    ValidationError,
)
from notekeep.service.lockout import LockoutGuard
from notekeep.service.otp import OneTimeCodeService, OtpDispatch
from notekeep.service.password_reset import PasswordResetService
from notekeep.service.passwords import PasswordService, ensure_strong_password
from notekeep.service.recovery import RecoveryCodeService, RecoveryCodeStatus
from notekeep.service.sessions import RequestMeta, SessionInfo, SessionManager, TokenPair
from notekeep.service.settings_provider import AuthSettingsProvider
from notekeep.service.tokens import TokenCodec
from notekeep.service.trusted_devices import TrustedDeviceService
from notekeep.storage.common import AsyncStore
from notekeep.storage.errors import ConstraintViolation
from notekeep.storage.models import (
    AuthSettings,
    EmailVerificationToken,
    OneTimeCode,
    PasswordResetToken,
    RecoveryCode,
    RefreshSession,
    TrustedDevice,
    User,
    utcnow,
)

logger = get_logger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,30}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SYSTEM_USERNAME = "notekeep-system"


class AuthStore(Protocol):
    """Operations the auth core needs from a backing store."""

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        role: str = "user",
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def count_users(self) -> int: ...

    def set_two_factor_enabled(self, user_id: str, enabled: bool) -> Optional[User]: ...

    def set_user_disabled(self, user_id: str, disabled: bool) -> Optional[User]: ...

    def set_verified_email(self, user_id: str, email: str) -> Optional[User]: ...

    def record_last_login(self, user_id: str, at: datetime) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def record_login_attempt(
        self, identifier: str, origin_address: str, success: bool, occurred_at: Optional[datetime] = None
    ) -> object: ...

    def count_failed_attempts_for_identifier(self, identifier: str, since: datetime) -> int: ...

    def count_failed_attempts_for_origin(self, origin_address: str, since: datetime) -> int: ...

    def first_failed_attempt_for_identifier(self, identifier: str, since: datetime) -> Optional[datetime]: ...

    def first_failed_attempt_for_origin(self, origin_address: str, since: datetime) -> Optional[datetime]: ...

    def prune_login_attempts(self, before: datetime) -> int: ...

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession: ...

    def get_refresh_session_by_hash(self, token_hash: str) -> Optional[RefreshSession]: ...

    def rotate_refresh_session(self, old_hash: str, new_session: RefreshSession) -> bool: ...

    def delete_refresh_session_by_hash(self, token_hash: str) -> bool: ...

    def list_refresh_sessions(self, user_id: str, now: Optional[datetime] = None) -> List[RefreshSession]: ...

    def delete_refresh_session(self, session_id: str, user_id: str) -> bool: ...

    def delete_other_refresh_sessions(self, user_id: str, keep_hash: str) -> int: ...

    def delete_user_refresh_sessions(self, user_id: str) -> int: ...

    def delete_expired_refresh_sessions(self, now: Optional[datetime] = None) -> int: ...

    def create_one_time_code(self, code: OneTimeCode) -> OneTimeCode: ...

    def get_active_one_time_code(
        self, user_id: str, purpose: str, now: Optional[datetime] = None
    ) -> Optional[OneTimeCode]: ...

    def latest_one_time_code(self, user_id: str, purpose: str) -> Optional[OneTimeCode]: ...

    def claim_one_time_code_attempt(self, code_id: str, max_attempts: int) -> Optional[int]: ...

    def invalidate_one_time_code(self, code_id: str) -> None: ...

    def mark_one_time_code_used(self, code_id: str, used_at: Optional[datetime] = None) -> bool: ...

    def delete_stale_one_time_codes(self, now: Optional[datetime] = None) -> int: ...

    def replace_recovery_codes(self, user_id: str, code_hashes: Iterable[str]) -> List[RecoveryCode]: ...

    def consume_recovery_code(self, user_id: str, code_hash: str, used_at: Optional[datetime] = None) -> bool: ...

    def count_recovery_codes(self, user_id: str) -> int: ...

    def count_unused_recovery_codes(self, user_id: str) -> int: ...

    def recovery_codes_created_at(self, user_id: str) -> Optional[datetime]: ...

    def delete_recovery_codes(self, user_id: str) -> int: ...

    def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice: ...

    def get_trusted_device_by_hash(self, token_hash: str) -> Optional[TrustedDevice]: ...

    def list_trusted_devices(self, user_id: str, now: Optional[datetime] = None) -> List[TrustedDevice]: ...

    def delete_trusted_device(self, device_id: str, user_id: Optional[str] = None) -> bool: ...

    def delete_user_trusted_devices(self, user_id: str) -> int: ...

    def delete_expired_trusted_devices(self, now: Optional[datetime] = None) -> int: ...

    def create_email_verification(self, token: EmailVerificationToken) -> EmailVerificationToken: ...

    def consume_email_verification(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[EmailVerificationToken]: ...

    def delete_expired_email_verifications(self, now: Optional[datetime] = None) -> int: ...

    def create_password_reset(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def latest_active_password_reset(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]: ...

    def get_active_password_reset(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]: ...

    def consume_password_reset(self, token_id: str, used_at: Optional[datetime] = None) -> bool: ...

    def invalidate_user_password_resets(self, user_id: str, at: Optional[datetime] = None) -> int: ...

    def delete_stale_password_resets(self, now: Optional[datetime] = None) -> int: ...

    def get_auth_settings(self) -> Optional[AuthSettings]: ...

    def save_auth_settings(self, settings: AuthSettings) -> AuthSettings: ...


@dataclass
class LoginResult:
    """Outcome of a password or second-factor step.

    ``second_factor_required`` results carry only ``user_id``; the profile
    and tokens are withheld until the second factor succeeds.
    """

    status: str
    user_id: str
    user: Optional[User] = None
    tokens: Optional[TokenPair] = None
    trusted_device_token: Optional[str] = None

    @property
    def requires_second_factor(self) -> bool:
        return self.status == "second_factor_required"


@dataclass
class TwoFactorStatus:
    enabled: bool
    has_verified_email: bool
    recovery_codes_remaining: int


class AuthService:
    """Password login, rotating sessions and the second factor, for either store backend."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
        settings_provider: Optional[AuthSettingsProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.db = AsyncStore(store, timeout=settings.store_timeout_seconds)
        self.email = email or EmailService(timeout=settings.email_timeout_seconds)
        self.settings_provider = settings_provider or AuthSettingsProvider(self.db, settings)
        self.passwords = PasswordService(settings)
        self.lockout = LockoutGuard(self.db, settings, clock=clock)
        self.sessions = SessionManager(self.db, TokenCodec(settings), settings, clock=clock)
        self.otp = OneTimeCodeService(self.db, self.email, settings, clock=clock)
        self.recovery = RecoveryCodeService(self.db)
        self.devices = TrustedDeviceService(self.db, settings, clock=clock)
        self.verification = EmailVerificationService(self.db, self.email, settings, clock=clock)
        self.resets = PasswordResetService(self.db, self.email, settings, clock=clock)
        self._clock = clock
        self._background: set[asyncio.Task] = set()
        self.logger = logger

    # -- helpers ---------------------------------------------------------

    async def _require_user(self, user_id: str) -> User:
        user = await self.db.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def _find_login_user(self, identifier: str) -> Optional[User]:
        user = await self.db.get_user_by_username(identifier)
        if user is None and "@" in identifier:
            user = await self.db.get_user_by_email(identifier)
        return user

    async def _check_password(self, user_id: str, password: str) -> bool:
        record = await self.db.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            await self.passwords.dummy_verify(password)
            return False
        stored_hash, algo = record
        return await self.passwords.verify(stored_hash, algo, password)

    async def _set_password(self, user_id: str, password: str) -> None:
        digest, algo = await self.passwords.hash(password)
        await self.db.save_password(user_id, digest, algo)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _rehash(self, user_id: str, password: str) -> None:
        try:
            await self._set_password(user_id, password)
            self.logger.info("password_rehashed", user_id=user_id)
        except Exception as exc:
            # never affects the login that scheduled it
            self.logger.error("password_rehash_failed", user_id=user_id, error=str(exc))

    async def _complete_login(
        self, user: User, *, remember_me: bool, meta: RequestMeta
    ) -> LoginResult:
        tokens = await self.sessions.issue(user, remember_me=remember_me, meta=meta)
        refreshed = await self.db.record_last_login(user.id, self._clock())
        return LoginResult(
            status="authenticated",
            user_id=user.id,
            user=refreshed or user,
            tokens=tokens,
        )

    # -- login -----------------------------------------------------------

    async def login(
        self,
        identifier: str,
        secret: str,
        remember_me: bool = False,
        *,
        origin_address: str = "unknown",
        user_agent: Optional[str] = None,
        device_token: Optional[str] = None,
    ) -> LoginResult:
        identifier = identifier.strip()
        meta = RequestMeta(origin_address=origin_address, user_agent=user_agent)
        await self.lockout.check(identifier, origin_address)

        user = await self._find_login_user(identifier)
        if user is None:
            await self.passwords.dummy_verify(secret)
            remaining = await self.lockout.record_failure(identifier, origin_address)
            self.logger.warning("login_failed", reason="unknown_identifier", origin_address=origin_address)
            raise InvalidCredentialsError(
                remaining_attempts=remaining, max_attempts=self.lockout.max_identifier
            )

        record = await self.db.get_password_record(user.id)
        if record is None:
            await self.passwords.dummy_verify(secret)
            valid = False
        else:
            valid = await self.passwords.verify(record[0], record[1], secret)
        if not valid:
            remaining = await self.lockout.record_failure(identifier, origin_address)
            self.logger.warning(
                "login_failed", reason="bad_password", user_id=user.id, remaining=remaining
            )
            raise InvalidCredentialsError(
                remaining_attempts=remaining, max_attempts=self.lockout.max_identifier
            )

        if user.is_disabled:
            self.logger.warning("login_rejected_disabled", user_id=user.id)
            raise AccountDisabledError()

        await self.lockout.record_success(identifier, origin_address)
        if self.passwords.needs_rehash(record[0]):
            self._spawn(self._rehash(user.id, secret))

        if user.two_factor_enabled:
            if await self.devices.verify(device_token, user.id):
                self.logger.info("login_trusted_device", user_id=user.id)
            else:
                self.logger.info("login_second_factor_required", user_id=user.id)
                return LoginResult(status="second_factor_required", user_id=user.id)

        result = await self._complete_login(user, remember_me=remember_me, meta=meta)
        self.logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return result

    async def verify_second_factor(
        self,
        user_id: str,
        code: str,
        is_recovery_code: bool = False,
        trust_device: bool = False,
        remember_me: bool = False,
        *,
        origin_address: str = "unknown",
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        user = await self.db.get_user(user_id)
        if user is None or not user.two_factor_enabled:
            raise InvalidCodeError("Invalid or expired code")
        if user.is_disabled:
            raise AccountDisabledError()

        if is_recovery_code:
            accepted = await self.recovery.consume(user.id, code)
        else:
            accepted = await self.otp.verify(user.id, "login", code)
        if not accepted:
            self.logger.warning(
                "second_factor_failed", user_id=user.id, recovery=is_recovery_code
            )
            raise InvalidCodeError("Invalid or expired code")

        meta = RequestMeta(origin_address=origin_address, user_agent=user_agent)
        result = await self._complete_login(user, remember_me=remember_me, meta=meta)
        if trust_device:
            result.trusted_device_token = await self.devices.create(user.id, meta)
        self.logger.info(
            "second_factor_succeeded", user_id=user.id, recovery=is_recovery_code
        )
        return result

    # -- sessions --------------------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        *,
        origin_address: str = "unknown",
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        if not refresh_token:
            raise InvalidTokenError("Refresh token required")
        return await self.sessions.rotate(
            refresh_token, RequestMeta(origin_address=origin_address, user_agent=user_agent)
        )

    async def logout(self, refresh_token: Optional[str]) -> None:
        if refresh_token and await self.sessions.revoke_token(refresh_token):
            self.logger.info("logout")

    async def logout_all(self, user_id: str) -> int:
        revoked = await self.sessions.revoke_all(user_id)
        await self.devices.revoke_all(user_id)
        return revoked

    async def list_sessions(
        self, user_id: str, current_refresh_token: Optional[str] = None
    ) -> List[SessionInfo]:
        return await self.sessions.list(user_id, current_refresh_token)

    async def revoke_session(self, session_id: str, user_id: str) -> bool:
        return await self.sessions.revoke(session_id, user_id)

    async def revoke_other_sessions(self, user_id: str, current_refresh_token: Optional[str]) -> int:
        if not current_refresh_token:
            raise ValidationError("Current refresh token required")
        return await self.sessions.revoke_others(user_id, current_refresh_token)

    # -- second factor management ---------------------------------------

    async def send_otp(self, user_id: str, purpose: str) -> OtpDispatch:
        user = await self._require_user(user_id)
        if purpose in ("login", "disable_2fa") and not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        if purpose == "enable_2fa" and user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled")
        return await self.otp.send(user_id, purpose)

    async def enable_two_factor(self, user_id: str, code: str) -> List[str]:
        """Turn on 2FA after an ``enable_2fa`` code; returns a fresh recovery batch."""
        user = await self._require_user(user_id)
        if not user.email or not user.email_verified:
            raise ValidationError("Email address must be verified first")
        if user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled")
        if not await self.otp.verify(user_id, "enable_2fa", code):
            raise InvalidCodeError("Invalid or expired code")
        await self.db.set_two_factor_enabled(user_id, True)
        codes = await self.recovery.generate(user_id)
        self.logger.info("two_factor_enabled", user_id=user_id)
        return codes

    async def disable_two_factor(self, user_id: str, password: str, code: str) -> None:
        user = await self._require_user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        if not await self._check_password(user_id, password):
            raise InvalidCredentialsError("Incorrect password")
        if not await self.otp.verify(user_id, "disable_2fa", code):
            raise InvalidCodeError("Invalid or expired code")
        await self.db.set_two_factor_enabled(user_id, False)
        await self.recovery.delete_all(user_id)
        await self.devices.revoke_all(user_id)
        self.logger.info("two_factor_disabled", user_id=user_id)

    async def regenerate_recovery_codes(self, user_id: str, password: str) -> List[str]:
        user = await self._require_user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        if not await self._check_password(user_id, password):
            raise InvalidCredentialsError("Incorrect password")
        return await self.recovery.generate(user_id)

    async def two_factor_status(self, user_id: str) -> TwoFactorStatus:
        user = await self._require_user(user_id)
        remaining = await self.db.count_unused_recovery_codes(user_id) if user.two_factor_enabled else 0
        return TwoFactorStatus(
            enabled=user.two_factor_enabled,
            has_verified_email=bool(user.email and user.email_verified),
            recovery_codes_remaining=remaining,
        )

    async def recovery_code_status(self, user_id: str) -> RecoveryCodeStatus:
        await self._require_user(user_id)
        return await self.recovery.status(user_id)

    async def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        return await self.devices.list(user_id)

    async def revoke_trusted_device(self, device_id: str, user_id: str) -> bool:
        return await self.devices.revoke(device_id, user_id)

    async def revoke_all_trusted_devices(self, user_id: str) -> int:
        return await self.devices.revoke_all(user_id)

    # -- accounts --------------------------------------------------------

    async def register(
        self,
        username: str,
        password: str,
        email: Optional[str] = None,
        *,
        origin_address: str = "unknown",
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        flags = await self.settings_provider.get()
        if not flags.allow_registration:
            raise RegistrationClosedError()
        username = username.strip()
        if not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "Username must be 3-30 characters of letters, numbers and underscores",
                detail={"field": "username"},
            )
        email = email.strip() if email else None
        if email and not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address", detail={"field": "email"})
        ensure_strong_password(password)

        role = "admin" if await self.db.count_users() == 0 else "user"
        try:
            user = await self.db.create_user(username, email=email, role=role)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        await self._set_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id, role=role)
        if email:
            await self.verification.send(user)

        meta = RequestMeta(origin_address=origin_address, user_agent=user_agent)
        return await self._complete_login(user, remember_me=False, meta=meta)

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        await self._require_user(user_id)
        if not await self._check_password(user_id, current_password):
            raise InvalidCredentialsError("Current password is incorrect")
        ensure_strong_password(new_password)
        await self._set_password(user_id, new_password)
        sessions = await self.sessions.revoke_all(user_id)
        devices = await self.devices.revoke_all(user_id)
        self.logger.info(
            "password_changed", user_id=user_id, sessions_revoked=sessions, devices_revoked=devices
        )

    # -- email ownership -------------------------------------------------

    async def send_email_verification(
        self, user_id: str, email: Optional[str] = None
    ) -> VerificationDispatch:
        """Email a verification link for the current address, or for a new ``email``."""
        user = await self._require_user(user_id)
        if email is not None:
            email = email.strip()
            if not EMAIL_PATTERN.match(email):
                raise ValidationError("Invalid email address", detail={"field": "email"})
        return await self.verification.send(user, email)

    async def verify_email(self, token: str) -> User:
        return await self.verification.verify(token)

    # -- password reset --------------------------------------------------

    async def request_password_reset(self, identifier: str) -> None:
        """Start a reset by username or email.

        Always returns None so callers cannot tell whether an account
        matched.
        """
        user = await self._find_login_user(identifier.strip())
        if user is None or user.is_disabled:
            self.logger.info("password_reset_requested", matched=False)
            return
        await self.resets.issue(user)

    async def confirm_password_reset(self, token: str, new_password: str) -> None:
        reset = await self.resets.lookup(token)
        ensure_strong_password(new_password)
        await self.resets.consume(reset)
        await self._set_password(reset.user_id, new_password)
        sessions = await self.sessions.revoke_all(reset.user_id)
        devices = await self.devices.revoke_all(reset.user_id)
        self.logger.info(
            "password_reset_completed",
            user_id=reset.user_id,
            sessions_revoked=sessions,
            devices_revoked=devices,
        )

    # -- administration --------------------------------------------------

    async def set_user_disabled(self, user_id: str, disabled: bool, *, actor_id: str) -> User:
        """Disable or re-enable an account; disabling ends its sessions and device trust."""
        await self._require_user(user_id)
        if disabled and user_id == actor_id:
            raise ValidationError("You cannot disable your own account")
        user = await self.db.set_user_disabled(user_id, disabled)
        if user is None:
            raise NotFoundError("User not found")
        if disabled:
            await self.sessions.revoke_all(user_id)
            await self.devices.revoke_all(user_id)
        self.logger.info("user_disabled_changed", user_id=user_id, disabled=disabled, actor_id=actor_id)
        return user

    async def _system_user(self) -> User:
        user = await self.db.get_user_by_username(SYSTEM_USERNAME)
        if user is not None:
            return user
        try:
            user = await self.db.create_user(SYSTEM_USERNAME, role="admin")
        except ConstraintViolation:
            # created concurrently
            existing = await self.db.get_user_by_username(SYSTEM_USERNAME)
            if existing is None:
                raise
            return existing
        await self._set_password(user.id, secrets.token_urlsafe(32))
        self.logger.info("system_user_created", user_id=user.id)
        return user

    async def authenticate(self, access_token: Optional[str]) -> User:
        """Resolve the caller of a request from its access token."""
        flags = await self.settings_provider.get()
        if flags.auth_disabled:
            return await self._system_user()
        if not access_token:
            raise InvalidTokenError("Authentication required")
        claims = self.sessions.verify_access(access_token)
        user = await self.db.get_user(str(claims["sub"]))
        if user is None:
            raise InvalidTokenError("Invalid or expired access token")
        if user.is_disabled:
            raise AccountDisabledError()
        return user

    async def run_maintenance(self) -> dict[str, int]:
        counts = {
            "refresh_sessions": await self.sessions.cleanup_expired(),
            "one_time_codes": await self.otp.cleanup(),
            "trusted_devices": await self.devices.cleanup_expired(),
            "login_attempts": await self.lockout.prune(),
            "email_verifications": await self.verification.cleanup(),
            "password_resets": await self.resets.cleanup(),
        }
        self.logger.info("auth_maintenance_complete", **counts)
        return counts

    async def drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def shutdown(self) -> None:
        self.passwords.shutdown(wait=False)
