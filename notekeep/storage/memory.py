from __future__ import annotations

import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from notekeep.logging import get_logger
from notekeep.storage.errors import ConstraintViolation
from notekeep.storage.models import (
    AuthSettings,
    EmailVerificationToken,
    LoginAttempt,
    OneTimeCode,
    PasswordResetToken,
    RecoveryCode,
    RefreshSession,
    TrustedDevice,
    User,
    new_id,
    utcnow,
)

T = TypeVar("T")

_DATETIME_FIELDS = frozenset(
    {"created_at", "last_login_at", "occurred_at", "expires_at", "used_at", "updated_at"}
)


class MemoryStore:
    """In-process auth store persisted as a JSON snapshot.

    Every public method takes ``_data_lock`` for its whole body, so compound
    operations such as refresh rotation and recovery-code consumption are
    atomic with respect to each other.
    """

    def __init__(self, fs_root: str = "/tmp/notekeep") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.refresh_sessions: Dict[str, RefreshSession] = {}
        self.one_time_codes: Dict[str, OneTimeCode] = {}
        self.recovery_codes: Dict[str, List[RecoveryCode]] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.email_verifications: Dict[str, EmailVerificationToken] = {}
        self.password_resets: Dict[str, PasswordResetToken] = {}
        self.auth_settings: Optional[AuthSettings] = None
        # RLock so helpers can call other locked methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        role: str = "user",
        email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            lowered = username.lower()
            if any(u.username.lower() == lowered for u in self.users.values()):
                raise ConstraintViolation("username already exists", field="username")
            if email and any(
                u.email and u.email.lower() == email.lower() for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", field="email")
            user = User(
                id=new_id(),
                username=username,
                email=email,
                email_verified=email_verified,
                role=role,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            lowered = username.lower()
            user = next(
                (u for u in self.users.values() if u.username.lower() == lowered), None
            )
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            lowered = email.lower()
            user = next(
                (u for u in self.users.values() if u.email and u.email.lower() == lowered),
                None,
            )
            return replace(user) if user else None

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def _update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            self._persist_state()
            return replace(user)

    def set_verified_email(self, user_id: str, email: str) -> Optional[User]:
        with self._data_lock:
            lowered = email.lower()
            if any(
                u.id != user_id and u.email and u.email.lower() == lowered
                for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", field="email")
            return self._update_user(user_id, email=email, email_verified=True)

    def set_two_factor_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        return self._update_user(user_id, two_factor_enabled=enabled)

    def set_user_disabled(self, user_id: str, disabled: bool) -> Optional[User]:
        return self._update_user(user_id, is_disabled=disabled)

    def record_last_login(self, user_id: str, at: datetime) -> Optional[User]:
        return self._update_user(user_id, last_login_at=at)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- attempt ledger --------------------------------------------------

    def record_login_attempt(
        self,
        identifier: str,
        origin_address: str,
        success: bool,
        occurred_at: Optional[datetime] = None,
    ) -> LoginAttempt:
        with self._data_lock:
            attempt = LoginAttempt(
                id=new_id(),
                identifier=identifier.lower(),
                origin_address=origin_address,
                success=success,
                occurred_at=occurred_at or utcnow(),
            )
            self.login_attempts.append(attempt)
            self._persist_state()
            return attempt

    def _failed_since(self, since: datetime, **match: str) -> List[LoginAttempt]:
        return [
            a
            for a in self.login_attempts
            if not a.success
            and a.occurred_at >= since
            and all(getattr(a, k) == v for k, v in match.items())
        ]

    def count_failed_attempts_for_identifier(self, identifier: str, since: datetime) -> int:
        with self._data_lock:
            return len(self._failed_since(since, identifier=identifier.lower()))

    def count_failed_attempts_for_origin(self, origin_address: str, since: datetime) -> int:
        with self._data_lock:
            return len(self._failed_since(since, origin_address=origin_address))

    def first_failed_attempt_for_identifier(
        self, identifier: str, since: datetime
    ) -> Optional[datetime]:
        with self._data_lock:
            rows = self._failed_since(since, identifier=identifier.lower())
            return min((a.occurred_at for a in rows), default=None)

    def first_failed_attempt_for_origin(
        self, origin_address: str, since: datetime
    ) -> Optional[datetime]:
        with self._data_lock:
            rows = self._failed_since(since, origin_address=origin_address)
            return min((a.occurred_at for a in rows), default=None)

    def prune_login_attempts(self, before: datetime) -> int:
        with self._data_lock:
            kept = [a for a in self.login_attempts if a.occurred_at >= before]
            removed = len(self.login_attempts) - len(kept)
            if removed:
                self.login_attempts = kept
                self._persist_state()
            return removed

    # -- refresh sessions ------------------------------------------------

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"user_id": session.user_id}
                )
            if any(s.token_hash == session.token_hash for s in self.refresh_sessions.values()):
                raise ConstraintViolation("refresh token hash already exists")
            self.refresh_sessions[session.id] = replace(session)
            self._persist_state()
            return session

    def get_refresh_session_by_hash(self, token_hash: str) -> Optional[RefreshSession]:
        with self._data_lock:
            found = next(
                (s for s in self.refresh_sessions.values() if s.token_hash == token_hash),
                None,
            )
            return replace(found) if found else None

    def rotate_refresh_session(self, old_hash: str, new_session: RefreshSession) -> bool:
        """Swap ``old_hash`` for ``new_session``; False when the old row is already gone."""
        with self._data_lock:
            old = next(
                (s for s in self.refresh_sessions.values() if s.token_hash == old_hash),
                None,
            )
            if old is None:
                return False
            del self.refresh_sessions[old.id]
            self.refresh_sessions[new_session.id] = replace(new_session)
            self._persist_state()
            return True

    def delete_refresh_session_by_hash(self, token_hash: str) -> bool:
        with self._data_lock:
            found = next(
                (s for s in self.refresh_sessions.values() if s.token_hash == token_hash),
                None,
            )
            if found is None:
                return False
            del self.refresh_sessions[found.id]
            self._persist_state()
            return True

    def list_refresh_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshSession]:
        with self._data_lock:
            moment = now or utcnow()
            live = [
                replace(s)
                for s in self.refresh_sessions.values()
                if s.user_id == user_id and s.expires_at > moment
            ]
            return sorted(live, key=lambda s: s.created_at, reverse=True)

    def delete_refresh_session(self, session_id: str, user_id: str) -> bool:
        with self._data_lock:
            found = self.refresh_sessions.get(session_id)
            if not found or found.user_id != user_id:
                return False
            del self.refresh_sessions[session_id]
            self._persist_state()
            return True

    def _delete_sessions_where(self, predicate) -> int:
        stale = [sid for sid, s in self.refresh_sessions.items() if predicate(s)]
        for sid in stale:
            self.refresh_sessions.pop(sid, None)
        if stale:
            self._persist_state()
        return len(stale)

    def delete_other_refresh_sessions(self, user_id: str, keep_hash: str) -> int:
        with self._data_lock:
            return self._delete_sessions_where(
                lambda s: s.user_id == user_id and s.token_hash != keep_hash
            )

    def delete_user_refresh_sessions(self, user_id: str) -> int:
        with self._data_lock:
            return self._delete_sessions_where(lambda s: s.user_id == user_id)

    def delete_expired_refresh_sessions(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            moment = now or utcnow()
            return self._delete_sessions_where(lambda s: s.expires_at <= moment)

    # -- one-time codes --------------------------------------------------

    def create_one_time_code(self, code: OneTimeCode) -> OneTimeCode:
        """Insert ``code`` and drop every earlier code for the same user and purpose."""
        with self._data_lock:
            superseded = [
                cid
                for cid, c in self.one_time_codes.items()
                if c.user_id == code.user_id and c.purpose == code.purpose
            ]
            for cid in superseded:
                self.one_time_codes.pop(cid, None)
            self.one_time_codes[code.id] = replace(code)
            self._persist_state()
            return code

    def latest_one_time_code(self, user_id: str, purpose: str) -> Optional[OneTimeCode]:
        with self._data_lock:
            matches = [
                c
                for c in self.one_time_codes.values()
                if c.user_id == user_id and c.purpose == purpose
            ]
            if not matches:
                return None
            return replace(max(matches, key=lambda c: c.created_at))

    def get_active_one_time_code(
        self, user_id: str, purpose: str, now: Optional[datetime] = None
    ) -> Optional[OneTimeCode]:
        with self._data_lock:
            moment = now or utcnow()
            active = [
                c
                for c in self.one_time_codes.values()
                if c.user_id == user_id and c.purpose == purpose and c.is_active(moment)
            ]
            if not active:
                return None
            return replace(max(active, key=lambda c: c.created_at))

    def claim_one_time_code_attempt(self, code_id: str, max_attempts: int) -> Optional[int]:
        """Count one check against the code; None once the ceiling is reached or the code is spent."""
        with self._data_lock:
            code = self.one_time_codes.get(code_id)
            if not code or code.used_at is not None or code.attempts >= max_attempts:
                return None
            code.attempts += 1
            self._persist_state()
            return code.attempts

    def invalidate_one_time_code(self, code_id: str) -> None:
        with self._data_lock:
            if self.one_time_codes.pop(code_id, None) is not None:
                self._persist_state()

    def mark_one_time_code_used(self, code_id: str, used_at: Optional[datetime] = None) -> bool:
        with self._data_lock:
            code = self.one_time_codes.get(code_id)
            if not code or code.used_at is not None:
                return False
            code.used_at = used_at or utcnow()
            self._persist_state()
            return True

    def delete_stale_one_time_codes(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            moment = now or utcnow()
            stale = [
                cid for cid, c in self.one_time_codes.items() if not c.is_active(moment)
            ]
            for cid in stale:
                self.one_time_codes.pop(cid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- recovery codes --------------------------------------------------

    def replace_recovery_codes(
        self, user_id: str, code_hashes: Iterable[str]
    ) -> List[RecoveryCode]:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            now = utcnow()
            batch = [
                RecoveryCode(id=new_id(), user_id=user_id, code_hash=h, created_at=now)
                for h in code_hashes
            ]
            self.recovery_codes[user_id] = batch
            self._persist_state()
            return [replace(c) for c in batch]

    def consume_recovery_code(
        self, user_id: str, code_hash: str, used_at: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            for code in self.recovery_codes.get(user_id, []):
                if code.code_hash == code_hash and code.used_at is None:
                    code.used_at = used_at or utcnow()
                    self._persist_state()
                    return True
            return False

    def count_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            return len(self.recovery_codes.get(user_id, []))

    def count_unused_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.recovery_codes.get(user_id, []) if c.used_at is None)

    def recovery_codes_created_at(self, user_id: str) -> Optional[datetime]:
        with self._data_lock:
            batch = self.recovery_codes.get(user_id) or []
            return min((c.created_at for c in batch), default=None)

    def delete_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            removed = self.recovery_codes.pop(user_id, [])
            if removed:
                self._persist_state()
            return len(removed)

    # -- trusted devices -------------------------------------------------

    def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            if device.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": device.user_id})
            self.trusted_devices[device.id] = replace(device)
            self._persist_state()
            return device

    def get_trusted_device_by_hash(self, token_hash: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            found = next(
                (d for d in self.trusted_devices.values() if d.token_hash == token_hash),
                None,
            )
            return replace(found) if found else None

    def list_trusted_devices(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[TrustedDevice]:
        with self._data_lock:
            moment = now or utcnow()
            live = [
                replace(d)
                for d in self.trusted_devices.values()
                if d.user_id == user_id and d.expires_at > moment
            ]
            return sorted(live, key=lambda d: d.created_at, reverse=True)

    def delete_trusted_device(self, device_id: str, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            found = self.trusted_devices.get(device_id)
            if not found or (user_id is not None and found.user_id != user_id):
                return False
            del self.trusted_devices[device_id]
            self._persist_state()
            return True

    def _delete_devices_where(self, predicate) -> int:
        stale = [did for did, d in self.trusted_devices.items() if predicate(d)]
        for did in stale:
            self.trusted_devices.pop(did, None)
        if stale:
            self._persist_state()
        return len(stale)

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._data_lock:
            return self._delete_devices_where(lambda d: d.user_id == user_id)

    def delete_expired_trusted_devices(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            moment = now or utcnow()
            return self._delete_devices_where(lambda d: d.expires_at <= moment)

    # -- email verification ----------------------------------------------

    def create_email_verification(self, token: EmailVerificationToken) -> EmailVerificationToken:
        """Insert ``token`` and drop any earlier pending token of the same user."""
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            self.email_verifications = {
                tid: t
                for tid, t in self.email_verifications.items()
                if t.user_id != token.user_id
            }
            self.email_verifications[token.id] = replace(token)
            self._persist_state()
            return token

    def consume_email_verification(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[EmailVerificationToken]:
        """Remove and return the unexpired token matching ``token_hash``."""
        with self._data_lock:
            moment = now or utcnow()
            found = next(
                (
                    t
                    for t in self.email_verifications.values()
                    if t.token_hash == token_hash and t.expires_at > moment
                ),
                None,
            )
            if found is None:
                return None
            del self.email_verifications[found.id]
            self._persist_state()
            return replace(found)

    def delete_expired_email_verifications(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            moment = now or utcnow()
            stale = [
                tid for tid, t in self.email_verifications.items() if t.expires_at <= moment
            ]
            for tid in stale:
                self.email_verifications.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- password reset --------------------------------------------------

    def create_password_reset(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            self.password_resets[token.id] = replace(token)
            self._persist_state()
            return token

    def latest_active_password_reset(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            moment = now or utcnow()
            active = [
                t
                for t in self.password_resets.values()
                if t.user_id == user_id and t.is_active(moment)
            ]
            if not active:
                return None
            return replace(max(active, key=lambda t: t.created_at))

    def get_active_password_reset(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            moment = now or utcnow()
            found = next(
                (
                    t
                    for t in self.password_resets.values()
                    if t.token_hash == token_hash and t.is_active(moment)
                ),
                None,
            )
            return replace(found) if found else None

    def consume_password_reset(
        self, token_id: str, used_at: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            token = self.password_resets.get(token_id)
            if not token or token.used_at is not None:
                return False
            token.used_at = used_at or utcnow()
            self._persist_state()
            return True

    def invalidate_user_password_resets(
        self, user_id: str, at: Optional[datetime] = None
    ) -> int:
        with self._data_lock:
            moment = at or utcnow()
            pending = [
                t
                for t in self.password_resets.values()
                if t.user_id == user_id and t.used_at is None
            ]
            for token in pending:
                token.used_at = moment
            if pending:
                self._persist_state()
            return len(pending)

    def delete_stale_password_resets(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            moment = now or utcnow()
            stale = [
                tid for tid, t in self.password_resets.items() if not t.is_active(moment)
            ]
            for tid in stale:
                self.password_resets.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- admin settings --------------------------------------------------

    def get_auth_settings(self) -> Optional[AuthSettings]:
        with self._data_lock:
            return replace(self.auth_settings) if self.auth_settings else None

    def save_auth_settings(self, settings: AuthSettings) -> AuthSettings:
        with self._data_lock:
            self.auth_settings = replace(settings, updated_at=utcnow())
            self._persist_state()
            return replace(self.auth_settings)

    # -- persistence -----------------------------------------------------

    @staticmethod
    def _serialize_record(record: Any) -> dict:
        data = asdict(record)
        for key in _DATETIME_FIELDS.intersection(data):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @staticmethod
    def _deserialize_record(cls: Type[T], data: dict) -> T:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in _DATETIME_FIELDS.intersection(values):
            if values[key] is not None:
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_record(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "login_attempts": [self._serialize_record(a) for a in self.login_attempts],
            "refresh_sessions": [
                self._serialize_record(s) for s in self.refresh_sessions.values()
            ],
            "one_time_codes": [
                self._serialize_record(c) for c in self.one_time_codes.values()
            ],
            "recovery_codes": [
                self._serialize_record(c)
                for batch in self.recovery_codes.values()
                for c in batch
            ],
            "trusted_devices": [
                self._serialize_record(d) for d in self.trusted_devices.values()
            ],
            "email_verifications": [
                self._serialize_record(t) for t in self.email_verifications.values()
            ],
            "password_resets": [
                self._serialize_record(t) for t in self.password_resets.values()
            ],
            "auth_settings": (
                self._serialize_record(self.auth_settings) if self.auth_settings else None
            ),
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist auth state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize_record(User, u) for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.login_attempts = [
            self._deserialize_record(LoginAttempt, a)
            for a in data.get("login_attempts", [])
        ]
        self.refresh_sessions = {
            s["id"]: self._deserialize_record(RefreshSession, s)
            for s in data.get("refresh_sessions", [])
        }
        self.one_time_codes = {
            c["id"]: self._deserialize_record(OneTimeCode, c)
            for c in data.get("one_time_codes", [])
        }
        self.recovery_codes = {}
        for raw in data.get("recovery_codes", []):
            code = self._deserialize_record(RecoveryCode, raw)
            self.recovery_codes.setdefault(code.user_id, []).append(code)
        self.trusted_devices = {
            d["id"]: self._deserialize_record(TrustedDevice, d)
            for d in data.get("trusted_devices", [])
        }
        self.email_verifications = {
            t["id"]: self._deserialize_record(EmailVerificationToken, t)
            for t in data.get("email_verifications", [])
        }
        self.password_resets = {
            t["id"]: self._deserialize_record(PasswordResetToken, t)
            for t in data.get("password_resets", [])
        }
        raw_settings = data.get("auth_settings")
        self.auth_settings = (
            self._deserialize_record(AuthSettings, raw_settings) if raw_settings else None
        )
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_sessions=len(self.refresh_sessions),
        )
        return True
