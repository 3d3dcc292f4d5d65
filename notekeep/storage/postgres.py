from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        role TEXT NOT NULL DEFAULT 'user',
        is_disabled BOOLEAN NOT NULL DEFAULT false,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id TEXT PRIMARY KEY,
        identifier TEXT NOT NULL,
        origin_address TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempt_identifier_idx ON login_attempt (identifier, occurred_at)",
    "CREATE INDEX IF NOT EXISTS login_attempt_origin_idx ON login_attempt (origin_address, occurred_at)",
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        origin_address TEXT,
        user_agent TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS one_time_code (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        purpose TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recovery_code (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trusted_device (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        user_agent TEXT,
        origin_address TEXT,
        label TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_verification_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_settings (
        id SMALLINT PRIMARY KEY DEFAULT 1 CHECK (id = 1),
        auth_disabled BOOLEAN NOT NULL DEFAULT false,
        allow_registration BOOLEAN NOT NULL DEFAULT true,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed auth store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables when missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", statements=len(_SCHEMA_STATEMENTS))

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email"),
            email_verified=bool(row.get("email_verified", False)),
            role=row.get("role", "user"),
            is_disabled=bool(row.get("is_disabled", False)),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _session_from_row(row: dict) -> RefreshSession:
        return RefreshSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            origin_address=row.get("origin_address"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _code_from_row(row: dict) -> OneTimeCode:
        return OneTimeCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code_hash=row["code_hash"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            attempts=int(row.get("attempts") or 0),
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _device_from_row(row: dict) -> TrustedDevice:
        return TrustedDevice(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            origin_address=row.get("origin_address"),
            label=row.get("label"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        role: str = "user",
        email_verified: bool = False,
    ) -> User:
        user = User(
            id=new_id(),
            username=username,
            email=email,
            email_verified=email_verified,
            role=role,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, email_verified, role, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (user.id, username, email, email_verified, role, user.created_at),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "email" if "email" in constraint else "username"
            raise ConstraintViolation(f"{field} already exists", field=field) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS n FROM app_user").fetchone()
        return int(row["n"]) if row else 0

    def _update_user(self, user_id: str, column: str, value: Any) -> Optional[User]:
        # column names come from the fixed callers below, never from input
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {column} = %s WHERE id = %s RETURNING *",
                (value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_verified_email(self, user_id: str, email: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE app_user SET email = %s, email_verified = true WHERE id = %s RETURNING *",
                    (email, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", field="email") from exc
        return self._user_from_row(row) if row else None

    def set_two_factor_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        return self._update_user(user_id, "two_factor_enabled", enabled)

    def set_user_disabled(self, user_id: str, disabled: bool) -> Optional[User]:
        return self._update_user(user_id, "is_disabled", disabled)

    def record_last_login(self, user_id: str, at: datetime) -> Optional[User]:
        return self._update_user(user_id, "last_login_at", at)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # attempt ledger
    def record_login_attempt(
        self,
        identifier: str,
        origin_address: str,
        success: bool,
        occurred_at: Optional[datetime] = None,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            id=new_id(),
            identifier=identifier.lower(),
            origin_address=origin_address,
            success=success,
            occurred_at=occurred_at or utcnow(),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, identifier, origin_address, success, occurred_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.identifier,
                    attempt.origin_address,
                    attempt.success,
                    attempt.occurred_at,
                ),
            )
        return attempt

    def _failed_stat(self, select: str, column: str, value: str, since: datetime) -> Any:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {select} AS v FROM login_attempt "
                f"WHERE {column} = %s AND success = false AND occurred_at >= %s",
                (value, since),
            ).fetchone()
        return row["v"] if row else None

    def count_failed_attempts_for_identifier(self, identifier: str, since: datetime) -> int:
        return int(self._failed_stat("count(*)", "identifier", identifier.lower(), since) or 0)

    def count_failed_attempts_for_origin(self, origin_address: str, since: datetime) -> int:
        return int(self._failed_stat("count(*)", "origin_address", origin_address, since) or 0)

    def first_failed_attempt_for_identifier(
        self, identifier: str, since: datetime
    ) -> Optional[datetime]:
        return self._failed_stat("min(occurred_at)", "identifier", identifier.lower(), since)

    def first_failed_attempt_for_origin(
        self, origin_address: str, since: datetime
    ) -> Optional[datetime]:
        return self._failed_stat("min(occurred_at)", "origin_address", origin_address, since)

    def prune_login_attempts(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM login_attempt WHERE occurred_at < %s", (before,)
            )
            return result.rowcount

    # refresh sessions
    def _insert_session(self, conn, session: RefreshSession) -> None:
        conn.execute(
            """
            INSERT INTO refresh_session (id, user_id, token_hash, origin_address, user_agent, expires_at, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.token_hash,
                session.origin_address,
                session.user_agent,
                session.expires_at,
                session.created_at,
            ),
        )

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token hash already exists") from exc
        return session

    def get_refresh_session_by_hash(self, token_hash: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_refresh_session(self, old_hash: str, new_session: RefreshSession) -> bool:
        """Delete ``old_hash`` and insert ``new_session`` in one transaction.

        The insert only happens when the delete removed exactly one row; a
        concurrent rotation that already consumed the token makes this a no-op
        that returns False.
        """
        with self._connect() as conn:
            with conn.transaction():
                result = conn.execute(
                    "DELETE FROM refresh_session WHERE token_hash = %s", (old_hash,)
                )
                if result.rowcount != 1:
                    return False
                self._insert_session(conn, new_session)
        return True

    def delete_refresh_session_by_hash(self, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE token_hash = %s", (token_hash,)
            )
            return result.rowcount > 0

    def list_refresh_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_session
                WHERE user_id = %s AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_refresh_session(self, session_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE id = %s AND user_id = %s",
                (session_id, user_id),
            )
            return result.rowcount > 0

    def delete_other_refresh_sessions(self, user_id: str, keep_hash: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE user_id = %s AND token_hash <> %s",
                (user_id, keep_hash),
            )
            return result.rowcount

    def delete_user_refresh_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def delete_expired_refresh_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_session WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # one-time codes
    def create_one_time_code(self, code: OneTimeCode) -> OneTimeCode:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "DELETE FROM one_time_code WHERE user_id = %s AND purpose = %s",
                        (code.user_id, code.purpose),
                    )
                    conn.execute(
                        """
                        INSERT INTO one_time_code (id, user_id, code_hash, purpose, expires_at, attempts, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            code.id,
                            code.user_id,
                            code.code_hash,
                            code.purpose,
                            code.expires_at,
                            code.attempts,
                            code.created_at,
                        ),
                    )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("code user missing", {"user_id": code.user_id}) from exc
        return code

    def latest_one_time_code(self, user_id: str, purpose: str) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM one_time_code
                WHERE user_id = %s AND purpose = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id, purpose),
            ).fetchone()
        return self._code_from_row(row) if row else None

    def get_active_one_time_code(
        self, user_id: str, purpose: str, now: Optional[datetime] = None
    ) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM one_time_code
                WHERE user_id = %s AND purpose = %s AND used_at IS NULL AND expires_at > %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id, purpose, now or utcnow()),
            ).fetchone()
        return self._code_from_row(row) if row else None

    def claim_one_time_code_attempt(self, code_id: str, max_attempts: int) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_code SET attempts = attempts + 1
                WHERE id = %s AND attempts < %s AND used_at IS NULL
                RETURNING attempts
                """,
                (code_id, max_attempts),
            ).fetchone()
        return int(row["attempts"]) if row else None

    def invalidate_one_time_code(self, code_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM one_time_code WHERE id = %s", (code_id,))

    def mark_one_time_code_used(self, code_id: str, used_at: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE one_time_code SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (used_at or utcnow(), code_id),
            )
            return result.rowcount > 0

    def delete_stale_one_time_codes(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM one_time_code WHERE used_at IS NOT NULL OR expires_at <= %s",
                (now or utcnow(),),
            )
            return result.rowcount

    # recovery codes
    def replace_recovery_codes(
        self, user_id: str, code_hashes: Iterable[str]
    ) -> List[RecoveryCode]:
        now = utcnow()
        batch = [
            RecoveryCode(id=new_id(), user_id=user_id, code_hash=h, created_at=now)
            for h in code_hashes
        ]
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))
                    for code in batch:
                        conn.execute(
                            """
                            INSERT INTO recovery_code (id, user_id, code_hash, created_at)
                            VALUES (%s, %s, %s, %s)
                            """,
                            (code.id, code.user_id, code.code_hash, code.created_at),
                        )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc
        return batch

    def consume_recovery_code(
        self, user_id: str, code_hash: str, used_at: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE recovery_code SET used_at = %s
                WHERE id = (
                    SELECT id FROM recovery_code
                    WHERE user_id = %s AND code_hash = %s AND used_at IS NULL
                    LIMIT 1 FOR UPDATE
                )
                """,
                (used_at or utcnow(), user_id, code_hash),
            )
            return result.rowcount > 0

    def count_recovery_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM recovery_code WHERE user_id = %s", (user_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def count_unused_recovery_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM recovery_code WHERE user_id = %s AND used_at IS NULL",
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def recovery_codes_created_at(self, user_id: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT min(created_at) AS created_at FROM recovery_code WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return row["created_at"] if row else None

    def delete_recovery_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM recovery_code WHERE user_id = %s", (user_id,))
            return result.rowcount

    # trusted devices
    def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO trusted_device (id, user_id, token_hash, user_agent, origin_address, label, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        device.id,
                        device.user_id,
                        device.token_hash,
                        device.user_agent,
                        device.origin_address,
                        device.label,
                        device.expires_at,
                        device.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("device user missing", {"user_id": device.user_id}) from exc
        return device

    def get_trusted_device_by_hash(self, token_hash: str) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trusted_device WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._device_from_row(row) if row else None

    def list_trusted_devices(
        self, user_id: str, now: Optional[datetime] = None
    ) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM trusted_device
                WHERE user_id = %s AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def delete_trusted_device(self, device_id: str, user_id: Optional[str] = None) -> bool:
        with self._connect() as conn:
            if user_id is None:
                result = conn.execute(
                    "DELETE FROM trusted_device WHERE id = %s", (device_id,)
                )
            else:
                result = conn.execute(
                    "DELETE FROM trusted_device WHERE id = %s AND user_id = %s",
                    (device_id, user_id),
                )
            return result.rowcount > 0

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM trusted_device WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def delete_expired_trusted_devices(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM trusted_device WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # email verification
    @staticmethod
    def _verification_from_row(row: dict) -> EmailVerificationToken:
        return EmailVerificationToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    def create_email_verification(self, token: EmailVerificationToken) -> EmailVerificationToken:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "DELETE FROM email_verification_token WHERE user_id = %s",
                        (token.user_id,),
                    )
                    conn.execute(
                        """
                        INSERT INTO email_verification_token (id, user_id, email, token_hash, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            token.id,
                            token.user_id,
                            token.email,
                            token.token_hash,
                            token.expires_at,
                            token.created_at,
                        ),
                    )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id}) from exc
        return token

    def consume_email_verification(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM email_verification_token
                WHERE token_hash = %s AND expires_at > %s
                RETURNING *
                """,
                (token_hash, now or utcnow()),
            ).fetchone()
        return self._verification_from_row(row) if row else None

    def delete_expired_email_verifications(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM email_verification_token WHERE expires_at <= %s",
                (now or utcnow(),),
            )
            return result.rowcount

    # password reset
    @staticmethod
    def _reset_from_row(row: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    def create_password_reset(self, token: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.id, token.user_id, token.token_hash, token.expires_at, token.created_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id}) from exc
        return token

    def latest_active_password_reset(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM password_reset_token
                WHERE user_id = %s AND used_at IS NULL AND expires_at > %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (user_id, now or utcnow()),
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def get_active_password_reset(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM password_reset_token
                WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                """,
                (token_hash, now or utcnow()),
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def consume_password_reset(
        self, token_id: str, used_at: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE password_reset_token SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (used_at or utcnow(), token_id),
            )
            return result.rowcount > 0

    def invalidate_user_password_resets(
        self, user_id: str, at: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE password_reset_token SET used_at = %s WHERE user_id = %s AND used_at IS NULL",
                (at or utcnow(), user_id),
            )
            return result.rowcount

    def delete_stale_password_resets(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_token WHERE used_at IS NOT NULL OR expires_at <= %s",
                (now or utcnow(),),
            )
            return result.rowcount

    # admin settings
    def get_auth_settings(self) -> Optional[AuthSettings]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT auth_disabled, allow_registration, updated_at FROM auth_settings WHERE id = 1"
            ).fetchone()
        if not row:
            return None
        return AuthSettings(
            auth_disabled=bool(row["auth_disabled"]),
            allow_registration=bool(row["allow_registration"]),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def save_auth_settings(self, settings: AuthSettings) -> AuthSettings:
        updated_at = utcnow()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_settings (id, auth_disabled, allow_registration, updated_at)
                VALUES (1, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET auth_disabled = EXCLUDED.auth_disabled,
                    allow_registration = EXCLUDED.allow_registration,
                    updated_at = EXCLUDED.updated_at
                """,
                (settings.auth_disabled, settings.allow_registration, updated_at),
            )
        return AuthSettings(
            auth_disabled=settings.auth_disabled,
            allow_registration=settings.allow_registration,
            updated_at=updated_at,
        )
