from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest
from psycopg import errors

from notekeep.storage.errors import ConstraintViolation
from notekeep.storage.models import (
    AuthSettings,
    EmailVerificationToken,
    OneTimeCode,
    RefreshSession,
    new_id,
    utcnow,
)
from notekeep.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records SQL and replays queued results in order."""

    def __init__(self):
        self.executed = []
        self.events = []
        self.responses = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeResult()
        if isinstance(response, Exception):
            raise response
        return response

    @contextmanager
    def transaction(self):
        self.events.append("begin")
        try:
            yield
        except Exception:
            self.events.append("rollback")
            raise
        self.events.append("commit")


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


class _EmailUniqueViolation(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="app_user_email_key")


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def store(tmp_path: Path, conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.fs_root = tmp_path
    store.dsn = "postgresql://unused"
    store.logger = SimpleNamespace(info=lambda *a, **k: None)
    return store


def _user_row(**overrides):
    row = {
        "id": "u1",
        "username": "alice",
        "email": "alice@example.com",
        "email_verified": True,
        "role": "admin",
        "is_disabled": False,
        "two_factor_enabled": True,
        "created_at": utcnow(),
        "last_login_at": None,
    }
    row.update(overrides)
    return row


def test_user_lookup_is_case_insensitive(store, conn):
    conn.queue(FakeResult([_user_row()]))

    user = store.get_user_by_username("ALICE")

    sql, params = conn.executed[0]
    assert "lower(username) = lower(%s)" in sql
    assert params == ("ALICE",)
    assert user.is_admin and user.two_factor_enabled


def test_duplicate_email_maps_to_constraint_violation(store, conn):
    conn.queue(_EmailUniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("alice", email="alice@example.com")
    assert exc_info.value.field == "email"


def test_rotate_inserts_only_after_single_delete(store, conn):
    new = RefreshSession.new("u1", "new-hash", timedelta(days=1))
    conn.queue(FakeResult(rowcount=1), FakeResult(rowcount=1))

    assert store.rotate_refresh_session("old-hash", new)

    assert conn.executed[0] == ("DELETE FROM refresh_session WHERE token_hash = %s", ("old-hash",))
    assert conn.executed[1][0].startswith("INSERT INTO refresh_session")
    assert conn.executed[1][1][2] == "new-hash"
    assert conn.events == ["begin", "commit"]


def test_rotate_of_consumed_token_is_a_no_op(store, conn):
    new = RefreshSession.new("u1", "new-hash", timedelta(days=1))
    conn.queue(FakeResult(rowcount=0))

    assert not store.rotate_refresh_session("old-hash", new)
    assert len(conn.executed) == 1


def test_new_code_replaces_earlier_codes_in_one_transaction(store, conn):
    code = OneTimeCode(
        id=new_id(),
        user_id="u1",
        code_hash="h",
        purpose="login",
        expires_at=utcnow() + timedelta(minutes=10),
    )

    store.create_one_time_code(code)

    assert conn.executed[0] == (
        "DELETE FROM one_time_code WHERE user_id = %s AND purpose = %s",
        ("u1", "login"),
    )
    assert conn.executed[1][0].startswith("INSERT INTO one_time_code")
    assert conn.events == ["begin", "commit"]


def test_recovery_consume_reports_rowcount(store, conn):
    conn.queue(FakeResult(rowcount=1), FakeResult(rowcount=0))

    assert store.consume_recovery_code("u1", "hash")
    assert not store.consume_recovery_code("u1", "hash")
    assert "FOR UPDATE" in conn.executed[0][0]


def test_failed_attempt_count_lowercases_identifier(store, conn):
    since = utcnow()
    conn.queue(FakeResult([{"v": 3}]))

    assert store.count_failed_attempts_for_identifier("Alice", since) == 3
    sql, params = conn.executed[0]
    assert "success = false" in sql
    assert params == ("alice", since)


def test_missing_password_record(store, conn):
    assert store.get_password_record("u1") is None
    conn.queue(FakeResult([{"password_hash": "$argon2id$x", "password_algo": "argon2id"}]))
    assert store.get_password_record("u1") == ("$argon2id$x", "argon2id")


def test_auth_settings_absent_until_saved(store, conn):
    assert store.get_auth_settings() is None

    saved = store.save_auth_settings(AuthSettings(allow_registration=False))

    assert "ON CONFLICT (id) DO UPDATE" in conn.executed[-1][0]
    assert saved.allow_registration is False


def test_attempt_claim_is_a_single_guarded_update(store, conn):
    conn.queue(FakeResult([{"attempts": 2}]), FakeResult())

    assert store.claim_one_time_code_attempt("c1", 5) == 2
    assert store.claim_one_time_code_attempt("c1", 5) is None

    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE one_time_code SET attempts = attempts + 1")
    assert "attempts < %s AND used_at IS NULL" in sql
    assert sql.endswith("RETURNING attempts")
    assert params == ("c1", 5)


def test_verified_email_conflict_maps_to_constraint_violation(store, conn):
    conn.queue(_EmailUniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as exc_info:
        store.set_verified_email("u1", "bob@example.com")
    assert exc_info.value.field == "email"


def test_verification_consumed_by_delete_returning(store, conn):
    now = utcnow()
    conn.queue(
        FakeResult(
            [
                {
                    "id": "v1",
                    "user_id": "u1",
                    "email": "alice@example.com",
                    "token_hash": "h",
                    "expires_at": now + timedelta(hours=1),
                    "created_at": now,
                }
            ]
        )
    )

    pending = store.consume_email_verification("h", now)

    sql, params = conn.executed[0]
    assert sql.startswith("DELETE FROM email_verification_token")
    assert sql.endswith("RETURNING *")
    assert params == ("h", now)
    assert pending.email == "alice@example.com"


def test_new_verification_replaces_pending_in_one_transaction(store, conn):
    token = EmailVerificationToken(
        id=new_id(),
        user_id="u1",
        email="alice@example.com",
        token_hash="h",
        expires_at=utcnow() + timedelta(hours=24),
    )

    store.create_email_verification(token)

    assert conn.executed[0] == (
        "DELETE FROM email_verification_token WHERE user_id = %s",
        ("u1",),
    )
    assert conn.executed[1][0].startswith("INSERT INTO email_verification_token")
    assert conn.events == ["begin", "commit"]


def test_password_reset_consumed_once(store, conn):
    conn.queue(FakeResult(rowcount=1), FakeResult(rowcount=0))

    assert store.consume_password_reset("r1")
    assert not store.consume_password_reset("r1")
    assert "used_at IS NULL" in conn.executed[0][0]


def test_active_reset_lookup_filters_used_and_expired(store, conn):
    now = utcnow()

    assert store.get_active_password_reset("h", now) is None

    sql, params = conn.executed[0]
    assert "used_at IS NULL AND expires_at > %s" in sql
    assert params == ("h", now)
