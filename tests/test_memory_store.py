"""MemoryStore behaviour that the services rely on."""

import json
from datetime import timedelta

import pytest

from notekeep.storage.errors import ConstraintViolation
from notekeep.storage.memory import MemoryStore
from notekeep.storage.models import (
    AuthSettings,
    EmailVerificationToken,
    OneTimeCode,
    PasswordResetToken,
    RefreshSession,
    TrustedDevice,
    new_id,
    utcnow,
)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _code(user_id, purpose="login", **overrides):
    values = dict(
        id=new_id(),
        user_id=user_id,
        code_hash="h-" + new_id(),
        purpose=purpose,
        expires_at=utcnow() + timedelta(minutes=10),
    )
    values.update(overrides)
    return OneTimeCode(**values)


def test_usernames_and_emails_unique_ignoring_case(store):
    store.create_user("Alice", email="alice@example.com")

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("alice")
    assert exc_info.value.field == "username"
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("alice2", email="ALICE@example.com")
    assert exc_info.value.detail == {"field": "email"}

    assert store.get_user_by_username("ALICE").username == "Alice"


def test_returned_records_are_copies(store):
    user = store.create_user("alice")
    fetched = store.get_user(user.id)
    fetched.role = "admin"

    assert store.get_user(user.id).role == "user"


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", email="alice@example.com")
    store.save_password(user.id, "hash", "argon2id")
    store.create_refresh_session(RefreshSession.new(user.id, "rt-hash", timedelta(days=1)))
    store.replace_recovery_codes(user.id, ["a", "b"])
    store.consume_recovery_code(user.id, "a")
    store.record_login_attempt("alice", "10.0.0.1", False)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    assert reloaded.get_user_by_email("alice@example.com").id == user.id
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    session = reloaded.get_refresh_session_by_hash("rt-hash")
    assert session.expires_at.tzinfo is not None
    assert reloaded.count_recovery_codes(user.id) == 2
    assert reloaded.count_unused_recovery_codes(user.id) == 1
    assert len(reloaded.login_attempts) == 1

    raw = json.loads((tmp_path / "state" / "auth_store.json").read_text())
    assert raw["credentials"][0]["password_hash"] == "hash"


def test_password_requires_existing_user(store):
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")


def test_rotate_only_succeeds_once(store):
    user = store.create_user("alice")
    store.create_refresh_session(RefreshSession.new(user.id, "old", timedelta(hours=1)))

    first = RefreshSession.new(user.id, "new-1", timedelta(hours=1))
    second = RefreshSession.new(user.id, "new-2", timedelta(hours=1))

    assert store.rotate_refresh_session("old", first)
    assert not store.rotate_refresh_session("old", second)
    assert [s.token_hash for s in store.list_refresh_sessions(user.id)] == ["new-1"]


def test_duplicate_refresh_hash_rejected(store):
    user = store.create_user("alice")
    store.create_refresh_session(RefreshSession.new(user.id, "same", timedelta(hours=1)))

    with pytest.raises(ConstraintViolation):
        store.create_refresh_session(RefreshSession.new(user.id, "same", timedelta(hours=1)))


def test_list_sessions_skips_expired_rows(store):
    user = store.create_user("alice")
    store.create_refresh_session(RefreshSession.new(user.id, "short", timedelta(minutes=1)))
    store.create_refresh_session(RefreshSession.new(user.id, "long", timedelta(days=1)))
    later = utcnow() + timedelta(hours=1)

    assert [s.token_hash for s in store.list_refresh_sessions(user.id, later)] == ["long"]
    assert store.delete_expired_refresh_sessions(later) == 1


def test_delete_other_sessions_keeps_current(store):
    user = store.create_user("alice")
    other = store.create_user("bob")
    for token_hash in ("a", "b", "c"):
        store.create_refresh_session(RefreshSession.new(user.id, token_hash, timedelta(hours=1)))
    store.create_refresh_session(RefreshSession.new(other.id, "d", timedelta(hours=1)))

    assert store.delete_other_refresh_sessions(user.id, "b") == 2
    assert store.get_refresh_session_by_hash("b") is not None
    assert store.get_refresh_session_by_hash("d") is not None


def test_new_code_supersedes_same_purpose_only(store):
    user = store.create_user("alice")
    login = store.create_one_time_code(_code(user.id))
    enable = store.create_one_time_code(_code(user.id, "enable_2fa"))
    newer = store.create_one_time_code(_code(user.id))

    assert store.get_active_one_time_code(user.id, "login").id == newer.id
    assert store.get_active_one_time_code(user.id, "enable_2fa").id == enable.id
    assert login.id not in store.one_time_codes


def test_code_marked_used_once(store):
    user = store.create_user("alice")
    code = store.create_one_time_code(_code(user.id))

    assert store.mark_one_time_code_used(code.id)
    assert not store.mark_one_time_code_used(code.id)
    assert store.get_active_one_time_code(user.id, "login") is None
    # used codes still count for the resend cooldown
    assert store.latest_one_time_code(user.id, "login").id == code.id
    assert store.delete_stale_one_time_codes() == 1


def test_attempt_claims_stop_at_ceiling(store):
    user = store.create_user("alice")
    code = store.create_one_time_code(_code(user.id))

    assert store.claim_one_time_code_attempt(code.id, 3) == 1
    assert store.claim_one_time_code_attempt(code.id, 3) == 2
    assert store.claim_one_time_code_attempt(code.id, 3) == 3
    assert store.claim_one_time_code_attempt(code.id, 3) is None
    assert store.one_time_codes[code.id].attempts == 3


def test_attempt_claims_refused_for_spent_codes(store):
    user = store.create_user("alice")
    used = store.create_one_time_code(_code(user.id))
    dropped = store.create_one_time_code(_code(user.id, "enable_2fa"))

    store.mark_one_time_code_used(used.id)
    store.invalidate_one_time_code(dropped.id)

    assert store.claim_one_time_code_attempt(used.id, 5) is None
    assert store.claim_one_time_code_attempt(dropped.id, 5) is None


def test_failed_attempt_queries(store):
    since = utcnow() - timedelta(minutes=1)
    store.record_login_attempt("alice", "10.0.0.1", False)
    store.record_login_attempt("alice", "10.0.0.2", True)
    store.record_login_attempt("bob", "10.0.0.1", False)

    assert store.count_failed_attempts_for_identifier("alice", since) == 1
    assert store.count_failed_attempts_for_origin("10.0.0.1", since) == 2
    assert store.first_failed_attempt_for_identifier("carol", since) is None
    assert store.prune_login_attempts(utcnow() + timedelta(seconds=1)) == 3


def test_trusted_device_deletion_scoped_to_owner(store):
    alice = store.create_user("alice")
    bob = store.create_user("bob")
    device = store.create_trusted_device(
        TrustedDevice(
            id=new_id(),
            user_id=alice.id,
            token_hash="dev",
            expires_at=utcnow() + timedelta(days=30),
        )
    )

    assert not store.delete_trusted_device(device.id, bob.id)
    assert store.get_trusted_device_by_hash("dev") is not None
    assert store.delete_trusted_device(device.id, alice.id)


def test_auth_settings_round_trip(tmp_path, store):
    assert store.get_auth_settings() is None
    current = store.save_auth_settings(AuthSettings(allow_registration=False))

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_auth_settings().allow_registration is False
    assert reloaded.get_auth_settings().updated_at == current.updated_at


def _verification(user_id, email, token_hash, **overrides):
    values = dict(
        id=new_id(),
        user_id=user_id,
        email=email,
        token_hash=token_hash,
        expires_at=utcnow() + timedelta(hours=24),
    )
    values.update(overrides)
    return EmailVerificationToken(**values)


def _reset(user_id, token_hash, **overrides):
    values = dict(
        id=new_id(),
        user_id=user_id,
        token_hash=token_hash,
        expires_at=utcnow() + timedelta(minutes=30),
    )
    values.update(overrides)
    return PasswordResetToken(**values)


def test_newer_verification_replaces_pending_one(store):
    user = store.create_user("alice", email="alice@example.com")
    store.create_email_verification(_verification(user.id, "alice@example.com", "first"))
    store.create_email_verification(_verification(user.id, "alice@example.com", "second"))

    assert store.consume_email_verification("first") is None
    consumed = store.consume_email_verification("second")
    assert consumed.email == "alice@example.com"
    assert store.consume_email_verification("second") is None


def test_expired_verification_not_consumed(store):
    user = store.create_user("alice", email="alice@example.com")
    store.create_email_verification(
        _verification(
            user.id, "alice@example.com", "old", expires_at=utcnow() - timedelta(seconds=1)
        )
    )

    assert store.consume_email_verification("old") is None
    assert store.delete_expired_email_verifications() == 1


def test_verified_email_must_be_unowned(store):
    alice = store.create_user("alice", email="alice@example.com")
    store.create_user("bob", email="bob@example.com")

    with pytest.raises(ConstraintViolation) as exc_info:
        store.set_verified_email(alice.id, "BOB@example.com")
    assert exc_info.value.detail["field"] == "email"

    updated = store.set_verified_email(alice.id, "alice@new.example.com")
    assert updated.email == "alice@new.example.com"
    assert updated.email_verified


def test_password_reset_lifecycle(store):
    user = store.create_user("alice", email="alice@example.com")
    first = store.create_password_reset(_reset(user.id, "first"))
    second = store.create_password_reset(
        _reset(user.id, "second", created_at=utcnow() + timedelta(seconds=1))
    )

    assert store.latest_active_password_reset(user.id).id == second.id
    assert store.get_active_password_reset("first").id == first.id

    assert store.consume_password_reset(first.id)
    assert not store.consume_password_reset(first.id)
    assert store.invalidate_user_password_resets(user.id) == 1
    assert store.get_active_password_reset("second") is None
    assert store.latest_active_password_reset(user.id) is None
    assert store.delete_stale_password_resets() == 2


def test_reset_and_verification_tokens_survive_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", email="alice@example.com")
    store.create_email_verification(_verification(user.id, "alice@example.com", "verify-hash"))
    store.create_password_reset(_reset(user.id, "reset-hash"))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reset = reloaded.get_active_password_reset("reset-hash")
    assert reset.user_id == user.id
    assert reset.expires_at.tzinfo is not None
    assert reloaded.consume_email_verification("verify-hash").user_id == user.id
