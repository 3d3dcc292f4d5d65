"""Account lifecycle, login resolution and admin-editable auth flags."""

import time

import pytest
from argon2 import PasswordHasher, Type

from notekeep.service.auth import SYSTEM_USERNAME, AuthService
from notekeep.service.errors import (
    AccountDisabledError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    RegistrationClosedError,
    ServiceUnavailableError,
    SessionRevokedError,
    ValidationError,
    WeakPasswordError,
)
from notekeep.storage.common import AsyncStore
from notekeep.storage.models import AuthSettings

PASSWORD = "Correct-Horse-42!"
NEW_PASSWORD = "Battery-Staple-77?"


async def test_first_registered_user_is_admin(auth_service):
    first = await auth_service.register("alice", PASSWORD)
    second = await auth_service.register("bob", PASSWORD)

    assert first.user.is_admin
    assert second.user.role == "user"
    # registration signs the new user in
    assert first.status == "authenticated"
    assert first.tokens.refresh_token


async def test_duplicate_username_or_email_conflicts(auth_service):
    await auth_service.register("alice", PASSWORD, "alice@example.com")

    with pytest.raises(ConflictError) as exc_info:
        await auth_service.register("ALICE", PASSWORD)
    assert exc_info.value.detail["field"] == "username"

    with pytest.raises(ConflictError) as exc_info:
        await auth_service.register("alice2", PASSWORD, "Alice@Example.com")
    assert exc_info.value.detail["field"] == "email"


@pytest.mark.parametrize("username", ["al", "a" * 31, "bad name", "dash-ed", ""])
async def test_username_rules(auth_service, username):
    with pytest.raises(ValidationError) as exc_info:
        await auth_service.register(username, PASSWORD)
    assert exc_info.value.detail == {"field": "username"}


async def test_invalid_email_and_weak_password(auth_service):
    with pytest.raises(ValidationError):
        await auth_service.register("alice", PASSWORD, "not-an-email")
    with pytest.raises(WeakPasswordError):
        await auth_service.register("alice", "password")
    assert auth_service.store.count_users() == 0


async def test_registration_can_be_closed(auth_service):
    await auth_service.settings_provider.update(allow_registration=False)

    with pytest.raises(RegistrationClosedError) as exc_info:
        await auth_service.register("alice", PASSWORD)
    assert exc_info.value.status_code == 403


async def test_login_accepts_username_or_email(auth_service, make_user):
    user = await make_user(email="alice@example.com")

    by_name = await auth_service.login("  Alice ", PASSWORD)
    by_email = await auth_service.login("ALICE@example.com", PASSWORD)

    assert by_name.user_id == by_email.user_id == user.id
    assert by_email.user.last_login_at is not None


async def test_failures_are_indistinguishable(auth_service, make_user):
    await make_user()

    with pytest.raises(InvalidCredentialsError) as unknown:
        await auth_service.login("nobody", PASSWORD)
    with pytest.raises(InvalidCredentialsError) as wrong:
        await auth_service.login("alice", "Wrong-Horse-42!")

    assert unknown.value.message == wrong.value.message
    assert unknown.value.error_code == wrong.value.error_code == "invalid_credentials"


async def test_disabled_account_checked_after_password(auth_service, make_user, memory_store):
    await make_user(disabled=True)

    with pytest.raises(InvalidCredentialsError):
        await auth_service.login("alice", "Wrong-Horse-42!")
    with pytest.raises(AccountDisabledError):
        await auth_service.login("alice", PASSWORD)

    # only the bad password was recorded; the disabled login leaves no success row
    assert [a.success for a in memory_store.login_attempts] == [False]


async def test_change_password_revokes_sessions_and_devices(
    auth_service, make_user, memory_store
):
    user = await make_user()
    tokens = (await auth_service.login("alice", PASSWORD)).tokens

    with pytest.raises(InvalidCredentialsError):
        await auth_service.change_password(user.id, "Wrong-Horse-42!", NEW_PASSWORD)
    with pytest.raises(WeakPasswordError):
        await auth_service.change_password(user.id, PASSWORD, "short")

    await auth_service.change_password(user.id, PASSWORD, NEW_PASSWORD)

    assert memory_store.list_refresh_sessions(user.id) == []
    with pytest.raises(SessionRevokedError):
        await auth_service.refresh(tokens.refresh_token)
    with pytest.raises(InvalidCredentialsError):
        await auth_service.login("alice", PASSWORD)
    assert (await auth_service.login("alice", NEW_PASSWORD)).status == "authenticated"


async def test_admin_disable_ends_sessions(auth_service, make_user, memory_store):
    admin = await make_user("alice")
    user = await make_user("bob")
    tokens = (await auth_service.login("bob", PASSWORD)).tokens

    disabled = await auth_service.set_user_disabled(user.id, True, actor_id=admin.id)

    assert disabled.is_disabled
    assert memory_store.list_refresh_sessions(user.id) == []
    with pytest.raises(AccountDisabledError):
        await auth_service.login("bob", PASSWORD)
    with pytest.raises(SessionRevokedError):
        await auth_service.refresh(tokens.refresh_token)

    enabled = await auth_service.set_user_disabled(user.id, False, actor_id=admin.id)
    assert not enabled.is_disabled
    assert (await auth_service.login("bob", PASSWORD)).status == "authenticated"


async def test_admin_cannot_disable_self_or_unknown(auth_service, make_user):
    admin = await make_user("alice")

    with pytest.raises(ValidationError):
        await auth_service.set_user_disabled(admin.id, True, actor_id=admin.id)
    with pytest.raises(NotFoundError):
        await auth_service.set_user_disabled("missing", True, actor_id=admin.id)


async def test_authenticate_resolves_access_token(auth_service, make_user, memory_store):
    user = await make_user()
    tokens = (await auth_service.login("alice", PASSWORD)).tokens

    assert (await auth_service.authenticate(tokens.access_token)).id == user.id
    with pytest.raises(InvalidTokenError):
        await auth_service.authenticate(None)
    with pytest.raises(InvalidTokenError):
        await auth_service.authenticate(tokens.refresh_token)

    memory_store.set_user_disabled(user.id, True)
    with pytest.raises(AccountDisabledError):
        await auth_service.authenticate(tokens.access_token)


async def test_auth_disabled_returns_system_user(auth_service):
    await auth_service.settings_provider.update(auth_disabled=True)

    first = await auth_service.authenticate(None)
    again = await auth_service.authenticate("garbage")

    assert first.username == SYSTEM_USERNAME
    assert first.is_admin
    assert again.id == first.id
    # nobody can sign in as the system account
    with pytest.raises(InvalidCredentialsError):
        await auth_service.login(SYSTEM_USERNAME, PASSWORD)


async def test_settings_provider_caches_until_invalidated(auth_service, memory_store, settings):
    provider = auth_service.settings_provider

    defaults = await provider.get()
    assert (defaults.auth_disabled, defaults.allow_registration) == (False, True)

    updated = await provider.update(allow_registration=False, auth_disabled=None)
    assert updated.allow_registration is False
    assert updated.auth_disabled is False

    # a write made behind the provider's back stays hidden until invalidate()
    memory_store.save_auth_settings(AuthSettings(auth_disabled=True))
    assert (await provider.get()).auth_disabled is False
    provider.invalidate()
    assert (await provider.get()).auth_disabled is True

    with pytest.raises(ValidationError):
        await provider.update(colour="blue")


async def test_login_rehashes_outdated_password(auth_service, make_user, memory_store):
    user = await make_user()
    weak = PasswordHasher(time_cost=1, memory_cost=512, parallelism=1, type=Type.ID)
    memory_store.save_password(user.id, weak.hash(PASSWORD), "argon2id")

    await auth_service.login("alice", PASSWORD)
    await auth_service.drain_background()

    stored, algo = memory_store.get_password_record(user.id)
    assert algo == "argon2id"
    assert not auth_service.passwords.needs_rehash(stored)
    assert (await auth_service.login("alice", PASSWORD)).status == "authenticated"


async def test_maintenance_reports_each_table(auth_service, make_user):
    await make_user()

    counts = await auth_service.run_maintenance()

    assert set(counts) == {
        "refresh_sessions",
        "one_time_codes",
        "trusted_devices",
        "login_attempts",
        "email_verifications",
        "password_resets",
    }


class _SlowStore:
    def get_user(self, user_id):
        time.sleep(0.3)
        return None


async def test_store_timeout_surfaces_as_unavailable():
    db = AsyncStore(_SlowStore(), timeout=0.05)

    with pytest.raises(ServiceUnavailableError) as exc_info:
        await db.get_user("u1")
    assert exc_info.value.status_code == 503


def test_async_store_rejects_unknown_operations(memory_store):
    db = AsyncStore(memory_store)

    with pytest.raises(AttributeError):
        db.drop_everything
    with pytest.raises(AttributeError):
        db._persist_state


def test_services_share_one_store_timeout(memory_store, settings, email):
    service = AuthService(
        memory_store,
        settings.model_copy(update={"store_timeout_seconds": 2.5}),
        email=email,
    )
    try:
        assert service.db.timeout == 2.5
        assert service.lockout.db is service.db
    finally:
        service.shutdown()
