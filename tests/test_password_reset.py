"""Emailed password reset links."""

import pytest

from notekeep.service.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    SessionRevokedError,
    WeakPasswordError,
)
from notekeep.service.sessions import RequestMeta

PASSWORD = "Correct-Horse-42!"
NEW_PASSWORD = "Battery-Staple-77?"


def _reset_links(email):
    return [entry for entry in email.links if entry["purpose"] == "password_reset"]


async def test_request_by_username_or_email(auth_service, make_user, email, clock):
    await make_user(email="alice@example.com")

    assert await auth_service.request_password_reset("alice") is None
    clock.advance(minutes=5)
    await auth_service.request_password_reset("ALICE@example.com")

    links = _reset_links(email)
    assert [entry["to"] for entry in links] == ["alice@example.com"] * 2
    assert len(links[0]["token"]) == 64


async def test_unknown_account_looks_the_same(auth_service, make_user, email):
    await make_user(email="alice@example.com")
    await make_user("bob")
    await make_user("carol", email="carol@example.com", disabled=True)

    assert await auth_service.request_password_reset("nobody@example.com") is None
    assert await auth_service.request_password_reset("bob") is None
    assert await auth_service.request_password_reset("carol") is None
    assert _reset_links(email) == []


async def test_requests_spaced_five_minutes_apart(auth_service, make_user, email, clock):
    await make_user(email="alice@example.com")

    await auth_service.request_password_reset("alice")
    clock.advance(minutes=4, seconds=59)
    await auth_service.request_password_reset("alice")
    assert len(_reset_links(email)) == 1

    clock.advance(seconds=1)
    await auth_service.request_password_reset("alice")
    assert len(_reset_links(email)) == 2


async def test_confirm_replaces_password_and_ends_sessions(
    auth_service, make_user, email, memory_store
):
    user = await make_user(email="alice@example.com")
    tokens = (await auth_service.login("alice", PASSWORD)).tokens
    await auth_service.devices.create(user.id, RequestMeta(origin_address="10.0.0.1"))
    await auth_service.request_password_reset("alice")

    await auth_service.confirm_password_reset(email.last_link("password_reset"), NEW_PASSWORD)

    assert memory_store.list_refresh_sessions(user.id) == []
    assert await auth_service.list_trusted_devices(user.id) == []
    with pytest.raises(SessionRevokedError):
        await auth_service.refresh(tokens.refresh_token)
    with pytest.raises(InvalidCredentialsError):
        await auth_service.login("alice", PASSWORD)
    assert (await auth_service.login("alice", NEW_PASSWORD)).status == "authenticated"


async def test_link_works_once(auth_service, make_user, email):
    await make_user(email="alice@example.com")
    await auth_service.request_password_reset("alice")
    token = email.last_link("password_reset")

    await auth_service.confirm_password_reset(token, NEW_PASSWORD)

    with pytest.raises(InvalidTokenError):
        await auth_service.confirm_password_reset(token, "Another-Horse-99#")


async def test_weak_password_keeps_link_usable(auth_service, make_user, email):
    await make_user(email="alice@example.com")
    await auth_service.request_password_reset("alice")
    token = email.last_link("password_reset")

    with pytest.raises(WeakPasswordError):
        await auth_service.confirm_password_reset(token, "short")
    await auth_service.confirm_password_reset(token, NEW_PASSWORD)


async def test_link_expires_after_thirty_minutes(auth_service, make_user, email, clock):
    await make_user(email="alice@example.com")
    await auth_service.request_password_reset("alice")
    clock.advance(minutes=30, seconds=1)

    with pytest.raises(InvalidTokenError):
        await auth_service.confirm_password_reset(email.last_link("password_reset"), NEW_PASSWORD)


async def test_using_one_link_spends_the_others(auth_service, make_user, email, clock):
    await make_user(email="alice@example.com")
    await auth_service.request_password_reset("alice")
    first = email.last_link("password_reset")
    clock.advance(minutes=6)
    await auth_service.request_password_reset("alice")

    await auth_service.confirm_password_reset(email.last_link("password_reset"), NEW_PASSWORD)

    with pytest.raises(InvalidTokenError):
        await auth_service.confirm_password_reset(first, "Another-Horse-99#")
