"""Unit tests for password hashing, strength rules and the JWT codec."""

import time

import pytest
from argon2 import PasswordHasher, Type

from notekeep.service.errors import WeakPasswordError
from notekeep.service.passwords import (
    PasswordService,
    ensure_strong_password,
    password_problems,
)
from notekeep.service.tokens import TokenCodec, _encode_segment, hash_token

PASSWORD = "Correct-Horse-42!"


@pytest.fixture
def passwords(settings):
    service = PasswordService(settings)
    yield service
    service.shutdown()


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


class TestPasswordStrength:
    def test_strong_password_has_no_problems(self):
        assert password_problems(PASSWORD) == []
        ensure_strong_password(PASSWORD)

    @pytest.mark.parametrize(
        "candidate, expected",
        [
            ("Sh0rt!", "at least 12 characters"),
            ("ALLUPPERCASE123!", "lowercase"),
            ("alllowercase123!", "uppercase"),
            ("NoDigitsHere-abc!", "number"),
            ("NoSpecials12345abc", "special"),
        ],
    )
    def test_each_rule_is_reported(self, candidate, expected):
        with pytest.raises(WeakPasswordError) as exc_info:
            ensure_strong_password(candidate)
        assert expected in exc_info.value.message
        assert exc_info.value.detail["problems"][0] == exc_info.value.message

    def test_overlong_password_rejected(self):
        problems = password_problems("Aa1!" * 40)
        assert any("at most 128" in p for p in problems)

    def test_problems_listed_in_order(self):
        problems = password_problems("abc")
        assert problems[0].startswith("Password must be at least")
        assert len(problems) == 4


class TestPasswordService:
    async def test_hash_and_verify(self, passwords):
        digest, algo = await passwords.hash(PASSWORD)

        assert algo == "argon2id"
        assert digest.startswith("$argon2id$")
        assert await passwords.verify(digest, algo, PASSWORD)
        assert not await passwords.verify(digest, algo, PASSWORD + "x")

    async def test_hashes_are_salted(self, passwords):
        first, _ = await passwords.hash(PASSWORD)
        second, _ = await passwords.hash(PASSWORD)
        assert first != second

    async def test_unknown_algorithm_never_verifies(self, passwords):
        digest, _ = await passwords.hash(PASSWORD)
        assert not await passwords.verify(digest, "bcrypt", PASSWORD)

    async def test_garbage_hash_is_rejected_not_raised(self, passwords):
        assert not await passwords.verify("not-a-hash", "argon2id", PASSWORD)

    def test_needs_rehash_for_weaker_parameters(self, passwords):
        old = PasswordHasher(time_cost=1, memory_cost=512, parallelism=1, type=Type.ID)
        assert passwords.needs_rehash(old.hash(PASSWORD))
        assert passwords.needs_rehash("garbage")

    async def test_current_parameters_need_no_rehash(self, passwords):
        digest, _ = await passwords.hash(PASSWORD)
        assert not passwords.needs_rehash(digest)


class TestTokenCodec:
    def _claims(self, **overrides):
        now = int(time.time())
        claims = {"sub": "user-1", "token_type": "access", "iat": now, "exp": now + 60}
        claims.update(overrides)
        return claims

    def test_round_trip_pins_issuer_and_audience(self, codec, settings):
        payload = codec.decode(codec.encode(self._claims()), token_type="access")

        assert payload["sub"] == "user-1"
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience

    def test_wrong_token_type_rejected(self, codec):
        token = codec.encode(self._claims(token_type="refresh"))
        assert codec.decode(token, token_type="access") is None

    def test_tampered_signature_rejected(self, codec):
        token = codec.encode(self._claims())
        head, payload, _ = token.split(".")
        forged = _encode_segment(b'{"sub":"admin","exp":9999999999}')
        assert codec.decode(f"{head}.{forged}.{token.split('.')[2]}") is None
        assert codec.decode(f"{head}.{payload}.AAAA") is None

    def test_alg_none_rejected(self, codec):
        token = codec.encode(self._claims())
        _, payload, sig = token.split(".")
        header = _encode_segment(b'{"alg":"none","typ":"JWT"}')
        assert codec.decode(f"{header}.{payload}.{sig}") is None

    def test_foreign_audience_rejected(self, codec, settings):
        other = TokenCodec(settings.model_copy(update={"jwt_audience": "someone-else"}))
        assert codec.decode(other.encode(self._claims())) is None

    def test_expiry_allows_clock_skew(self, codec):
        now = int(time.time())
        within_leeway = codec.encode(self._claims(exp=now - 30))
        beyond_leeway = codec.encode(self._claims(exp=now - 600))

        assert codec.decode(within_leeway) is not None
        assert codec.decode(beyond_leeway) is None

    def test_malformed_tokens(self, codec):
        for token in ("", "abc", "a.b", "a.b.c.d", None):
            assert codec.decode(token) is None

    def test_missing_subject_rejected(self, codec):
        assert codec.decode(codec.encode(self._claims(sub=""))) is None

    def test_hash_token_is_stable_sha256(self):
        assert hash_token("abc") == hash_token("abc")
        assert len(hash_token("abc")) == 64
        assert hash_token("abc") != hash_token("abd")
