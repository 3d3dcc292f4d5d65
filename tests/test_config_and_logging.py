"""Settings loading, log redaction and the in-process request throttle."""

import pytest
from pydantic import ValidationError

from notekeep.config import Settings, get_settings, reset_settings_cache
from notekeep.logging import _redact_pii, get_correlation_id, set_correlation_id
from notekeep.service.runtime import _mask_url_password, check_rate_limit, get_runtime


class TestSettings:
    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("OTP_TTL_MINUTES", "5")
        monkeypatch.setenv("LOGIN_MAX_ATTEMPTS_ORIGIN", "50")
        reset_settings_cache()

        settings = get_settings()

        assert settings.otp_ttl_minutes == 5
        assert settings.login_max_attempts_origin == 50
        assert get_settings() is settings

    def test_long_refresh_ttl_must_cover_short(self):
        with pytest.raises(ValidationError):
            Settings(
                jwt_secret="x" * 40,
                refresh_token_ttl_days_short=7,
                refresh_token_ttl_days_long=3,
            )

    def test_limits_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, login_max_attempts_identifier=0)

    def test_cors_origins_split(self):
        settings = Settings(
            jwt_secret="x" * 40,
            cors_allow_origins=" https://a.example , ,https://b.example",
        )
        assert settings.cors_origins == ["https://a.example", "https://b.example"]
        assert Settings(jwt_secret="x" * 40).cors_origins == []

    def test_generated_jwt_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


class TestRedaction:
    def test_secret_fields_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login",
                "password": "Correct-Horse-42!",
                "refresh_token": "abcdefgh",
                "code": "1234",
                "user_id": "u1",
            },
        )

        assert event["password"] == "Co***2!"
        assert event["refresh_token"] == "ab***gh"
        assert event["code"] == "***"
        assert event["user_id"] == "u1"

    def test_exempt_keys_untouched(self):
        event = _redact_pii(None, "info", {"error_code": "invalid_code", "token_type": "refresh"})
        assert event == {"error_code": "invalid_code", "token_type": "refresh"}

    def test_non_string_values_kept(self):
        assert _redact_pii(None, "info", {"code_attempts": 3})["code_attempts"] == 3


def test_correlation_id_generated_when_missing():
    generated = set_correlation_id(None)
    assert get_correlation_id() == generated
    assert set_correlation_id("req-7") == "req-7"


@pytest.mark.parametrize(
    "url, expected",
    [
        ("redis://:hunter2@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://app:pw@db/notekeep", "postgresql://app:***@db/notekeep"),
        ("redis://cache:6379/0", "redis://cache:6379/0"),
        ("", ""),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


class TestLocalRateLimit:
    async def test_bucket_allows_limit_then_blocks(self):
        runtime = get_runtime()
        assert runtime.cache is None

        results = [await check_rate_limit(runtime, "k", 3, 60) for _ in range(4)]

        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert [remaining for _, remaining, _ in results[:3]] == [2, 1, 0]
        assert 0 < results[-1][2] <= 20

    async def test_keys_are_independent(self):
        runtime = get_runtime()
        await check_rate_limit(runtime, "a", 1, 60)

        allowed, _, _ = await check_rate_limit(runtime, "b", 1, 60)
        assert allowed

    async def test_zero_limit_disables_throttle(self):
        allowed, _, retry_after = await check_rate_limit(get_runtime(), "z", 0, 60)
        assert allowed and retry_after == 0
