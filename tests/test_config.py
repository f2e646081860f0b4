# tests/test_config.py
import pytest

from provisioning.core.config import (
    DEFAULT_EMAIL_TTL_MINUTES,
    DEFAULT_INVITATION_EXPIRY_HOURS,
    DEFAULT_PHONE_MAX_ATTEMPTS,
    DEFAULT_PHONE_TTL_MINUTES,
    DEFAULT_REQUESTS_PER_HOUR,
    Settings,
    VerificationConfig,
)


def test_defaults(monkeypatch):
    for name in (
        "EMAIL_VERIFICATION_TTL_MIN",
        "PHONE_VERIFICATION_TTL_MIN",
        "VERIFICATION_REQUEST_RATE_LIMIT_PER_HOUR",
        "PHONE_VERIFICATION_MAX_ATTEMPTS",
        "INVITATION_DEFAULT_EXPIRY_HOURS",
    ):
        monkeypatch.delenv(name, raising=False)

    cfg = Settings().verification_config()
    assert cfg.email_ttl_minutes == DEFAULT_EMAIL_TTL_MINUTES == 60
    assert cfg.phone_ttl_minutes == DEFAULT_PHONE_TTL_MINUTES == 10
    assert cfg.requests_per_hour == DEFAULT_REQUESTS_PER_HOUR == 5
    assert cfg.phone_max_attempts == DEFAULT_PHONE_MAX_ATTEMPTS == 5
    assert cfg.invitation_expiry_hours == DEFAULT_INVITATION_EXPIRY_HOURS == 72
    assert cfg.dev_mode is False


def test_env_values_are_read(monkeypatch):
    monkeypatch.setenv("EMAIL_VERIFICATION_TTL_MIN", "30")
    monkeypatch.setenv("PHONE_VERIFICATION_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("VERIFICATION_DEV_MODE", "true")
    monkeypatch.setenv("VERIFICATION_EMAIL_OVERRIDE", "qa@example.com")
    monkeypatch.setenv("APP_URL", "https://app.example.com/")

    cfg = Settings().verification_config()
    assert cfg.email_ttl_minutes == 30
    assert cfg.phone_max_attempts == 3
    assert cfg.dev_mode is True
    assert cfg.email_override == "qa@example.com"
    assert cfg.app_url == "https://app.example.com"


@pytest.mark.parametrize("raw", ["0", "-5", "soon", ""])
def test_bad_numeric_env_falls_back_to_default(monkeypatch, raw):
    monkeypatch.setenv("EMAIL_VERIFICATION_TTL_MIN", raw)
    monkeypatch.setenv("VERIFICATION_REQUEST_RATE_LIMIT_PER_HOUR", raw)

    s = Settings()
    assert s.email_verification_ttl_min == DEFAULT_EMAIL_TTL_MINUTES
    assert s.verification_request_rate_limit_per_hour == DEFAULT_REQUESTS_PER_HOUR


def test_blank_override_is_none(monkeypatch):
    monkeypatch.setenv("VERIFICATION_EMAIL_OVERRIDE", "   ")
    assert Settings().verification_config().email_override is None


def test_origins_list_accepts_csv_and_json():
    assert Settings(allowed_origins="http://a.test, http://b.test").origins_list() == [
        "http://a.test",
        "http://b.test",
    ]
    assert Settings(allowed_origins='["http://a.test"]').origins_list() == ["http://a.test"]
    assert Settings(allowed_origins="").origins_list() == []


def test_is_prod_and_sender_address():
    s = Settings(environment="Production", resend_from_email=None, email_from="Ops <ops@example.com>")
    assert s.is_prod is True
    assert s.effective_email_from == "Ops <ops@example.com>"
    assert Settings(resend_from_email="hi@example.com").effective_email_from == "hi@example.com"


@pytest.mark.parametrize(
    "field",
    ["email_ttl_minutes", "phone_ttl_minutes", "phone_max_attempts", "invitation_expiry_hours"],
)
def test_verification_config_rejects_non_positive(field):
    with pytest.raises(ValueError):
        VerificationConfig(**{field: 0})


def test_verification_config_rejects_negative_rate_limit():
    with pytest.raises(ValueError):
        VerificationConfig(requests_per_hour=-1)
    assert VerificationConfig(requests_per_hour=0).requests_per_hour == 0
