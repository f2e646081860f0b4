# tests/test_verification_service.py
import asyncio
import re
from datetime import timedelta

import pytest

from conftest import (
    T0,
    FailingEmailSender,
    InMemoryVerificationStore,
)
from provisioning.core.config import VerificationConfig
from provisioning.core.errors import DeliveryError, SubjectNotFoundError, ValidationError
from provisioning.core.verification import VerificationErrorCode, VerificationKind, hash_secret
from provisioning.domain import Account, RequestMetadata
from provisioning.services.verification_service import (
    VerificationFailure,
    VerificationService,
    VerificationSuccess,
)

META = RequestMetadata(ip="203.0.113.7", user_agent="pytest")


@pytest.fixture()
def store():
    s = InMemoryVerificationStore()
    s.add_account(
        Account(
            id="u-1",
            email="jane@example.com",
            first_name="Jane",
            last_name="Doe",
            phone="+15550000003",
        )
    )
    return s


@pytest.fixture()
def dev_config(config):
    return VerificationConfig(
        email_ttl_minutes=config.email_ttl_minutes,
        phone_ttl_minutes=config.phone_ttl_minutes,
        requests_per_hour=config.requests_per_hour,
        phone_max_attempts=config.phone_max_attempts,
        app_url=config.app_url,
        dev_mode=True,
    )


@pytest.fixture()
def service(store, email_sender, sms_sender, config, clock):
    return VerificationService(store, email_sender, sms_sender, config, clock)


@pytest.fixture()
def dev_service(store, email_sender, sms_sender, dev_config, clock):
    return VerificationService(store, email_sender, sms_sender, dev_config, clock)


def _token_from_email(sent) -> str:
    m = re.search(r"token=([0-9a-f]{64})", sent["text"])
    assert m, sent["text"]
    return m.group(1)


def _code_from_sms(sent) -> str:
    m = re.search(r"\b(\d{6})\b", sent["body"])
    assert m, sent["body"]
    return m.group(1)


# --- email -----------------------------------------------------------------

def test_email_verify_then_replay_is_invalid(service, store, email_sender, clock):
    issued = asyncio.run(service.request_email_verification("u-1", META))
    assert isinstance(issued, VerificationSuccess)
    assert issued.expires_at == T0 + timedelta(minutes=60)
    assert issued.dev_secret is None

    token = _token_from_email(email_sender.sent[0])
    assert email_sender.sent[0]["to"] == "jane@example.com"
    assert "https://app.example.com/auth/email/verify?token=" in email_sender.sent[0]["text"]

    code = store.codes[0]
    assert code.secret_hash == hash_secret(token)
    assert code.max_attempts == 1
    assert code.requested_ip == "203.0.113.7"

    clock.advance(minutes=30)
    confirmed = asyncio.run(service.confirm_email_verification(token, META))
    assert isinstance(confirmed, VerificationSuccess)
    assert confirmed.verified is True
    assert store.accounts["u-1"].email_verified_at == clock.now()
    assert store.codes[0].used_at == clock.now()
    assert store.codes[0].confirmed_user_agent == "pytest"

    replay = asyncio.run(service.confirm_email_verification(token, META))
    assert isinstance(replay, VerificationFailure)
    assert replay.code == VerificationErrorCode.CODE_INVALID
    assert store.codes[0].attempts == 0


def test_email_link_expires(service, store, email_sender, clock):
    asyncio.run(service.request_email_verification("u-1"))
    token = _token_from_email(email_sender.sent[0])

    clock.advance(minutes=60)
    result = asyncio.run(service.confirm_email_verification(token))
    assert result.code == VerificationErrorCode.CODE_EXPIRED
    assert result.message == "Verification token or code expired"
    assert store.codes[0].used_at is None
    assert store.accounts["u-1"].email_verified_at is None


def test_unknown_email_token_is_invalid(service):
    result = asyncio.run(service.confirm_email_verification("f" * 64))
    assert result.code == VerificationErrorCode.CODE_INVALID


def test_email_token_is_matched_byte_for_byte(service, store, email_sender):
    asyncio.run(service.request_email_verification("u-1"))
    token = _token_from_email(email_sender.sent[0])

    padded = asyncio.run(service.confirm_email_verification(f" {token}\n"))
    assert padded.code == VerificationErrorCode.CODE_INVALID
    assert store.accounts["u-1"].email_verified_at is None

    assert asyncio.run(service.confirm_email_verification(token)).verified is True


def test_new_email_request_supersedes_the_old_link(service, store, email_sender):
    asyncio.run(service.request_email_verification("u-1"))
    asyncio.run(service.request_email_verification("u-1"))
    first, second = (_token_from_email(s) for s in email_sender.sent)

    active = [c for c in store.codes if c.used_at is None]
    assert len(active) == 1
    assert active[0].secret_hash == hash_secret(second)

    assert asyncio.run(service.confirm_email_verification(first)).code == VerificationErrorCode.CODE_INVALID
    assert asyncio.run(service.confirm_email_verification(second)).ok


def test_already_verified_short_circuits_without_issuing(service, store, email_sender):
    store.accounts["u-1"].email_verified_at = T0
    result = asyncio.run(service.request_email_verification("u-1"))
    assert result == VerificationSuccess(kind=VerificationKind.EMAIL, already_verified=True)
    assert store.codes == []
    assert email_sender.sent == []


def test_confirm_for_already_verified_email_does_not_evaluate(service, store, email_sender):
    asyncio.run(service.request_email_verification("u-1"))
    token = _token_from_email(email_sender.sent[0])
    store.accounts["u-1"].email_verified_at = T0

    result = asyncio.run(service.confirm_email_verification(token))
    assert result.already_verified is True
    assert store.codes[0].used_at is None


def test_dev_mode_echoes_token_and_url(dev_service, email_sender):
    result = asyncio.run(dev_service.request_email_verification("u-1"))
    token = _token_from_email(email_sender.sent[0])
    assert result.dev_secret == token
    assert result.dev_verify_url == f"https://app.example.com/auth/email/verify?token={token}"


def test_rate_limit_after_configured_requests(service, store, clock):
    for _ in range(5):
        assert asyncio.run(service.request_email_verification("u-1")).ok
        clock.advance(minutes=1)

    limited = asyncio.run(service.request_email_verification("u-1"))
    assert isinstance(limited, VerificationFailure)
    assert limited.code == VerificationErrorCode.RATE_LIMITED
    assert len(store.codes) == 5

    # window slides: the first issuance falls out after an hour
    clock.advance(minutes=56)
    assert asyncio.run(service.request_email_verification("u-1")).ok


def test_rate_limit_is_per_kind(service, clock):
    for _ in range(5):
        asyncio.run(service.request_email_verification("u-1"))
    assert asyncio.run(service.request_phone_verification("u-1")).ok


def test_delivery_failure_surfaces_after_persisting(store, sms_sender, config, clock):
    service = VerificationService(store, FailingEmailSender(), sms_sender, config, clock)
    with pytest.raises(DeliveryError) as exc_info:
        asyncio.run(service.request_email_verification("u-1"))
    assert exc_info.value.channel == "email"
    assert len(store.codes) == 1


def test_validation_and_missing_subject(service):
    with pytest.raises(ValidationError):
        asyncio.run(service.confirm_email_verification("   "))
    with pytest.raises(ValidationError):
        asyncio.run(service.confirm_phone_verification("u-1", ""))
    with pytest.raises(SubjectNotFoundError):
        asyncio.run(service.request_email_verification("nobody"))


def test_phone_request_needs_a_number(service, store):
    store.accounts["u-1"].phone = None
    with pytest.raises(ValidationError):
        asyncio.run(service.request_phone_verification("u-1"))


# --- phone -----------------------------------------------------------------

def test_phone_attempts_cap_at_max(service, store, sms_sender):
    asyncio.run(service.request_phone_verification("u-1", META))
    good = _code_from_sms(sms_sender.sent[0])
    wrong = "999999" if good != "999999" else "100000"

    results = [asyncio.run(service.confirm_phone_verification("u-1", wrong)) for _ in range(3)]
    assert [r.code for r in results] == [VerificationErrorCode.CODE_INVALID] * 3
    assert [r.attempts for r in results] == [1, 2, 3]
    assert all(r.max_attempts == 3 for r in results)

    fourth = asyncio.run(service.confirm_phone_verification("u-1", wrong))
    assert fourth.code == VerificationErrorCode.TOO_MANY_ATTEMPTS
    assert store.codes[0].attempts == 3

    # even the right code is refused now
    locked = asyncio.run(service.confirm_phone_verification("u-1", good))
    assert locked.code == VerificationErrorCode.TOO_MANY_ATTEMPTS
    assert store.accounts["u-1"].phone_verified_at is None


def test_phone_confirm_with_correct_code(service, store, sms_sender, clock):
    result = asyncio.run(service.request_phone_verification("u-1"))
    assert result.expires_at == T0 + timedelta(minutes=10)
    assert sms_sender.sent[0]["to"] == "+15550000003"

    clock.advance(minutes=9)
    confirmed = asyncio.run(service.confirm_phone_verification("u-1", _code_from_sms(sms_sender.sent[0])))
    assert confirmed.verified is True
    assert store.accounts["u-1"].phone_verified_at == clock.now()

    again = asyncio.run(service.confirm_phone_verification("u-1", "123456"))
    assert again.already_verified is True


def test_phone_confirm_without_active_code(service):
    result = asyncio.run(service.confirm_phone_verification("u-1", "123456"))
    assert result.code == VerificationErrorCode.CODE_INVALID
    assert result.attempts is None


class _RivalGuessStore(InMemoryVerificationStore):
    """Another wrong guess lands between every read and write."""

    def _rival_bump(self, code_id):
        c = self._code(code_id)
        if c.used_at is None and c.attempts < c.max_attempts:
            c.attempts += 1

    async def update_attempts(self, code_id, attempts, *, expected):
        self._rival_bump(code_id)
        return await super().update_attempts(code_id, attempts, expected=expected)

    async def confirm_code(self, code, confirmed_at, metadata):
        self._rival_bump(code.id)
        return await super().confirm_code(code, confirmed_at, metadata)


@pytest.fixture()
def rival_store(store):
    racing = _RivalGuessStore()
    racing.accounts = store.accounts
    return racing


def test_lost_attempt_race_is_judged_again(rival_store, email_sender, sms_sender, config, clock):
    service = VerificationService(rival_store, email_sender, sms_sender, config, clock)
    asyncio.run(service.request_phone_verification("u-1"))
    good = _code_from_sms(sms_sender.sent[0])
    wrong = "999999" if good != "999999" else "100000"

    result = asyncio.run(service.confirm_phone_verification("u-1", wrong))
    assert result.code == VerificationErrorCode.TOO_MANY_ATTEMPTS
    assert result.attempts == 3
    assert rival_store.codes[0].attempts == 3


def test_correct_code_loses_to_guesses_that_exhaust_the_cap(
    rival_store, email_sender, sms_sender, config, clock
):
    service = VerificationService(rival_store, email_sender, sms_sender, config, clock)
    asyncio.run(service.request_phone_verification("u-1"))

    result = asyncio.run(service.confirm_phone_verification("u-1", _code_from_sms(sms_sender.sent[0])))
    assert result.code == VerificationErrorCode.TOO_MANY_ATTEMPTS
    assert rival_store.codes[0].used_at is None
    assert rival_store.accounts["u-1"].phone_verified_at is None


def test_dev_mode_echoes_phone_code(dev_service, sms_sender):
    result = asyncio.run(dev_service.request_phone_verification("u-1"))
    assert result.dev_secret == _code_from_sms(sms_sender.sent[0])
    assert result.dev_verify_url is None


def test_non_positive_ttl_rejected_at_boundary():
    with pytest.raises(ValueError):
        VerificationConfig(email_ttl_minutes=0)
    with pytest.raises(ValueError):
        VerificationConfig(phone_ttl_minutes=-1)


# --- policy ----------------------------------------------------------------

def test_missing_requirements(service, store):
    missing = asyncio.run(service.missing_requirements("u-1", require_email=True, require_phone=True))
    assert missing == [VerificationKind.EMAIL, VerificationKind.PHONE]

    store.accounts["u-1"].email_verified_at = T0
    missing = asyncio.run(service.missing_requirements("u-1", require_email=True, require_phone=True))
    assert missing == [VerificationKind.PHONE]

    # config defaults: nothing required
    assert asyncio.run(service.missing_requirements("u-1")) == []
