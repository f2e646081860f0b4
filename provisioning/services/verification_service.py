# provisioning/services/verification_service.py
"""
Email / phone verification lifecycle.

Issue:   subject exists -> not yet verified -> under the hourly limit ->
         supersede + insert (one transaction) -> deliver.
Confirm: lookup active code -> evaluate_attempt -> persist what the outcome
         says (compare-and-set attempt bump, or verified-at + used-at in one
         transaction). A lost race re-reads the code and evaluates again.

Domain outcomes come back as VerificationSuccess / VerificationFailure.
Bad input raises ValidationError, a missing subject SubjectNotFoundError,
and collaborator faults propagate as StorageError / DeliveryError.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Union
from urllib.parse import quote

from provisioning.core.config import VerificationConfig
from provisioning.core.errors import SubjectNotFoundError, ValidationError
from provisioning.core.verification import (
    EMAIL_MAX_ATTEMPTS,
    VERIFICATION_MESSAGES,
    Expired,
    Invalid,
    TooManyAttempts,
    VerificationErrorCode,
    VerificationKind,
    compute_expires_at,
    evaluate_attempt,
    generate_email_token,
    generate_phone_code,
    hash_secret,
    is_rate_limited,
    rate_limit_window_start,
    to_epoch_ms,
)
from provisioning.domain import Account, RequestMetadata, VerificationCode
from provisioning.ports import Clock, EmailSender, SmsSender, SystemClock, VerificationStore

logger = logging.getLogger("provisioning")


@dataclass(frozen=True)
class VerificationSuccess:
    kind: VerificationKind
    already_verified: bool = False
    verified: bool = False
    expires_at: Optional[datetime] = None
    # Only populated when dev_mode is on
    dev_secret: Optional[str] = None
    dev_verify_url: Optional[str] = None

    ok = True


@dataclass(frozen=True)
class VerificationFailure:
    code: VerificationErrorCode
    attempts: Optional[int] = None
    max_attempts: Optional[int] = None

    ok = False

    @property
    def message(self) -> str:
        return VERIFICATION_MESSAGES[self.code]


VerificationResult = Union[VerificationSuccess, VerificationFailure]


class VerificationService:
    def __init__(
        self,
        store: VerificationStore,
        email_sender: EmailSender,
        sms_sender: SmsSender,
        config: VerificationConfig,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.config = config
        self.clock = clock or SystemClock()

    # ---------- Issue ----------

    async def request_email_verification(
        self, subject_id: str, metadata: RequestMetadata = RequestMetadata()
    ) -> VerificationResult:
        return await self._request(subject_id, VerificationKind.EMAIL, metadata)

    async def request_phone_verification(
        self, subject_id: str, metadata: RequestMetadata = RequestMetadata()
    ) -> VerificationResult:
        return await self._request(subject_id, VerificationKind.PHONE, metadata)

    def _ttl_minutes(self, kind: VerificationKind) -> int:
        ttl = (
            self.config.email_ttl_minutes
            if kind == VerificationKind.EMAIL
            else self.config.phone_ttl_minutes
        )
        if ttl <= 0:
            raise ValidationError(f"{kind.value} verification TTL must be positive", ttl_minutes=ttl)
        return ttl

    async def _request(
        self, subject_id: str, kind: VerificationKind, metadata: RequestMetadata
    ) -> VerificationResult:
        if not subject_id:
            raise ValidationError("subject id is required")
        ttl_minutes = self._ttl_minutes(kind)

        account = await self._require_account(subject_id)
        if account.verified_at(kind) is not None:
            return VerificationSuccess(kind=kind, already_verified=True)

        destination = account.email if kind == VerificationKind.EMAIL else account.phone
        if not destination:
            raise ValidationError(f"Account has no {kind.value} on file", subject_id=subject_id)

        now = self.clock.now()
        issued = await self.store.count_recent_issuances(subject_id, kind, rate_limit_window_start(now))
        if is_rate_limited(issued, self.config.requests_per_hour):
            logger.info(
                "verification_rate_limited user_id=%s type=%s issued_last_hour=%s",
                subject_id,
                kind.value,
                issued,
            )
            return VerificationFailure(code=VerificationErrorCode.RATE_LIMITED)

        if kind == VerificationKind.EMAIL:
            secret = generate_email_token()
            max_attempts = EMAIL_MAX_ATTEMPTS
        else:
            secret = generate_phone_code()
            max_attempts = self.config.phone_max_attempts

        record = await self.store.issue_code(
            VerificationCode(
                id=str(uuid.uuid4()),
                subject_id=subject_id,
                kind=kind,
                sent_to=destination,
                secret_hash=hash_secret(secret),
                issued_at=now,
                expires_at=compute_expires_at(to_epoch_ms(now), ttl_minutes),
                attempts=0,
                max_attempts=max_attempts,
                requested_ip=metadata.ip,
                requested_user_agent=metadata.user_agent,
            )
        )
        logger.info(
            "verification_issued user_id=%s type=%s code_id=%s expires_at=%s",
            subject_id,
            kind.value,
            record.id,
            record.expires_at.isoformat(),
        )

        verify_url = None
        if kind == VerificationKind.EMAIL:
            verify_url = self.email_verify_url(secret)
            await self.email_sender.send_email(
                to_email=destination,
                subject="Confirm your email address",
                text_body=(
                    f"Confirm your email address by opening this link:\n{verify_url}\n\n"
                    f"The link expires in {ttl_minutes} minutes."
                ),
                html_body=f'<p>Confirm your email address: <a href="{verify_url}">{verify_url}</a></p>',
            )
        else:
            await self.sms_sender.send_sms(
                to_number=destination,
                body=f"Your verification code is {secret}. It expires in {ttl_minutes} minutes.",
            )

        if not self.config.dev_mode:
            return VerificationSuccess(kind=kind, expires_at=record.expires_at)
        return VerificationSuccess(
            kind=kind,
            expires_at=record.expires_at,
            dev_secret=secret,
            dev_verify_url=verify_url,
        )

    def email_verify_url(self, token: str) -> str:
        return f"{self.config.app_url}/auth/email/verify?token={quote(token, safe='')}"

    # ---------- Confirm ----------

    async def confirm_email_verification(
        self, token: str, metadata: RequestMetadata = RequestMetadata()
    ) -> VerificationResult:
        token = token or ""
        if not token.strip():
            raise ValidationError("token is required")

        provided_hash = hash_secret(token)
        record = await self.store.find_active_code_by_hash(VerificationKind.EMAIL, provided_hash)
        if record is None:
            return VerificationFailure(code=VerificationErrorCode.CODE_INVALID)

        account = await self.store.get_account(record.subject_id)
        if account is None:
            return VerificationFailure(code=VerificationErrorCode.CODE_INVALID)
        if account.email_verified_at is not None:
            return VerificationSuccess(kind=VerificationKind.EMAIL, already_verified=True)

        return await self._settle(record, provided_hash, metadata)

    async def confirm_phone_verification(
        self, subject_id: str, code: str, metadata: RequestMetadata = RequestMetadata()
    ) -> VerificationResult:
        code = (code or "").strip()
        if not code:
            raise ValidationError("code is required")
        if not subject_id:
            raise ValidationError("subject id is required")

        account = await self._require_account(subject_id)
        if account.phone_verified_at is not None:
            return VerificationSuccess(kind=VerificationKind.PHONE, already_verified=True)

        record = await self.store.find_latest_active_code(subject_id, VerificationKind.PHONE)
        if record is None:
            return VerificationFailure(code=VerificationErrorCode.CODE_INVALID)

        return await self._settle(record, hash_secret(code), metadata)

    async def _settle(
        self, record: VerificationCode, provided_hash: str, metadata: RequestMetadata
    ) -> VerificationResult:
        now = self.clock.now()
        while True:
            outcome = evaluate_attempt(
                stored_hash=record.secret_hash,
                provided_hash=provided_hash,
                attempts=record.attempts,
                max_attempts=record.max_attempts,
                expires_at=record.expires_at,
                used_at=record.used_at,
                now=now,
            )

            if isinstance(outcome, Invalid):
                if outcome.next_attempts != record.attempts and not await self.store.update_attempts(
                    record.id, outcome.next_attempts, expected=record.attempts
                ):
                    # A concurrent confirm moved the counter; judge this guess again.
                    record = await self._reload(record, provided_hash)
                    if record is None:
                        return VerificationFailure(code=VerificationErrorCode.CODE_INVALID)
                    continue
                logger.info(
                    "verification_invalid user_id=%s type=%s attempts=%s/%s",
                    record.subject_id,
                    record.kind.value,
                    outcome.next_attempts,
                    outcome.max_attempts,
                )
                return VerificationFailure(
                    code=outcome.code,
                    attempts=outcome.next_attempts,
                    max_attempts=outcome.max_attempts,
                )

            if isinstance(outcome, Expired):
                return VerificationFailure(code=outcome.code)

            if isinstance(outcome, TooManyAttempts):
                return VerificationFailure(
                    code=outcome.code,
                    attempts=outcome.attempts,
                    max_attempts=outcome.max_attempts,
                )

            if await self.store.confirm_code(record, now, metadata):
                break

            record = await self._reload(record, provided_hash)
            if record is None:
                # Someone else consumed the code between lookup and write.
                return VerificationFailure(code=VerificationErrorCode.CODE_INVALID)

        logger.info(
            "verification_confirmed user_id=%s type=%s code_id=%s",
            record.subject_id,
            record.kind.value,
            record.id,
        )
        return VerificationSuccess(kind=record.kind, verified=True)

    async def _reload(self, record: VerificationCode, provided_hash: str) -> Optional[VerificationCode]:
        """Fresh copy of `record`, or None once it is used or superseded."""
        if record.kind == VerificationKind.EMAIL:
            fresh = await self.store.find_active_code_by_hash(VerificationKind.EMAIL, provided_hash)
        else:
            fresh = await self.store.find_latest_active_code(record.subject_id, record.kind)
        if fresh is None or fresh.id != record.id:
            return None
        return fresh

    # ---------- Policy ----------

    async def missing_requirements(
        self,
        subject_id: str,
        *,
        require_email: Optional[bool] = None,
        require_phone: Optional[bool] = None,
    ) -> List[VerificationKind]:
        """
        Verifications `subject_id` still lacks for a policy-guarded action.
        Defaults to REQUIRE_VERIFIED_EMAIL / REQUIRE_VERIFIED_PHONE.
        """
        if require_email is None:
            require_email = self.config.require_verified_email
        if require_phone is None:
            require_phone = self.config.require_verified_phone

        account = await self._require_account(subject_id)
        missing = []
        if require_email and account.email_verified_at is None:
            missing.append(VerificationKind.EMAIL)
        if require_phone and account.phone_verified_at is None:
            missing.append(VerificationKind.PHONE)
        return missing

    async def _require_account(self, subject_id: str) -> Account:
        account = await self.store.get_account(subject_id)
        if account is None:
            raise SubjectNotFoundError(subject_id)
        return account
