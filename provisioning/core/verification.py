# provisioning/core/verification.py
"""
Pure building blocks of the verification lifecycle.

Nothing in here touches storage, the network or the clock: callers pass
`now` in and persist whatever the returned outcome tells them to. Every
function is total for well-typed input.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Trailing window used when counting issuances for the rate limiter
RATE_LIMIT_WINDOW = timedelta(hours=1)

# Email links are single-shot: one wrong token means the link is dead anyway.
EMAIL_MAX_ATTEMPTS = 1


class VerificationKind(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class VerificationErrorCode(str, Enum):
    CODE_INVALID = "code_invalid"
    CODE_EXPIRED = "code_expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    RATE_LIMITED = "rate_limited"


VERIFICATION_MESSAGES = {
    VerificationErrorCode.CODE_INVALID: "Verification token or code is invalid or already used",
    VerificationErrorCode.CODE_EXPIRED: "Verification token or code expired",
    VerificationErrorCode.TOO_MANY_ATTEMPTS: "Maximum verification attempts exceeded",
    VerificationErrorCode.RATE_LIMITED: "Too many verification requests in the last hour",
}

VERIFICATION_REQUIRED_MESSAGE = "Verification required by policy for this action"


# ---------- Hashing / secrets ----------

def hash_secret(secret: str) -> str:
    # SHA-256 hex digest (64 chars), the only persisted form of a secret
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_email_token() -> str:
    return secrets.token_hex(32)


def generate_phone_code() -> str:
    # 100000..999999, never a leading zero
    return str(100000 + secrets.randbelow(900000))


# ---------- Time ----------

def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_epoch_ms(dt: datetime) -> int:
    return (as_utc(dt) - EPOCH) // timedelta(milliseconds=1)


def compute_expires_at(issued_at_ms: int, ttl_minutes: int) -> datetime:
    """
    issued_at + ttl as an absolute UTC instant.

    ttl > 0 is strictly later than issuance, ttl == 0 equals issuance
    (already expired). Negative ttl is clamped to 0; services reject
    non-positive TTLs before they get here.
    """
    ttl_ms = max(int(ttl_minutes), 0) * 60_000
    return EPOCH + timedelta(milliseconds=int(issued_at_ms) + ttl_ms)


# ---------- Attempt evaluation ----------

@dataclass(frozen=True)
class Verified:
    code = None


@dataclass(frozen=True)
class Invalid:
    next_attempts: int
    max_attempts: int

    code = VerificationErrorCode.CODE_INVALID


@dataclass(frozen=True)
class Expired:
    code = VerificationErrorCode.CODE_EXPIRED


@dataclass(frozen=True)
class TooManyAttempts:
    attempts: int
    max_attempts: int

    code = VerificationErrorCode.TOO_MANY_ATTEMPTS


AttemptOutcome = Union[Verified, Invalid, Expired, TooManyAttempts]


def evaluate_attempt(
    *,
    stored_hash: str,
    provided_hash: str,
    attempts: int,
    max_attempts: int,
    expires_at: datetime,
    used_at: Optional[datetime],
    now: datetime,
) -> AttemptOutcome:
    """
    Decide what a confirmation attempt means. First match wins:

    1. already used           -> Invalid, attempts unchanged
    2. now >= expires_at      -> Expired
    3. attempts >= max        -> TooManyAttempts
    4. hash mismatch          -> Invalid, attempts + 1 (capped at max)
    5. otherwise              -> Verified

    A used record never burns attempts, so the counter cannot be used to
    probe whether a code was consumed.
    """
    if used_at is not None:
        return Invalid(next_attempts=attempts, max_attempts=max_attempts)

    if as_utc(now) >= as_utc(expires_at):
        return Expired()

    if attempts >= max_attempts:
        return TooManyAttempts(attempts=attempts, max_attempts=max_attempts)

    if not hmac.compare_digest(stored_hash, provided_hash):
        return Invalid(next_attempts=min(attempts + 1, max_attempts), max_attempts=max_attempts)

    return Verified()


# ---------- Rate limiting ----------

def is_rate_limited(issued_in_window: int, limit: int) -> bool:
    # limit == 0 means every request is limited; there is no "unlimited" value
    return issued_in_window >= limit


def rate_limit_window_start(now: datetime) -> datetime:
    return as_utc(now) - RATE_LIMIT_WINDOW
