# provisioning/core/errors.py

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from provisioning.core.request_context import get_request_id

logger = logging.getLogger("provisioning")


class ProvisioningError(Exception):
    """Base class for every failure raised (not returned) by the services."""

    code = "internal_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(ProvisioningError):
    """Malformed input, rejected before touching storage."""

    code = "invalid_payload"


class WeakPasswordError(ValidationError):
    code = "weak_password"

    def __init__(self, failed_checks: Sequence[str]) -> None:
        super().__init__(
            "Password does not meet the password policy",
            failed_checks=list(failed_checks),
        )
        self.failed_checks = list(failed_checks)


class SubjectNotFoundError(ProvisioningError):
    code = "user_not_found"

    def __init__(self, subject_id: str) -> None:
        super().__init__("User not found", subject_id=subject_id)
        self.subject_id = subject_id


class StorageError(ProvisioningError):
    """Infrastructure fault from the persistence layer."""

    code = "storage_failure"


class DeliveryError(ProvisioningError):
    """
    Outbound email/SMS dispatch failed.

    By the time this is raised the secret has already been persisted, so the
    caller decides whether to request a fresh one.
    """

    code = "delivery_failed"

    def __init__(self, channel: str, recipient: str, reason: str) -> None:
        super().__init__(f"{channel} delivery failed: {reason}", channel=channel, recipient=recipient)
        self.channel = channel
        self.recipient = recipient
        self.reason = reason


class RequestIdFilter(logging.Filter):
    """
    Injects request_id into every LogRecord as `record.request_id`.
    Safe in non-request contexts (falls back to "-").
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


def install_request_id_logging(
    logger_name: str = "provisioning",
    *,
    include_root: bool = True,
) -> None:
    """
    Attach RequestIdFilter so logs can include %(request_id)s in the formatter.
    Call once during startup, right after logging.basicConfig().
    """
    filt = RequestIdFilter()

    if include_root:
        root = logging.getLogger()
        if not any(isinstance(f, RequestIdFilter) for f in root.filters):
            root.addFilter(filt)

    named = logging.getLogger(logger_name)
    if not any(isinstance(f, RequestIdFilter) for f in named.filters):
        named.addFilter(filt)


def log_exception_with_context(
    message: str,
    *,
    request_id: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """
    Log an exception with stack trace and request context.

    Use this inside exception handlers so the root cause of a storage or
    delivery fault is visible in logs while the client only gets a generic
    message.

    Example:
        try:
            ...
        except StorageError:
            log_exception_with_context(
                "Invitation redeem failed",
                extra={"path": "/api/v1/register", "method": "POST"},
            )
            raise
    """
    rid = request_id or get_request_id()
    parts = [f"request_id={rid}"]
    for key, value in (extra or {}).items():
        parts.append(f"{key}={value}")

    # logger.exception includes the stack trace of the currently-handled exception
    logger.exception("%s %s", message, " ".join(parts))
