# provisioning/services/invites.py
from __future__ import annotations

import secrets
from datetime import datetime
from enum import Enum
from typing import Optional

from provisioning.core.verification import as_utc, hash_secret

ADMIN_ROLES = frozenset({"super_admin", "admin", "manager"})

# Role granted to accounts created from an invitation
INVITED_MEMBER_ROLE = "manager"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    REVOKED = "revoked"


TERMINAL_STATUSES = frozenset(
    {InvitationStatus.ACCEPTED, InvitationStatus.REVOKED, InvitationStatus.EXPIRED}
)


def generate_invite_token() -> str:
    # Opaque one-time token
    return secrets.token_urlsafe(32)


def hash_invite_token(raw_token: str) -> str:
    return hash_secret(raw_token)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def derive_invitation_status(
    persisted_status: InvitationStatus | str,
    expires_at: Optional[datetime],
    now: datetime,
) -> InvitationStatus:
    """
    Effective status for read paths.

    Terminal statuses are returned as stored. A pending row whose expiry has
    passed reads as expired without anything being written back.
    """
    status = InvitationStatus(persisted_status)
    if status in TERMINAL_STATUSES:
        return status

    expires = as_utc(expires_at)
    if expires is not None and as_utc(now) >= expires:
        return InvitationStatus.EXPIRED
    return InvitationStatus.PENDING
