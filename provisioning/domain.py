# provisioning/domain.py
"""
Plain records exchanged between the services and the storage adapters.

The ORM classes in provisioning.models never leave the db package; the
repositories translate rows into these dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from provisioning.core.verification import VerificationKind
from provisioning.services.invites import InvitationStatus


@dataclass
class Account:
    id: str
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    password_hash: Optional[str] = None
    email_verified_at: Optional[datetime] = None
    phone_verified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def verified_at(self, kind: VerificationKind) -> Optional[datetime]:
        if kind == VerificationKind.EMAIL:
            return self.email_verified_at
        return self.phone_verified_at


@dataclass
class Membership:
    user_id: str
    department_id: str
    position_id: str
    role: str
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None


@dataclass
class VerificationCode:
    id: str
    subject_id: str
    kind: VerificationKind
    sent_to: str
    secret_hash: str
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 1
    used_at: Optional[datetime] = None
    requested_ip: Optional[str] = None
    requested_user_agent: Optional[str] = None
    confirmed_ip: Optional[str] = None
    confirmed_user_agent: Optional[str] = None


@dataclass(frozen=True)
class RequestMetadata:
    """Who asked: captured on issuance and again on confirmation."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Invitation:
    id: str
    token_hash: str
    email: str
    first_name: str
    last_name: str
    phone: str
    department_id: str
    position_id: str
    invited_by: str
    expires_at: Optional[datetime]
    status: InvitationStatus = InvitationStatus.PENDING
    token_plaintext: Optional[str] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    consumed_by_user_id: Optional[str] = None


@dataclass
class InvitationView:
    id: str
    email: str
    first_name: str
    last_name: str
    phone: str
    department_id: str
    position_id: str
    invited_by: str
    status: InvitationStatus
    persisted_status: InvitationStatus
    created_at: Optional[datetime]
    expires_at: Optional[datetime]
    accepted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    department_name: Optional[str] = None
    position_title: Optional[str] = None
    token: Optional[str] = None


@dataclass
class InvitationPayload:
    email: str
    first_name: str
    last_name: str
    phone: str
    department_id: str
    position_id: str
    expires_in_hours: Optional[int] = None


@dataclass
class InvitationListing:
    """An invitation row plus the names the admin list shows next to it."""

    invitation: Invitation
    department_name: Optional[str] = None
    position_title: Optional[str] = None
