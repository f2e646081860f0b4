# provisioning/ports.py
"""
Collaborator interfaces the services depend on.

Production wiring uses provisioning.db.repositories plus the email/SMS senders
in provisioning.core; tests swap in in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

from provisioning.core.verification import VerificationKind
from provisioning.domain import (
    Account,
    Invitation,
    InvitationListing,
    Membership,
    RequestMetadata,
    VerificationCode,
)
from provisioning.services.invites import InvitationStatus


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class VerificationStore(Protocol):
    async def get_account(self, subject_id: str) -> Optional[Account]:
        ...

    async def count_recent_issuances(
        self, subject_id: str, kind: VerificationKind, window_start: datetime
    ) -> int:
        ...

    async def issue_code(self, record: VerificationCode) -> VerificationCode:
        """Mark every active code of (subject, kind) used, then insert `record`. One transaction."""
        ...

    async def find_active_code_by_hash(
        self, kind: VerificationKind, secret_hash: str
    ) -> Optional[VerificationCode]:
        ...

    async def find_latest_active_code(
        self, subject_id: str, kind: VerificationKind
    ) -> Optional[VerificationCode]:
        ...

    async def update_attempts(self, code_id: str, attempts: int, *, expected: int) -> bool:
        """
        Compare-and-set the attempt counter from `expected` to `attempts` on an
        unused code. False (nothing written) if another confirm got there first.
        """
        ...

    async def mark_used(self, code_id: str, used_at: datetime, metadata: RequestMetadata) -> None:
        ...

    async def confirm_code(
        self, code: VerificationCode, confirmed_at: datetime, metadata: RequestMetadata
    ) -> bool:
        """
        Set the account's <kind>_verified_at and mark the code used. One
        transaction; False (nothing written) if the code was used or its
        attempt counter moved away from `code.attempts` meanwhile.
        """
        ...


class InvitationStore(Protocol):
    async def get_membership_role(self, user_id: str) -> Optional[str]:
        ...

    async def insert_invitation(self, invitation: Invitation) -> Invitation:
        ...

    async def find_pending_invitation_by_hash(
        self, token_hash: str, now: datetime
    ) -> Optional[Invitation]:
        ...

    async def account_exists(self, email: str) -> bool:
        ...

    async def redeem_invitation(
        self,
        invitation_id: str,
        account: Account,
        membership: Membership,
        now: datetime,
    ) -> Optional[Invitation]:
        """
        Insert account, insert membership, then conditionally accept the
        invitation. All or nothing: returns None (and persists nothing) when
        the invitation is no longer pending at write time.
        """
        ...

    async def conditionally_mark_accepted(
        self, invitation_id: str, account_id: str, now: datetime
    ) -> Optional[Invitation]:
        ...

    async def conditionally_mark_revoked(
        self, invitation_id: str, now: datetime
    ) -> Optional[Invitation]:
        ...

    async def list_invitations(
        self,
        statuses: Optional[Sequence[InvitationStatus]] = None,
        email_contains: Optional[str] = None,
    ) -> Sequence[InvitationListing]:
        """Filter on persisted status; newest first."""
        ...


class EmailSender(Protocol):
    async def send_email(
        self,
        *,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> None:
        """Raise DeliveryError on failure."""
        ...


class SmsSender(Protocol):
    async def send_sms(self, *, to_number: str, body: str) -> None:
        """Raise DeliveryError on failure."""
        ...
