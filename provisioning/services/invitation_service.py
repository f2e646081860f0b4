# provisioning/services/invitation_service.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Union
from urllib.parse import quote

from provisioning.core.config import VerificationConfig
from provisioning.core.errors import ValidationError, WeakPasswordError
from provisioning.core.security import password_policy_failures
from provisioning.domain import (
    Account,
    Invitation,
    InvitationListing,
    InvitationPayload,
    InvitationView,
    Membership,
)
from provisioning.ports import Clock, EmailSender, InvitationStore, SystemClock
from provisioning.services.invites import (
    ADMIN_ROLES,
    INVITED_MEMBER_ROLE,
    InvitationStatus,
    derive_invitation_status,
    generate_invite_token,
    hash_invite_token,
    normalize_email,
)

logger = logging.getLogger("provisioning")


class InvitationErrorCode(str, Enum):
    NOT_FOUND_OR_EXPIRED = "invitation_not_found_or_expired"
    USER_EXISTS = "user_exists"
    FORBIDDEN = "forbidden"


INVITATION_MESSAGES = {
    InvitationErrorCode.NOT_FOUND_OR_EXPIRED: "Invitation not found or expired",
    InvitationErrorCode.USER_EXISTS: "An account with this email already exists",
    InvitationErrorCode.FORBIDDEN: "Only administrators can manage invitations",
}


@dataclass(frozen=True)
class IssuedInvitation:
    invitation: Invitation
    # Plaintext token, handed out exactly once here
    token: str
    register_url: str
    email_sent: bool = False

    ok = True


@dataclass(frozen=True)
class Redeemed:
    account: Account
    invitation: Invitation

    ok = True


@dataclass(frozen=True)
class Revoked:
    invitation: Invitation

    ok = True


@dataclass(frozen=True)
class InvitationFailure:
    code: InvitationErrorCode

    ok = False

    @property
    def message(self) -> str:
        return INVITATION_MESSAGES[self.code]


_REQUIRED_FIELDS = ("email", "first_name", "last_name", "phone", "department_id", "position_id")


def to_invitation_view(listing: InvitationListing, now: datetime) -> InvitationView:
    """Admin projection: derived status, token only while effectively pending."""
    inv = listing.invitation
    effective = derive_invitation_status(inv.status, inv.expires_at, now)
    return InvitationView(
        id=inv.id,
        email=inv.email,
        first_name=inv.first_name,
        last_name=inv.last_name,
        phone=inv.phone,
        department_id=inv.department_id,
        position_id=inv.position_id,
        invited_by=inv.invited_by,
        status=effective,
        persisted_status=inv.status,
        created_at=inv.created_at,
        expires_at=inv.expires_at,
        accepted_at=inv.accepted_at,
        revoked_at=inv.revoked_at,
        department_name=listing.department_name,
        position_title=listing.position_title,
        token=inv.token_plaintext if effective == InvitationStatus.PENDING else None,
    )


class InvitationService:
    """
    Invitation issue / redeem / revoke / list.

    Admin checks and "not found or expired" are returned as InvitationFailure;
    malformed input raises ValidationError (WeakPasswordError for the password
    policy). Storage and delivery faults propagate.
    """

    def __init__(
        self,
        store: InvitationStore,
        email_sender: Optional[EmailSender],
        config: VerificationConfig,
        password_hasher: Callable[[str], str],
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.email_sender = email_sender
        self.config = config
        self.password_hasher = password_hasher
        self.clock = clock or SystemClock()

    async def _is_admin(self, actor_id: str) -> bool:
        if not actor_id:
            return False
        role = await self.store.get_membership_role(actor_id)
        return role in ADMIN_ROLES

    def register_url(self, token: str) -> str:
        return f"{self.config.app_url}/register?token={quote(token, safe='')}"

    # ---------- Issue ----------

    async def issue_invitation(
        self,
        actor_id: str,
        payload: InvitationPayload,
        *,
        send_email: bool = True,
    ) -> Union[IssuedInvitation, InvitationFailure]:
        missing = [name for name in _REQUIRED_FIELDS if not str(getattr(payload, name) or "").strip()]
        if missing:
            raise ValidationError("Missing required invitation fields", missing=missing)

        hours = payload.expires_in_hours
        if hours is None:
            hours = self.config.invitation_expiry_hours
        if int(hours) <= 0:
            raise ValidationError("expires_in_hours must be positive", expires_in_hours=hours)

        if not await self._is_admin(actor_id):
            return InvitationFailure(code=InvitationErrorCode.FORBIDDEN)

        now = self.clock.now()
        token = generate_invite_token()
        invitation = await self.store.insert_invitation(
            Invitation(
                id=str(uuid.uuid4()),
                token_hash=hash_invite_token(token),
                token_plaintext=token,
                email=normalize_email(payload.email),
                first_name=payload.first_name.strip(),
                last_name=payload.last_name.strip(),
                phone=payload.phone.strip(),
                department_id=payload.department_id,
                position_id=payload.position_id,
                invited_by=actor_id,
                status=InvitationStatus.PENDING,
                created_at=now,
                expires_at=now + timedelta(hours=int(hours)),
            )
        )
        logger.info(
            "invitation_issued invitation_id=%s invited_by=%s expires_at=%s",
            invitation.id,
            actor_id,
            invitation.expires_at.isoformat(),
        )

        url = self.register_url(token)
        sent = False
        if send_email and self.email_sender is not None:
            await self.email_sender.send_email(
                to_email=invitation.email,
                subject="You have been invited",
                text_body=(
                    f"Hello {invitation.first_name},\n\n"
                    f"You have been invited to create an account. Register here:\n{url}\n\n"
                    f"The invitation expires in {int(hours)} hours."
                ),
                html_body=f'<p>You have been invited. <a href="{url}">Create your account</a></p>',
            )
            sent = True

        return IssuedInvitation(invitation=invitation, token=token, register_url=url, email_sent=sent)

    # ---------- Redeem ----------

    async def redeem_invitation(
        self, token: str, password: str
    ) -> Union[Redeemed, InvitationFailure]:
        token = (token or "").strip()
        if not token:
            raise ValidationError("token is required")
        failed = password_policy_failures(password)
        if failed:
            raise WeakPasswordError(failed)

        now = self.clock.now()
        invitation = await self.store.find_pending_invitation_by_hash(hash_invite_token(token), now)
        if invitation is None:
            return InvitationFailure(code=InvitationErrorCode.NOT_FOUND_OR_EXPIRED)

        if await self.store.account_exists(invitation.email):
            return InvitationFailure(code=InvitationErrorCode.USER_EXISTS)

        account = Account(
            id=str(uuid.uuid4()),
            email=invitation.email,
            first_name=invitation.first_name,
            last_name=invitation.last_name,
            phone=invitation.phone,
            password_hash=self.password_hasher(password),
            created_at=now,
        )
        membership = Membership(
            user_id=account.id,
            department_id=invitation.department_id,
            position_id=invitation.position_id,
            role=INVITED_MEMBER_ROLE,
            assigned_by=invitation.invited_by,
            assigned_at=now,
        )

        accepted = await self.store.redeem_invitation(invitation.id, account, membership, now)
        if accepted is None:
            # Lost the conditional write to a concurrent redeem or revoke.
            return InvitationFailure(code=InvitationErrorCode.NOT_FOUND_OR_EXPIRED)

        logger.info(
            "invitation_redeemed invitation_id=%s user_id=%s",
            accepted.id,
            account.id,
        )
        return Redeemed(account=account, invitation=accepted)

    # ---------- Revoke ----------

    async def revoke_invitation(
        self, actor_id: str, invitation_id: str
    ) -> Union[Revoked, InvitationFailure]:
        if not invitation_id:
            raise ValidationError("invitation id is required")
        if not await self._is_admin(actor_id):
            return InvitationFailure(code=InvitationErrorCode.FORBIDDEN)

        revoked = await self.store.conditionally_mark_revoked(invitation_id, self.clock.now())
        if revoked is None:
            return InvitationFailure(code=InvitationErrorCode.NOT_FOUND_OR_EXPIRED)

        logger.info("invitation_revoked invitation_id=%s by=%s", invitation_id, actor_id)
        return Revoked(invitation=revoked)

    # ---------- List ----------

    async def list_invitations(
        self,
        actor_id: str,
        *,
        status: Optional[InvitationStatus] = None,
        email: Optional[str] = None,
    ) -> Union[List[InvitationView], InvitationFailure]:
        if not await self._is_admin(actor_id):
            return InvitationFailure(code=InvitationErrorCode.FORBIDDEN)

        if status is None:
            statuses = None
        elif status == InvitationStatus.EXPIRED:
            # Expired is mostly derived: stale pending rows count too.
            statuses = [InvitationStatus.PENDING, InvitationStatus.EXPIRED]
        else:
            statuses = [status]

        now = self.clock.now()
        listings = await self.store.list_invitations(statuses=statuses, email_contains=email or None)
        views = [to_invitation_view(listing, now) for listing in listings]
        if status is not None:
            views = [v for v in views if v.status == status]
        return views
