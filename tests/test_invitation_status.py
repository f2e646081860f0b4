# tests/test_invitation_status.py
from datetime import datetime, timedelta, timezone

import pytest

from provisioning.domain import Invitation, InvitationListing
from provisioning.services.invitation_service import to_invitation_view
from provisioning.services.invites import (
    InvitationStatus,
    derive_invitation_status,
    generate_invite_token,
    hash_invite_token,
    normalize_email,
)

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
PAST = NOW - timedelta(hours=1)
FUTURE = NOW + timedelta(hours=1)


@pytest.mark.parametrize("status", ["accepted", "revoked", "expired"])
@pytest.mark.parametrize("expires_at", [None, PAST, NOW, FUTURE])
def test_terminal_statuses_are_sticky(status, expires_at):
    assert derive_invitation_status(status, expires_at, NOW) == InvitationStatus(status)


def test_pending_past_expiry_reads_as_expired():
    assert derive_invitation_status("pending", PAST, NOW) == InvitationStatus.EXPIRED
    assert derive_invitation_status("pending", NOW, NOW) == InvitationStatus.EXPIRED


def test_pending_without_expiry_or_before_it_stays_pending():
    assert derive_invitation_status(InvitationStatus.PENDING, None, NOW) == InvitationStatus.PENDING
    assert derive_invitation_status(InvitationStatus.PENDING, FUTURE, NOW) == InvitationStatus.PENDING


def test_invite_tokens_are_unique_and_hash_to_64_hex():
    a, b = generate_invite_token(), generate_invite_token()
    assert a != b
    assert len(hash_invite_token(a)) == 64


def test_normalize_email():
    assert normalize_email("  Jane.Doe@Example.COM ") == "jane.doe@example.com"
    assert normalize_email(None) == ""


def _listing(status, expires_at, plaintext="tok"):
    return InvitationListing(
        invitation=Invitation(
            id="inv-1",
            token_hash=hash_invite_token(plaintext),
            token_plaintext=plaintext,
            email="jane@example.com",
            first_name="Jane",
            last_name="Doe",
            phone="+15550000003",
            department_id="dept-1",
            position_id="pos-1",
            invited_by="admin-1",
            status=status,
            created_at=NOW - timedelta(days=1),
            expires_at=expires_at,
        ),
        department_name="Operations",
        position_title="Shift lead",
    )


def test_view_shares_token_only_while_effectively_pending():
    view = to_invitation_view(_listing(InvitationStatus.PENDING, FUTURE), NOW)
    assert view.status == InvitationStatus.PENDING
    assert view.token == "tok"
    assert view.department_name == "Operations"

    stale = to_invitation_view(_listing(InvitationStatus.PENDING, PAST), NOW)
    assert stale.status == InvitationStatus.EXPIRED
    assert stale.persisted_status == InvitationStatus.PENDING
    assert stale.token is None
