# tests/conftest.py
from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from provisioning.core.config import VerificationConfig
from provisioning.core.errors import DeliveryError
from provisioning.core.verification import VerificationKind
from provisioning.db.base import Base
from provisioning.db.session import create_db_engine, create_session_factory
from provisioning.domain import Account, Invitation, InvitationListing, Membership
from provisioning.models import Department, DepartmentMembership, Position, User
from provisioning.services.invites import InvitationStatus

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


# --- Fakes -----------------------------------------------------------------

class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class RecordingEmailSender:
    def __init__(self):
        self.sent: List[dict] = []

    async def send_email(self, *, to_email, subject, text_body, html_body=None):
        self.sent.append({"to": to_email, "subject": subject, "text": text_body, "html": html_body})


class RecordingSmsSender:
    def __init__(self):
        self.sent: List[dict] = []

    async def send_sms(self, *, to_number, body):
        self.sent.append({"to": to_number, "body": body})


class FailingEmailSender:
    async def send_email(self, *, to_email, subject, text_body, html_body=None):
        raise DeliveryError("email", to_email, "provider returned 503")


class InMemoryVerificationStore:
    """Dict-backed VerificationStore; codes are kept in insertion order."""

    def __init__(self):
        self.accounts: Dict[str, Account] = {}
        self.codes: List = []

    def add_account(self, account: Account) -> Account:
        self.accounts[account.id] = account
        return account

    def codes_for(self, subject_id: str, kind: VerificationKind):
        return [c for c in self.codes if c.subject_id == subject_id and c.kind == kind]

    async def get_account(self, subject_id):
        acc = self.accounts.get(subject_id)
        return copy.deepcopy(acc) if acc else None

    async def count_recent_issuances(self, subject_id, kind, window_start):
        return len([c for c in self.codes_for(subject_id, kind) if c.issued_at > window_start])

    async def issue_code(self, record):
        for c in self.codes_for(record.subject_id, record.kind):
            if c.used_at is None:
                c.used_at = record.issued_at
        self.codes.append(copy.deepcopy(record))
        return copy.deepcopy(record)

    async def find_active_code_by_hash(self, kind, secret_hash):
        found = [c for c in self.codes if c.kind == kind and c.secret_hash == secret_hash and c.used_at is None]
        return copy.deepcopy(found[-1]) if found else None

    async def find_latest_active_code(self, subject_id, kind):
        found = [c for c in self.codes_for(subject_id, kind) if c.used_at is None]
        return copy.deepcopy(found[-1]) if found else None

    def _code(self, code_id):
        return next(c for c in self.codes if c.id == code_id)

    async def update_attempts(self, code_id, attempts, *, expected):
        c = self._code(code_id)
        if c.used_at is not None or c.attempts != expected:
            return False
        c.attempts = attempts
        return True

    async def mark_used(self, code_id, used_at, metadata):
        c = self._code(code_id)
        if c.used_at is None:
            c.used_at = used_at
            c.confirmed_ip = metadata.ip
            c.confirmed_user_agent = metadata.user_agent

    async def confirm_code(self, code, confirmed_at, metadata):
        stored = self._code(code.id)
        if stored.used_at is not None or stored.attempts != code.attempts:
            return False
        await self.mark_used(code.id, confirmed_at, metadata)
        acc = self.accounts[code.subject_id]
        if code.kind == VerificationKind.EMAIL:
            acc.email_verified_at = confirmed_at
        else:
            acc.phone_verified_at = confirmed_at
        return True


class InMemoryInvitationStore:
    """
    Dict-backed InvitationStore. redeem_invitation yields to the loop between
    steps so concurrent redemptions genuinely interleave.
    """

    def __init__(self):
        self.roles: Dict[str, str] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.accounts: Dict[str, Account] = {}
        self.memberships: List[Membership] = []

    async def get_membership_role(self, user_id):
        return self.roles.get(user_id)

    async def insert_invitation(self, invitation):
        self.invitations[invitation.id] = copy.deepcopy(invitation)
        return copy.deepcopy(invitation)

    def _claimable(self, inv, now):
        return inv.status == InvitationStatus.PENDING and (inv.expires_at is None or inv.expires_at > now)

    async def find_pending_invitation_by_hash(self, token_hash, now):
        for inv in self.invitations.values():
            if inv.token_hash == token_hash and self._claimable(inv, now):
                return copy.deepcopy(inv)
        return None

    async def account_exists(self, email):
        return any(a.email == email for a in self.accounts.values())

    async def redeem_invitation(self, invitation_id, account, membership, now):
        await asyncio.sleep(0)
        self.accounts[account.id] = copy.deepcopy(account)
        await asyncio.sleep(0)
        self.memberships.append(copy.deepcopy(membership))
        await asyncio.sleep(0)
        accepted = await self.conditionally_mark_accepted(invitation_id, account.id, now)
        if accepted is None:
            # rollback
            del self.accounts[account.id]
            self.memberships = [m for m in self.memberships if m.user_id != account.id]
        return accepted

    async def conditionally_mark_accepted(self, invitation_id, account_id, now):
        inv = self.invitations.get(invitation_id)
        if inv is None or not self._claimable(inv, now):
            return None
        inv.status = InvitationStatus.ACCEPTED
        inv.accepted_at = now
        inv.consumed_by_user_id = account_id
        inv.token_plaintext = None
        return copy.deepcopy(inv)

    async def conditionally_mark_revoked(self, invitation_id, now):
        inv = self.invitations.get(invitation_id)
        if inv is None or inv.status != InvitationStatus.PENDING:
            return None
        inv.status = InvitationStatus.REVOKED
        inv.revoked_at = now
        inv.token_plaintext = None
        return copy.deepcopy(inv)

    async def list_invitations(self, statuses=None, email_contains=None):
        rows = sorted(self.invitations.values(), key=lambda i: i.created_at, reverse=True)
        if statuses:
            rows = [i for i in rows if i.status in statuses]
        if email_contains:
            rows = [i for i in rows if email_contains.lower() in i.email.lower()]
        return [InvitationListing(invitation=copy.deepcopy(i), department_name="Ops", position_title="Lead") for i in rows]


# --- Fixtures --------------------------------------------------------------

@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def config():
    return VerificationConfig(
        email_ttl_minutes=60,
        phone_ttl_minutes=10,
        requests_per_hour=5,
        phone_max_attempts=3,
        app_url="https://app.example.com",
    )


@pytest.fixture()
def email_sender():
    return RecordingEmailSender()


@pytest.fixture()
def sms_sender():
    return RecordingSmsSender()


@pytest.fixture()
def session_factory() -> sessionmaker:
    """
    Shared in-memory SQLite (StaticPool via create_db_engine), so the worker
    threads the repositories run on all see the same database.
    """
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def org(session_factory):
    """Seed one department, one position and an admin user."""
    db = session_factory()
    try:
        dept = Department(id="dept-1", name="Operations", created_at=T0)
        pos = Position(id="pos-1", title="Shift lead", created_at=T0)
        admin = User(
            id="admin-1",
            first_name="Ada",
            last_name="Admin",
            email="admin@example.com",
            phone="+15550000001",
            password_hash="x",
            email_verified_at=T0,
            created_at=T0,
        )
        db.add_all([dept, pos, admin])
        db.flush()
        db.add(
            DepartmentMembership(
                user_id="admin-1",
                department_id="dept-1",
                position_id="pos-1",
                role="admin",
                assigned_at=T0,
            )
        )
        db.commit()
    finally:
        db.close()
    return {"department_id": "dept-1", "position_id": "pos-1", "admin_id": "admin-1"}


@pytest.fixture()
def make_user(session_factory):
    """Insert a plain (unverified) user straight into the DB."""

    def _make(user_id: str, email: str, phone: Optional[str] = "+15550000002") -> None:
        db = session_factory()
        try:
            db.add(
                User(
                    id=user_id,
                    first_name="Test",
                    last_name="User",
                    email=email,
                    phone=phone,
                    password_hash="x",
                    created_at=T0,
                )
            )
            db.commit()
        finally:
            db.close()

    return _make
