# provisioning/db/repositories.py
"""
SQLAlchemy implementations of the storage ports.

Sessions are synchronous; every public method hops onto a worker thread with
asyncio.to_thread so the services never block the event loop. Driver errors
surface as StorageError with the original exception chained.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence, TypeVar

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from provisioning.core.errors import StorageError
from provisioning.core.verification import VerificationKind, as_utc
from provisioning.domain import (
    Account,
    Invitation,
    InvitationListing,
    Membership,
    RequestMetadata,
    VerificationCode,
)
from provisioning.models import (
    Department,
    DepartmentMembership,
    Position,
    RegistrationInvitation,
    User,
    VerificationCodeRow,
)
from provisioning.services.invites import InvitationStatus, normalize_email

logger = logging.getLogger("provisioning")

T = TypeVar("T")

# Highest privilege first; used when a user holds several memberships.
_ROLE_PRECEDENCE = ("super_admin", "admin", "manager")


def _to_account(row: User) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        password_hash=row.password_hash,
        email_verified_at=as_utc(row.email_verified_at),
        phone_verified_at=as_utc(row.phone_verified_at),
        created_at=as_utc(row.created_at),
    )


def _to_code(row: VerificationCodeRow) -> VerificationCode:
    return VerificationCode(
        id=row.id,
        subject_id=row.user_id,
        kind=VerificationKind(row.type),
        sent_to=row.sent_to,
        secret_hash=row.token_hash,
        issued_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        attempts=int(row.attempts or 0),
        max_attempts=int(row.max_attempts),
        used_at=as_utc(row.used_at),
        requested_ip=row.requested_ip,
        requested_user_agent=row.requested_user_agent,
        confirmed_ip=row.confirmed_ip,
        confirmed_user_agent=row.confirmed_user_agent,
    )


def _to_invitation(row: RegistrationInvitation) -> Invitation:
    return Invitation(
        id=row.id,
        token_hash=row.token_hash,
        token_plaintext=row.token_plaintext,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        department_id=row.department_id,
        position_id=row.position_id,
        invited_by=row.invited_by,
        status=InvitationStatus(row.status),
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        accepted_at=as_utc(row.accepted_at),
        revoked_at=as_utc(row.revoked_at),
        consumed_by_user_id=row.consumed_by_user_id,
    )


def _not_expired(now: datetime):
    return or_(RegistrationInvitation.expires_at.is_(None), RegistrationInvitation.expires_at > now)


class _SqlRepository:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def _call(self, fn: Callable[[Session], T], operation: str) -> T:
        with self.session_factory() as db:
            try:
                return fn(db)
            except SQLAlchemyError as exc:
                db.rollback()
                raise StorageError(f"{operation} failed", operation=operation) from exc

    async def _run(self, fn: Callable[[Session], T], operation: str) -> T:
        return await asyncio.to_thread(self._call, fn, operation)


class SqlVerificationStore(_SqlRepository):
    async def get_account(self, subject_id: str) -> Optional[Account]:
        def _q(db: Session) -> Optional[Account]:
            row = db.get(User, subject_id)
            return _to_account(row) if row else None

        return await self._run(_q, "get_account")

    async def count_recent_issuances(
        self, subject_id: str, kind: VerificationKind, window_start: datetime
    ) -> int:
        def _q(db: Session) -> int:
            stmt = select(func.count(VerificationCodeRow.id)).where(
                VerificationCodeRow.user_id == subject_id,
                VerificationCodeRow.type == kind.value,
                VerificationCodeRow.created_at > window_start,
            )
            return int(db.execute(stmt).scalar_one())

        return await self._run(_q, "count_recent_issuances")

    async def issue_code(self, record: VerificationCode) -> VerificationCode:
        def _q(db: Session) -> VerificationCode:
            superseded = db.execute(
                update(VerificationCodeRow)
                .where(
                    VerificationCodeRow.user_id == record.subject_id,
                    VerificationCodeRow.type == record.kind.value,
                    VerificationCodeRow.used_at.is_(None),
                )
                .values(used_at=record.issued_at)
            ).rowcount

            row = VerificationCodeRow(
                id=record.id,
                user_id=record.subject_id,
                type=record.kind.value,
                sent_to=record.sent_to,
                token_hash=record.secret_hash,
                expires_at=record.expires_at,
                attempts=record.attempts,
                max_attempts=record.max_attempts,
                requested_ip=record.requested_ip,
                requested_user_agent=record.requested_user_agent,
                created_at=record.issued_at,
            )
            db.add(row)
            db.commit()

            if superseded:
                logger.info(
                    "verification_superseded user_id=%s type=%s count=%s",
                    record.subject_id,
                    record.kind.value,
                    superseded,
                )
            return _to_code(row)

        return await self._run(_q, "issue_code")

    async def find_active_code_by_hash(
        self, kind: VerificationKind, secret_hash: str
    ) -> Optional[VerificationCode]:
        def _q(db: Session) -> Optional[VerificationCode]:
            row = db.execute(
                select(VerificationCodeRow)
                .where(
                    VerificationCodeRow.type == kind.value,
                    VerificationCodeRow.token_hash == secret_hash,
                    VerificationCodeRow.used_at.is_(None),
                )
                .order_by(VerificationCodeRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_code(row) if row else None

        return await self._run(_q, "find_active_code_by_hash")

    async def find_latest_active_code(
        self, subject_id: str, kind: VerificationKind
    ) -> Optional[VerificationCode]:
        def _q(db: Session) -> Optional[VerificationCode]:
            row = db.execute(
                select(VerificationCodeRow)
                .where(
                    VerificationCodeRow.user_id == subject_id,
                    VerificationCodeRow.type == kind.value,
                    VerificationCodeRow.used_at.is_(None),
                )
                .order_by(VerificationCodeRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_code(row) if row else None

        return await self._run(_q, "find_latest_active_code")

    async def update_attempts(self, code_id: str, attempts: int, *, expected: int) -> bool:
        def _q(db: Session) -> bool:
            # Compare-and-set on the count the caller evaluated.
            updated = db.execute(
                update(VerificationCodeRow)
                .where(
                    VerificationCodeRow.id == code_id,
                    VerificationCodeRow.used_at.is_(None),
                    VerificationCodeRow.attempts == expected,
                )
                .values(attempts=attempts)
            ).rowcount
            db.commit()
            return updated == 1

        return await self._run(_q, "update_attempts")

    @staticmethod
    def _mark_used(
        db: Session,
        code_id: str,
        used_at: datetime,
        metadata: RequestMetadata,
        expected_attempts: Optional[int] = None,
    ) -> int:
        stmt = update(VerificationCodeRow).where(
            VerificationCodeRow.id == code_id, VerificationCodeRow.used_at.is_(None)
        )
        if expected_attempts is not None:
            stmt = stmt.where(VerificationCodeRow.attempts == expected_attempts)
        return db.execute(
            stmt.values(
                used_at=used_at,
                confirmed_ip=metadata.ip,
                confirmed_user_agent=metadata.user_agent,
            )
        ).rowcount

    async def mark_used(self, code_id: str, used_at: datetime, metadata: RequestMetadata) -> None:
        def _q(db: Session) -> None:
            self._mark_used(db, code_id, used_at, metadata)
            db.commit()

        await self._run(_q, "mark_used")

    async def confirm_code(
        self, code: VerificationCode, confirmed_at: datetime, metadata: RequestMetadata
    ) -> bool:
        def _q(db: Session) -> bool:
            # Claim the code first; a concurrent confirm or wrong guess wins here.
            if self._mark_used(db, code.id, confirmed_at, metadata, code.attempts) != 1:
                db.rollback()
                return False

            column = (
                User.email_verified_at
                if code.kind == VerificationKind.EMAIL
                else User.phone_verified_at
            )
            db.execute(
                update(User).where(User.id == code.subject_id).values({column: confirmed_at})
            )
            db.commit()
            return True

        return await self._run(_q, "confirm_code")


class SqlInvitationStore(_SqlRepository):
    async def get_membership_role(self, user_id: str) -> Optional[str]:
        def _q(db: Session) -> Optional[str]:
            roles: List[str] = list(
                db.execute(
                    select(DepartmentMembership.role).where(DepartmentMembership.user_id == user_id)
                ).scalars()
            )
            for role in _ROLE_PRECEDENCE:
                if role in roles:
                    return role
            return roles[0] if roles else None

        return await self._run(_q, "get_membership_role")

    async def insert_invitation(self, invitation: Invitation) -> Invitation:
        def _q(db: Session) -> Invitation:
            row = RegistrationInvitation(
                id=invitation.id,
                token_hash=invitation.token_hash,
                token_plaintext=invitation.token_plaintext,
                email=invitation.email,
                phone=invitation.phone,
                first_name=invitation.first_name,
                last_name=invitation.last_name,
                department_id=invitation.department_id,
                position_id=invitation.position_id,
                invited_by=invitation.invited_by,
                status=invitation.status.value,
                created_at=invitation.created_at,
                expires_at=invitation.expires_at,
            )
            db.add(row)
            db.commit()
            return _to_invitation(row)

        return await self._run(_q, "insert_invitation")

    async def find_pending_invitation_by_hash(
        self, token_hash: str, now: datetime
    ) -> Optional[Invitation]:
        def _q(db: Session) -> Optional[Invitation]:
            row = db.execute(
                select(RegistrationInvitation).where(
                    RegistrationInvitation.token_hash == token_hash,
                    RegistrationInvitation.status == InvitationStatus.PENDING.value,
                    _not_expired(now),
                )
            ).scalar_one_or_none()
            return _to_invitation(row) if row else None

        return await self._run(_q, "find_pending_invitation_by_hash")

    async def account_exists(self, email: str) -> bool:
        def _q(db: Session) -> bool:
            return self._account_exists(db, email)

        return await self._run(_q, "account_exists")

    @staticmethod
    def _account_exists(db: Session, email: str) -> bool:
        found = db.execute(
            select(User.id).where(User.email == normalize_email(email)).limit(1)
        ).first()
        return found is not None

    @staticmethod
    def _accept(db: Session, invitation_id: str, account_id: str, now: datetime) -> int:
        return db.execute(
            update(RegistrationInvitation)
            .where(
                RegistrationInvitation.id == invitation_id,
                RegistrationInvitation.status == InvitationStatus.PENDING.value,
                _not_expired(now),
            )
            .values(
                status=InvitationStatus.ACCEPTED.value,
                accepted_at=now,
                consumed_by_user_id=account_id,
                token_plaintext=None,
            )
        ).rowcount

    async def redeem_invitation(
        self,
        invitation_id: str,
        account: Account,
        membership: Membership,
        now: datetime,
    ) -> Optional[Invitation]:
        def _q(db: Session) -> Optional[Invitation]:
            try:
                db.add(
                    User(
                        id=account.id,
                        email=account.email,
                        first_name=account.first_name,
                        last_name=account.last_name,
                        phone=account.phone,
                        password_hash=account.password_hash,
                        created_at=now,
                    )
                )
                db.flush()
                db.add(
                    DepartmentMembership(
                        user_id=membership.user_id,
                        department_id=membership.department_id,
                        position_id=membership.position_id,
                        role=membership.role,
                        assigned_by=membership.assigned_by,
                        assigned_at=now,
                    )
                )
                db.flush()
            except IntegrityError:
                db.rollback()
                # Lost a race against another redemption for the same email.
                if self._account_exists(db, account.email):
                    logger.info("invitation_redeem_conflict invitation_id=%s", invitation_id)
                    return None
                raise

            if self._accept(db, invitation_id, account.id, now) != 1:
                db.rollback()
                return None

            db.commit()
            return _to_invitation(db.get(RegistrationInvitation, invitation_id))

        return await self._run(_q, "redeem_invitation")

    async def conditionally_mark_accepted(
        self, invitation_id: str, account_id: str, now: datetime
    ) -> Optional[Invitation]:
        def _q(db: Session) -> Optional[Invitation]:
            if self._accept(db, invitation_id, account_id, now) != 1:
                db.rollback()
                return None
            db.commit()
            return _to_invitation(db.get(RegistrationInvitation, invitation_id))

        return await self._run(_q, "conditionally_mark_accepted")

    async def conditionally_mark_revoked(
        self, invitation_id: str, now: datetime
    ) -> Optional[Invitation]:
        def _q(db: Session) -> Optional[Invitation]:
            changed = db.execute(
                update(RegistrationInvitation)
                .where(
                    RegistrationInvitation.id == invitation_id,
                    RegistrationInvitation.status == InvitationStatus.PENDING.value,
                )
                .values(
                    status=InvitationStatus.REVOKED.value,
                    revoked_at=now,
                    token_plaintext=None,
                )
            ).rowcount
            if changed != 1:
                db.rollback()
                return None
            db.commit()
            return _to_invitation(db.get(RegistrationInvitation, invitation_id))

        return await self._run(_q, "conditionally_mark_revoked")

    async def list_invitations(
        self,
        statuses: Optional[Sequence[InvitationStatus]] = None,
        email_contains: Optional[str] = None,
    ) -> Sequence[InvitationListing]:
        def _q(db: Session) -> List[InvitationListing]:
            stmt = (
                select(RegistrationInvitation, Department.name, Position.title)
                .outerjoin(Department, Department.id == RegistrationInvitation.department_id)
                .outerjoin(Position, Position.id == RegistrationInvitation.position_id)
            )
            if statuses:
                stmt = stmt.where(RegistrationInvitation.status.in_([s.value for s in statuses]))
            if email_contains:
                stmt = stmt.where(RegistrationInvitation.email.ilike(f"%{email_contains.strip()}%"))
            stmt = stmt.order_by(RegistrationInvitation.created_at.desc())

            return [
                InvitationListing(
                    invitation=_to_invitation(row),
                    department_name=dept_name,
                    position_title=pos_title,
                )
                for row, dept_name, pos_title in db.execute(stmt).all()
            ]

        return await self._run(_q, "list_invitations")
