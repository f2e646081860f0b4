# provisioning/models.py
import uuid

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    Index,
    DateTime,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import text

from provisioning.db.base import Base

# Cross-DB timestamp default (SQLite + Postgres)
DB_NOW = text("CURRENT_TIMESTAMP")


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    phone = Column(String(32), nullable=True)
    password_hash = Column(String(255), nullable=True)

    email_verified_at = Column(DateTime(timezone=True), nullable=True)
    phone_verified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)

    memberships = relationship(
        "DepartmentMembership",
        back_populates="user",
        foreign_keys="DepartmentMembership.user_id",
    )


class Department(Base):
    __tablename__ = "departments"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)


class Position(Base):
    __tablename__ = "positions"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)


class DepartmentMembership(Base):
    """
    Binds a user to a department/position with a role.
    super_admin | admin | manager may administer invitations.
    """

    __tablename__ = "department_memberships"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    department_id = Column(String(36), ForeignKey("departments.id"), nullable=False)
    position_id = Column(String(36), ForeignKey("positions.id"), nullable=False)
    role = Column(String(32), nullable=False)
    assigned_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    assigned_at = Column(DateTime(timezone=True), server_default=DB_NOW, nullable=False)

    user = relationship("User", back_populates="memberships", foreign_keys=[user_id])

    __table_args__ = (
        sa.UniqueConstraint("user_id", "department_id", name="uq_department_memberships_user_department"),
    )


class RegistrationInvitation(Base):
    """
    Admin-minted registration invitation.

    Only the hash identifies the invitation. The plaintext is kept while the
    invitation is pending so admins can reshare the link, and nulled once it
    is accepted or revoked.
    """

    __tablename__ = "registration_invitations"

    id = Column(String(36), primary_key=True, default=_uuid)

    # sha256 hex = 64 chars
    token_hash = Column(String(64), nullable=False, unique=True)
    token_plaintext = Column(String(128), nullable=True)

    email = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=False)
    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=False)

    department_id = Column(String(36), ForeignKey("departments.id"), nullable=False)
    position_id = Column(String(36), ForeignKey("positions.id"), nullable=False)
    invited_by = Column(String(36), ForeignKey("users.id"), nullable=False)

    # pending | accepted | expired | revoked
    status = Column(String(16), nullable=False, server_default=text("'pending'"))

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=DB_NOW)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    consumed_by_user_id = Column(String(36), ForeignKey("users.id"), nullable=True)

    department = relationship("Department")
    position = relationship("Position")

    __table_args__ = (
        Index("ix_registration_invitations_status", "status"),
        Index("ix_registration_invitations_email", "email"),
    )


class VerificationCodeRow(Base):
    """
    One email token or phone code. Only the hash is stored.
    `used_at` set means consumed or superseded; rows are never deleted.
    """

    __tablename__ = "verification_codes"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    type = Column(String(16), nullable=False)  # email | phone
    sent_to = Column(String(255), nullable=False)
    token_hash = Column(String(64), nullable=False)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0, server_default=text("0"))
    max_attempts = Column(Integer, nullable=False)

    requested_ip = Column(String(64), nullable=True)
    requested_user_agent = Column(String(512), nullable=True)
    confirmed_ip = Column(String(64), nullable=True)
    confirmed_user_agent = Column(String(512), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=DB_NOW)

    __table_args__ = (
        Index("ix_verification_codes_user_type_created", "user_id", "type", "created_at"),
        Index("ix_verification_codes_token_hash", "token_hash"),
    )
