# provisioning/db/base.py

"""
Single source of truth for the SQLAlchemy Declarative Base.

This file must NOT import provisioning.models; models import Base from here.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass
