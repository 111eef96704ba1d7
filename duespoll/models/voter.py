"""Voter and admin membership ORM models."""
from __future__ import annotations

import uuid

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from duespoll.models.base import Base, TimestampMixin


class Voter(TimestampMixin, Base):
    """An authenticated student able to cast ballots."""

    __tablename__ = "voters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_id: Mapped[str] = mapped_column(String(64), nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)

    ballots = relationship("Ballot", back_populates="voter", cascade="all, delete-orphan")
    admin_membership = relationship(
        "AdminMembership", back_populates="voter", uselist=False, cascade="all, delete-orphan"
    )


class AdminMembership(TimestampMixin, Base):
    """Presence of a row grants the admin capability to the voter."""

    __tablename__ = "admins"

    voter_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("voters.id", ondelete="CASCADE"), primary_key=True
    )

    voter = relationship("Voter", back_populates="admin_membership")


__all__ = ["AdminMembership", "Voter"]
