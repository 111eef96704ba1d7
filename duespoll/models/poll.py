"""Poll and candidate ORM models."""
from __future__ import annotations

import enum
import uuid

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from duespoll.models.base import Base, TimestampMixin


class PollStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class Poll(TimestampMixin, Base):
    """A question with candidates, open for voting while active."""

    __tablename__ = "polls"
    __table_args__ = (Index("ix_polls_status", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[PollStatus] = mapped_column(
        Enum(PollStatus, name="poll_status"), nullable=False, default=PollStatus.ACTIVE
    )
    created_by: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("voters.id", ondelete="SET NULL"), nullable=True
    )

    candidates = relationship(
        "Candidate",
        back_populates="poll",
        cascade="all, delete-orphan",
        order_by="Candidate.position",
    )
    ballots = relationship("Ballot", back_populates="poll")


class Candidate(TimestampMixin, Base):
    """Option within a poll carrying its approved vote counter.

    Candidate ids are only unique within their poll.
    """

    __tablename__ = "candidates"
    __table_args__ = (
        CheckConstraint("approved_votes >= 0", name="approved_votes_non_negative"),
        Index("ix_candidates_poll_id", "poll_id"),
    )

    poll_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("polls.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    image_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    image_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    approved_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    poll = relationship("Poll", back_populates="candidates")


__all__ = ["Candidate", "Poll", "PollStatus"]
