"""Ballot ORM model."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, ForeignKeyConstraint, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from duespoll.models.base import Base, TimestampMixin


class BallotState(str, enum.Enum):
    NOT_CAST = "NOT_CAST"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Ballot(TimestampMixin, Base):
    """A voter's choice and approval status for one poll.

    ``NOT_CAST`` is never stored; it is what the read side reports when no row
    exists for the voter and poll.
    """

    __tablename__ = "ballots"
    __table_args__ = (
        UniqueConstraint("voter_id", "poll_id", name="uq_ballots_voter_poll"),
        ForeignKeyConstraint(
            ["poll_id", "candidate_id"],
            ["candidates.poll_id", "candidates.id"],
            ondelete="CASCADE",
            name="fk_ballots_candidate",
        ),
        Index("ix_ballots_state_cast_at", "state", "cast_at"),
        Index("ix_ballots_poll_id", "poll_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    voter_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("voters.id", ondelete="CASCADE"), nullable=False
    )
    poll_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("polls.id", ondelete="CASCADE"), nullable=False
    )
    candidate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[BallotState] = mapped_column(
        Enum(BallotState, name="ballot_state"), nullable=False, default=BallotState.PENDING_PAYMENT
    )
    cast_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    proof_url: Mapped[str | None] = mapped_column(String(2048))
    proof_path: Mapped[str | None] = mapped_column(String(1024))
    reviewed_by: Mapped[str | None] = mapped_column(String(36))

    voter = relationship("Voter", back_populates="ballots")
    poll = relationship("Poll", back_populates="ballots")
    candidate = relationship("Candidate", viewonly=True)


__all__ = ["Ballot", "BallotState"]
