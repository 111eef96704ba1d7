"""Schemas for ballots and the admin approval queue."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from duespoll.models import BallotState


class CastRequest(BaseModel):
    candidate_id: str = Field(..., min_length=1, max_length=64)


class BallotRead(BaseModel):
    """A voter's ballot for one poll; ``state`` is ``NOT_CAST`` when absent."""

    model_config = ConfigDict(from_attributes=True)

    voter_id: str
    poll_id: str
    candidate_id: str | None = None
    state: BallotState
    cast_at: datetime | None = None
    proof_url: str | None = None
    reviewed_by: str | None = None


class PendingApprovalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    voter_id: str
    display_id: str
    poll_id: str
    poll_title: str
    candidate_id: str
    candidate_name: str
    proof_url: str | None
    cast_at: datetime


__all__ = ["BallotRead", "CastRequest", "PendingApprovalRead"]
