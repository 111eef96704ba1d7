"""Schemas for polls, candidates and tallies."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from duespoll.models import PollStatus
from duespoll.services.tally import TallyEntry


class CandidateRead(BaseModel):
    """Serialized candidate including its approved vote counter."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    image_url: str
    approved_votes: int


class PollRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    status: PollStatus
    created_by: str | None
    created_at: datetime
    candidates: list[CandidateRead]


class TallyEntryRead(BaseModel):
    candidate_id: str
    name: str
    image_url: str | None = None
    votes: int
    percentage: float

    @classmethod
    def from_entry(cls, entry: TallyEntry) -> "TallyEntryRead":
        return cls(
            candidate_id=entry.candidate.id,
            name=entry.candidate.name,
            image_url=getattr(entry.candidate, "image_url", None),
            votes=entry.votes,
            percentage=entry.percentage,
        )


class TallyRead(BaseModel):
    poll_id: str
    title: str
    status: PollStatus
    total_votes: int
    entries: list[TallyEntryRead]


class ReconciliationRead(BaseModel):
    poll_id: str
    consistent: bool
    corrections: dict[str, dict[str, int]]


__all__ = ["CandidateRead", "PollRead", "ReconciliationRead", "TallyEntryRead", "TallyRead"]
