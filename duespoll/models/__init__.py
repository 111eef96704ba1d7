"""ORM models package."""
from .ballot import Ballot, BallotState
from .base import Base, TimestampMixin
from .poll import Candidate, Poll, PollStatus
from .voter import AdminMembership, Voter

__all__ = [
    "AdminMembership",
    "Ballot",
    "BallotState",
    "Base",
    "Candidate",
    "Poll",
    "PollStatus",
    "TimestampMixin",
    "Voter",
]
