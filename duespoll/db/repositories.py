"""Document store access for voters, polls and ballots."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from duespoll.models import AdminMembership, Ballot, BallotState, Candidate, Poll, PollStatus, Voter

_BALLOT_PATCH_FIELDS = frozenset(
    {"candidate_id", "state", "cast_at", "proof_url", "proof_path", "reviewed_by"}
)


@dataclass(slots=True, frozen=True)
class PendingBallotRow:
    """Pending approval joined with the data an admin reviews."""

    voter_id: str
    display_id: str
    poll_id: str
    poll_title: str
    candidate_id: str
    candidate_name: str
    proof_url: str | None
    proof_path: str | None
    cast_at: Any


class VoterRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, voter_id: str) -> Voter | None:
        return self._session.get(Voter, voter_id)

    def get_by_email(self, email: str) -> Voter | None:
        return self._session.scalar(select(Voter).where(Voter.email == email))

    def add(self, voter: Voter) -> Voter:
        self._session.add(voter)
        self._session.flush()
        return voter

    def is_admin(self, voter_id: str) -> bool:
        return self._session.get(AdminMembership, voter_id) is not None

    def grant_admin(self, voter_id: str) -> None:
        if not self.is_admin(voter_id):
            self._session.add(AdminMembership(voter_id=voter_id))
            self._session.flush()


class PollRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, poll_id: str, *, fresh: bool = False) -> Poll | None:
        statement = select(Poll).where(Poll.id == poll_id).options(selectinload(Poll.candidates))
        if fresh:
            statement = statement.execution_options(populate_existing=True)
        return self._session.scalar(statement)

    def list_polls(self, *, status: PollStatus | None = None) -> Sequence[Poll]:
        statement = select(Poll).options(selectinload(Poll.candidates)).order_by(Poll.created_at, Poll.id)
        if status is not None:
            statement = statement.where(Poll.status == status)
        return self._session.scalars(statement).all()

    def add(self, poll: Poll) -> Poll:
        self._session.add(poll)
        self._session.flush()
        return poll

    def get_candidate(self, poll_id: str, candidate_id: str) -> Candidate | None:
        return self._session.scalar(
            select(Candidate).where(Candidate.poll_id == poll_id, Candidate.id == candidate_id)
        )

    def increment_candidate_votes(self, poll_id: str, candidate_id: str, amount: int = 1) -> int:
        """Increment against the stored row, never a cached copy; returns rows touched."""

        result = self._session.execute(
            update(Candidate)
            .where(Candidate.id == candidate_id, Candidate.poll_id == poll_id)
            .values(approved_votes=Candidate.approved_votes + amount)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def set_candidate_votes(self, poll_id: str, candidate_id: str, votes: int) -> None:
        self._session.execute(
            update(Candidate)
            .where(Candidate.id == candidate_id, Candidate.poll_id == poll_id)
            .values(approved_votes=votes)
            .execution_options(synchronize_session=False)
        )


class BallotRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, voter_id: str, poll_id: str, *, fresh: bool = False) -> Ballot | None:
        statement = select(Ballot).where(Ballot.voter_id == voter_id, Ballot.poll_id == poll_id)
        if fresh:
            statement = statement.execution_options(populate_existing=True)
        return self._session.scalar(statement)

    def for_voter(self, voter_id: str) -> Sequence[Ballot]:
        statement = select(Ballot).where(Ballot.voter_id == voter_id).order_by(Ballot.cast_at)
        return self._session.scalars(statement).all()

    def insert(self, ballot: Ballot) -> Ballot:
        self._session.add(ballot)
        self._session.flush()
        return ballot

    def update_ballot_state(
        self,
        voter_id: str,
        poll_id: str,
        patch: dict[str, Any],
        *,
        expected_state: BallotState | None = None,
    ) -> bool:
        """Apply ``patch`` to one ballot without touching sibling fields.

        When ``expected_state`` is given the write only lands if the stored
        state still matches it (compare-and-set). Returns whether a row
        changed.
        """

        unknown = set(patch) - _BALLOT_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Unsupported ballot fields: {', '.join(sorted(unknown))}")
        statement = update(Ballot).where(Ballot.voter_id == voter_id, Ballot.poll_id == poll_id)
        if expected_state is not None:
            statement = statement.where(Ballot.state == expected_state)
        result = self._session.execute(
            statement.values(**patch).execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    def pending(self) -> list[PendingBallotRow]:
        statement = (
            select(Ballot, Voter.display_id, Poll.title, Candidate.name)
            .join(Voter, Voter.id == Ballot.voter_id)
            .join(Poll, Poll.id == Ballot.poll_id)
            .join(Candidate, (Candidate.poll_id == Ballot.poll_id) & (Candidate.id == Ballot.candidate_id))
            .where(Ballot.state == BallotState.PENDING_APPROVAL)
            .order_by(Ballot.cast_at.asc(), Ballot.voter_id.asc(), Ballot.poll_id.asc())
        )
        rows: list[PendingBallotRow] = []
        for ballot, display_id, title, candidate_name in self._session.execute(statement):
            rows.append(
                PendingBallotRow(
                    voter_id=ballot.voter_id,
                    display_id=display_id,
                    poll_id=ballot.poll_id,
                    poll_title=title,
                    candidate_id=ballot.candidate_id,
                    candidate_name=candidate_name,
                    proof_url=ballot.proof_url,
                    proof_path=ballot.proof_path,
                    cast_at=ballot.cast_at,
                )
            )
        return rows

    def approved_counts(self, poll_id: str) -> dict[str, int]:
        statement = select(Ballot.candidate_id).where(
            Ballot.poll_id == poll_id, Ballot.state == BallotState.APPROVED
        )
        counts: dict[str, int] = {}
        for candidate_id in self._session.scalars(statement):
            counts[candidate_id] = counts.get(candidate_id, 0) + 1
        return counts


__all__ = [
    "BallotRepository",
    "PendingBallotRow",
    "PollRepository",
    "VoterRepository",
]
