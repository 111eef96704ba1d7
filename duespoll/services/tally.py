"""Poll tally computation and reconciliation."""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from sqlalchemy.orm import Session

from duespoll.db.repositories import BallotRepository, PollRepository
from duespoll.db.transactions import serializable_transaction
from duespoll.obs import TALLY_RECONCILIATION_CORRECTIONS
from duespoll.services.errors import PollNotFoundError

logger = logging.getLogger(__name__)

_ONE_DECIMAL = Decimal("0.1")


class TallyCandidate(Protocol):
    id: str
    name: str
    approved_votes: int


class TalliedPoll(Protocol):
    candidates: Iterable[TallyCandidate]


@dataclass(slots=True, frozen=True)
class TallyEntry:
    candidate: TallyCandidate
    votes: int
    percentage: float


@dataclass(slots=True)
class ReconciliationReport:
    """Outcome of recomputing a poll's counters from ballot states."""

    poll_id: str
    corrections: dict[str, tuple[int, int]] = field(default_factory=dict)

    @property
    def consistent(self) -> bool:
        return not self.corrections


def _percentage(votes: int, total: int) -> float:
    if total <= 0:
        return 0.0
    share = (Decimal(votes) * 100 / Decimal(total)).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP)
    return float(share)


def compute_tally(poll: TalliedPoll) -> list[TallyEntry]:
    """Approved votes and percentage share per candidate, most votes first.

    Candidates with equal votes keep their insertion order.
    """

    candidates = list(poll.candidates)
    total = sum(max(0, int(candidate.approved_votes or 0)) for candidate in candidates)
    entries = [
        TallyEntry(
            candidate=candidate,
            votes=int(candidate.approved_votes or 0),
            percentage=_percentage(int(candidate.approved_votes or 0), total),
        )
        for candidate in candidates
    ]
    return sorted(entries, key=lambda entry: entry.votes, reverse=True)


def total_votes(poll: TalliedPoll) -> int:
    return sum(int(candidate.approved_votes or 0) for candidate in poll.candidates)


def reconcile_poll_tally(session: Session, *, poll_id: str, repair: bool = True) -> ReconciliationReport:
    """Recompute counters from APPROVED ballots and optionally repair drift."""

    polls = PollRepository(session)
    ballots = BallotRepository(session)
    report = ReconciliationReport(poll_id=poll_id)

    with serializable_transaction(session):
        poll = polls.get(poll_id, fresh=True)
        if poll is None:
            raise PollNotFoundError(f"Poll '{poll_id}' was not found")
        expected = ballots.approved_counts(poll_id)
        for candidate in poll.candidates:
            actual = int(candidate.approved_votes or 0)
            wanted = expected.get(candidate.id, 0)
            if actual == wanted:
                continue
            report.corrections[candidate.id] = (actual, wanted)
            if repair:
                polls.set_candidate_votes(poll_id, candidate.id, wanted)

    if report.corrections:
        TALLY_RECONCILIATION_CORRECTIONS.inc(len(report.corrections))
        logger.warning(
            "tally drift detected",
            extra={"poll_id": poll_id, "corrections": report.corrections, "repaired": repair},
        )
    return report


__all__ = [
    "ReconciliationReport",
    "TallyEntry",
    "compute_tally",
    "reconcile_poll_tally",
    "total_votes",
]
