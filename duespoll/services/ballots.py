"""Vote ledger: the ballot payment-approval state machine."""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from duespoll.core.config import Settings, get_settings
from duespoll.db.repositories import BallotRepository, PendingBallotRow, PollRepository, VoterRepository
from duespoll.db.transactions import serializable_transaction
from duespoll.models import Ballot, BallotState, PollStatus
from duespoll.models.base import utcnow
from duespoll.obs import record_transition, report_pending_approvals, workflow_span
from duespoll.services.blobs import BlobStore
from duespoll.services.changes import APPROVALS_TOPIC, ChangeFeed, change_feed, poll_topic, voter_topic
from duespoll.services.errors import (
    BallotNotFoundError,
    CandidateNotFoundError,
    CastBlockedError,
    InvalidTransitionError,
    PermissionDeniedError,
    PollClosedError,
    PollNotFoundError,
)
from duespoll.services.images import validate_image

logger = logging.getLogger(__name__)

BLOCKED_CAST_STATES = frozenset({BallotState.PENDING_APPROVAL, BallotState.APPROVED})
RECASTABLE_STATES = frozenset({BallotState.PENDING_PAYMENT, BallotState.REJECTED})
_REVIEW_ATTEMPTS = 2


def _state_label(state: BallotState) -> str:
    return state.value.replace("_", " ")


class BallotService:
    """Owns every ballot transition and the side effects tied to it.

    CAST and SUBMIT_PROOF are voter events; APPROVE and REJECT require the
    admin capability. Every state write is conditional on the state the
    transition starts from, so concurrent actors cannot apply the same
    transition twice.
    """

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        blob_store: BlobStore | None = None,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._blobs = blob_store or BlobStore(settings=self._settings)
        self._feed = feed or change_feed
        self._clock = clock
        self._ballots = BallotRepository(session)
        self._polls = PollRepository(session)
        self._voters = VoterRepository(session)

    def get_ballot(self, voter_id: str, poll_id: str) -> Ballot | None:
        return self._ballots.get(voter_id, poll_id)

    def ballot_state(self, voter_id: str, poll_id: str) -> BallotState:
        ballot = self._ballots.get(voter_id, poll_id)
        return ballot.state if ballot is not None else BallotState.NOT_CAST

    def ballots_for_voter(self, voter_id: str) -> Sequence[Ballot]:
        return self._ballots.for_voter(voter_id)

    def pending_approvals(self) -> list[PendingBallotRow]:
        """Ballots awaiting review, oldest first."""
        rows = self._ballots.pending()
        report_pending_approvals(len(rows))
        return rows

    def release(self) -> None:
        """End the read transaction so long lived callers see later commits."""
        self._session.rollback()

    def cast(self, *, voter_id: str, poll_id: str, candidate_id: str) -> Ballot:
        """Record the voter's choice and move the ballot to PENDING_PAYMENT."""

        with workflow_span("ballot.cast", voter_id=voter_id, poll_id=poll_id, candidate_id=candidate_id):
            poll = self._polls.get(poll_id)
            if poll is None:
                raise PollNotFoundError(f"Poll '{poll_id}' was not found")
            if poll.status != PollStatus.ACTIVE:
                raise PollClosedError("This poll is closed and no longer accepts votes.", poll_id=poll_id)
            if self._polls.get_candidate(poll_id, candidate_id) is None:
                raise CandidateNotFoundError(
                    f"Candidate '{candidate_id}' does not belong to poll '{poll_id}'"
                )

            existing = self._ballots.get(voter_id, poll_id, fresh=True)
            if existing is None:
                ballot = self._insert_new_ballot(voter_id, poll_id, candidate_id)
                if ballot is not None:
                    self._after_transition("cast", voter_id=voter_id, poll_id=poll_id)
                    return ballot
                existing = self._ballots.get(voter_id, poll_id, fresh=True)
                if existing is None:  # pragma: no cover - insert conflict without a row
                    raise InvalidTransitionError("Failed to register vote. Please try again.")

            self._recast(existing, candidate_id)
            self._after_transition("recast", voter_id=voter_id, poll_id=poll_id)
            return self._reload(voter_id, poll_id)

    def _insert_new_ballot(self, voter_id: str, poll_id: str, candidate_id: str) -> Ballot | None:
        ballot = Ballot(
            voter_id=voter_id,
            poll_id=poll_id,
            candidate_id=candidate_id,
            state=BallotState.PENDING_PAYMENT,
            cast_at=self._clock(),
        )
        try:
            self._ballots.insert(ballot)
            self._session.commit()
        except IntegrityError:
            # another request created the ballot first; fall back to the re-cast rules
            self._session.rollback()
            return None
        self._session.refresh(ballot)
        return ballot

    def _recast(self, existing: Ballot, candidate_id: str) -> None:
        state = existing.state
        if state in BLOCKED_CAST_STATES:
            raise CastBlockedError(
                "You have already cast and submitted payment for this poll. "
                f"Status: {_state_label(state)}",
                state=state,
            )
        if state not in RECASTABLE_STATES:  # pragma: no cover - enum exhausted above
            raise InvalidTransitionError(f"Cannot cast a ballot in state {state.value}")

        changed = self._ballots.update_ballot_state(
            existing.voter_id,
            existing.poll_id,
            {
                "candidate_id": candidate_id,
                "state": BallotState.PENDING_PAYMENT,
                "cast_at": self._clock(),
                "proof_url": None,
                "proof_path": None,
                "reviewed_by": None,
            },
            expected_state=state,
        )
        if not changed:
            self._session.rollback()
            current = self.ballot_state(existing.voter_id, existing.poll_id)
            raise CastBlockedError(
                f"Ballot changed while casting. Status: {_state_label(current)}", state=current
            )
        self._session.commit()

    def submit_proof(
        self,
        *,
        voter_id: str,
        poll_id: str,
        data: bytes,
        content_type: str | None,
        filename: str | None = None,
    ) -> Ballot:
        """Upload the payment screenshot and move the ballot to PENDING_APPROVAL.

        Nothing is committed unless both the upload and the state write
        succeed; an orphaned upload is removed when the write fails.
        """

        with workflow_span("ballot.submit_proof", voter_id=voter_id, poll_id=poll_id):
            ballot = self._require_ballot(voter_id, poll_id)
            if ballot.state != BallotState.PENDING_PAYMENT:
                raise InvalidTransitionError(
                    f"Payment proof cannot be submitted while the ballot is {_state_label(ballot.state)}.",
                    state=ballot.state.value,
                )

            image = validate_image(
                data,
                content_type=content_type,
                filename=filename,
                max_bytes=self._settings.max_upload_bytes,
                label="payment screenshot",
            )
            now = self._clock()
            path = f"{self._settings.payment_prefix}/{voter_id}_{poll_id}_{int(now.timestamp() * 1000)}"
            location = self._blobs.upload(path, image.data, content_type=image.content_type)

            try:
                changed = self._ballots.update_ballot_state(
                    voter_id,
                    poll_id,
                    {
                        "state": BallotState.PENDING_APPROVAL,
                        "cast_at": now,
                        "proof_url": location.url,
                        "proof_path": location.path,
                    },
                    expected_state=BallotState.PENDING_PAYMENT,
                )
                if not changed:
                    raise InvalidTransitionError(
                        "Ballot changed while the proof was uploading. Please refresh and try again."
                    )
                self._session.commit()
            except Exception:
                self._session.rollback()
                self._blobs.delete_quietly(location.path)
                raise

            self._after_transition("submit_proof", voter_id=voter_id, poll_id=poll_id, queue_changed=True)
            return self._reload(voter_id, poll_id)

    def approve(self, *, admin_id: str, voter_id: str, poll_id: str) -> Ballot:
        """Count the ballot: one transaction sets APPROVED and bumps the candidate."""

        return self._review(admin_id=admin_id, voter_id=voter_id, poll_id=poll_id, approve=True)

    def reject(self, *, admin_id: str, voter_id: str, poll_id: str) -> Ballot:
        return self._review(admin_id=admin_id, voter_id=voter_id, poll_id=poll_id, approve=False)

    def _review(self, *, admin_id: str, voter_id: str, poll_id: str, approve: bool) -> Ballot:
        target = BallotState.APPROVED if approve else BallotState.REJECTED
        transition = "approve" if approve else "reject"
        if not self._voters.is_admin(admin_id):
            raise PermissionDeniedError("Only administrators can review payment proofs.")

        with workflow_span(f"ballot.{transition}", voter_id=voter_id, poll_id=poll_id, admin_id=admin_id):
            for attempt in range(1, _REVIEW_ATTEMPTS + 1):
                try:
                    applied, proof_path = self._apply_review(
                        admin_id=admin_id, voter_id=voter_id, poll_id=poll_id, target=target
                    )
                    break
                except OperationalError:
                    # serialization failure or lock timeout; the retry re-reads the winner's state
                    if attempt == _REVIEW_ATTEMPTS:
                        raise
                    logger.warning(
                        "retrying ballot review after concurrent update",
                        extra={"voter_id": voter_id, "poll_id": poll_id, "attempt": attempt},
                    )

            ballot = self._reload(voter_id, poll_id)
            if not applied and ballot.state != target:
                raise InvalidTransitionError(
                    f"Cannot {transition} a ballot that is {_state_label(ballot.state)}.",
                    state=ballot.state.value,
                )
            if applied:
                self._blobs.delete_quietly(proof_path)
                self._after_transition(
                    transition,
                    voter_id=voter_id,
                    poll_id=poll_id,
                    queue_changed=True,
                    tally_changed=approve,
                )
            return ballot

    def _apply_review(
        self, *, admin_id: str, voter_id: str, poll_id: str, target: BallotState
    ) -> tuple[bool, str | None]:
        with serializable_transaction(self._session):
            ballot = self._require_ballot(voter_id, poll_id, fresh=True)
            if ballot.state == target:
                logger.info(
                    "ballot already reviewed",
                    extra={"voter_id": voter_id, "poll_id": poll_id, "state": target.value},
                )
                return False, None
            if ballot.state != BallotState.PENDING_APPROVAL:
                return False, None

            proof_path = ballot.proof_path
            candidate_id = ballot.candidate_id
            applied = self._ballots.update_ballot_state(
                voter_id,
                poll_id,
                {
                    "state": target,
                    "cast_at": self._clock(),
                    "proof_url": None,
                    "proof_path": None,
                    "reviewed_by": admin_id,
                },
                expected_state=BallotState.PENDING_APPROVAL,
            )
            if applied and target == BallotState.APPROVED:
                if self._polls.increment_candidate_votes(poll_id, candidate_id) != 1:
                    raise CandidateNotFoundError(
                        f"Candidate '{candidate_id}' is missing from poll '{poll_id}'"
                    )
        return applied, proof_path

    def _require_ballot(self, voter_id: str, poll_id: str, *, fresh: bool = False) -> Ballot:
        ballot = self._ballots.get(voter_id, poll_id, fresh=fresh)
        if ballot is None:
            raise BallotNotFoundError(f"No ballot for voter '{voter_id}' in poll '{poll_id}'")
        return ballot

    def _reload(self, voter_id: str, poll_id: str) -> Ballot:
        return self._require_ballot(voter_id, poll_id, fresh=True)

    def _after_transition(
        self,
        transition: str,
        *,
        voter_id: str,
        poll_id: str,
        queue_changed: bool = False,
        tally_changed: bool = False,
    ) -> None:
        record_transition(transition)
        logger.info(
            "ballot transition applied",
            extra={"transition": transition, "voter_id": voter_id, "poll_id": poll_id},
        )
        payload: dict[str, Any] = {"voter_id": voter_id, "poll_id": poll_id, "transition": transition}
        self._feed.publish(voter_topic(voter_id), "ballot_changed", **payload)
        if queue_changed:
            self._feed.publish(APPROVALS_TOPIC, "queue_changed", **payload)
        if tally_changed:
            self._feed.publish(poll_topic(poll_id), "tally_changed", **payload)


__all__ = ["BLOCKED_CAST_STATES", "BallotService", "RECASTABLE_STATES"]
