from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql.elements import TextClause

from duespoll.core.config import get_settings
from duespoll.db.repositories import VoterRepository
from duespoll.models import Base, BallotState, Candidate, Poll, Voter
from duespoll.services.ballots import BallotService
from duespoll.services.blobs import BlobStore
from duespoll.services.changes import APPROVALS_TOPIC, ChangeEvent, ChangeFeed, poll_topic
from duespoll.services.errors import (
    BlobStoreError,
    CandidateNotFoundError,
    CastBlockedError,
    InvalidImageError,
    InvalidTransitionError,
    PermissionDeniedError,
    PollClosedError,
)
from duespoll.services.identity import IdentityService
from duespoll.services.polls import CandidateDraft, PollService
from tests.conftest import InMemoryS3Client, png_bytes


@pytest.fixture()
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture()
def service(db_session: Session, blob_store: BlobStore, feed: ChangeFeed) -> BallotService:
    return BallotService(db_session, settings=get_settings(), blob_store=blob_store, feed=feed)


def _votes(session: Session, candidate_id: str) -> int:
    session.expire_all()
    return session.scalar(select(Candidate.approved_votes).where(Candidate.id == candidate_id))


def _pending(service: BallotService, voter: Voter, poll: Poll, candidate_id: str | None = None) -> None:
    service.cast(voter_id=voter.id, poll_id=poll.id, candidate_id=candidate_id or poll.candidates[0].id)
    service.submit_proof(
        voter_id=voter.id, poll_id=poll.id, data=png_bytes(), content_type="image/png", filename="receipt.png"
    )


def test_cast_creates_pending_payment_ballot(service: BallotService, student: Voter, make_poll) -> None:
    poll = make_poll()
    x = poll.candidates[0]

    assert service.ballot_state(student.id, poll.id) == BallotState.NOT_CAST
    ballot = service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=x.id)

    assert ballot.state == BallotState.PENDING_PAYMENT
    assert ballot.candidate_id == x.id
    assert ballot.proof_path is None


def test_recast_before_payment_switches_candidate(service: BallotService, student: Voter, make_poll) -> None:
    poll = make_poll()
    service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=poll.candidates[0].id)

    ballot = service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=poll.candidates[1].id)

    assert ballot.state == BallotState.PENDING_PAYMENT
    assert ballot.candidate_id == poll.candidates[1].id
    assert len(service.ballots_for_voter(student.id)) == 1


def test_submit_proof_moves_to_pending_approval(
    service: BallotService, student: Voter, make_poll, s3_client: InMemoryS3Client
) -> None:
    poll = make_poll()
    service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=poll.candidates[0].id)

    ballot = service.submit_proof(
        voter_id=student.id, poll_id=poll.id, data=png_bytes(), content_type="image/png", filename="r.png"
    )

    assert ballot.state == BallotState.PENDING_APPROVAL
    assert ballot.proof_path and ballot.proof_path.startswith(f"payments/{student.id}_{poll.id}_")
    assert ballot.proof_url
    assert s3_client.keys(get_settings().blob_bucket, "payments/") == [ballot.proof_path]


@pytest.mark.parametrize("final_state", [BallotState.PENDING_APPROVAL, BallotState.APPROVED])
def test_cast_is_blocked_once_payment_was_submitted(
    service: BallotService, db_session: Session, student: Voter, admin: Voter, make_poll, final_state: BallotState
) -> None:
    poll = make_poll()
    _pending(service, student, poll)
    if final_state == BallotState.APPROVED:
        service.approve(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)

    with pytest.raises(CastBlockedError) as exc_info:
        service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=poll.candidates[1].id)

    assert exc_info.value.state == final_state
    assert exc_info.value.to_detail()["state"] == final_state.value
    ballot = service.get_ballot(student.id, poll.id)
    assert ballot is not None
    assert ballot.state == final_state
    assert ballot.candidate_id == poll.candidates[0].id


def test_approve_counts_vote_and_removes_proof(
    service: BallotService, db_session: Session, student: Voter, admin: Voter, make_poll, s3_client: InMemoryS3Client
) -> None:
    poll = make_poll()
    x = poll.candidates[0]
    _pending(service, student, poll)

    ballot = service.approve(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)

    assert ballot.state == BallotState.APPROVED
    assert ballot.proof_path is None and ballot.proof_url is None
    assert ballot.reviewed_by == admin.id
    assert _votes(db_session, x.id) == 1
    assert s3_client.keys(get_settings().blob_bucket, "payments/") == []


def test_approval_runs_in_one_immediate_transaction(
    service: BallotService, student: Voter, admin: Voter, make_poll, monkeypatch: pytest.MonkeyPatch
) -> None:
    poll = make_poll()
    _pending(service, student, poll)
    statements: list[str] = []
    original_execute = Session.execute

    def tracking_execute(self: Session, statement, *args, **kwargs):
        if isinstance(statement, TextClause):
            statements.append(str(statement))
        return original_execute(self, statement, *args, **kwargs)

    monkeypatch.setattr(Session, "execute", tracking_execute)
    service.approve(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)

    assert statements == ["BEGIN IMMEDIATE"]


def test_reject_clears_proof_and_leaves_tally(
    service: BallotService, db_session: Session, student: Voter, admin: Voter, make_poll, s3_client: InMemoryS3Client
) -> None:
    poll = make_poll()
    x = poll.candidates[0]
    _pending(service, student, poll)

    ballot = service.reject(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)

    assert ballot.state == BallotState.REJECTED
    assert ballot.proof_path is None
    assert _votes(db_session, x.id) == 0
    assert s3_client.keys(get_settings().blob_bucket, "payments/") == []


def test_rejected_voter_may_cast_again(service: BallotService, student: Voter, admin: Voter, make_poll) -> None:
    poll = make_poll()
    _pending(service, student, poll)
    service.reject(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)

    ballot = service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=poll.candidates[1].id)

    assert ballot.state == BallotState.PENDING_PAYMENT
    assert ballot.candidate_id == poll.candidates[1].id
    assert ballot.reviewed_by is None


def test_competing_approvals_increment_once(
    db_session: Session, session_factory, blob_store: BlobStore, student: Voter, admin: Voter, make_poll
) -> None:
    poll = make_poll()
    x = poll.candidates[0]
    voter_service = BallotService(db_session, settings=get_settings(), blob_store=blob_store, feed=ChangeFeed())
    _pending(voter_service, student, poll)

    first_session = session_factory()
    second_session = session_factory()
    try:
        first = BallotService(first_session, settings=get_settings(), blob_store=blob_store, feed=ChangeFeed())
        second = BallotService(second_session, settings=get_settings(), blob_store=blob_store, feed=ChangeFeed())
        # both reviewers loaded the queue before either acted
        assert second.get_ballot(student.id, poll.id).state == BallotState.PENDING_APPROVAL

        first.approve(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)
        result = second.approve(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)
    finally:
        first_session.close()
        second_session.close()

    assert result.state == BallotState.APPROVED
    assert _votes(db_session, x.id) == 1


def test_review_requires_admin(service: BallotService, student: Voter, make_poll) -> None:
    poll = make_poll()
    _pending(service, student, poll)

    with pytest.raises(PermissionDeniedError):
        service.approve(admin_id=student.id, voter_id=student.id, poll_id=poll.id)

    assert service.ballot_state(student.id, poll.id) == BallotState.PENDING_APPROVAL


def test_reject_after_approval_is_refused(service: BallotService, student: Voter, admin: Voter, make_poll) -> None:
    poll = make_poll()
    _pending(service, student, poll)
    service.approve(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)

    with pytest.raises(InvalidTransitionError):
        service.reject(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)


def test_failed_upload_keeps_pending_payment(
    service: BallotService, student: Voter, make_poll, s3_client: InMemoryS3Client
) -> None:
    poll = make_poll()
    service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=poll.candidates[0].id)
    s3_client.fail_puts = True

    with pytest.raises(BlobStoreError):
        service.submit_proof(voter_id=student.id, poll_id=poll.id, data=png_bytes(), content_type="image/png")

    assert service.ballot_state(student.id, poll.id) == BallotState.PENDING_PAYMENT


def test_failed_state_write_removes_uploaded_proof(
    service: BallotService, student: Voter, make_poll, s3_client: InMemoryS3Client, monkeypatch: pytest.MonkeyPatch
) -> None:
    poll = make_poll()
    service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=poll.candidates[0].id)

    def _lose_race(*args: object, **kwargs: object) -> bool:
        return False

    monkeypatch.setattr(service._ballots, "update_ballot_state", _lose_race)

    with pytest.raises(InvalidTransitionError):
        service.submit_proof(voter_id=student.id, poll_id=poll.id, data=png_bytes(), content_type="image/png")

    assert s3_client.keys(get_settings().blob_bucket, "payments/") == []
    assert service.ballot_state(student.id, poll.id) == BallotState.PENDING_PAYMENT


def test_non_image_proof_is_refused(service: BallotService, student: Voter, make_poll) -> None:
    poll = make_poll()
    service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=poll.candidates[0].id)

    with pytest.raises(InvalidImageError):
        service.submit_proof(voter_id=student.id, poll_id=poll.id, data=b"%PDF-1.4", content_type="image/png")

    assert service.ballot_state(student.id, poll.id) == BallotState.PENDING_PAYMENT


def test_proof_cleanup_failure_does_not_undo_review(
    service: BallotService,
    db_session: Session,
    student: Voter,
    admin: Voter,
    make_poll,
    s3_client: InMemoryS3Client,
    caplog: pytest.LogCaptureFixture,
) -> None:
    poll = make_poll()
    _pending(service, student, poll)
    s3_client.fail_deletes = True

    with caplog.at_level("WARNING", logger="duespoll.services.blobs"):
        ballot = service.approve(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)

    assert ballot.state == BallotState.APPROVED
    assert _votes(db_session, poll.candidates[0].id) == 1
    assert any(record.message == "could not delete blob" for record in caplog.records)


def test_cast_validates_poll_and_candidate(
    service: BallotService, db_session: Session, blob_store: BlobStore, student: Voter, admin: Voter, make_poll
) -> None:
    poll = make_poll()
    other = make_poll(title="Other", names=("P", "Q"))

    with pytest.raises(CandidateNotFoundError):
        service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=other.candidates[0].id)

    PollService(db_session, settings=get_settings(), blob_store=blob_store).close_poll(
        poll_id=poll.id, closed_by=admin.id
    )
    with pytest.raises(PollClosedError):
        service.cast(voter_id=student.id, poll_id=poll.id, candidate_id=poll.candidates[0].id)


def test_pending_queue_is_ordered_oldest_first(
    db_session: Session, blob_store: BlobStore, make_voter, make_poll
) -> None:
    poll = make_poll()
    base = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)
    late, early = make_voter(), make_voter()

    for voter, offset in ((late, 10), (early, 1)):
        moment = base + timedelta(minutes=offset)
        timed = BallotService(
            db_session, settings=get_settings(), blob_store=blob_store, feed=ChangeFeed(), clock=lambda m=moment: m
        )
        _pending(timed, voter, poll)

    rows = BallotService(db_session, settings=get_settings(), blob_store=blob_store).pending_approvals()

    assert [row.voter_id for row in rows] == [early.id, late.id]
    assert rows[0].poll_title == poll.title
    assert rows[0].candidate_name == poll.candidates[0].name
    assert rows[0].display_id == early.display_id


def test_transitions_publish_changes(
    service: BallotService, feed: ChangeFeed, student: Voter, admin: Voter, make_poll
) -> None:
    poll = make_poll()
    queue_events: list[ChangeEvent] = []
    tally_events: list[ChangeEvent] = []

    with feed.subscribe(APPROVALS_TOPIC, queue_events.append), feed.subscribe(
        poll_topic(poll.id), tally_events.append
    ):
        _pending(service, student, poll)
        service.approve(admin_id=admin.id, voter_id=student.id, poll_id=poll.id)

    assert [event.payload["transition"] for event in queue_events] == ["submit_proof", "approve"]
    assert [event.kind for event in tally_events] == ["tally_changed"]
    assert feed.listener_count(APPROVALS_TOPIC) == 0


def test_concurrent_approvals_from_many_threads_increment_once(tmp_path, blob_store: BlobStore) -> None:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    settings = get_settings()

    with factory() as setup:
        identity = IdentityService(setup, settings=settings)
        reviewer = identity.sign_up("reviewer@example.com", "s3cret-pass", "adm900")
        voter = identity.sign_up("payer@example.com", "s3cret-pass", "u2024900")
        VoterRepository(setup).grant_admin(reviewer.id)
        setup.commit()
        poll = PollService(setup, settings=settings, blob_store=blob_store).create_poll(
            title="Treasurer",
            candidates=[
                CandidateDraft(name=name, image=png_bytes(), content_type="image/png", filename=f"{name}.png")
                for name in ("X", "Y")
            ],
            created_by=reviewer.id,
        )
        ledger = BallotService(setup, settings=settings, blob_store=blob_store, feed=ChangeFeed())
        _pending(ledger, voter, poll)
        reviewer_id, voter_id, poll_id, x_id = reviewer.id, voter.id, poll.id, poll.candidates[0].id

    workers = 4
    barrier = threading.Barrier(workers)
    states: list[BallotState] = []
    errors: list[Exception] = []
    lock = threading.Lock()

    def _approve() -> None:
        with factory() as session:
            service = BallotService(session, settings=settings, blob_store=blob_store, feed=ChangeFeed())
            barrier.wait()
            try:
                ballot = service.approve(admin_id=reviewer_id, voter_id=voter_id, poll_id=poll_id)
            except Exception as exc:  # collected and asserted below
                with lock:
                    errors.append(exc)
                return
            with lock:
                states.append(ballot.state)

    threads = [threading.Thread(target=_approve) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    try:
        assert errors == []
        assert states == [BallotState.APPROVED] * workers
        with factory() as check:
            votes = check.scalar(
                select(Candidate.approved_votes).where(Candidate.poll_id == poll_id, Candidate.id == x_id)
            )
        assert votes == 1
    finally:
        engine.dispose()
