from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from duespoll.core.config import get_settings
from duespoll.models import Poll, PollStatus, Voter
from duespoll.services.blobs import BlobStore
from duespoll.services.changes import ChangeEvent, ChangeFeed, poll_topic
from duespoll.services.errors import (
    BlobStoreError,
    InvalidImageError,
    PermissionDeniedError,
    PollClosedError,
    PollNotFoundError,
    PollValidationError,
)
from duespoll.services.polls import CandidateDraft, PollService
from tests.conftest import InMemoryS3Client, png_bytes


@pytest.fixture()
def service(db_session: Session, blob_store: BlobStore) -> PollService:
    return PollService(db_session, settings=get_settings(), blob_store=blob_store, feed=ChangeFeed())


def _draft(name: str, image: bytes | None = None) -> CandidateDraft:
    return CandidateDraft(name=name, image=png_bytes() if image is None else image, content_type="image/png", filename=f"{name}.png")


def _poll_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(Poll))


def test_single_candidate_poll_is_rejected(service: PollService, db_session: Session, admin: Voter) -> None:
    with pytest.raises(PollValidationError):
        service.create_poll(title="Solo", candidates=[_draft("Only")], created_by=admin.id)

    assert _poll_count(db_session) == 0


def test_two_candidate_poll_is_created(
    service: PollService, admin: Voter, s3_client: InMemoryS3Client
) -> None:
    poll = service.create_poll(title="  Best Club  ", candidates=[_draft("X"), _draft("Y")], created_by=admin.id)

    assert poll.title == "Best Club"
    assert poll.status == PollStatus.ACTIVE
    assert [candidate.name for candidate in poll.candidates] == ["X", "Y"]
    assert all(candidate.approved_votes == 0 for candidate in poll.candidates)
    assert [candidate.id.split("_")[1] for candidate in poll.candidates] == ["1", "2"]
    keys = s3_client.keys(get_settings().blob_bucket, f"polls/{poll.id}/")
    assert keys == sorted(candidate.image_path for candidate in poll.candidates)
    assert poll.candidates[0].image_path == f"polls/{poll.id}/{poll.candidates[0].id}/X.png"


def test_incomplete_candidates_are_dropped_before_counting(service: PollService, admin: Voter) -> None:
    drafts = [_draft("X"), CandidateDraft(name="  ", image=png_bytes()), CandidateDraft(name="NoPhoto", image=None)]

    with pytest.raises(PollValidationError):
        service.create_poll(title="Club", candidates=drafts, created_by=admin.id)

    poll = service.create_poll(title="Club", candidates=[*drafts, _draft("Y")], created_by=admin.id)
    assert [candidate.name for candidate in poll.candidates] == ["X", "Y"]


def test_blank_title_is_rejected(service: PollService, admin: Voter) -> None:
    with pytest.raises(PollValidationError):
        service.create_poll(title="   ", candidates=[_draft("X"), _draft("Y")], created_by=admin.id)


def test_non_image_candidate_is_rejected(service: PollService, admin: Voter) -> None:
    with pytest.raises(InvalidImageError):
        service.create_poll(
            title="Club", candidates=[_draft("X"), _draft("Y", image=b"not an image")], created_by=admin.id
        )


def test_failed_upload_rolls_back_earlier_images(
    service: PollService, db_session: Session, admin: Voter, s3_client: InMemoryS3Client
) -> None:
    s3_client.fail_put_after = s3_client.put_calls + 1

    with pytest.raises(BlobStoreError):
        service.create_poll(title="Club", candidates=[_draft("X"), _draft("Y")], created_by=admin.id)

    assert s3_client.keys(get_settings().blob_bucket, "polls/") == []
    assert _poll_count(db_session) == 0


def test_only_admins_create_polls(service: PollService, student: Voter) -> None:
    with pytest.raises(PermissionDeniedError):
        service.create_poll(title="Club", candidates=[_draft("X"), _draft("Y")], created_by=student.id)


def test_close_poll_filters_listing_and_notifies(db_session: Session, blob_store: BlobStore, admin: Voter) -> None:
    feed = ChangeFeed()
    service = PollService(db_session, settings=get_settings(), blob_store=blob_store, feed=feed)
    open_poll = service.create_poll(title="Open", candidates=[_draft("X"), _draft("Y")], created_by=admin.id)
    closing = service.create_poll(title="Closing", candidates=[_draft("X"), _draft("Y")], created_by=admin.id)
    events: list[ChangeEvent] = []

    with feed.subscribe(poll_topic(closing.id), events.append):
        closed = service.close_poll(poll_id=closing.id, closed_by=admin.id)

    assert closed.status == PollStatus.CLOSED
    assert [event.kind for event in events] == ["poll_closed"]
    assert [poll.id for poll in service.list_polls()] == [open_poll.id]
    assert [poll.id for poll in service.list_polls(status=PollStatus.CLOSED)] == [closing.id]
    assert len(service.list_polls(status=None)) == 2
    with pytest.raises(PollClosedError):
        service.close_poll(poll_id=closing.id, closed_by=admin.id)


def test_get_poll_unknown_id(service: PollService) -> None:
    with pytest.raises(PollNotFoundError):
        service.get_poll("missing")
