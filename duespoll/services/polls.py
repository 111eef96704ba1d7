"""Poll authoring: admin poll creation with atomic image upload."""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from duespoll.core.config import Settings, get_settings
from duespoll.db.repositories import PollRepository, VoterRepository
from duespoll.models import Candidate, Poll, PollStatus
from duespoll.models.base import utcnow
from duespoll.obs import workflow_span
from duespoll.services.blobs import BlobLocation, BlobStore
from duespoll.services.changes import ChangeFeed, change_feed, poll_topic
from duespoll.services.errors import (
    PermissionDeniedError,
    PollClosedError,
    PollNotFoundError,
    PollValidationError,
)
from duespoll.services.images import ImagePayload, validate_image

logger = logging.getLogger(__name__)

MIN_CANDIDATES = 2


@dataclass(slots=True)
class CandidateDraft:
    """Candidate as submitted by the admin form; incomplete drafts are dropped."""

    name: str
    image: bytes | None
    content_type: str | None = None
    filename: str | None = None

    @property
    def complete(self) -> bool:
        return bool(self.name and self.name.strip()) and bool(self.image)


class PollService:
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
        self._polls = PollRepository(session)
        self._voters = VoterRepository(session)

    def get_poll(self, poll_id: str) -> Poll:
        poll = self._polls.get(poll_id, fresh=True)
        if poll is None:
            raise PollNotFoundError(f"Poll '{poll_id}' was not found")
        return poll

    def list_polls(self, *, status: PollStatus | None = PollStatus.ACTIVE) -> Sequence[Poll]:
        return self._polls.list_polls(status=status)

    def create_poll(self, *, title: str, candidates: Sequence[CandidateDraft], created_by: str) -> Poll:
        """Validate, upload every candidate image, then persist the poll.

        If any upload fails the images stored so far are deleted and no poll
        row is written.
        """

        self._ensure_admin(created_by)
        clean_title = (title or "").strip()
        if not clean_title:
            raise PollValidationError("Poll title is required.")
        drafts = [draft for draft in candidates if draft.complete]
        if len(drafts) < MIN_CANDIDATES:
            raise PollValidationError("Please add at least two candidates with names and images.")

        images: list[ImagePayload] = [
            validate_image(
                draft.image or b"",
                content_type=draft.content_type,
                filename=draft.filename,
                max_bytes=self._settings.max_upload_bytes,
                label=f"image for '{draft.name.strip()}'",
            )
            for draft in drafts
        ]

        poll_id = str(uuid.uuid4())
        stamp = int(self._clock().timestamp() * 1000)
        uploaded: list[BlobLocation] = []
        with workflow_span("poll.create", poll_id=poll_id, candidates=len(drafts)):
            try:
                for index, (draft, image) in enumerate(zip(drafts, images), start=1):
                    candidate_id = f"candidate_{index}_{stamp}"
                    path = f"{self._settings.poll_image_prefix}/{poll_id}/{candidate_id}/{image.filename}"
                    uploaded.append(self._blobs.upload(path, image.data, content_type=image.content_type))

                poll = Poll(id=poll_id, title=clean_title, status=PollStatus.ACTIVE, created_by=created_by)
                for index, (draft, location) in enumerate(zip(drafts, uploaded), start=1):
                    poll.candidates.append(
                        Candidate(
                            id=f"candidate_{index}_{stamp}",
                            name=draft.name.strip(),
                            image_url=location.url,
                            image_path=location.path,
                            approved_votes=0,
                            position=index - 1,
                        )
                    )
                self._polls.add(poll)
                self._session.commit()
            except Exception:
                self._session.rollback()
                for location in uploaded:
                    self._blobs.delete_quietly(location.path)
                logger.error(
                    "poll creation aborted",
                    extra={"poll_id": poll_id, "uploaded": len(uploaded), "expected": len(drafts)},
                )
                raise

        logger.info("poll created", extra={"poll_id": poll_id, "candidates": len(drafts)})
        self._feed.publish(poll_topic(poll_id), "poll_created", poll_id=poll_id)
        return self.get_poll(poll_id)

    def close_poll(self, *, poll_id: str, closed_by: str) -> Poll:
        self._ensure_admin(closed_by)
        poll = self.get_poll(poll_id)
        if poll.status == PollStatus.CLOSED:
            raise PollClosedError("Poll is already closed.", poll_id=poll_id)
        poll.status = PollStatus.CLOSED
        self._session.commit()
        logger.info("poll closed", extra={"poll_id": poll_id, "closed_by": closed_by})
        self._feed.publish(poll_topic(poll_id), "poll_closed", poll_id=poll_id)
        return self.get_poll(poll_id)

    def release(self) -> None:
        """End the read transaction so long lived callers see later commits."""
        self._session.rollback()

    def _ensure_admin(self, voter_id: str) -> None:
        if not self._voters.is_admin(voter_id):
            raise PermissionDeniedError("Only administrators can manage polls.")


__all__ = ["CandidateDraft", "MIN_CANDIDATES", "PollService"]
