"""Seed script for demo admin, student and poll."""
from __future__ import annotations

import io
import logging
import os

from PIL import Image
from sqlalchemy.orm import Session

from duespoll.core.config import get_settings
from duespoll.core.logging import configure_logging
from duespoll.db.repositories import VoterRepository
from duespoll.db.session import engine, get_session
from duespoll.models import Base, PollStatus
from duespoll.services.blobs import BlobStore
from duespoll.services.errors import AuthError
from duespoll.services.identity import IdentityService
from duespoll.services.polls import CandidateDraft, PollService

logger = logging.getLogger(__name__)

DEMO_PASSWORD = os.environ.get("DUESPOLL_DEMO_PASSWORD", "changeme")
SEED_ACCOUNTS = [
    ("admin@demo.local", "ADM001", True),
    ("student@demo.local", "U2024001", False),
]
DEMO_CANDIDATES = [("Ada Obi", (200, 60, 60)), ("Bayo Lawal", (60, 60, 200))]


def _swatch(color: tuple[int, int, int]) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (64, 64), color).save(buffer, format="PNG")
    return buffer.getvalue()


def _ensure_account(session: Session, identity: IdentityService, email: str, display_id: str) -> str:
    voters = VoterRepository(session)
    existing = voters.get_by_email(email)
    if existing is not None:
        logger.info("Voter %s already exists", email)
        return existing.id
    try:
        voter = identity.sign_up(email, DEMO_PASSWORD, display_id)
    except AuthError as exc:
        logger.error("Could not create %s: %s", email, exc.message)
        raise
    logger.info("Added voter %s", email)
    return voter.id


def seed(session: Session) -> None:
    """Seed an admin, a student and one active poll."""

    settings = get_settings()
    identity = IdentityService(session, settings=settings)
    admin_id: str | None = None
    for email, display_id, is_admin in SEED_ACCOUNTS:
        voter_id = _ensure_account(session, identity, email, display_id)
        if is_admin:
            VoterRepository(session).grant_admin(voter_id)
            session.commit()
            admin_id = voter_id

    polls = PollService(session, settings=settings, blob_store=BlobStore(settings=settings))
    if polls.list_polls(status=PollStatus.ACTIVE):
        logger.info("An active poll already exists")
        return
    assert admin_id is not None
    poll = polls.create_poll(
        title="Class representative election",
        candidates=[
            CandidateDraft(name=name, image=_swatch(color), content_type="image/png", filename=f"{index}.png")
            for index, (name, color) in enumerate(DEMO_CANDIDATES, start=1)
        ],
        created_by=admin_id,
    )
    logger.info("Created poll %s", poll.id)


def main() -> None:
    configure_logging()
    Base.metadata.create_all(bind=engine)
    with get_session() as session:
        seed(session)


if __name__ == "__main__":
    main()
