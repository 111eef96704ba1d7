"""Common dependencies for API routes."""
from __future__ import annotations

from collections.abc import Iterator

from fastapi import Depends
from sqlalchemy.orm import Session

from duespoll.core.config import get_settings
from duespoll.db.session import SessionLocal
from duespoll.services.ballots import BallotService
from duespoll.services.blobs import BlobStore
from duespoll.services.changes import ChangeFeed, change_feed
from duespoll.services.identity import IdentityService
from duespoll.services.polls import PollService

_blob_store: BlobStore | None = None


def get_db_session() -> Iterator[Session]:
    """Yield a database session for FastAPI dependencies."""

    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_blob_store() -> BlobStore:
    """Process wide blob store; the S3 client is created lazily on first use."""

    global _blob_store
    if _blob_store is None:
        _blob_store = BlobStore(settings=get_settings())
    return _blob_store


def get_change_feed() -> ChangeFeed:
    return change_feed


def get_identity_service(
    session: Session = Depends(get_db_session),
    feed: ChangeFeed = Depends(get_change_feed),
) -> IdentityService:
    return IdentityService(session, settings=get_settings(), feed=feed)


def get_ballot_service(
    session: Session = Depends(get_db_session),
    blob_store: BlobStore = Depends(get_blob_store),
    feed: ChangeFeed = Depends(get_change_feed),
) -> BallotService:
    return BallotService(session, settings=get_settings(), blob_store=blob_store, feed=feed)


def get_poll_service(
    session: Session = Depends(get_db_session),
    blob_store: BlobStore = Depends(get_blob_store),
    feed: ChangeFeed = Depends(get_change_feed),
) -> PollService:
    return PollService(session, settings=get_settings(), blob_store=blob_store, feed=feed)


__all__ = [
    "get_ballot_service",
    "get_blob_store",
    "get_change_feed",
    "get_db_session",
    "get_identity_service",
    "get_poll_service",
]
