from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterator
from io import BytesIO
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENABLE_TRACING", "false")
os.environ.setdefault("AUDIT_LOG_SAMPLE_RATE", "1.0")

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from duespoll.api.deps import get_blob_store, get_db_session
from duespoll.core.config import get_settings
from duespoll.db.repositories import VoterRepository
from duespoll.main import app
from duespoll.models import Base, Poll, Voter
from duespoll.obs import AuditMiddleware
from duespoll.services.blobs import BlobStore
from duespoll.services.changes import change_feed
from duespoll.services.identity import IdentityService, refresh_token_store
from duespoll.services.polls import CandidateDraft, PollService


class InMemoryS3Client:
    """In-memory stand-in for the boto3 S3 client used by the blob store and audit log."""

    def __init__(self) -> None:
        self._buckets: dict[str, dict[str, bytes]] = {}
        self.fail_puts = False
        self.fail_put_after: int | None = None
        self.fail_deletes = False
        self.put_calls = 0

    def head_bucket(self, *, Bucket: str) -> None:
        if Bucket not in self._buckets:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadBucket")

    def create_bucket(self, *, Bucket: str, **_: object) -> None:
        self._buckets.setdefault(Bucket, {})

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, BytesIO]:
        bucket = self._buckets.get(Bucket)
        if bucket is None:
            raise ClientError({"Error": {"Code": "NoSuchBucket"}}, "GetObject")
        if Key not in bucket:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": BytesIO(bucket[Key])}

    def put_object(
        self,
        *,
        Bucket: str,
        Key: str,
        Body: bytes,
        ContentType: str | None = None,
        **_: object,
    ) -> dict[str, str]:
        self.put_calls += 1
        if self.fail_puts or (self.fail_put_after is not None and self.put_calls > self.fail_put_after):
            raise ClientError({"Error": {"Code": "ServiceUnavailable"}}, "PutObject")
        bucket = self._buckets.setdefault(Bucket, {})
        bucket[Key] = Body.encode("utf-8") if isinstance(Body, str) else Body
        return {"ETag": "in-memory"}

    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, object]:
        if self.fail_deletes:
            raise ClientError({"Error": {"Code": "AccessDenied"}}, "DeleteObject")
        self._buckets.get(Bucket, {}).pop(Key, None)
        return {}

    def generate_presigned_url(self, operation: str, *, Params: dict[str, str], ExpiresIn: int) -> str:
        return f"https://blobs.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"

    def keys(self, bucket: str, prefix: str = "") -> list[str]:
        return sorted(key for key in self._buckets.get(bucket, {}) if key.startswith(prefix))

    @property
    def buckets(self) -> dict[str, dict[str, bytes]]:
        return self._buckets


engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def png_bytes(color: tuple[int, int, int] = (20, 120, 220), size: tuple[int, int] = (8, 8)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def s3_client(monkeypatch: pytest.MonkeyPatch) -> Iterator[InMemoryS3Client]:
    client = InMemoryS3Client()

    def _client_factory(*args: object, **kwargs: object) -> InMemoryS3Client:
        return client

    monkeypatch.setattr("duespoll.obs.audit.boto3.client", _client_factory)
    monkeypatch.setattr("duespoll.services.blobs.boto3.client", _client_factory)
    stack = getattr(app, "middleware_stack", None)
    middleware = getattr(stack, "app", None)
    while middleware is not None:
        if isinstance(middleware, AuditMiddleware):
            middleware._s3_client = None
            middleware._bucket_ready = False
        middleware = getattr(middleware, "app", None)
    yield client


@pytest.fixture(autouse=True)
def _reset_in_process_state() -> Iterator[None]:
    yield
    change_feed.reset()
    refresh_token_store.reset()


@pytest.fixture()
def blob_store(s3_client: InMemoryS3Client) -> BlobStore:
    return BlobStore(settings=get_settings(), s3_client_factory=lambda: s3_client)


@pytest.fixture()
def db_session() -> Iterator[Session]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture()
def session_factory(db_session: Session) -> sessionmaker:
    """Factory for extra sessions sharing the test database connection."""
    return TestingSessionLocal


@pytest.fixture()
def make_voter(db_session: Session) -> Callable[..., Voter]:
    counter = {"value": 0}

    def _make(*, admin: bool = False, email: str | None = None, display_id: str | None = None) -> Voter:
        counter["value"] += 1
        number = counter["value"]
        identity = IdentityService(db_session, settings=get_settings())
        voter = identity.sign_up(
            email or f"voter{number}@example.com",
            "s3cret-pass",
            display_id or f"u2024{number:03d}",
        )
        if admin:
            VoterRepository(db_session).grant_admin(voter.id)
            db_session.commit()
        return voter

    return _make


@pytest.fixture()
def admin(make_voter: Callable[..., Voter]) -> Voter:
    return make_voter(admin=True, email="admin@example.com", display_id="adm001")


@pytest.fixture()
def student(make_voter: Callable[..., Voter]) -> Voter:
    return make_voter(email="student@example.com", display_id="u2024100")


@pytest.fixture()
def make_poll(db_session: Session, blob_store: BlobStore, admin: Voter) -> Callable[..., Poll]:
    def _make(title: str = "Class representative", names: tuple[str, ...] = ("X", "Y")) -> Poll:
        service = PollService(db_session, settings=get_settings(), blob_store=blob_store)
        drafts = [
            CandidateDraft(name=name, image=png_bytes(), content_type="image/png", filename=f"{name}.png")
            for name in names
        ]
        return service.create_poll(title=title, candidates=drafts, created_by=admin.id)

    return _make


@pytest.fixture()
def client(db_session: Session, blob_store: BlobStore) -> Iterator[TestClient]:
    def override_get_db() -> Iterator[Session]:
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_blob_store] = lambda: blob_store

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.pop(get_db_session, None)
    app.dependency_overrides.pop(get_blob_store, None)


def bearer_for(db_session: Session, voter: Voter) -> dict[str, str]:
    tokens = IdentityService(db_session, settings=get_settings()).issue_tokens(voter.id)
    return {"Authorization": f"Bearer {tokens.access_token}"}


@pytest.fixture()
def admin_headers(db_session: Session, admin: Voter) -> dict[str, str]:
    return bearer_for(db_session, admin)


@pytest.fixture()
def student_headers(db_session: Session, student: Voter) -> dict[str, str]:
    return bearer_for(db_session, student)
