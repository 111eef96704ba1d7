"""Account sign-up, sign-in and JWT session management."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Literal
from uuid import uuid4

import bcrypt
from jose import JWTError, jwt  # type: ignore[import-untyped]
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from duespoll.core.config import Settings, get_settings
from duespoll.db.repositories import VoterRepository
from duespoll.models import Voter
from duespoll.services.changes import AUTH_TOPIC, ChangeFeed, Listener, Subscription, change_feed
from duespoll.services.errors import AuthError, AuthErrorCode

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

TokenType = Literal["access", "refresh"]


class TokenPayload(BaseModel):
    sub: str
    type: TokenType
    iat: datetime
    exp: datetime
    jti: str


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_id: str


class RefreshTokenStore:
    """In-memory store tracking active and blacklisted refresh tokens."""

    def __init__(self) -> None:
        self._active: dict[str, str] = {}
        self._blacklist: set[str] = set()
        self._lock = Lock()

    def mark_active(self, subject: str, token_id: str) -> None:
        with self._lock:
            self._active[subject] = token_id

    def is_active(self, subject: str, token_id: str) -> bool:
        with self._lock:
            if token_id in self._blacklist:
                return False
            return self._active.get(subject) == token_id

    def blacklist(self, token_id: str) -> None:
        with self._lock:
            self._blacklist.add(token_id)

    def reset(self) -> None:
        with self._lock:
            self._active.clear()
            self._blacklist.clear()


refresh_token_store = RefreshTokenStore()


def hash_password(raw_password: str) -> str:
    return bcrypt.hashpw(raw_password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(raw_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(raw_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:  # pragma: no cover - invalid hash format
        return False


def _create_token(*, subject: str, settings: Settings, expires_delta: timedelta, token_type: TokenType) -> tuple[str, str]:
    now = datetime.now(UTC)
    token_id = uuid4().hex
    payload = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
        "type": token_type,
        "jti": token_id,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm), token_id


def decode_token(token: str, *, settings: Settings | None = None) -> TokenPayload:
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        return TokenPayload(**payload)
    except (JWTError, PydanticValidationError) as exc:
        raise AuthError(AuthErrorCode.INVALID_TOKEN) from exc


class IdentityService:
    """Owns voter accounts and the sessions issued for them."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        feed: ChangeFeed | None = None,
        token_store: RefreshTokenStore | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._feed = feed or change_feed
        self._tokens = token_store or refresh_token_store
        self._voters = VoterRepository(session)

    def sign_up(self, email: str, password: str, display_id: str) -> Voter:
        """Create a voter account.

        ``display_id`` (the matriculation number) is stored stripped and
        upper-cased. The configured bootstrap email is granted admin.
        """

        normalized_email = (email or "").strip().lower()
        normalized_display = (display_id or "").strip().upper()
        if not normalized_email or not password or not normalized_display:
            raise AuthError(AuthErrorCode.MISSING_FIELDS)
        if not _EMAIL_PATTERN.match(normalized_email):
            raise AuthError(AuthErrorCode.INVALID_EMAIL)
        if len(password) < self._settings.min_password_length:
            raise AuthError(AuthErrorCode.WEAK_PASSWORD, min_length=self._settings.min_password_length)
        if self._voters.get_by_email(normalized_email) is not None:
            raise AuthError(AuthErrorCode.EMAIL_IN_USE)

        voter = Voter(email=normalized_email, display_id=normalized_display, hashed_password=hash_password(password))
        try:
            self._voters.add(voter)
            bootstrap = (self._settings.bootstrap_admin_email or "").strip().lower()
            if bootstrap and bootstrap == normalized_email:
                self._voters.grant_admin(voter.id)
            self._session.commit()
        except IntegrityError as exc:
            self._session.rollback()
            raise AuthError(AuthErrorCode.EMAIL_IN_USE) from exc

        logger.info("voter signed up", extra={"voter_id": voter.id})
        self._feed.publish(AUTH_TOPIC, "signed_in", voter_id=voter.id)
        return voter

    def sign_in(self, email: str, password: str) -> Voter:
        normalized_email = (email or "").strip().lower()
        if not normalized_email or not password:
            raise AuthError(AuthErrorCode.MISSING_FIELDS)
        voter = self._voters.get_by_email(normalized_email)
        if voter is None or not verify_password(password, voter.hashed_password):
            logger.info("sign-in refused", extra={"reason": "invalid-credentials"})
            raise AuthError(AuthErrorCode.INVALID_CREDENTIALS)
        self._feed.publish(AUTH_TOPIC, "signed_in", voter_id=voter.id)
        return voter

    def sign_out(self, refresh_token: str) -> None:
        payload = decode_token(refresh_token, settings=self._settings)
        if payload.type != "refresh":
            raise AuthError(AuthErrorCode.INVALID_TOKEN)
        self._tokens.blacklist(payload.jti)
        logger.info("voter signed out", extra={"voter_id": payload.sub})
        self._feed.publish(AUTH_TOPIC, "signed_out", voter_id=payload.sub)

    def issue_tokens(self, voter_id: str) -> IssuedTokens:
        access_token, _ = _create_token(
            subject=voter_id,
            settings=self._settings,
            expires_delta=timedelta(minutes=self._settings.access_token_expire_minutes),
            token_type="access",
        )
        refresh_token, refresh_id = _create_token(
            subject=voter_id,
            settings=self._settings,
            expires_delta=timedelta(days=self._settings.refresh_token_expire_days),
            token_type="refresh",
        )
        self._tokens.mark_active(voter_id, refresh_id)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._settings.access_token_expire_minutes * 60,
            refresh_id=refresh_id,
        )

    def rotate(self, refresh_token: str) -> IssuedTokens:
        payload = decode_token(refresh_token, settings=self._settings)
        if payload.type != "refresh":
            raise AuthError(AuthErrorCode.INVALID_TOKEN)
        if not self._tokens.is_active(payload.sub, payload.jti):
            raise AuthError(AuthErrorCode.TOKEN_REVOKED)
        if self._voters.get(payload.sub) is None:
            raise AuthError(AuthErrorCode.INVALID_TOKEN)
        self._tokens.blacklist(payload.jti)
        return self.issue_tokens(payload.sub)

    def current_voter(self, access_token: str) -> Voter:
        payload = decode_token(access_token, settings=self._settings)
        if payload.type != "access":
            raise AuthError(AuthErrorCode.INVALID_TOKEN)
        voter = self._voters.get(payload.sub)
        if voter is None:
            raise AuthError(AuthErrorCode.INVALID_TOKEN)
        return voter

    def is_admin(self, voter_id: str) -> bool:
        return self._voters.is_admin(voter_id)

    def on_auth_change(self, callback: Listener) -> Subscription:
        return self._feed.subscribe(AUTH_TOPIC, callback)


__all__ = [
    "IdentityService",
    "IssuedTokens",
    "RefreshTokenStore",
    "TokenPayload",
    "decode_token",
    "hash_password",
    "refresh_token_store",
    "verify_password",
]
