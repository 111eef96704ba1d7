"""Authentication endpoints for issuing JWTs."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from duespoll.api.deps import get_identity_service
from duespoll.schemas import LoginRequest, RefreshRequest, SignUpRequest, TokenResponse, VoterProfile
from duespoll.services.errors import PermissionDeniedError
from duespoll.services.identity import IdentityService, IssuedTokens

router = APIRouter()
security_scheme = HTTPBearer(auto_error=True)


@dataclass(frozen=True)
class AuthenticatedUser:
    voter_id: str
    email: str
    display_id: str
    is_admin: bool


def _token_response(tokens: IssuedTokens) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
    )


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security_scheme),
    identity: IdentityService = Depends(get_identity_service),
) -> AuthenticatedUser:
    voter = identity.current_voter(credentials.credentials)
    request.state.actor_id = voter.id
    return AuthenticatedUser(
        voter_id=voter.id,
        email=voter.email,
        display_id=voter.display_id,
        is_admin=identity.is_admin(voter.id),
    )


def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    if not user.is_admin:
        raise PermissionDeniedError("Administrator access required.")
    return user


@router.post(
    "/signup",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a voter account",
)
def signup(
    request: SignUpRequest,
    identity: IdentityService = Depends(get_identity_service),
) -> TokenResponse:
    voter = identity.sign_up(request.email, request.password, request.display_id)
    return _token_response(identity.issue_tokens(voter.id))


@router.post("/login", response_model=TokenResponse, summary="Issue JWT access tokens")
def login(
    request: LoginRequest,
    identity: IdentityService = Depends(get_identity_service),
) -> TokenResponse:
    voter = identity.sign_in(request.email, request.password)
    return _token_response(identity.issue_tokens(voter.id))


@router.post("/refresh", response_model=TokenResponse, summary="Rotate JWT refresh tokens")
def refresh_token(
    request: RefreshRequest,
    identity: IdentityService = Depends(get_identity_service),
) -> TokenResponse:
    return _token_response(identity.rotate(request.refresh_token))


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT, summary="Revoke a refresh token")
def logout(
    request: RefreshRequest,
    identity: IdentityService = Depends(get_identity_service),
) -> Response:
    identity.sign_out(request.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=VoterProfile, summary="Current voter profile")
def me(user: AuthenticatedUser = Depends(get_current_user)) -> VoterProfile:
    return VoterProfile(
        voter_id=user.voter_id,
        email=user.email,
        display_id=user.display_id,
        is_admin=user.is_admin,
    )


__all__ = ["AuthenticatedUser", "get_current_user", "require_admin", "router"]
