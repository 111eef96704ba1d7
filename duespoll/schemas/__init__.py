"""Pydantic schemas package."""

from .auth import LoginRequest, RefreshRequest, SignUpRequest, TokenResponse, VoterProfile
from .ballot import BallotRead, CastRequest, PendingApprovalRead
from .poll import CandidateRead, PollRead, ReconciliationRead, TallyEntryRead, TallyRead

__all__ = [
    "BallotRead",
    "CandidateRead",
    "CastRequest",
    "LoginRequest",
    "PendingApprovalRead",
    "PollRead",
    "ReconciliationRead",
    "RefreshRequest",
    "SignUpRequest",
    "TallyEntryRead",
    "TallyRead",
    "TokenResponse",
    "VoterProfile",
]
