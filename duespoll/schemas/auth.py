"""Schemas for account and session endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field


class SignUpRequest(BaseModel):
    email: str = Field(default="", max_length=320)
    password: str = Field(default="")
    display_id: str = Field(default="", max_length=64, description="Matriculation number")


class LoginRequest(BaseModel):
    email: str = Field(default="", max_length=320)
    password: str = Field(default="")


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class VoterProfile(BaseModel):
    voter_id: str
    email: str
    display_id: str
    is_admin: bool


__all__ = ["LoginRequest", "RefreshRequest", "SignUpRequest", "TokenResponse", "VoterProfile"]
