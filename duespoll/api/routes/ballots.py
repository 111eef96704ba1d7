"""Voter ballot endpoints: cast, payment proof upload and live status."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, WebSocket, status
from fastapi.concurrency import run_in_threadpool

from duespoll.api.deps import get_ballot_service, get_change_feed, get_identity_service
from duespoll.api.live import stream_snapshots
from duespoll.api.routes.auth import AuthenticatedUser, get_current_user
from duespoll.core.config import get_settings
from duespoll.models import BallotState
from duespoll.schemas import BallotRead, CastRequest
from duespoll.services.ballots import BallotService
from duespoll.services.changes import ChangeFeed, voter_topic
from duespoll.services.errors import DuesPollError, InvalidImageError
from duespoll.services.identity import IdentityService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ballots")


@router.get("", response_model=list[BallotRead], summary="Caller's ballots")
def list_ballots(
    user: AuthenticatedUser = Depends(get_current_user),
    service: BallotService = Depends(get_ballot_service),
) -> list[BallotRead]:
    return [BallotRead.model_validate(ballot) for ballot in service.ballots_for_voter(user.voter_id)]


@router.websocket("/live")
async def live_ballots(
    websocket: WebSocket,
    token: str = Query(default=""),
    identity: IdentityService = Depends(get_identity_service),
    service: BallotService = Depends(get_ballot_service),
    feed: ChangeFeed = Depends(get_change_feed),
) -> None:
    """Push the caller's ballots on connect and after each of their transitions."""

    try:
        voter = await run_in_threadpool(identity.current_voter, token)
    except DuesPollError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return
    voter_id = voter.id

    def _snapshot(kind: str) -> dict[str, Any]:
        try:
            ballots = service.ballots_for_voter(voter_id)
            return {
                "event": kind,
                "ballots": [BallotRead.model_validate(ballot).model_dump(mode="json") for ballot in ballots],
            }
        finally:
            service.release()

    initial = await run_in_threadpool(_snapshot, "snapshot")
    await stream_snapshots(websocket, feed=feed, topic=voter_topic(voter_id), snapshot=_snapshot, initial=initial)
    logger.debug("live ballots closed", extra={"voter_id": voter_id})


@router.get("/{poll_id}", response_model=BallotRead, summary="Caller's ballot for one poll")
def get_ballot(
    poll_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: BallotService = Depends(get_ballot_service),
) -> BallotRead:
    ballot = service.get_ballot(user.voter_id, poll_id)
    if ballot is None:
        return BallotRead(voter_id=user.voter_id, poll_id=poll_id, state=BallotState.NOT_CAST)
    return BallotRead.model_validate(ballot)


@router.post("/{poll_id}", response_model=BallotRead, summary="Cast a ballot")
def cast_ballot(
    poll_id: str,
    request: CastRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: BallotService = Depends(get_ballot_service),
) -> BallotRead:
    ballot = service.cast(voter_id=user.voter_id, poll_id=poll_id, candidate_id=request.candidate_id)
    return BallotRead.model_validate(ballot)


async def _read_capped(request: Request, limit: int) -> bytes:
    """Read the request body, refusing it as soon as it exceeds ``limit`` bytes."""

    too_large = InvalidImageError(f"The payment screenshot exceeds the {limit // 1024} KiB upload limit.")
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise too_large
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise too_large
    return bytes(body)


@router.post(
    "/{poll_id}/proof",
    response_model=BallotRead,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload the payment screenshot",
)
async def submit_proof(
    poll_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    service: BallotService = Depends(get_ballot_service),
) -> BallotRead:
    body = await _read_capped(request, get_settings().max_upload_bytes)
    content_type = request.headers.get("content-type", "application/octet-stream").split(";")[0]
    filename = request.headers.get("x-upload-filename")

    def _submit() -> BallotRead:
        ballot = service.submit_proof(
            voter_id=user.voter_id,
            poll_id=poll_id,
            data=body,
            content_type=content_type,
            filename=filename,
        )
        return BallotRead.model_validate(ballot)

    return await run_in_threadpool(_submit)


__all__ = ["router"]
