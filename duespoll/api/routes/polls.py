"""Poll authoring, tally and live tally endpoints."""
from __future__ import annotations

import logging
from itertools import zip_longest
from typing import Any, Literal

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, WebSocket, status
from fastapi.concurrency import run_in_threadpool

from duespoll.api.deps import get_change_feed, get_identity_service, get_poll_service
from duespoll.api.live import stream_snapshots
from duespoll.api.routes.auth import AuthenticatedUser, get_current_user, require_admin
from duespoll.models import Poll, PollStatus
from duespoll.schemas import PollRead, TallyEntryRead, TallyRead
from duespoll.services.changes import ChangeFeed, poll_topic
from duespoll.services.errors import DuesPollError, PermissionDeniedError
from duespoll.services.identity import IdentityService
from duespoll.services.polls import CandidateDraft, PollService
from duespoll.services.tally import compute_tally, total_votes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/polls")

StatusFilter = Literal["ACTIVE", "CLOSED", "ALL"]


def _tally_read(poll: Poll) -> TallyRead:
    return TallyRead(
        poll_id=poll.id,
        title=poll.title,
        status=poll.status,
        total_votes=total_votes(poll),
        entries=[TallyEntryRead.from_entry(entry) for entry in compute_tally(poll)],
    )


@router.get("", response_model=list[PollRead], summary="List polls")
def list_polls(
    status_filter: StatusFilter = Query(default="ACTIVE", alias="status"),
    user: AuthenticatedUser = Depends(get_current_user),
    service: PollService = Depends(get_poll_service),
) -> list[PollRead]:
    if status_filter != "ACTIVE" and not user.is_admin:
        raise PermissionDeniedError("Only administrators can list closed polls.")
    wanted = None if status_filter == "ALL" else PollStatus(status_filter)
    return [PollRead.model_validate(poll) for poll in service.list_polls(status=wanted)]


@router.post("", response_model=PollRead, status_code=status.HTTP_201_CREATED, summary="Create a poll")
async def create_poll(
    title: str = Form(default=""),
    candidate_names: list[str] = Form(default=[]),
    candidate_images: list[UploadFile] = File(default=[]),
    admin: AuthenticatedUser = Depends(require_admin),
    service: PollService = Depends(get_poll_service),
) -> PollRead:
    drafts: list[CandidateDraft] = []
    for name, upload in zip_longest(candidate_names, candidate_images):
        image = await upload.read() if upload is not None else None
        drafts.append(
            CandidateDraft(
                name=name or "",
                image=image,
                content_type=upload.content_type if upload is not None else None,
                filename=upload.filename if upload is not None else None,
            )
        )

    def _create() -> PollRead:
        poll = service.create_poll(title=title, candidates=drafts, created_by=admin.voter_id)
        return PollRead.model_validate(poll)

    return await run_in_threadpool(_create)


@router.get("/{poll_id}", response_model=PollRead, summary="Get a poll")
def get_poll(
    poll_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: PollService = Depends(get_poll_service),
) -> PollRead:
    return PollRead.model_validate(service.get_poll(poll_id))


@router.post("/{poll_id}/close", response_model=PollRead, summary="Close a poll")
def close_poll(
    poll_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    service: PollService = Depends(get_poll_service),
) -> PollRead:
    return PollRead.model_validate(service.close_poll(poll_id=poll_id, closed_by=admin.voter_id))


@router.get("/{poll_id}/tally", response_model=TallyRead, summary="Approved vote tally")
def get_tally(
    poll_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: PollService = Depends(get_poll_service),
) -> TallyRead:
    return _tally_read(service.get_poll(poll_id))


@router.websocket("/{poll_id}/live")
async def live_tally(
    websocket: WebSocket,
    poll_id: str,
    token: str = Query(default=""),
    identity: IdentityService = Depends(get_identity_service),
    service: PollService = Depends(get_poll_service),
    feed: ChangeFeed = Depends(get_change_feed),
) -> None:
    """Push the tally on connect and again after every change of the poll."""

    def _snapshot(kind: str) -> dict[str, Any]:
        try:
            return {"event": kind, "tally": _tally_read(service.get_poll(poll_id)).model_dump(mode="json")}
        finally:
            service.release()

    try:
        await run_in_threadpool(identity.current_voter, token)
        initial = await run_in_threadpool(_snapshot, "snapshot")
    except DuesPollError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return

    await stream_snapshots(websocket, feed=feed, topic=poll_topic(poll_id), snapshot=_snapshot, initial=initial)
    logger.debug("live tally closed", extra={"poll_id": poll_id})


__all__ = ["router"]
