"""Admin review queue and tally maintenance endpoints."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from duespoll.api.deps import get_ballot_service, get_change_feed, get_db_session, get_identity_service
from duespoll.api.live import stream_snapshots
from duespoll.api.routes.auth import AuthenticatedUser, require_admin
from duespoll.schemas import BallotRead, PendingApprovalRead, ReconciliationRead
from duespoll.services.ballots import BallotService
from duespoll.services.changes import APPROVALS_TOPIC, ChangeFeed
from duespoll.services.errors import DuesPollError, PermissionDeniedError
from duespoll.services.identity import IdentityService
from duespoll.services.tally import reconcile_poll_tally

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


@router.get("/approvals", response_model=list[PendingApprovalRead], summary="Pending approval queue")
def pending_approvals(
    admin: AuthenticatedUser = Depends(require_admin),
    service: BallotService = Depends(get_ballot_service),
) -> list[PendingApprovalRead]:
    return [PendingApprovalRead.model_validate(row) for row in service.pending_approvals()]


@router.websocket("/approvals/live")
async def live_approvals(
    websocket: WebSocket,
    token: str = Query(default=""),
    identity: IdentityService = Depends(get_identity_service),
    service: BallotService = Depends(get_ballot_service),
    feed: ChangeFeed = Depends(get_change_feed),
) -> None:
    """Push the pending queue on connect and after every queue change."""

    def _authorise() -> None:
        voter = identity.current_voter(token)
        if not identity.is_admin(voter.id):
            raise PermissionDeniedError("Only administrators can review payment proofs.")

    def _snapshot(kind: str) -> dict[str, Any]:
        try:
            rows = service.pending_approvals()
            return {
                "event": kind,
                "approvals": [PendingApprovalRead.model_validate(row).model_dump(mode="json") for row in rows],
            }
        finally:
            service.release()

    try:
        await run_in_threadpool(_authorise)
        initial = await run_in_threadpool(_snapshot, "snapshot")
    except DuesPollError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return

    await stream_snapshots(websocket, feed=feed, topic=APPROVALS_TOPIC, snapshot=_snapshot, initial=initial)
    logger.debug("live approvals closed")


@router.post("/approvals/{voter_id}/{poll_id}/approve", response_model=BallotRead, summary="Approve a ballot")
def approve_ballot(
    voter_id: str,
    poll_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    service: BallotService = Depends(get_ballot_service),
) -> BallotRead:
    ballot = service.approve(admin_id=admin.voter_id, voter_id=voter_id, poll_id=poll_id)
    return BallotRead.model_validate(ballot)


@router.post("/approvals/{voter_id}/{poll_id}/reject", response_model=BallotRead, summary="Reject a ballot")
def reject_ballot(
    voter_id: str,
    poll_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    service: BallotService = Depends(get_ballot_service),
) -> BallotRead:
    ballot = service.reject(admin_id=admin.voter_id, voter_id=voter_id, poll_id=poll_id)
    return BallotRead.model_validate(ballot)


@router.post("/polls/{poll_id}/reconcile", response_model=ReconciliationRead, summary="Repair tally drift")
def reconcile_tally(
    poll_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    session: Session = Depends(get_db_session),
) -> ReconciliationRead:
    report = reconcile_poll_tally(session, poll_id=poll_id)
    return ReconciliationRead(
        poll_id=report.poll_id,
        consistent=report.consistent,
        corrections={
            candidate_id: {"recorded": recorded, "expected": expected}
            for candidate_id, (recorded, expected) in report.corrections.items()
        },
    )


__all__ = ["router"]
