from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from sqlalchemy.orm import Session

from duespoll.core.config import get_settings
from duespoll.models import Voter
from duespoll.services.identity import IdentityService
from tests.conftest import png_bytes


def test_live_tally_pushes_snapshot_and_updates(
    client: TestClient,
    db_session: Session,
    admin_headers: dict[str, str],
    student_headers: dict[str, str],
    student: Voter,
    make_poll,
) -> None:
    poll = make_poll()
    poll_id = poll.id
    x_id = poll.candidates[0].id
    token = IdentityService(db_session, settings=get_settings()).issue_tokens(student.id).access_token

    with client.websocket_connect(f"/api/polls/{poll_id}/live?token={token}") as websocket:
        initial = websocket.receive_json()
        assert initial["event"] == "snapshot"
        assert initial["tally"]["total_votes"] == 0

        client.post(f"/api/ballots/{poll_id}", headers=student_headers, json={"candidate_id": x_id})
        client.post(
            f"/api/ballots/{poll_id}/proof",
            headers={**student_headers, "Content-Type": "image/png"},
            content=png_bytes(),
        )
        client.post(f"/api/admin/approvals/{student.id}/{poll_id}/approve", headers=admin_headers)

        update = websocket.receive_json()
        assert update["event"] == "tally_changed"
        assert update["tally"]["entries"][0] == {
            "candidate_id": x_id,
            "name": "X",
            "image_url": update["tally"]["entries"][0]["image_url"],
            "votes": 1,
            "percentage": 100.0,
        }


def test_live_tally_requires_token(client: TestClient, make_poll) -> None:
    poll = make_poll()

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/api/polls/{poll.id}/live") as websocket:
            websocket.receive_json()
