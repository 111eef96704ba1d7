"""WebSocket streaming of change-feed snapshots."""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from fastapi import WebSocket
from fastapi.concurrency import run_in_threadpool

from duespoll.services.changes import ChangeEvent, ChangeFeed

Snapshot = Callable[[str], dict[str, Any]]


async def stream_snapshots(
    websocket: WebSocket,
    *,
    feed: ChangeFeed,
    topic: str,
    snapshot: Snapshot,
    initial: dict[str, Any],
) -> None:
    """Send ``initial``, then a fresh snapshot after every event on ``topic``.

    Returns when the client disconnects. ``snapshot`` runs in the threadpool
    and receives the event kind.
    """

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()

    def _enqueue(event: ChangeEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    with feed.subscribe(topic, _enqueue):
        await websocket.send_json(initial)
        receiver = asyncio.ensure_future(websocket.receive())
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    event = getter.result()
                    await websocket.send_json(await run_in_threadpool(snapshot, event.kind))
                else:
                    getter.cancel()
                if receiver in done:
                    if receiver.result()["type"] == "websocket.disconnect":
                        break
                    receiver = asyncio.ensure_future(websocket.receive())
        finally:
            receiver.cancel()


__all__ = ["Snapshot", "stream_snapshots"]
