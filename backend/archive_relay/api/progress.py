"""WebSocket endpoint attaching a client to the progress channel."""

import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..logging import get_logger
from ..progress import ProgressEvent

logger = get_logger("websocket")

router = APIRouter(tags=["progress"])


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue):
    """Drain the subscriber queue onto the socket, in publish order."""
    while True:
        event: ProgressEvent = await queue.get()
        try:
            await websocket.send_json(event.to_dict())
        except (WebSocketDisconnect, RuntimeError):
            return  # Client went away; the receive loop cleans up


@router.websocket("/ws/progress/{subscriber_id}")
async def progress_stream(websocket: WebSocket, subscriber_id: str):
    """
    Stream progress events for jobs submitted with this subscriber id.

    Clients may send:
    - {"type": "cancel", "job_id": "..."} to stop one of their jobs
    - anything else, which is ignored (keeps the connection alive)
    """
    state = websocket.app.state
    await websocket.accept()

    queue = state.progress.subscribe(subscriber_id)
    sender = asyncio.create_task(_forward_events(websocket, queue), name=f"ws-{subscriber_id}")

    try:
        await websocket.send_json({"type": "subscribed", "subscriber_id": subscriber_id})

        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(message, dict):
                continue

            if message.get("type") == "cancel":
                job_id = message.get("job_id", "")
                job = state.jobs.get(job_id)
                accepted = job is not None and job.subscriber_id == subscriber_id and state.jobs.cancel(job_id)
                await websocket.send_json({
                    "type": "cancel_ack",
                    "job_id": job_id,
                    "accepted": bool(accepted),
                })

    except WebSocketDisconnect:
        logger.debug(f"Subscriber {subscriber_id} disconnected")
    finally:
        sender.cancel()
        state.progress.unsubscribe(subscriber_id, queue)

        if state.config.cancel_on_disconnect and not state.progress.has_subscriber(subscriber_id):
            for job_id in state.jobs.jobs_for_subscriber(subscriber_id):
                state.jobs.cancel(job_id)
