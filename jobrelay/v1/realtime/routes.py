"""
WebSocket stream of job change events.
"""

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from jobrelay.config.logging import get_logger
from jobrelay.v1.realtime.notifier import (
    ChangeEventType,
    ChangeNotifier,
    Subscription,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["realtime"])


@router.websocket("/stream")
async def stream_job_changes(
    websocket: WebSocket,
    organization_id: str | None = None,
    subject_id: str | None = None,
    event_type: ChangeEventType | None = None,
) -> None:
    """Push {table, event_type, row} events for matching job records."""
    notifier: ChangeNotifier = websocket.app.state.notifier
    await websocket.accept()

    subscription = notifier.subscribe(
        organization_id=organization_id,
        subject_id=subject_id,
        event_types=[event_type] if event_type else None,
    )
    logger.info(
        "Change stream opened",
        organization_id=organization_id,
        subject_id=subject_id,
    )

    sender = asyncio.create_task(_forward(websocket, subscription))
    try:
        # Client messages are ignored; reading only surfaces the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Change stream closed by client", subject_id=subject_id)
    finally:
        subscription.close()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.model_dump(mode="json"))
