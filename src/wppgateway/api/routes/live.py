"""WebSocket stream of an instance's live events.

The socket receives every envelope published to `instance_<id>`. While
idle, a ping event is sent every HEARTBEAT_SECONDS so closed sockets are
noticed and released.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from wppgateway.fanout import channel_for
from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context

from ..services import get_services

router = APIRouter(tags=["live"])

logger = get_logger(__name__)

POLL_SECONDS = 1.0
HEARTBEAT_SECONDS = 25.0


@router.websocket("/ws/instances/{instance_id}")
async def instance_events(websocket: WebSocket, instance_id: str) -> None:
    hub = get_services().hub
    await websocket.accept()
    subscription = hub.subscribe(instance_id)
    logger.info(
        "live subscriber connected",
        extra={"extra_fields": safe_log_context(channel=channel_for(instance_id))},
    )
    last_sent = time.monotonic()
    try:
        while True:
            envelope = await run_in_threadpool(subscription.get, POLL_SECONDS)
            if envelope is not None:
                await websocket.send_json(envelope)
                last_sent = time.monotonic()
            elif time.monotonic() - last_sent >= HEARTBEAT_SECONDS:
                await websocket.send_json({"event": "ping", "channel": subscription.channel})
                last_sent = time.monotonic()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(subscription)
        logger.info(
            "live subscriber disconnected",
            extra={
                "extra_fields": safe_log_context(
                    channel=subscription.channel, dropped=subscription.dropped
                )
            },
        )
