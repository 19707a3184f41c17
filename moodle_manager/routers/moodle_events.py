"""Launcher events streaming via Server-Sent Events (SSE).

Pushes image pull progress and launcher state changes so the UI can render
a progress bar without polling.
"""

import asyncio
import json
import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from moodle_manager.services.moodle_launcher import (
    LauncherEvent,
    MoodleLauncher,
    get_moodle_launcher,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/events")
async def launcher_events_stream(
    launcher: MoodleLauncher = Depends(get_moodle_launcher),
) -> EventSourceResponse:
    """
    Stream launcher events via Server-Sent Events.

    Event types:
    - connected: sent once with the current state
    - docker:pull:progress: {"percentage", "status"}; percentage -1 means status text only
    - launcher:state: {"state", "error"}
    """
    queue: asyncio.Queue = asyncio.Queue()

    def on_event(event: LauncherEvent) -> None:
        queue.put_nowait(event)

    async def event_generator():
        unsubscribe = launcher.subscribe(on_event)
        logger.info("SSE client connected")
        try:
            yield {
                "event": "connected",
                "data": json.dumps({
                    "state": launcher.state.value,
                    "progress": launcher.last_progress,
                    "timestamp": datetime.now().isoformat(),
                }),
            }
            while True:
                event = await queue.get()
                yield {"event": event.event, "data": json.dumps(event.data)}
        except asyncio.CancelledError:
            logger.info("SSE client disconnected")
            raise
        finally:
            unsubscribe()

    return EventSourceResponse(event_generator())
