import json
import time
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from app.models import ChangeBatch
from app.services.change_feed import change_feed

router = APIRouter(prefix="/realtime", tags=["realtime"])

MAX_WAIT_SECONDS = 25.0


def _parse_topics(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@router.get("/changes", response_model=ChangeBatch)
def list_changes(
    since: int = Query(default=0, ge=0),
    topics: Optional[str] = Query(default=None),
    wait_seconds: float = Query(default=0.0, ge=0.0),
):
    """Long-poll: returns as soon as a matching change exists or ``wait_seconds`` elapse."""
    # Read before querying: every matching record up to ``head`` is in ``changes``.
    head = change_feed.cursor
    changes = change_feed.changes_since(
        since,
        topics=_parse_topics(topics),
        wait_seconds=min(wait_seconds, MAX_WAIT_SECONDS),
    )
    cursor = max(since, head, changes[-1].seq if changes else 0)
    # Checked after the wait: evictions during it count too.
    reset = change_feed.missed_since(since)
    return ChangeBatch(cursor=cursor, reset=reset, changes=changes)


@router.get("/stream")
def stream_changes(
    since: Optional[int] = Query(default=None, ge=0),
    topics: Optional[str] = Query(default=None),
    max_seconds: float = Query(default=300.0, gt=0.0, le=3600.0),
    max_events: Optional[int] = Query(default=None, ge=1),
):
    wanted = _parse_topics(topics)
    start_cursor = change_feed.cursor if since is None else since

    def event_generator():
        cursor = start_cursor
        sent = 0
        deadline = time.monotonic() + max_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            changes = change_feed.changes_since(cursor, topics=wanted, wait_seconds=min(15.0, remaining))
            if change_feed.missed_since(cursor):
                cursor = max(cursor, change_feed.cursor)
                yield f"event: reset\ndata: {json.dumps({'cursor': cursor})}\n\n"
                continue
            if not changes:
                yield ": keepalive\n\n"
                continue
            for record in changes:
                cursor = record.seq
                sent += 1
                yield f"id: {record.seq}\ndata: {record.model_dump_json()}\n\n"
                if max_events is not None and sent >= max_events:
                    return
        yield "data: [DONE]\n\n"

    return StreamingResponse(event_generator(), media_type="text/event-stream")
