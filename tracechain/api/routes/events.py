from typing import Annotated

from fastapi import APIRouter, Query

from tracechain.api.schemas.event import EventPage
from tracechain.core.dependencies import CurrentUser, Registry
from tracechain.core.events import EventEnvelope

router = APIRouter(tags=["events"])


@router.get("/events", response_model=EventPage)
async def poll_events(
    service: Registry,
    user: CurrentUser,
    after: Annotated[int, Query(ge=0, description="Return events with a greater position")] = 0,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    entity_id: Annotated[int | None, Query()] = None,
) -> EventPage:
    """
    Poll committed events in dispatch order.

    Pass the returned `next_after` as `after` on the next call.
    """
    rows = await service.events(after=after, limit=limit, entity_id=entity_id)
    items = [EventEnvelope.model_validate(row) for row in rows]
    return EventPage(items=items, next_after=items[-1].position if items else after)
