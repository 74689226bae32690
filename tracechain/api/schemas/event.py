from __future__ import annotations

from pydantic import BaseModel

from tracechain.core.events import EventEnvelope


class EventPage(BaseModel):
    items: list[EventEnvelope]
    next_after: int
