from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class ActorAdd(BaseModel):
    actor: str


class ActorResponse(BaseModel):
    entity_id: int
    actor: str
    added_by: str
    added_at: datetime

    model_config = ConfigDict(from_attributes=True)
