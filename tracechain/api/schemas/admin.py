from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class RegistryStateResponse(BaseModel):
    paused: bool
    updated_by: str | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
