from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CheckpointCreate(BaseModel):
    status: str = Field(description="Custody status, e.g. shipped or received")
    location: str
    note: str | None = None
    temperature: float | None = None
    humidity: float | None = Field(default=None, description="Relative humidity, 0-100")
    latitude: float | None = None
    longitude: float | None = None


class CheckpointBatchCreate(BaseModel):
    items: list[CheckpointCreate]


class CheckpointUpdate(BaseModel):
    location: str | None = None
    note: str | None = None
    temperature: float | None = None
    humidity: float | None = None
    latitude: float | None = None
    longitude: float | None = None


class CheckpointResponse(BaseModel):
    entity_id: int
    sequence: int
    timestamp: datetime
    location: str
    actor: str
    status: str
    temperature: float | None = None
    humidity: float | None = None
    latitude: float | None = None
    longitude: float | None = None
    note: str | None = None
    updated_at: datetime | None = None
    updated_by: str | None = None

    model_config = ConfigDict(from_attributes=True)


class TraceLinkResponse(BaseModel):
    """One hop between two consecutive checkpoints."""

    from_sequence: int
    to_sequence: int
    from_location: str
    to_location: str
    from_actor: str
    to_actor: str
    status: str
    from_timestamp: datetime
    to_timestamp: datetime
    duration_seconds: float
    duration_hours: float
    distance_km: float | None = None

    model_config = ConfigDict(from_attributes=True)
