from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from tracechain.api.schemas.checkpoint import CheckpointResponse
from tracechain.api.schemas.compliance import ComplianceStatusResponse
from tracechain.domain.enums import EntityType


class EntityCreate(BaseModel):
    name: str
    entity_type: EntityType
    batch_key: str = Field(description="Unique production batch/lot identifier")
    valid_from: datetime
    valid_until: datetime
    attributes: list[str] = Field(default_factory=list)
    metadata_ref: str | None = Field(
        default=None, description="Opaque reference to off-system metadata"
    )
    origin_location: str | None = Field(
        default=None, description="Location recorded on the registration checkpoint"
    )


class EntityBatchCreate(BaseModel):
    items: list[EntityCreate]


class EntityUpdate(BaseModel):
    """Partial update; only the fields that are sent are changed."""

    name: str | None = None
    entity_type: EntityType | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    attributes: list[str] | None = None
    metadata_ref: str | None = None
    expected_version: int | None = Field(
        default=None,
        description=(
            "Expected entity version for optimistic locking. "
            "The update fails with 409 if the entity changed in the meantime."
        ),
    )


class EntityResponse(BaseModel):
    entity_id: int
    name: str
    entity_type: str
    owner: str
    batch_key: str
    valid_from: datetime
    valid_until: datetime
    attributes: list[str]
    metadata_ref: str | None = None
    is_active: bool
    checkpoint_count: int
    check_count: int
    version: int
    created_at: datetime
    updated_at: datetime
    deactivated_at: datetime | None = None
    deactivated_by: str | None = None

    model_config = ConfigDict(from_attributes=True)


class EntitySummaryResponse(BaseModel):
    """Derived read-only view of an entity."""

    entity: EntityResponse
    is_expired: bool
    checkpoint_count: int
    actor_count: int
    latest_checkpoint: CheckpointResponse | None = None
    trace_duration_hours: float
    compliance: ComplianceStatusResponse
    compliance_score: float | None = None

    model_config = ConfigDict(from_attributes=True)


class EntityCountResponse(BaseModel):
    count: int


class EntityExpiryResponse(BaseModel):
    entity_id: int
    at: datetime
    is_expired: bool
