from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from tracechain.domain.enums import EntityType


class RuleCreate(BaseModel):
    rule_id: str
    name: str
    entity_type: EntityType
    requirement: str = ""
    standard: str = Field(default="", description="Regulatory standard, e.g. GDP or ISO 9001")
    severity: int = Field(description="1 (informational) to 5 (critical)")


class RuleActivation(BaseModel):
    active: bool


class RuleResponse(BaseModel):
    rule_id: str
    name: str
    entity_type: str
    requirement: str
    standard: str
    severity: int
    is_active: bool
    created_by: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RulesForTypeResponse(BaseModel):
    entity_type: str
    rule_ids: list[str]
