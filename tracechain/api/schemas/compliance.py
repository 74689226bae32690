from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CheckCreate(BaseModel):
    rule_id: str
    passed: bool
    evidence: str = Field(description="Evidence text or reference supporting the outcome")
    confidence: int = Field(description="Auditor confidence, 0-100")
    note: str | None = None


class BatchCheckCreate(BaseModel):
    items: list[CheckCreate]


class EvidenceUpdate(BaseModel):
    evidence: str


class CheckResponse(BaseModel):
    entity_id: int
    check_index: int
    rule_id: str
    passed: bool
    evidence: str
    confidence: int
    actor: str
    timestamp: datetime
    note: str | None = None
    evidence_updated_at: datetime | None = None
    evidence_updated_by: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ComplianceStatusResponse(BaseModel):
    compliant: bool
    total_checks: int
    passed_checks: int
    failed_checks: int
    failed_rule_ids: list[str]
    last_checked_at: datetime | None = None
    score: float | None = Field(default=None, description="passed/total*100, null with no checks")

    model_config = ConfigDict(from_attributes=True)


class CheckResultResponse(BaseModel):
    check: CheckResponse
    status: ComplianceStatusResponse


class SkippedCheckResponse(BaseModel):
    position: int
    rule_id: str
    reason: str

    model_config = ConfigDict(from_attributes=True)


class BatchCheckResponse(BaseModel):
    applied: list[int] = Field(description="check_index of every applied check")
    skipped: list[SkippedCheckResponse]
    status: ComplianceStatusResponse | None = None
