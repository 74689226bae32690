from __future__ import annotations

from fastapi import APIRouter, status

from tracechain.api.schemas.compliance import (
    BatchCheckCreate,
    BatchCheckResponse,
    CheckCreate,
    CheckResponse,
    CheckResultResponse,
    ComplianceStatusResponse,
    EvidenceUpdate,
    SkippedCheckResponse,
)
from tracechain.core.dependencies import CurrentActor, CurrentUser, Registry

router = APIRouter(tags=["compliance"])


@router.post(
    "/entities/{entity_id}/compliance/checks",
    response_model=CheckResultResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_check(
    entity_id: int, payload: CheckCreate, service: Registry, actor: CurrentActor
):
    """
    Record one compliance observation and return the recomputed status.

    Checks against rules with severity >= 4 need confidence >= 80 (422 otherwise).
    """
    record, fold = await service.check(entity_id, **payload.model_dump(), actor=actor)
    return CheckResultResponse(
        check=CheckResponse.model_validate(record),
        status=ComplianceStatusResponse.model_validate(fold),
    )


@router.post(
    "/entities/{entity_id}/compliance/checks/batch",
    response_model=BatchCheckResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_checks(
    entity_id: int, payload: BatchCheckCreate, service: Registry, actor: CurrentActor
):
    """
    Record several observations in one transaction.

    Items naming an unknown or inactive rule are skipped and reported; any
    other invalid item rejects the whole batch.
    """
    result = await service.batch_check(
        entity_id, items=[item.model_dump() for item in payload.items], actor=actor
    )
    return BatchCheckResponse(
        applied=result.applied_indexes,
        skipped=[SkippedCheckResponse.model_validate(s) for s in result.skipped],
        status=ComplianceStatusResponse.model_validate(result.status) if result.status else None,
    )


@router.get("/entities/{entity_id}/compliance/checks", response_model=list[CheckResponse])
async def get_history(entity_id: int, service: Registry, user: CurrentUser):
    return await service.history(entity_id)


@router.get(
    "/entities/{entity_id}/compliance/checks/{check_index}", response_model=CheckResponse
)
async def get_check(entity_id: int, check_index: int, service: Registry, user: CurrentUser):
    return await service.get_check(entity_id, check_index)


@router.patch(
    "/entities/{entity_id}/compliance/checks/{check_index}/evidence",
    response_model=CheckResponse,
)
async def update_evidence(
    entity_id: int,
    check_index: int,
    payload: EvidenceUpdate,
    service: Registry,
    actor: CurrentActor,
):
    """Replace the evidence of a recorded check (recording actor or admin)."""
    return await service.update_evidence(
        entity_id, check_index, evidence=payload.evidence, actor=actor
    )


@router.get("/entities/{entity_id}/compliance/status", response_model=ComplianceStatusResponse)
async def get_status(entity_id: int, service: Registry, user: CurrentUser):
    return ComplianceStatusResponse.model_validate(await service.status(entity_id))


@router.post(
    "/entities/{entity_id}/compliance/recompute", response_model=ComplianceStatusResponse
)
async def recompute_status(entity_id: int, service: Registry, actor: CurrentActor):
    """Rebuild the status projection from the full check history."""
    return ComplianceStatusResponse.model_validate(
        await service.recompute(entity_id, actor=actor)
    )
