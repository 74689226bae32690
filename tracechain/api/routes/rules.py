from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Query, status

from tracechain.api.schemas.rule import (
    RuleActivation,
    RuleCreate,
    RuleResponse,
    RulesForTypeResponse,
)
from tracechain.core.dependencies import CurrentActor, CurrentUser, Registry
from tracechain.domain.enums import EntityType

router = APIRouter(tags=["rules"])


@router.post("/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def post_rule(payload: RuleCreate, service: Registry, actor: CurrentActor):
    """
    Add a compliance rule to the catalog.

    Administrator only.
    """
    return await service.add_rule(**payload.model_dump(), actor=actor)


@router.get("/rules", response_model=list[RuleResponse])
async def get_rules(
    service: Registry,
    user: CurrentUser,
    active_only: Annotated[bool, Query()] = False,
):
    return await service.list_rules(active_only=active_only)


@router.get("/rules/by-type/{entity_type}", response_model=RulesForTypeResponse)
async def get_rules_for_type(entity_type: EntityType, service: Registry, user: CurrentUser):
    """Rule ids indexed under an entity type, active and inactive."""
    return RulesForTypeResponse(
        entity_type=entity_type.value, rule_ids=await service.rules_for_type(entity_type)
    )


@router.get("/rules/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: str, service: Registry, user: CurrentUser):
    return await service.get_rule(rule_id)


@router.put("/rules/{rule_id}/active", response_model=RuleResponse)
async def set_rule_active(
    rule_id: str, payload: RuleActivation, service: Registry, actor: CurrentActor
):
    """Activate or deactivate a rule. Administrator only."""
    return await service.set_rule_active(rule_id, active=payload.active, actor=actor)
