"""
Repository functions for the compliance Rule Catalog.

The catalog is shared by every entity and administered only by the admin
actor. It stays administrable while the registry is paused.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tracechain.core.audit import create_audit_log_async, snapshot_entity
from tracechain.core.config import settings
from tracechain.core.errors import ConflictError, NotFoundError, ValidationError
from tracechain.core.events import record_event
from tracechain.db.models import ComplianceRule
from tracechain.domain.enums import AuditEntityType, EntityType, EventType
from tracechain.repos.common import (
    coerce_entity_type,
    flush_or_conflict,
    require_admin,
    require_text,
)

RULE_NOT_FOUND = "Rule not found"
MAX_RULE_ID_LENGTH = 100

logger = logging.getLogger(__name__)


async def find_rule(db: AsyncSession, *, rule_id: str) -> ComplianceRule | None:
    result = await db.execute(select(ComplianceRule).where(ComplianceRule.rule_id == rule_id))
    return result.scalar_one_or_none()


async def get_rule(db: AsyncSession, *, rule_id: str) -> ComplianceRule:
    rule = await find_rule(db, rule_id=rule_id)
    if rule is None:
        raise NotFoundError(RULE_NOT_FOUND, details={"rule_id": rule_id})
    return rule


async def add_rule(
    db: AsyncSession,
    *,
    rule_id: str,
    name: str,
    entity_type: EntityType | str,
    requirement: str,
    standard: str,
    severity: int,
    actor: str,
) -> ComplianceRule:
    """
    Add a rule to the catalog (admin only).

    Raises:
        AuthorizationError: Caller is not the admin
        ValidationError: Empty id/name, unknown entity type, severity outside 1-5
        ConflictError: Rule id already exists
    """
    require_admin(actor)
    rule_id = require_text(rule_id, "rule_id", max_length=MAX_RULE_ID_LENGTH)
    name = require_text(name, "name", max_length=settings.max_name_length)
    entity_type = coerce_entity_type(entity_type)
    if isinstance(severity, bool) or not isinstance(severity, int) or not 1 <= severity <= 5:
        raise ValidationError(
            "severity must be between 1 and 5", details={"severity": severity}
        )

    if await find_rule(db, rule_id=rule_id) is not None:
        raise ConflictError("Rule id already exists", details={"rule_id": rule_id})

    now = datetime.now(UTC)
    rule = ComplianceRule(
        rule_id=rule_id,
        name=name,
        entity_type=entity_type,
        requirement=requirement or "",
        standard=standard or "",
        severity=severity,
        is_active=True,
        created_by=actor,
        created_at=now,
        updated_at=now,
    )
    db.add(rule)
    await flush_or_conflict(db, "Rule id already exists", details={"rule_id": rule_id})

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.RULE,
        entity_id=rule_id,
        action="ADD_RULE",
        new_value=snapshot_entity(rule),
        performed_by=actor,
    )
    record_event(
        db,
        EventType.RULE_ADDED,
        entity_id=None,
        actor=actor,
        payload={
            "rule_id": rule_id,
            "entity_type": entity_type,
            "severity": severity,
            "standard": rule.standard,
        },
    )
    logger.info("Added rule %s for %s (severity %s)", rule_id, entity_type.value, severity)
    return rule


async def set_rule_active(
    db: AsyncSession, *, rule_id: str, active: bool, actor: str
) -> ComplianceRule:
    """Toggle a rule's active flag (admin only). Setting the current value is a no-op."""
    require_admin(actor)
    rule = await get_rule(db, rule_id=rule_id)
    if rule.is_active == active:
        return rule

    old_value = snapshot_entity(rule)
    rule.is_active = active
    rule.updated_at = datetime.now(UTC)
    await db.flush()

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.RULE,
        entity_id=rule_id,
        action="ACTIVATE_RULE" if active else "DEACTIVATE_RULE",
        old_value=old_value,
        new_value=snapshot_entity(rule),
        performed_by=actor,
    )
    record_event(
        db,
        EventType.RULE_ACTIVATION_CHANGED,
        entity_id=None,
        actor=actor,
        payload={"rule_id": rule_id, "active": active},
    )
    return rule


async def rules_for_type(db: AsyncSession, *, entity_type: EntityType | str) -> list[str]:
    """Rule ids indexed under an entity type (active and inactive), ordered by id."""
    stmt = (
        select(ComplianceRule.rule_id)
        .where(ComplianceRule.entity_type == coerce_entity_type(entity_type))
        .order_by(ComplianceRule.rule_id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def list_rules(db: AsyncSession, *, active_only: bool = False) -> list[ComplianceRule]:
    stmt = select(ComplianceRule)
    if active_only:
        stmt = stmt.where(ComplianceRule.is_active.is_(True))
    result = await db.execute(stmt.order_by(ComplianceRule.rule_id))
    return list(result.scalars().all())
