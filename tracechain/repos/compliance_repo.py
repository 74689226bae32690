"""
Repository functions for compliance evidence and the derived status.

Checks are appended per entity at `check_index = entity.check_count`. The
`compliance_status` row is a projection: after every append it is rebuilt by
folding the entity's full history, and `recompute` performs the same rebuild
on demand.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tracechain.compliance.evaluator import StatusFold, fold_status, validate_check
from tracechain.core.audit import create_audit_log_async, snapshot_entity
from tracechain.core.config import settings
from tracechain.core.errors import (
    AuthorizationError,
    NotFoundError,
    StateError,
    TraceChainError,
    ValidationError,
)
from tracechain.core.events import new_batch_id, record_event
from tracechain.core.optimistic_lock import bump_version
from tracechain.db.models import ComplianceCheck, ComplianceRule, ComplianceStatus, Entity
from tracechain.domain.enums import AuditEntityType, EventType, SkipReason
from tracechain.repos.common import (
    ensure_not_paused,
    flush_or_conflict,
    get_entity,
    get_entity_for_update,
    is_admin,
    require_authorized,
    validate_note,
)
from tracechain.repos.rule_repo import RULE_NOT_FOUND, find_rule

logger = logging.getLogger(__name__)

CHECK_ITEM_FIELDS = frozenset({"rule_id", "passed", "evidence", "confidence", "note"})


@dataclass(frozen=True)
class SkippedCheck:
    position: int
    rule_id: str
    reason: SkipReason


@dataclass
class BatchCheckResult:
    applied: list[ComplianceCheck] = field(default_factory=list)
    skipped: list[SkippedCheck] = field(default_factory=list)
    status: StatusFold | None = None

    @property
    def applied_indexes(self) -> list[int]:
        return [check.check_index for check in self.applied]


def _fold_from_row(row: ComplianceStatus) -> StatusFold:
    return StatusFold(
        compliant=row.compliant,
        total_checks=row.total_checks,
        passed_checks=row.passed_checks,
        failed_checks=row.failed_checks,
        failed_rule_ids=list(row.failed_rule_ids),
        last_checked_at=row.last_checked_at,
    )


def _require_active_rule(rule: ComplianceRule | None, rule_id: str) -> ComplianceRule:
    if rule is None:
        raise NotFoundError(RULE_NOT_FOUND, details={"rule_id": rule_id})
    if not rule.is_active:
        raise StateError("Rule is inactive", details={"rule_id": rule_id})
    return rule


async def _gate_checker(db: AsyncSession, *, entity: Entity, actor: str) -> None:
    if settings.compliance_checks_require_authorization:
        await require_authorized(db, entity=entity, actor=actor)


def _validate_item(rule: ComplianceRule, item: Mapping[str, Any]) -> dict[str, Any]:
    passed = item.get("passed")
    if not isinstance(passed, bool):
        raise ValidationError("passed must be a boolean", details={"rule_id": rule.rule_id})
    confidence = item.get("confidence")
    validate_check(
        evidence=item.get("evidence") or "",
        confidence=confidence,
        severity=rule.severity,
        rule_id=rule.rule_id,
    )
    return {
        "rule_id": rule.rule_id,
        "passed": passed,
        "evidence": item["evidence"],
        "confidence": confidence,
        "note": validate_note(item.get("note")),
    }


def _append_check(
    db: AsyncSession, *, entity: Entity, actor: str, timestamp: datetime, **fields: Any
) -> ComplianceCheck:
    check = ComplianceCheck(
        entity_id=entity.entity_id,
        check_index=entity.check_count,
        actor=actor,
        timestamp=timestamp,
        **fields,
    )
    db.add(check)
    entity.check_count += 1
    return check


async def _record_checked(
    db: AsyncSession, *, entity: Entity, check: ComplianceCheck, actor: str, batch_id: str | None
) -> None:
    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.COMPLIANCE_CHECK,
        entity_id=f"{entity.entity_id}:{check.check_index}",
        action="CHECK",
        new_value=snapshot_entity(check),
        performed_by=actor,
    )
    record_event(
        db,
        EventType.COMPLIANCE_CHECKED,
        entity_id=entity.entity_id,
        actor=actor,
        payload={
            "entity_id": entity.entity_id,
            "check_index": check.check_index,
            "rule_id": check.rule_id,
            "passed": check.passed,
            "confidence": check.confidence,
            "version": entity.version,
        },
        batch_id=batch_id,
    )


async def _rebuild_status(
    db: AsyncSession, *, entity: Entity, actor: str, batch_id: str | None = None
) -> tuple[StatusFold, bool]:
    """
    Fold the full history into the projection row.

    Emits ComplianceStatusUpdated only when the stored row changes.

    Returns:
        (new status, whether the row changed)
    """
    await db.flush()
    fold = fold_status(await list_history(db, entity_id=entity.entity_id))

    row = await db.get(ComplianceStatus, entity.entity_id)
    if row is not None and _fold_from_row(row) == fold:
        return fold, False

    if row is None:
        row = ComplianceStatus(entity_id=entity.entity_id)
        db.add(row)
    row.compliant = fold.compliant
    row.total_checks = fold.total_checks
    row.passed_checks = fold.passed_checks
    row.failed_checks = fold.failed_checks
    row.failed_rule_ids = list(fold.failed_rule_ids)
    row.last_checked_at = fold.last_checked_at
    await db.flush()

    record_event(
        db,
        EventType.COMPLIANCE_STATUS_UPDATED,
        entity_id=entity.entity_id,
        actor=actor,
        payload={
            "entity_id": entity.entity_id,
            "compliant": fold.compliant,
            "total_checks": fold.total_checks,
            "passed_checks": fold.passed_checks,
            "failed_checks": fold.failed_checks,
            "failed_rule_ids": list(fold.failed_rule_ids),
            "version": entity.version,
        },
        batch_id=batch_id,
    )
    return fold, True


async def check(
    db: AsyncSession,
    *,
    entity_id: int,
    rule_id: str,
    passed: bool,
    evidence: str,
    confidence: int,
    actor: str,
    note: str | None = None,
) -> tuple[ComplianceCheck, StatusFold]:
    """
    Record one compliance observation and rebuild the entity's status.

    Validation order: rule exists, rule active, entity exists, registry not
    paused, evidence, confidence range, confidence gate for critical rules.
    Nothing is persisted when any of these fail.
    """
    rule = _require_active_rule(await find_rule(db, rule_id=rule_id), rule_id)
    entity = await get_entity_for_update(db, entity_id=entity_id)
    await ensure_not_paused(db)
    await _gate_checker(db, entity=entity, actor=actor)
    fields = _validate_item(
        rule,
        {
            "rule_id": rule_id,
            "passed": passed,
            "evidence": evidence,
            "confidence": confidence,
            "note": note,
        },
    )

    record = _append_check(db, entity=entity, actor=actor, timestamp=datetime.now(UTC), **fields)
    bump_version(entity)
    await flush_or_conflict(
        db,
        "Check index already taken",
        details={"entity_id": entity_id, "check_index": record.check_index},
    )
    await _record_checked(db, entity=entity, check=record, actor=actor, batch_id=None)
    status, _ = await _rebuild_status(db, entity=entity, actor=actor)

    logger.info(
        "Compliance check %s on entity %s rule %s passed=%s",
        record.check_index,
        entity_id,
        rule_id,
        passed,
    )
    return record, status


async def batch_check(
    db: AsyncSession, *, entity_id: int, items: Sequence[Mapping[str, Any]], actor: str
) -> BatchCheckResult:
    """
    Record several compliance observations as one unit.

    Items naming an unknown or inactive rule are skipped and reported. Any
    other invalid item, including a confidence-gate failure, aborts the whole
    batch. The status is rebuilt once, after all applied checks.
    """
    entity = await get_entity_for_update(db, entity_id=entity_id)
    await ensure_not_paused(db)
    await _gate_checker(db, entity=entity, actor=actor)
    if not items:
        raise ValidationError("Batch must contain at least one item")
    if len(items) > settings.max_batch_checks:
        raise ValidationError(
            f"Batch exceeds {settings.max_batch_checks} items",
            details={"count": len(items), "max": settings.max_batch_checks},
        )

    result = BatchCheckResult()
    validated = []
    for position, item in enumerate(items):
        unknown = set(item) - CHECK_ITEM_FIELDS
        if unknown:
            raise ValidationError(
                "Unknown check fields", details={"fields": sorted(unknown), "position": position}
            )
        rule_id = str(item.get("rule_id") or "")
        rule = await find_rule(db, rule_id=rule_id)
        if rule is None or not rule.is_active:
            reason = SkipReason.UNKNOWN_RULE if rule is None else SkipReason.INACTIVE_RULE
            result.skipped.append(SkippedCheck(position=position, rule_id=rule_id, reason=reason))
            logger.info(
                "Skipping batch check item %s for entity %s: %s",
                position,
                entity_id,
                reason.value,
            )
            continue
        try:
            validated.append(_validate_item(rule, item))
        except TraceChainError as e:
            e.details = {**e.details, "position": position}
            raise

    if not validated:
        result.status = await get_status(db, entity_id=entity_id)
        return result

    batch_id = new_batch_id()
    now = datetime.now(UTC)
    result.applied = [
        _append_check(db, entity=entity, actor=actor, timestamp=now, **fields)
        for fields in validated
    ]
    bump_version(entity)
    await flush_or_conflict(db, "Check index already taken", details={"entity_id": entity_id})
    for record in result.applied:
        await _record_checked(db, entity=entity, check=record, actor=actor, batch_id=batch_id)
    result.status, _ = await _rebuild_status(db, entity=entity, actor=actor, batch_id=batch_id)

    logger.info(
        "Batch check on entity %s: %d applied, %d skipped",
        entity_id,
        len(result.applied),
        len(result.skipped),
    )
    return result


async def recompute(db: AsyncSession, *, entity_id: int, actor: str) -> StatusFold:
    """Rebuild the status from the full history. Idempotent."""
    entity = await get_entity_for_update(db, entity_id=entity_id)
    status, changed = await _rebuild_status(db, entity=entity, actor=actor)
    if changed:
        logger.warning("Compliance status for entity %s was stale and has been rebuilt", entity_id)
    return status


async def update_evidence(
    db: AsyncSession, *, entity_id: int, check_index: int, evidence: str, actor: str
) -> ComplianceCheck:
    """
    Replace the evidence text of a recorded check.

    Only the recording actor or the admin may do this. Pass/fail and
    confidence never change, so the status is unaffected.
    """
    entity = await get_entity_for_update(db, entity_id=entity_id)
    await ensure_not_paused(db)
    record = await db.get(ComplianceCheck, (entity_id, check_index))
    if record is None:
        raise NotFoundError(
            "Compliance check not found",
            details={"entity_id": entity_id, "check_index": check_index},
        )
    if actor != record.actor and not is_admin(actor):
        raise AuthorizationError(
            "Only the recording actor or the administrator may update evidence",
            details={"entity_id": entity_id, "check_index": check_index, "actor": actor},
        )
    if not evidence or not evidence.strip():
        raise ValidationError("evidence must not be empty")
    if len(evidence) > settings.max_evidence_length:
        raise ValidationError(
            f"evidence exceeds {settings.max_evidence_length} characters",
            details={"length": len(evidence)},
        )

    old_value = snapshot_entity(record)
    record.evidence = evidence
    record.evidence_updated_at = datetime.now(UTC)
    record.evidence_updated_by = actor
    bump_version(entity)
    await db.flush()

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.COMPLIANCE_CHECK,
        entity_id=f"{entity_id}:{check_index}",
        action="UPDATE_EVIDENCE",
        old_value=old_value,
        new_value=snapshot_entity(record),
        performed_by=actor,
    )
    record_event(
        db,
        EventType.EVIDENCE_UPDATED,
        entity_id=entity_id,
        actor=actor,
        payload={"entity_id": entity_id, "check_index": check_index, "version": entity.version},
    )
    return record


async def list_history(db: AsyncSession, *, entity_id: int) -> list[ComplianceCheck]:
    """All checks of an entity ordered by check index."""
    stmt = (
        select(ComplianceCheck)
        .where(ComplianceCheck.entity_id == entity_id)
        .order_by(ComplianceCheck.check_index.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_history(db: AsyncSession, *, entity_id: int) -> list[ComplianceCheck]:
    await get_entity(db, entity_id=entity_id)
    return await list_history(db, entity_id=entity_id)


async def get_check(db: AsyncSession, *, entity_id: int, check_index: int) -> ComplianceCheck:
    record = await db.get(ComplianceCheck, (entity_id, check_index))
    if record is None:
        await get_entity(db, entity_id=entity_id)
        raise NotFoundError(
            "Compliance check not found",
            details={"entity_id": entity_id, "check_index": check_index},
        )
    return record


async def get_status(db: AsyncSession, *, entity_id: int) -> StatusFold:
    """The stored projection, or the fold of an empty history if none exists yet."""
    await get_entity(db, entity_id=entity_id)
    row = await db.get(ComplianceStatus, entity_id)
    if row is None:
        return fold_status([])
    return _fold_from_row(row)


__all__ = [
    "BatchCheckResult",
    "SkippedCheck",
    "batch_check",
    "check",
    "get_check",
    "get_history",
    "get_status",
    "list_history",
    "recompute",
    "update_evidence",
]
