"""
Registry Service

The single authoritative entry point for registry mutations. For each call it:

1. takes the in-process lock for the affected entity (or the batch-key lock
   for registrations),
2. opens a session and runs the repository function,
3. commits (or rolls back on any error),
4. releases the lock and hands newly committed outbox events to the publisher.

Reads open their own session and only ever observe committed state.
Every operation runs inside an OpenTelemetry span and is timed in Prometheus.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import AsyncExitStack
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tracechain.compliance.evaluator import StatusFold
from tracechain.core.events import (
    EventPublisher,
    LoggingEventPublisher,
    dispatch_pending_events,
    list_events,
)
from tracechain.core.locks import EntityLockRegistry
from tracechain.core.observability import metrics, track_operation
from tracechain.core.telemetry import get_tracer
from tracechain.db.models import (
    Checkpoint,
    ComplianceCheck,
    ComplianceRule,
    Entity,
    EntityActor,
    EventOutbox,
    RegistryControl,
)
from tracechain.domain.enums import EntityType
from tracechain.domain.trace_chain import TraceLink
from tracechain.repos import (
    actor_repo,
    checkpoint_repo,
    compliance_repo,
    control_repo,
    entity_repo,
    rule_repo,
)
from tracechain.repos.common import get_entity
from tracechain.repos.compliance_repo import BatchCheckResult
from tracechain.repos.entity_repo import EntitySummary

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RegistryService:
    """Serialized, transactional facade over the registry repositories."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        publisher: EventPublisher | None = None,
        locks: EntityLockRegistry | None = None,
        auto_dispatch: bool = True,
    ) -> None:
        self._sessionmaker = sessionmaker
        self.publisher = publisher or LoggingEventPublisher()
        self.locks = locks or EntityLockRegistry()
        self.auto_dispatch = auto_dispatch
        self._dispatch_lock = asyncio.Lock()
        self._tracer = get_tracer(__name__)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _mutate(
        self,
        operation: str,
        fn: Callable[[AsyncSession], Awaitable[T]],
        *,
        entity_id: int | None = None,
        batch_keys: bool = False,
        registry: bool = False,
        actor: str | None = None,
    ) -> T:
        with (
            self._tracer.start_as_current_span(f"registry.{operation}") as span,
            track_operation(operation),
        ):
            if entity_id is not None:
                span.set_attribute("registry.entity_id", entity_id)
            if actor is not None:
                span.set_attribute("registry.actor", actor)

            async with AsyncExitStack() as stack:
                if registry:
                    await stack.enter_async_context(self.locks.registry_lock)
                if batch_keys:
                    await stack.enter_async_context(self.locks.batch_keys())
                if entity_id is not None:
                    await stack.enter_async_context(self.locks.entity(entity_id))

                async with self._sessionmaker() as db:
                    try:
                        result = await fn(db)
                        await db.commit()
                    except Exception:
                        await db.rollback()
                        raise

        if self.auto_dispatch:
            await self._dispatch_after_commit()
        return result

    async def _read(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        with self._tracer.start_as_current_span(f"registry.{operation}"):
            async with self._sessionmaker() as db:
                return await fn(db)

    async def _dispatch_after_commit(self) -> None:
        # The change is already committed; undelivered rows stay in the outbox
        try:
            await self.dispatch_events()
        except SQLAlchemyError:
            logger.error("Event dispatch failed after commit; will retry", exc_info=True)

    async def dispatch_events(self, *, limit: int = 100) -> int:
        """Order and publish pending outbox events. Returns how many were delivered."""
        async with self._dispatch_lock:
            async with self._sessionmaker() as db:
                delivered = await dispatch_pending_events(db, self.publisher, limit=limit)
                await db.commit()
        return delivered

    # ------------------------------------------------------------------
    # Entity Store
    # ------------------------------------------------------------------

    async def register(
        self,
        *,
        name: str,
        entity_type: EntityType | str,
        batch_key: str,
        valid_from: datetime,
        valid_until: datetime,
        actor: str,
        attributes: Sequence[str] | None = None,
        metadata_ref: str | None = None,
        origin_location: str | None = None,
    ) -> Entity:
        entity = await self._mutate(
            "register",
            lambda db: entity_repo.register_entity(
                db,
                name=name,
                entity_type=entity_type,
                batch_key=batch_key,
                valid_from=valid_from,
                valid_until=valid_until,
                actor=actor,
                attributes=attributes,
                metadata_ref=metadata_ref,
                origin_location=origin_location,
            ),
            batch_keys=True,
            actor=actor,
        )
        metrics.entities_registered_total.labels(entity_type=entity.entity_type.value).inc()
        return entity

    async def batch_register(
        self, *, items: Sequence[Mapping[str, Any]], actor: str
    ) -> list[Entity]:
        entities = await self._mutate(
            "batch_register",
            lambda db: entity_repo.batch_register_entities(db, items=items, actor=actor),
            batch_keys=True,
            actor=actor,
        )
        for entity in entities:
            metrics.entities_registered_total.labels(entity_type=entity.entity_type.value).inc()
        return entities

    async def update_entity(
        self,
        entity_id: int,
        *,
        fields: Mapping[str, Any],
        actor: str,
        expected_version: int | None = None,
    ) -> Entity:
        return await self._mutate(
            "update_entity",
            lambda db: entity_repo.update_entity(
                db,
                entity_id=entity_id,
                fields=fields,
                actor=actor,
                expected_version=expected_version,
            ),
            entity_id=entity_id,
            actor=actor,
        )

    async def deactivate(self, entity_id: int, *, actor: str) -> Entity:
        return await self._mutate(
            "deactivate",
            lambda db: entity_repo.deactivate_entity(db, entity_id=entity_id, actor=actor),
            entity_id=entity_id,
            actor=actor,
        )

    async def reactivate(self, entity_id: int, *, actor: str) -> Entity:
        return await self._mutate(
            "reactivate",
            lambda db: entity_repo.reactivate_entity(db, entity_id=entity_id, actor=actor),
            entity_id=entity_id,
            actor=actor,
        )

    async def add_checkpoint(
        self,
        entity_id: int,
        *,
        status: str,
        location: str,
        actor: str,
        note: str | None = None,
        temperature: float | None = None,
        humidity: float | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
    ) -> Checkpoint:
        checkpoint = await self._mutate(
            "add_checkpoint",
            lambda db: checkpoint_repo.add_checkpoint(
                db,
                entity_id=entity_id,
                status=status,
                location=location,
                actor=actor,
                note=note,
                temperature=temperature,
                humidity=humidity,
                latitude=latitude,
                longitude=longitude,
            ),
            entity_id=entity_id,
            actor=actor,
        )
        metrics.checkpoints_appended_total.labels(status=checkpoint.status.value).inc()
        return checkpoint

    async def batch_add_checkpoints(
        self, entity_id: int, *, items: Sequence[Mapping[str, Any]], actor: str
    ) -> list[Checkpoint]:
        checkpoints = await self._mutate(
            "batch_add_checkpoints",
            lambda db: checkpoint_repo.batch_add_checkpoints(
                db, entity_id=entity_id, items=items, actor=actor
            ),
            entity_id=entity_id,
            actor=actor,
        )
        for checkpoint in checkpoints:
            metrics.checkpoints_appended_total.labels(status=checkpoint.status.value).inc()
        return checkpoints

    async def update_checkpoint(
        self, entity_id: int, sequence: int, *, fields: Mapping[str, Any], actor: str
    ) -> Checkpoint:
        return await self._mutate(
            "update_checkpoint",
            lambda db: checkpoint_repo.update_checkpoint(
                db, entity_id=entity_id, sequence=sequence, actor=actor, fields=fields
            ),
            entity_id=entity_id,
            actor=actor,
        )

    async def add_actor(self, entity_id: int, *, new_actor: str, actor: str) -> EntityActor:
        return await self._mutate(
            "add_actor",
            lambda db: actor_repo.add_actor(
                db, entity_id=entity_id, new_actor=new_actor, actor=actor
            ),
            entity_id=entity_id,
            actor=actor,
        )

    async def remove_actor(self, entity_id: int, *, target: str, actor: str) -> None:
        await self._mutate(
            "remove_actor",
            lambda db: actor_repo.remove_actor(db, entity_id=entity_id, target=target, actor=actor),
            entity_id=entity_id,
            actor=actor,
        )

    # ------------------------------------------------------------------
    # Entity Store reads
    # ------------------------------------------------------------------

    async def get(self, entity_id: int) -> Entity:
        return await self._read("get", lambda db: get_entity(db, entity_id=entity_id))

    async def get_by_batch_key(self, batch_key: str) -> Entity:
        return await self._read(
            "get_by_batch_key", lambda db: entity_repo.get_by_batch_key(db, batch_key=batch_key)
        )

    async def list_by_owner(self, owner: str, *, limit: int = 100, offset: int = 0) -> list[Entity]:
        return await self._read(
            "list_by_owner",
            lambda db: entity_repo.list_by_owner(db, owner=owner, limit=limit, offset=offset),
        )

    async def list_by_type(
        self, entity_type: EntityType | str, *, limit: int = 100, offset: int = 0
    ) -> list[Entity]:
        return await self._read(
            "list_by_type",
            lambda db: entity_repo.list_by_type(
                db, entity_type=entity_type, limit=limit, offset=offset
            ),
        )

    async def list_in_date_range(
        self, start: datetime, end: datetime, *, limit: int = 100, offset: int = 0
    ) -> list[Entity]:
        return await self._read(
            "list_in_date_range",
            lambda db: entity_repo.list_in_date_range(
                db, start=start, end=end, limit=limit, offset=offset
            ),
        )

    async def list_for_actor(self, actor: str, *, limit: int = 100, offset: int = 0) -> list[Entity]:
        return await self._read(
            "list_for_actor",
            lambda db: entity_repo.list_for_actor(db, actor=actor, limit=limit, offset=offset),
        )

    async def count(self) -> int:
        return await self._read("count", entity_repo.count_entities)

    async def is_expired(self, entity_id: int, at: datetime | None = None) -> bool:
        return await self._read(
            "is_expired", lambda db: entity_repo.is_expired(db, entity_id=entity_id, at=at)
        )

    async def summary(self, entity_id: int) -> EntitySummary:
        return await self._read(
            "summary", lambda db: entity_repo.summarize(db, entity_id=entity_id)
        )

    async def get_checkpoints(self, entity_id: int) -> list[Checkpoint]:
        return await self._read(
            "get_checkpoints", lambda db: checkpoint_repo.list_checkpoints(db, entity_id=entity_id)
        )

    async def get_checkpoint(self, entity_id: int, sequence: int) -> Checkpoint:
        return await self._read(
            "get_checkpoint",
            lambda db: checkpoint_repo.get_checkpoint(db, entity_id=entity_id, sequence=sequence),
        )

    async def get_trace_chain(self, entity_id: int) -> list[TraceLink]:
        return await self._read(
            "get_trace_chain", lambda db: checkpoint_repo.get_trace_chain(db, entity_id=entity_id)
        )

    async def list_actors(self, entity_id: int) -> list[EntityActor]:
        return await self._read(
            "list_actors", lambda db: actor_repo.list_actors(db, entity_id=entity_id)
        )

    # ------------------------------------------------------------------
    # Compliance Evaluator
    # ------------------------------------------------------------------

    async def add_rule(
        self,
        *,
        rule_id: str,
        name: str,
        entity_type: EntityType | str,
        requirement: str,
        standard: str,
        severity: int,
        actor: str,
    ) -> ComplianceRule:
        return await self._mutate(
            "add_rule",
            lambda db: rule_repo.add_rule(
                db,
                rule_id=rule_id,
                name=name,
                entity_type=entity_type,
                requirement=requirement,
                standard=standard,
                severity=severity,
                actor=actor,
            ),
            registry=True,
            actor=actor,
        )

    async def set_rule_active(self, rule_id: str, *, active: bool, actor: str) -> ComplianceRule:
        return await self._mutate(
            "set_rule_active",
            lambda db: rule_repo.set_rule_active(db, rule_id=rule_id, active=active, actor=actor),
            registry=True,
            actor=actor,
        )

    async def check(
        self,
        entity_id: int,
        *,
        rule_id: str,
        passed: bool,
        evidence: str,
        confidence: int,
        actor: str,
        note: str | None = None,
    ) -> tuple[ComplianceCheck, StatusFold]:
        record, status = await self._mutate(
            "check",
            lambda db: compliance_repo.check(
                db,
                entity_id=entity_id,
                rule_id=rule_id,
                passed=passed,
                evidence=evidence,
                confidence=confidence,
                actor=actor,
                note=note,
            ),
            entity_id=entity_id,
            actor=actor,
        )
        metrics.compliance_checks_total.labels(outcome="passed" if record.passed else "failed").inc()
        return record, status

    async def batch_check(
        self, entity_id: int, *, items: Sequence[Mapping[str, Any]], actor: str
    ) -> BatchCheckResult:
        result = await self._mutate(
            "batch_check",
            lambda db: compliance_repo.batch_check(
                db, entity_id=entity_id, items=items, actor=actor
            ),
            entity_id=entity_id,
            actor=actor,
        )
        for record in result.applied:
            metrics.compliance_checks_total.labels(
                outcome="passed" if record.passed else "failed"
            ).inc()
        for skipped in result.skipped:
            metrics.compliance_checks_skipped_total.labels(reason=skipped.reason.value).inc()
        return result

    async def recompute(self, entity_id: int, *, actor: str) -> StatusFold:
        return await self._mutate(
            "recompute",
            lambda db: compliance_repo.recompute(db, entity_id=entity_id, actor=actor),
            entity_id=entity_id,
            actor=actor,
        )

    async def update_evidence(
        self, entity_id: int, check_index: int, *, evidence: str, actor: str
    ) -> ComplianceCheck:
        return await self._mutate(
            "update_evidence",
            lambda db: compliance_repo.update_evidence(
                db, entity_id=entity_id, check_index=check_index, evidence=evidence, actor=actor
            ),
            entity_id=entity_id,
            actor=actor,
        )

    async def get_rule(self, rule_id: str) -> ComplianceRule:
        return await self._read("get_rule", lambda db: rule_repo.get_rule(db, rule_id=rule_id))

    async def list_rules(self, *, active_only: bool = False) -> list[ComplianceRule]:
        return await self._read(
            "list_rules", lambda db: rule_repo.list_rules(db, active_only=active_only)
        )

    async def rules_for_type(self, entity_type: EntityType | str) -> list[str]:
        return await self._read(
            "rules_for_type", lambda db: rule_repo.rules_for_type(db, entity_type=entity_type)
        )

    async def status(self, entity_id: int) -> StatusFold:
        return await self._read(
            "status", lambda db: compliance_repo.get_status(db, entity_id=entity_id)
        )

    async def history(self, entity_id: int) -> list[ComplianceCheck]:
        return await self._read(
            "history", lambda db: compliance_repo.get_history(db, entity_id=entity_id)
        )

    async def get_check(self, entity_id: int, check_index: int) -> ComplianceCheck:
        return await self._read(
            "get_check",
            lambda db: compliance_repo.get_check(db, entity_id=entity_id, check_index=check_index),
        )

    # ------------------------------------------------------------------
    # Registry control and events
    # ------------------------------------------------------------------

    async def pause(self, *, actor: str) -> RegistryControl:
        return await self._mutate(
            "pause",
            lambda db: control_repo.set_paused(db, paused=True, actor=actor),
            registry=True,
            actor=actor,
        )

    async def unpause(self, *, actor: str) -> RegistryControl:
        return await self._mutate(
            "unpause",
            lambda db: control_repo.set_paused(db, paused=False, actor=actor),
            registry=True,
            actor=actor,
        )

    async def registry_state(self) -> RegistryControl:
        return await self._read("registry_state", control_repo.get_control)

    async def events(
        self, *, after: int = 0, limit: int = 100, entity_id: int | None = None
    ) -> list[EventOutbox]:
        return await self._read(
            "events",
            lambda db: list_events(db, after=after, limit=limit, entity_id=entity_id),
        )
