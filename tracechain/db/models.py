"""
SQLAlchemy 2.x ORM models for the TraceChain registry.

Models use the Mapped[] type annotation syntax and mapped_column.
The schema is portable between PostgreSQL (production) and SQLite (tests):
enums are stored as constrained strings and timestamps go through UTCDateTime.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from tracechain.db.types import UTCDateTime
from tracechain.db.validators import validate_json_payload, validate_string_list
from tracechain.domain.enums import AuditEntityType, CheckpointStatus, EntityType, EventType

# BIGINT primary keys are not rowid aliases on SQLite and would not autoincrement
AutoIncrementId = BigInteger().with_variant(Integer, "sqlite")

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _str_enum(enum_cls: type, name: str) -> Enum:
    """Non-native enum persisted by value with a CHECK constraint."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class Entity(Base):
    """
    A registered traceable entity (product batch).

    `owner` and `batch_key` never change after registration. The two counters
    hold the next checkpoint sequence and next check index and are advanced in
    the same transaction that appends to the child log.
    """

    __tablename__ = "entities"
    __table_args__ = (
        CheckConstraint("valid_until > valid_from", name="valid_window"),
        CheckConstraint("checkpoint_count >= 0", name="checkpoint_count_non_negative"),
        CheckConstraint("check_count >= 0", name="check_count_non_negative"),
        Index("ix_entities_owner", "owner"),
        Index("ix_entities_entity_type", "entity_type"),
        Index("ix_entities_valid_from", "valid_from"),
        Index("ix_entities_valid_until", "valid_until"),
    )

    entity_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(
        _str_enum(EntityType, "entity_type"), nullable=False
    )
    owner: Mapped[str] = mapped_column(Text, nullable=False)
    batch_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    attributes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    metadata_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    checkpoint_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    check_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    deactivated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    deactivated_by: Mapped[str | None] = mapped_column(Text, nullable=True)

    @validates("attributes")
    def _validate_attributes(self, key: str, value: Any) -> list[str]:
        return validate_string_list(key, value)

    def __repr__(self) -> str:
        return (
            f"<Entity(entity_id={self.entity_id}, batch_key={self.batch_key}, "
            f"owner={self.owner}, active={self.is_active})>"
        )


class Checkpoint(Base):
    """
    One append-only entry in an entity's custody log.

    Sequence 0 is the "created" checkpoint written at registration.
    """

    __tablename__ = "checkpoints"

    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("entities.entity_id", ondelete="RESTRICT"), primary_key=True
    )
    sequence: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    actor: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[CheckpointStatus] = mapped_column(
        _str_enum(CheckpointStatus, "checkpoint_status"), nullable=False
    )
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    humidity: Mapped[float | None] = mapped_column(Float, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Checkpoint(entity_id={self.entity_id}, sequence={self.sequence}, "
            f"status={self.status})>"
        )


class EntityActor(Base):
    """Membership of an actor in an entity's authorization set."""

    __tablename__ = "entity_actors"
    __table_args__ = (Index("ix_entity_actors_actor", "actor"),)

    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("entities.entity_id", ondelete="RESTRICT"), primary_key=True
    )
    actor: Mapped[str] = mapped_column(Text, primary_key=True)
    added_by: Mapped[str] = mapped_column(Text, nullable=False)
    added_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return f"<EntityActor(entity_id={self.entity_id}, actor={self.actor})>"


class ComplianceRule(Base):
    """
    Catalog entry describing one compliance requirement.

    `entity_type` indexes the catalog; checks against other entity types are accepted.
    """

    __tablename__ = "compliance_rules"
    __table_args__ = (
        CheckConstraint("severity BETWEEN 1 AND 5", name="severity_range"),
        Index("ix_compliance_rules_entity_type", "entity_type"),
    )

    rule_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(
        _str_enum(EntityType, "rule_entity_type"), nullable=False
    )
    requirement: Mapped[str] = mapped_column(Text, nullable=False, default="")
    standard: Mapped[str] = mapped_column(Text, nullable=False, default="")
    severity: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<ComplianceRule(rule_id={self.rule_id}, severity={self.severity}, "
            f"active={self.is_active})>"
        )


class ComplianceCheck(Base):
    """One append-only compliance observation against an entity."""

    __tablename__ = "compliance_checks"
    __table_args__ = (
        CheckConstraint("confidence BETWEEN 0 AND 100", name="confidence_range"),
        Index("ix_compliance_checks_rule_id", "rule_id"),
    )

    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("entities.entity_id", ondelete="RESTRICT"), primary_key=True
    )
    check_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    rule_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("compliance_rules.rule_id", ondelete="RESTRICT"), nullable=False
    )
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    evidence: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    actor: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    evidence_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    evidence_updated_by: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ComplianceCheck(entity_id={self.entity_id}, check_index={self.check_index}, "
            f"rule_id={self.rule_id}, passed={self.passed})>"
        )


class ComplianceStatus(Base):
    """Materialized fold of an entity's full compliance history."""

    __tablename__ = "compliance_status"

    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("entities.entity_id", ondelete="RESTRICT"), primary_key=True
    )
    compliant: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    total_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    passed_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_rule_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    last_checked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ComplianceStatus(entity_id={self.entity_id}, compliant={self.compliant}, "
            f"total={self.total_checks})>"
        )


class AuditLog(Base):
    """
    Append-only audit trail for all registry changes.

    Captures before/after state for compliance and debugging.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (Index("ix_audit_logs_entity", "entity_type", "entity_id"),)

    audit_id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    entity_type: Mapped[AuditEntityType] = mapped_column(
        _str_enum(AuditEntityType, "audit_entity_type"), nullable=False
    )
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    old_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    performed_by: Mapped[str] = mapped_column(Text, nullable=False)
    performed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    @validates("old_value", "new_value")
    def _validate_json_payload(self, key: str, value: Any) -> Any:
        return validate_json_payload(key, value)

    def __repr__(self) -> str:
        return f"<AuditLog(audit_id={self.audit_id}, entity_type={self.entity_type}, action={self.action})>"


class EventOutbox(Base):
    """
    Outbound event queue, written in the same transaction as the change.

    `sequence` is globally monotonic and is the ordering version carried by
    every published event. It is assigned at insert time, so concurrent
    transactions can commit out of sequence order. `position` is assigned by
    the dispatcher to committed rows only, one dispatcher at a time, and is
    the cursor pollers page by.
    """

    __tablename__ = "event_outbox"
    __table_args__ = (
        Index("ix_event_outbox_undelivered", "delivered_at", "sequence"),
        Index("ix_event_outbox_entity_id", "entity_id"),
        Index("ix_event_outbox_unpositioned", "position", "sequence"),
    )

    sequence: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    event_type: Mapped[EventType] = mapped_column(
        _str_enum(EventType, "event_type"), nullable=False
    )
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actor: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    position: Mapped[int | None] = mapped_column(BigInteger, nullable=True, unique=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    @validates("payload")
    def _validate_json_payload(self, key: str, value: Any) -> Any:
        return validate_json_payload(key, value)

    def __repr__(self) -> str:
        return (
            f"<EventOutbox(sequence={self.sequence}, event_type={self.event_type}, "
            f"entity_id={self.entity_id})>"
        )


class RegistryControl(Base):
    """Single-row registry switchboard."""

    __tablename__ = "registry_controls"

    control_id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<RegistryControl(paused={self.paused})>"
