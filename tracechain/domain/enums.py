"""
Domain enums for the TraceChain registry.

These enums are stored by value in the database (non-native enums with a
CHECK constraint) so the same schema works on PostgreSQL and SQLite.
"""

from enum import Enum


class EntityType(str, Enum):
    """Category of a traceable entity (product)."""

    PHARMACEUTICAL = "pharmaceutical"
    ELECTRONICS = "electronics"
    LUXURY = "luxury"
    FOOD = "food"
    CLOTHING = "clothing"
    COSMETICS = "cosmetics"
    AUTOMOTIVE = "automotive"
    AGRICULTURAL = "agricultural"
    OTHER = "other"


class CheckpointStatus(str, Enum):
    """
    Custody/state status recorded on a checkpoint.

    CREATED is reserved for the checkpoint written by registration.
    """

    CREATED = "created"
    MANUFACTURED = "manufactured"
    QUALITY_CHECKED = "quality_checked"
    PACKAGED = "packaged"
    SHIPPED = "shipped"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    STORED = "stored"
    SOLD = "sold"
    RECALLED = "recalled"
    DISPOSED = "disposed"


class EventType(str, Enum):
    """Outbound events emitted to collaborators."""

    ENTITY_REGISTERED = "EntityRegistered"
    ENTITY_UPDATED = "EntityUpdated"
    ENTITY_DEACTIVATED = "EntityDeactivated"
    ENTITY_REACTIVATED = "EntityReactivated"
    CHECKPOINT_ADDED = "CheckpointAdded"
    CHECKPOINT_UPDATED = "CheckpointUpdated"
    ACTOR_ADDED = "ActorAdded"
    ACTOR_REMOVED = "ActorRemoved"
    RULE_ADDED = "RuleAdded"
    RULE_ACTIVATION_CHANGED = "RuleActivationChanged"
    COMPLIANCE_CHECKED = "ComplianceChecked"
    COMPLIANCE_STATUS_UPDATED = "ComplianceStatusUpdated"
    EVIDENCE_UPDATED = "EvidenceUpdated"
    REGISTRY_PAUSED = "RegistryPaused"
    REGISTRY_UNPAUSED = "RegistryUnpaused"


class AuditEntityType(str, Enum):
    """Type of record being audited."""

    ENTITY = "ENTITY"
    CHECKPOINT = "CHECKPOINT"
    AUTHORIZATION = "AUTHORIZATION"
    RULE = "RULE"
    COMPLIANCE_CHECK = "COMPLIANCE_CHECK"
    REGISTRY = "REGISTRY"


class SkipReason(str, Enum):
    """Why a batch compliance item was skipped rather than applied."""

    UNKNOWN_RULE = "unknown_rule"
    INACTIVE_RULE = "inactive_rule"
