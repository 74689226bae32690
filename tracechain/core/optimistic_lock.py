"""
Optimistic locking utilities for concurrent modification detection.

Every mutation of an entity (or of its checkpoint and compliance logs) bumps
`Entity.version`. Callers that read an entity and later update it may pass the
version they saw; a mismatch means someone else changed it in between.
"""

from typing import Any

from tracechain.core.errors import ConflictError
from tracechain.db.models import Entity


class ConcurrentModificationError(ConflictError):
    """
    Raised when an update fails due to concurrent modification.

    This occurs when the expected version doesn't match the current
    version in the database, indicating another transaction modified
    the entity after it was read.
    """

    def __init__(
        self, entity_type: str, entity_id: Any, expected_version: int, actual_version: int
    ):
        super().__init__(
            f"{entity_type} was modified by another transaction. Please refresh and try again.",
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


def check_entity_version(entity: Entity, expected_version: int | None) -> None:
    """
    Check that a locked Entity's version matches the expected value.

    Must be called on a row loaded FOR UPDATE in the transaction that will
    modify it. `None` skips the check.

    Raises:
        ConcurrentModificationError: If version doesn't match
    """
    if expected_version is None:
        return
    if entity.version != expected_version:
        raise ConcurrentModificationError(
            entity_type="Entity",
            entity_id=entity.entity_id,
            expected_version=expected_version,
            actual_version=entity.version,
        )


def bump_version(entity: Entity) -> int:
    """Increment the entity version and return the new value."""
    entity.version = (entity.version or 0) + 1
    return entity.version
