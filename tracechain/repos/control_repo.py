"""Registry-wide pause switch (admin only)."""

import logging
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from tracechain.core.audit import create_audit_log_async
from tracechain.core.errors import StateError
from tracechain.core.events import record_event
from tracechain.db.models import RegistryControl
from tracechain.domain.enums import AuditEntityType, EventType
from tracechain.repos.common import require_admin

logger = logging.getLogger(__name__)

CONTROL_ROW_ID = 1


async def get_control(db: AsyncSession) -> RegistryControl:
    """The switchboard row, or an unpaused placeholder before it is first written."""
    control = await db.get(RegistryControl, CONTROL_ROW_ID)
    if control is None:
        return RegistryControl(control_id=CONTROL_ROW_ID, paused=False)
    return control


async def set_paused(db: AsyncSession, *, paused: bool, actor: str) -> RegistryControl:
    """
    Pause or unpause the registry.

    Raises:
        AuthorizationError: Caller is not the admin
        StateError: Registry already in the requested state
    """
    require_admin(actor)
    control = await db.get(RegistryControl, CONTROL_ROW_ID, with_for_update=True)
    current = control.paused if control is not None else False
    if current == paused:
        raise StateError("Registry is already paused" if paused else "Registry is not paused")

    if control is None:
        control = RegistryControl(control_id=CONTROL_ROW_ID, paused=False)
        db.add(control)

    control.paused = paused
    control.updated_by = actor
    control.updated_at = datetime.now(UTC)
    await db.flush()

    await create_audit_log_async(
        db,
        entity_type=AuditEntityType.REGISTRY,
        entity_id=CONTROL_ROW_ID,
        action="PAUSE" if paused else "UNPAUSE",
        old_value={"paused": not paused},
        new_value={"paused": paused},
        performed_by=actor,
    )
    record_event(
        db,
        EventType.REGISTRY_PAUSED if paused else EventType.REGISTRY_UNPAUSED,
        entity_id=None,
        actor=actor,
        payload={"paused": paused},
    )
    logger.warning("Registry %s by %s", "paused" if paused else "unpaused", actor)
    return control
