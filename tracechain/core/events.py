"""Outbound registry events.

Events are written to the `event_outbox` table in the same transaction as the
state change they describe, then handed to a publisher after commit. Delivery
is at-least-once and in dispatch order: each pass first gives every committed,
unordered row the next `position`, then publishes undelivered rows by
position. The first publisher failure stops the pass and the remaining events
wait for the next one. Pollers page by `position`, so a transaction that
commits late is still seen after everything ordered before it.

The default publisher writes one structured log line per event; the queue
publisher fans events out to in-process subscribers.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from tracechain.core.observability import metrics
from tracechain.db.models import EventOutbox
from tracechain.domain.enums import EventType

logger = logging.getLogger(__name__)

# pg_advisory_xact_lock key serializing dispatchers across processes
OUTBOX_ORDERING_LOCK_KEY = 0x7C0B_0E57


class EventEnvelope(BaseModel):
    """Published form of an outbox row."""

    model_config = ConfigDict(from_attributes=True)

    sequence: int
    position: int | None = None
    event_type: EventType
    entity_id: int | None = None
    actor: str
    payload: dict[str, Any]
    batch_id: str | None = None
    created_at: datetime


class EventPublisher(Protocol):
    async def publish(self, event: EventEnvelope) -> None: ...


def new_batch_id() -> str:
    """Identifier shared by every event emitted by one batch call."""
    return str(uuid.uuid4())


def record_event(
    db: AsyncSession,
    event_type: EventType,
    *,
    entity_id: int | None,
    actor: str,
    payload: dict[str, Any] | None = None,
    batch_id: str | None = None,
) -> EventOutbox:
    """Add an event to the outbox (not yet flushed to database)."""
    row = EventOutbox(
        event_type=event_type,
        entity_id=entity_id,
        actor=actor,
        payload=payload or {},
        batch_id=batch_id,
        created_at=datetime.now(UTC),
    )
    db.add(row)
    return row


async def list_events(
    db: AsyncSession,
    *,
    after: int = 0,
    limit: int = 100,
    entity_id: int | None = None,
) -> list[EventOutbox]:
    """Ordered events with a position greater than `after`, oldest first."""
    stmt = select(EventOutbox).where(
        EventOutbox.position.is_not(None), EventOutbox.position > after
    )
    if entity_id is not None:
        stmt = stmt.where(EventOutbox.entity_id == entity_id)
    stmt = stmt.order_by(EventOutbox.position.asc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _lock_outbox_ordering(db: AsyncSession) -> None:
    # Held until commit; SQLite already serializes writers with BEGIN IMMEDIATE
    if db.get_bind().dialect.name == "postgresql":
        await db.execute(
            text("SELECT pg_advisory_xact_lock(:key)"), {"key": OUTBOX_ORDERING_LOCK_KEY}
        )


async def assign_positions(db: AsyncSession, *, limit: int = 100) -> int:
    """
    Give committed outbox rows without a position the next positions, in
    sequence order.

    Only one transaction at a time may order events, so positions become
    visible in the order they were handed out. The caller commits.

    Returns:
        Number of rows ordered
    """
    await _lock_outbox_ordering(db)
    last = (await db.execute(select(func.max(EventOutbox.position)))).scalar_one_or_none() or 0
    stmt = (
        select(EventOutbox)
        .where(EventOutbox.position.is_(None))
        .order_by(EventOutbox.sequence.asc())
        .limit(limit)
    )
    rows = list((await db.execute(stmt)).scalars().all())
    for offset, row in enumerate(rows, start=1):
        row.position = last + offset
    await db.flush()
    return len(rows)


async def dispatch_pending_events(
    db: AsyncSession, publisher: EventPublisher, *, limit: int = 100
) -> int:
    """
    Order newly committed events, then publish undelivered rows by position.

    Delivered rows are marked with `delivered_at`. On a publisher error the
    attempt and error are recorded on the row and the pass stops. The caller
    commits; positions are kept even when publishing fails.

    Returns:
        Number of events delivered in this pass
    """
    await assign_positions(db, limit=limit)
    stmt = (
        select(EventOutbox)
        .where(EventOutbox.delivered_at.is_(None), EventOutbox.position.is_not(None))
        .order_by(EventOutbox.position.asc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    pending = list(result.scalars().all())

    delivered = 0
    for row in pending:
        row.attempts += 1
        try:
            await publisher.publish(EventEnvelope.model_validate(row))
        except Exception as e:
            row.last_error = f"{type(e).__name__}: {e}"
            metrics.events_dispatched_total.labels(status="failed").inc()
            logger.error(
                "Event publish failed; remaining events deferred",
                extra={
                    "sequence": row.sequence,
                    "position": row.position,
                    "event_type": row.event_type.value,
                    "attempts": row.attempts,
                    "error": row.last_error,
                },
            )
            break
        row.delivered_at = datetime.now(UTC)
        row.last_error = None
        delivered += 1
        metrics.events_dispatched_total.labels(status="delivered").inc()

    await db.flush()
    return delivered


class LoggingEventPublisher:
    """Publishes each event as a structured log line."""

    def __init__(self, logger_name: str = "tracechain.events") -> None:
        self._logger = logging.getLogger(logger_name)

    async def publish(self, event: EventEnvelope) -> None:
        self._logger.info(
            "event:%s",
            event.event_type.value,
            extra={
                "sequence": event.sequence,
                "position": event.position,
                "entity_id": event.entity_id,
                "actor": event.actor,
                "batch_id": event.batch_id,
                "payload": event.payload,
            },
        )


class QueueEventPublisher:
    """
    In-process fan-out to asyncio queues.

    Each subscriber gets its own unbounded queue and sees every event
    published after it subscribed, in publish order.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[EventEnvelope]] = []

    def subscribe(self) -> asyncio.Queue[EventEnvelope]:
        queue: asyncio.Queue[EventEnvelope] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[EventEnvelope]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def publish(self, event: EventEnvelope) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)
