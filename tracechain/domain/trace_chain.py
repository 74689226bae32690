"""
Trace chain: the custody hops between consecutive checkpoints.

Computed at read time from the committed checkpoint log, never stored.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from tracechain.domain.enums import CheckpointStatus

EARTH_RADIUS_KM = 6371.0088


class CheckpointLike(Protocol):
    sequence: int
    timestamp: datetime
    location: str
    actor: str
    status: CheckpointStatus
    latitude: float | None
    longitude: float | None


@dataclass(frozen=True)
class TraceLink:
    from_sequence: int
    to_sequence: int
    from_location: str
    to_location: str
    from_actor: str
    to_actor: str
    status: CheckpointStatus
    from_timestamp: datetime
    to_timestamp: datetime
    duration_seconds: float
    distance_km: float | None

    @property
    def duration_hours(self) -> float:
        return round(self.duration_seconds / 3600, 4)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _distance(a: CheckpointLike, b: CheckpointLike) -> float | None:
    if None in (a.latitude, a.longitude, b.latitude, b.longitude):
        return None
    return round(haversine_km(a.latitude, a.longitude, b.latitude, b.longitude), 3)


def build_trace_chain(checkpoints: Sequence[CheckpointLike]) -> list[TraceLink]:
    """
    One link per consecutive pair of checkpoints, in sequence order.

    A log with fewer than two checkpoints has no links.
    """
    ordered = sorted(checkpoints, key=lambda c: c.sequence)
    links = []
    for prev, cur in zip(ordered, ordered[1:]):
        links.append(
            TraceLink(
                from_sequence=prev.sequence,
                to_sequence=cur.sequence,
                from_location=prev.location,
                to_location=cur.location,
                from_actor=prev.actor,
                to_actor=cur.actor,
                status=cur.status,
                from_timestamp=prev.timestamp,
                to_timestamp=cur.timestamp,
                duration_seconds=(cur.timestamp - prev.timestamp).total_seconds(),
                distance_km=_distance(prev, cur),
            )
        )
    return links


def trace_duration_hours(checkpoints: Sequence[CheckpointLike]) -> float:
    """Hours from the first to the last checkpoint (0 for a single checkpoint)."""
    if len(checkpoints) < 2:
        return 0.0
    ordered = sorted(checkpoints, key=lambda c: c.sequence)
    return round((ordered[-1].timestamp - ordered[0].timestamp).total_seconds() / 3600, 4)
