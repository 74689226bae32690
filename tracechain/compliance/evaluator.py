"""
Compliance check validation and status aggregation.

Nothing here touches the database: the repository loads rules and history,
these functions decide whether a check may be recorded and what the
resulting status is.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from tracechain.core.config import settings
from tracechain.core.errors import ConfidenceThresholdError, ValidationError


class CheckOutcome(Protocol):
    rule_id: str
    passed: bool
    timestamp: datetime


@dataclass(frozen=True)
class StatusFold:
    """Aggregate compliance status of one entity."""

    compliant: bool
    total_checks: int
    passed_checks: int
    failed_checks: int
    failed_rule_ids: list[str] = field(default_factory=list)
    last_checked_at: datetime | None = None

    @property
    def score(self) -> float | None:
        """Percentage of passing checks, or None with no history."""
        if self.total_checks == 0:
            return None
        return round(self.passed_checks / self.total_checks * 100, 2)


def validate_check(
    *,
    evidence: str,
    confidence: int | None,
    severity: int,
    rule_id: str,
    max_evidence_length: int | None = None,
    critical_severity: int | None = None,
    min_critical_confidence: int | None = None,
) -> None:
    """
    Validate one compliance observation against its rule.

    Order: evidence, confidence range, then the confidence gate for
    critical rules.

    Raises:
        ValidationError: Empty or oversized evidence, confidence outside 0-100
        ConfidenceThresholdError: Critical rule checked with too little confidence
    """
    if max_evidence_length is None:
        max_evidence_length = settings.max_evidence_length
    if critical_severity is None:
        critical_severity = settings.critical_severity_threshold
    if min_critical_confidence is None:
        min_critical_confidence = settings.min_critical_confidence

    if not evidence or not evidence.strip():
        raise ValidationError("evidence must not be empty", details={"rule_id": rule_id})
    if len(evidence) > max_evidence_length:
        raise ValidationError(
            f"evidence exceeds {max_evidence_length} characters",
            details={"rule_id": rule_id, "length": len(evidence)},
        )
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, int)
        or not 0 <= confidence <= 100
    ):
        raise ValidationError(
            "confidence must be between 0 and 100",
            details={"rule_id": rule_id, "confidence": confidence},
        )
    if severity >= critical_severity and confidence < min_critical_confidence:
        raise ConfidenceThresholdError(
            f"Rules with severity >= {critical_severity} require confidence >= "
            f"{min_critical_confidence}",
            details={"rule_id": rule_id, "severity": severity, "confidence": confidence},
        )


def fold_status(history: Iterable[CheckOutcome]) -> StatusFold:
    """
    Fold a full check history into a status.

    An empty history is vacuously compliant with zero checks.
    """
    total = 0
    passed = 0
    failed_rules: set[str] = set()
    last_checked_at: datetime | None = None

    for check in history:
        total += 1
        if check.passed:
            passed += 1
        else:
            failed_rules.add(check.rule_id)
        if last_checked_at is None or check.timestamp > last_checked_at:
            last_checked_at = check.timestamp

    failed = total - passed
    return StatusFold(
        compliant=failed == 0,
        total_checks=total,
        passed_checks=passed,
        failed_checks=failed,
        failed_rule_ids=sorted(failed_rules),
        last_checked_at=last_checked_at,
    )
