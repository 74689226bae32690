"""
Compliance evaluation.

Pure functions shared by the compliance repository:

- evaluator: check validation, the confidence gate, and the status fold
"""

from tracechain.compliance.evaluator import (
    CheckOutcome,
    StatusFold,
    fold_status,
    validate_check,
)

__all__ = ["CheckOutcome", "StatusFold", "fold_status", "validate_check"]
