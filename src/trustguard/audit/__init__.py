"""Decision and violation audit trail."""

from .models import (
    AccessDecision,
    DecisionKind,
    Outcome,
    Severity,
    SubjectType,
    Violation,
    ViolationStatus,
)
from .store import AuditLog

__all__ = [
    "AccessDecision",
    "AuditLog",
    "DecisionKind",
    "Outcome",
    "Severity",
    "SubjectType",
    "Violation",
    "ViolationStatus",
]
