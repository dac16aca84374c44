"""Audit records: access decisions and policy violations."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from ..errors import InvalidTransitionError


class DecisionKind(str, Enum):
    GRANT = "grant"
    CHECK = "check"


class Outcome(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True)
class AccessDecision:
    """Write-once record of one grant or check decision."""
    decision_id: str
    kind: DecisionKind
    identity_id: str
    device_id: str
    resource_id: str
    requested_permissions: tuple[str, ...]
    policy_ids_evaluated: tuple[str, ...]  # "policy_id@version"
    outcome: Outcome
    reasons: tuple[str, ...]
    risk_level: str
    risk_score: float
    trust_score_snapshot: float
    timestamp: float
    obligations: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "obligations", MappingProxyType(dict(self.obligations)))

    @property
    def granted(self) -> bool:
        return self.outcome == Outcome.GRANTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "kind": self.kind.value,
            "identity_id": self.identity_id,
            "device_id": self.device_id,
            "resource_id": self.resource_id,
            "requested_permissions": list(self.requested_permissions),
            "policy_ids_evaluated": list(self.policy_ids_evaluated),
            "outcome": self.outcome.value,
            "reasons": list(self.reasons),
            "risk_level": self.risk_level,
            "risk_score": self.risk_score,
            "trust_score_snapshot": self.trust_score_snapshot,
            "obligations": dict(self.obligations),
            "timestamp": self.timestamp,
        }


class SubjectType(str, Enum):
    IDENTITY = "identity"
    DEVICE = "device"
    SESSION = "session"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ViolationStatus(str, Enum):
    OPEN = "open"
    REMEDIATING = "remediating"
    RESOLVED = "resolved"


ALLOWED_TRANSITIONS: dict[ViolationStatus, set[ViolationStatus]] = {
    ViolationStatus.OPEN: {ViolationStatus.REMEDIATING, ViolationStatus.RESOLVED},
    ViolationStatus.REMEDIATING: {ViolationStatus.RESOLVED},
    ViolationStatus.RESOLVED: set(),
}


@dataclass
class Violation:
    """A detected policy or risk breach. Only its status changes after creation."""
    violation_id: str
    subject_type: SubjectType
    subject_id: str
    severity: Severity
    rule_id: str
    detected_at: float
    description: str = ""
    status: ViolationStatus = ViolationStatus.OPEN
    status_history: list[tuple[str, float, str]] = field(default_factory=list)

    def transition(self, status: ViolationStatus, at: float, note: str = "") -> None:
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"violation {self.violation_id}: cannot go from {self.status.value} to {status.value}",
                {"violation_id": self.violation_id, "from": self.status.value, "to": status.value},
            )
        self.status = status
        self.status_history.append((status.value, at, note))

    def to_dict(self) -> dict[str, Any]:
        return {
            "violation_id": self.violation_id,
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "severity": self.severity.value,
            "rule_id": self.rule_id,
            "status": self.status.value,
            "detected_at": self.detected_at,
            "description": self.description,
            "status_history": [
                {"status": s, "at": at, "note": note} for s, at, note in self.status_history
            ],
        }
