"""
Audit log.

Decisions are appended once and never rewritten. Violations are appended
and afterwards only move through their status lifecycle.
"""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Any

import structlog

from ..clock import Clock, SystemClock
from ..errors import NotFoundError, ValidationError
from .models import AccessDecision, Outcome, Severity, SubjectType, Violation, ViolationStatus

logger = structlog.get_logger(__name__)


def _enum_or_none(enum_cls, value):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"unknown {enum_cls.__name__} '{value}'", {"allowed": [m.value for m in enum_cls]}
        ) from None


class AuditLog:
    """In-memory audit store with filtered export."""

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._decisions: list[AccessDecision] = []
        self._decision_ids: set[str] = set()
        self._violations: dict[str, Violation] = {}
        self._lock = threading.RLock()

    # --- Decisions ---

    def record_decision(self, decision: AccessDecision) -> AccessDecision:
        with self._lock:
            if decision.decision_id in self._decision_ids:
                raise ValidationError(f"decision '{decision.decision_id}' already recorded")
            self._decisions.append(decision)
            self._decision_ids.add(decision.decision_id)
        logger.info(
            "decision_recorded",
            decision_id=decision.decision_id,
            identity_id=decision.identity_id,
            resource_id=decision.resource_id,
            outcome=decision.outcome.value,
        )
        return decision

    def get_decision(self, decision_id: str) -> AccessDecision:
        with self._lock:
            for d in self._decisions:
                if d.decision_id == decision_id:
                    return d
        raise NotFoundError("decision", decision_id)

    def decisions(
        self,
        subject_id: str | None = None,
        since: float | None = None,
        until: float | None = None,
        outcome: Outcome | str | None = None,
        limit: int | None = None,
    ) -> list[AccessDecision]:
        """Decisions filtered by identity/device/resource id, time range and outcome."""
        wanted = _enum_or_none(Outcome, outcome)
        with self._lock:
            items = list(self._decisions)
        out = [
            d for d in items
            if (subject_id is None or subject_id in (d.identity_id, d.device_id, d.resource_id))
            and (since is None or d.timestamp >= since)
            and (until is None or d.timestamp <= until)
            and (wanted is None or d.outcome == wanted)
        ]
        return out[-limit:] if limit else out

    # --- Violations ---

    def open_violation(
        self,
        subject_type: SubjectType | str,
        subject_id: str,
        severity: Severity | str,
        rule_id: str,
        description: str = "",
    ) -> Violation:
        violation = Violation(
            violation_id=f"viol-{uuid.uuid4().hex[:12]}",
            subject_type=_enum_or_none(SubjectType, subject_type),
            subject_id=subject_id,
            severity=_enum_or_none(Severity, severity),
            rule_id=rule_id,
            detected_at=self.clock.now(),
            description=description,
        )
        violation.status_history.append((ViolationStatus.OPEN.value, violation.detected_at, ""))
        with self._lock:
            self._violations[violation.violation_id] = violation
        logger.warning(
            "violation_opened",
            violation_id=violation.violation_id,
            subject_type=violation.subject_type.value,
            subject_id=subject_id,
            severity=violation.severity.value,
            rule_id=rule_id,
        )
        return copy.deepcopy(violation)

    def transition_violation(self, violation_id: str, status: ViolationStatus | str, note: str = "") -> Violation:
        target = _enum_or_none(ViolationStatus, status)
        with self._lock:
            violation = self._violations.get(violation_id)
            if violation is None:
                raise NotFoundError("violation", violation_id)
            violation.transition(target, self.clock.now(), note)
            snapshot = copy.deepcopy(violation)
        logger.info("violation_transitioned", violation_id=violation_id, status=target.value)
        return snapshot

    def get_violation(self, violation_id: str) -> Violation:
        with self._lock:
            violation = self._violations.get(violation_id)
            if violation is None:
                raise NotFoundError("violation", violation_id)
            return copy.deepcopy(violation)

    def violations(
        self,
        subject_id: str | None = None,
        since: float | None = None,
        until: float | None = None,
        severity: Severity | str | None = None,
        status: ViolationStatus | str | None = None,
    ) -> list[Violation]:
        wanted_sev = _enum_or_none(Severity, severity)
        wanted_status = _enum_or_none(ViolationStatus, status)
        with self._lock:
            items = [copy.deepcopy(v) for v in self._violations.values()]
        return [
            v for v in items
            if (subject_id is None or v.subject_id == subject_id)
            and (since is None or v.detected_at >= since)
            and (until is None or v.detected_at <= until)
            and (wanted_sev is None or v.severity == wanted_sev)
            and (wanted_status is None or v.status == wanted_status)
        ]

    def export(self, subject_id: str | None = None, since: float | None = None,
               until: float | None = None) -> dict[str, Any]:
        return {
            "decisions": [d.to_dict() for d in self.decisions(subject_id, since, until)],
            "violations": [v.to_dict() for v in self.violations(subject_id, since, until)],
        }

    def stats(self) -> dict[str, Any]:
        with self._lock:
            decisions = list(self._decisions)
            violations = list(self._violations.values())
        return {
            "decisions": len(decisions),
            "granted": sum(1 for d in decisions if d.outcome == Outcome.GRANTED),
            "denied": sum(1 for d in decisions if d.outcome == Outcome.DENIED),
            "violations": len(violations),
            "open_violations": sum(1 for v in violations if v.status != ViolationStatus.RESOLVED),
        }
