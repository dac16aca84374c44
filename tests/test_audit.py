"""Tests for the audit log."""

import pytest

from trustguard.audit import (
    AccessDecision,
    AuditLog,
    DecisionKind,
    Outcome,
    Severity,
    SubjectType,
    ViolationStatus,
)
from trustguard.errors import InvalidTransitionError, NotFoundError, ValidationError


@pytest.fixture
def audit(clock):
    return AuditLog(clock)


def _decision(decision_id, timestamp, outcome=Outcome.GRANTED, identity_id="alice", resource_id="wiki"):
    return AccessDecision(
        decision_id=decision_id,
        kind=DecisionKind.CHECK,
        identity_id=identity_id,
        device_id=f"dev-{identity_id}",
        resource_id=resource_id,
        requested_permissions=("read",),
        policy_ids_evaluated=("zero-trust-base@1",),
        outcome=outcome,
        reasons=(),
        risk_level="low",
        risk_score=12.5,
        trust_score_snapshot=0.8,
        timestamp=timestamp,
    )


class TestDecisions:
    def test_write_once(self, audit):
        audit.record_decision(_decision("d1", 0.0))
        with pytest.raises(ValidationError):
            audit.record_decision(_decision("d1", 1.0))
        assert audit.get_decision("d1").timestamp == 0.0

    def test_get_unknown(self, audit):
        with pytest.raises(NotFoundError):
            audit.get_decision("nope")

    def test_filters(self, audit):
        audit.record_decision(_decision("d1", 10.0))
        audit.record_decision(_decision("d2", 20.0, Outcome.DENIED, identity_id="bob"))
        audit.record_decision(_decision("d3", 30.0, resource_id="payroll-db"))
        assert [d.decision_id for d in audit.decisions(subject_id="alice")] == ["d1", "d3"]
        assert [d.decision_id for d in audit.decisions(subject_id="dev-bob")] == ["d2"]
        assert [d.decision_id for d in audit.decisions(subject_id="payroll-db")] == ["d3"]
        assert [d.decision_id for d in audit.decisions(since=15, until=30)] == ["d2", "d3"]
        assert [d.decision_id for d in audit.decisions(outcome="denied")] == ["d2"]
        assert [d.decision_id for d in audit.decisions(limit=1)] == ["d3"]

    def test_bad_outcome_filter(self, audit):
        with pytest.raises(ValidationError):
            audit.decisions(outcome="maybe")


class TestViolations:
    def test_open(self, audit, clock):
        clock.advance(5)
        v = audit.open_violation("identity", "alice", "high", "deny-high-risk", "risk high")
        assert v.status == ViolationStatus.OPEN
        assert v.subject_type == SubjectType.IDENTITY
        assert v.detected_at == clock.now()
        assert v.status_history == [("open", clock.now(), "")]

    def test_lifecycle(self, audit, clock):
        v = audit.open_violation("device", "dev-bob", Severity.MEDIUM, "device-trust")
        clock.advance(60)
        audit.transition_violation(v.violation_id, "remediating", "ticket filed")
        clock.advance(60)
        resolved = audit.transition_violation(v.violation_id, ViolationStatus.RESOLVED)
        assert resolved.status == ViolationStatus.RESOLVED
        assert [s for s, _, _ in resolved.status_history] == ["open", "remediating", "resolved"]
        assert resolved.status_history[1][2] == "ticket filed"

    @pytest.mark.parametrize("path", [
        ["resolved", "open"],
        ["resolved", "remediating"],
        ["remediating", "open"],
        ["remediating", "remediating"],
    ])
    def test_invalid_transitions(self, audit, path):
        v = audit.open_violation("identity", "alice", "low", "r")
        *ok, bad = path
        for status in ok:
            audit.transition_violation(v.violation_id, status)
        with pytest.raises(InvalidTransitionError):
            audit.transition_violation(v.violation_id, bad)

    def test_snapshots_are_copies(self, audit):
        v = audit.open_violation("identity", "alice", "low", "r")
        v.status_history.append(("tampered", 0.0, ""))
        assert len(audit.get_violation(v.violation_id).status_history) == 1

    def test_unknown_violation(self, audit):
        with pytest.raises(NotFoundError):
            audit.transition_violation("viol-missing", "resolved")

    def test_unknown_severity(self, audit):
        with pytest.raises(ValidationError):
            audit.open_violation("identity", "alice", "catastrophic", "r")

    def test_filters(self, audit, clock):
        a = audit.open_violation("identity", "alice", "high", "r1")
        clock.advance(100)
        audit.open_violation("identity", "bob", "low", "r2")
        audit.transition_violation(a.violation_id, "resolved")
        assert [v.rule_id for v in audit.violations(subject_id="bob")] == ["r2"]
        assert [v.rule_id for v in audit.violations(severity="high")] == ["r1"]
        assert [v.rule_id for v in audit.violations(status="open")] == ["r2"]
        assert [v.rule_id for v in audit.violations(since=50)] == ["r2"]


def test_export_and_stats(audit):
    audit.record_decision(_decision("d1", 0.0))
    audit.record_decision(_decision("d2", 1.0, Outcome.DENIED))
    audit.open_violation("identity", "alice", "medium", "r")
    exported = audit.export(subject_id="alice")
    assert [d["decision_id"] for d in exported["decisions"]] == ["d1", "d2"]
    assert exported["violations"][0]["status"] == "open"
    assert audit.stats() == {"decisions": 2, "granted": 1, "denied": 1, "violations": 1, "open_violations": 1}
