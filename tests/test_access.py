"""Tests for access decision service."""

import pytest

from trustguard.access import RequestContext
from trustguard.audit import Outcome, Severity
from trustguard.errors import NotFoundError, PolicyConflictError, TransientInfraError, ValidationError
from trustguard.events import EventType
from trustguard.policy import Policy, PolicyEffect, PolicyRule


def _flaky(fn, failures):
    calls = {"n": 0}

    def wrapper(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise TransientInfraError("registry unavailable")
        return fn(*args, **kwargs)

    return wrapper, calls


class TestRequestContext:
    def test_from_dict(self):
        ctx = RequestContext.from_dict({"geolocation": "us-east", "geo_anomalous": True, "ticket": "INC-1"})
        assert ctx.anomalous
        assert ctx.extra == {"ticket": "INC-1"}
        assert ctx.to_dict()["geolocation"] == "us-east"

    def test_bad_types(self):
        with pytest.raises(ValidationError):
            RequestContext.from_dict({"geo_anomalous": "yes"})
        with pytest.raises(ValidationError):
            RequestContext.from_dict(["not", "a", "mapping"])


class TestScenarios:
    def test_high_trust_granted(self, tg, set_trust, mfa_session):
        mfa_session("alice", "dev-alice")
        set_trust("alice", 0.95)
        d = tg.access.decide_grant("alice", "dev-alice", "payroll-db", ["read"])
        assert d.outcome == Outcome.GRANTED
        assert d.trust_score_snapshot == 0.95
        assert d.policy_ids_evaluated == ("zero-trust-base@1", "high-risk-data@1")
        assert d.obligations == {"require_mfa": True, "max_grant_seconds": 3600}

    def test_low_trust_denied_by_floor(self, tg, set_trust, mfa_session):
        mfa_session("bob", "dev-bob")
        set_trust("bob", 0.5)
        d = tg.access.decide_grant("bob", "dev-bob", "payroll-db", ["read"])
        assert d.outcome == Outcome.DENIED
        assert any("trust score floor" in r and "0.50 < 0.90" in r for r in d.reasons)
        assert d.obligations == {}
        assert tg.audit.violations() == []

    def test_quarantined_device_denied(self, tg):
        tg.registry.update_device_trust_level("dev-bob", "quarantined")
        d = tg.access.decide_check("bob", "wiki", "read", device_id="dev-bob")
        assert d.risk_level == "high"
        assert d.outcome == Outcome.DENIED
        assert any("deny-high-risk" in r for r in d.reasons)
        [violation] = tg.audit.violations(subject_id="bob")
        assert violation.severity == Severity.HIGH
        assert violation.rule_id == "deny-high-risk"


class TestGates:
    def test_floor_is_exclusive(self, tg, set_trust):
        set_trust("alice", 0.7)
        d = tg.access.decide_grant("alice", "dev-alice", "wiki", ["read"])
        assert d.outcome == Outcome.DENIED
        set_trust("alice", 0.71)
        assert tg.access.decide_grant("alice", "dev-alice", "wiki", ["read"]).granted

    def test_check_has_no_trust_floor(self, tg, set_trust, mfa_session):
        mfa_session("bob", "dev-bob")
        set_trust("bob", 0.5)
        d = tg.access.decide_check("bob", "payroll-db", "read", device_id="dev-bob")
        assert d.outcome == Outcome.GRANTED

    def test_stale_identity_refused(self, tg, clock, set_trust):
        set_trust("alice", 0.95)
        clock.advance(4 * 3600)
        d = tg.access.decide_grant("alice", "dev-alice", "wiki", ["read"])
        assert d.outcome == Outcome.DENIED
        assert any("stale" in r for r in d.reasons)

    def test_stale_identity_still_checked(self, tg, clock):
        clock.advance(4 * 3600)
        assert tg.monitor.identity_phase("alice").value == "stale"
        assert tg.access.decide_check("alice", "wiki", "read", device_id="dev-alice").granted

    def test_revoked_identity_refused_for_checks(self, tg):
        tg.monitor.record_violation("identity", "alice", "critical", "credential-leak")
        d = tg.access.decide_check("alice", "wiki", "read", device_id="dev-alice")
        assert d.outcome == Outcome.DENIED
        assert "identity is revoked; re-verification required" in d.reasons

    def test_revoked_device_refused_for_checks(self, tg):
        tg.monitor.record_violation("device", "dev-bob", "critical", "tamper-detected")
        d = tg.access.decide_check("bob", "wiki", "read", device_id="dev-bob")
        assert d.outcome == Outcome.DENIED
        assert "device 'dev-bob' is revoked" in d.reasons
        assert tg.access.decide_check("bob", "wiki", "read", device_id="phone-bob").granted

    def test_reinstated_identity_checked_again(self, tg):
        tg.monitor.record_violation("identity", "alice", "critical", "credential-leak")
        tg.monitor.reinstate("identity", "alice")
        assert tg.access.decide_check("alice", "wiki", "read", device_id="dev-alice").granted

    def test_insufficient_permissions(self, tg, set_trust):
        set_trust("alice", 0.95)
        d = tg.access.decide_grant("alice", "dev-alice", "payroll-db", ["delete"])
        assert d.outcome == Outcome.DENIED
        assert any("insufficient permissions" in r for r in d.reasons)

    def test_disabled_identity(self, tg):
        tg.registry.disable_identity("bob")
        d = tg.access.decide_check("bob", "wiki", "read", device_id="dev-bob")
        assert d.outcome == Outcome.DENIED
        assert any("deny-disabled-identity" in r for r in d.reasons)

    def test_policy_denial_opens_medium_violation(self, tg, set_trust):
        set_trust("bob", 0.95)
        d = tg.access.decide_grant("bob", "phone-bob", "payroll-db", ["read"])
        assert d.outcome == Outcome.DENIED
        [violation] = tg.audit.violations(subject_id="bob")
        assert violation.severity == Severity.MEDIUM
        assert violation.rule_id == "device-trust"

    def test_violation_can_be_disabled(self, tg, set_trust):
        tg.access.open_violation_on_policy_denial = False
        set_trust("bob", 0.95)
        tg.access.decide_grant("bob", "phone-bob", "payroll-db", ["read"])
        assert tg.audit.violations() == []


class TestCheck:
    def test_device_from_latest_session(self, tg):
        tg.verification.verify("alice", "dev-alice")
        d = tg.access.decide_check("alice", "wiki", "read")
        assert d.device_id == "dev-alice"

    def test_no_device_is_not_found(self, tg):
        with pytest.raises(NotFoundError):
            tg.access.decide_check("alice", "wiki", "read")

    def test_idempotent(self, tg):
        first = tg.access.decide_check("bob", "wiki", "read", device_id="phone-bob")
        second = tg.access.decide_check("bob", "wiki", "read", device_id="phone-bob")
        assert first.decision_id != second.decision_id
        assert (first.outcome, first.reasons, first.risk_score) == (second.outcome, second.reasons, second.risk_score)
        assert tg.access.active_grants("bob") == []


class TestValidation:
    @pytest.mark.parametrize("permissions", [[], None, "read", [""]])
    def test_bad_permissions(self, tg, permissions):
        with pytest.raises(ValidationError):
            tg.access.decide_grant("alice", "dev-alice", "wiki", permissions)
        assert tg.audit.decisions() == []

    def test_missing_ids(self, tg):
        with pytest.raises(ValidationError):
            tg.access.decide_grant("", "dev-alice", "wiki", ["read"])
        with pytest.raises(ValidationError):
            tg.access.decide_check("alice", "wiki", "")

    def test_unknown_entities(self, tg):
        with pytest.raises(NotFoundError):
            tg.access.decide_grant("mallory", "dev-alice", "wiki", ["read"])
        with pytest.raises(NotFoundError):
            tg.access.decide_grant("alice", "dev-alice", "nowhere", ["read"])
        assert tg.audit.decisions() == []


class TestFailures:
    def test_transient_registry_retried(self, tg, monkeypatch):
        flaky, calls = _flaky(tg.registry.get_identity, failures=2)
        monkeypatch.setattr(tg.registry, "get_identity", flaky)
        d = tg.access.decide_check("bob", "wiki", "read", device_id="dev-bob")
        assert d.outcome == Outcome.GRANTED
        assert calls["n"] == 3

    def test_transient_exhausted(self, tg, monkeypatch):
        flaky, _ = _flaky(tg.registry.get_identity, failures=10)
        monkeypatch.setattr(tg.registry, "get_identity", flaky)
        with pytest.raises(TransientInfraError):
            tg.access.decide_check("bob", "wiki", "read", device_id="dev-bob")
        assert tg.audit.decisions() == []

    def test_transient_audit_write_retried(self, tg, monkeypatch):
        flaky, calls = _flaky(tg.audit.record_decision, failures=1)
        monkeypatch.setattr(tg.audit, "record_decision", flaky)
        tg.access.decide_check("bob", "wiki", "read", device_id="dev-bob")
        assert calls["n"] == 2
        assert len(tg.audit.decisions()) == 1

    def test_obligation_conflict(self, tg, set_trust):
        tg.policies.create(Policy(
            "short-grants", "Short Grants", rules=[PolicyRule("allow", PolicyEffect.ALLOW)],
            sensitivities=["high"], obligations={"max_grant_seconds": 600},
        ))
        set_trust("alice", 0.95)
        with pytest.raises(PolicyConflictError):
            tg.access.decide_grant("alice", "dev-alice", "payroll-db", ["read"])
        assert tg.audit.decisions() == []

    def test_no_policies_fail_closed(self, tg, set_trust):
        for p in tg.policies.list():
            tg.policies.delete(p.policy_id)
        set_trust("alice", 0.95)
        d = tg.access.decide_grant("alice", "dev-alice", "wiki", ["read"])
        assert d.outcome == Outcome.DENIED
        assert d.policy_ids_evaluated == ()


class TestGrants:
    def test_grant_expires_with_obligation(self, tg, clock, set_trust, mfa_session):
        mfa_session("alice", "dev-alice")
        set_trust("alice", 0.95)
        tg.access.decide_grant("alice", "dev-alice", "payroll-db", ["read"])
        [grant] = tg.access.active_grants("alice")
        assert grant.expires_at == grant.granted_at + 3600
        clock.advance(3601)
        assert tg.access.active_grants("alice") == []

    def test_obligations_are_read_only(self, tg, set_trust, mfa_session):
        mfa_session("alice", "dev-alice")
        set_trust("alice", 0.95)
        d = tg.access.decide_grant("alice", "dev-alice", "payroll-db", ["read"])
        with pytest.raises(TypeError):
            d.obligations["max_grant_seconds"] = 10**9
        exported = d.to_dict()
        exported["obligations"]["max_grant_seconds"] = 1
        assert d.obligations["max_grant_seconds"] == 3600
        [grant] = tg.access.active_grants("alice")
        assert grant.expires_at == grant.granted_at + 3600
        with pytest.raises(TypeError):
            grant.obligations["require_mfa"] = False

    def test_revocation_event_drops_grants(self, tg, set_trust):
        set_trust("alice", 0.95)
        tg.access.decide_grant("alice", "dev-alice", "wiki", ["read"])
        assert len(tg.access.active_grants("alice")) == 1
        tg.monitor.record_violation("identity", "alice", "critical", "credential-leak")
        assert tg.access.active_grants("alice") == []

    def test_revoke_by_device(self, tg, set_trust):
        set_trust("bob", 0.95)
        tg.access.decide_grant("bob", "dev-bob", "wiki", ["read"])
        tg.access.decide_grant("bob", "phone-bob", "wiki", ["read"])
        assert tg.access.revoke_grants(device_id="phone-bob") == 1
        assert [g.device_id for g in tg.access.active_grants("bob")] == ["dev-bob"]


class TestReporting:
    def test_decision_event_published(self, tg):
        sub = tg.events.subscribe([EventType.DECISION])
        d = tg.access.decide_check("bob", "wiki", "read", device_id="dev-bob")
        [event] = sub.drain()
        assert event.subject_id == "bob"
        assert event.payload["decision_id"] == d.decision_id

    def test_stats_and_recent(self, tg):
        tg.access.decide_check("bob", "wiki", "read", device_id="dev-bob")
        tg.access.decide_grant("bob", "dev-bob", "payroll-db", ["read"])
        stats = tg.access.decision_stats()
        assert stats["granted"] == 1
        assert stats["denied"] == 1
        assert stats["grant_denied"] == 1
        assert len(tg.access.recent_decisions(1)) == 1

    def test_decision_is_frozen(self, tg):
        d = tg.access.decide_check("bob", "wiki", "read", device_id="dev-bob")
        with pytest.raises(AttributeError):
            d.outcome = Outcome.GRANTED


class TestMfa:
    def test_high_sensitivity_requires_mfa_session(self, tg, set_trust):
        set_trust("alice", 0.95)
        d = tg.access.decide_grant("alice", "dev-alice", "payroll-db", ["read"])
        assert d.outcome == Outcome.DENIED
        [violation] = tg.audit.violations(subject_id="alice")
        assert violation.rule_id == "mfa-required"

    def test_request_context_cannot_assert_mfa(self, tg, set_trust):
        set_trust("alice", 0.95)
        d = tg.access.decide_grant("alice", "dev-alice", "payroll-db", ["read"], context={"mfa_verified": True})
        assert d.outcome == Outcome.DENIED
        d = tg.access.decide_check("alice", "payroll-db", "read", device_id="dev-alice",
                                   context={"mfa_verified": True})
        assert d.outcome == Outcome.DENIED

    def test_mfa_is_per_device(self, tg, set_trust, mfa_session):
        tg.registry.register_device("tablet-alice", "alice", {}, "trusted")
        mfa_session("alice", "dev-alice")
        set_trust("alice", 0.95)
        assert tg.access.decide_grant("alice", "dev-alice", "payroll-db", ["read"]).granted
        d = tg.access.decide_grant("alice", "tablet-alice", "payroll-db", ["read"])
        assert d.outcome == Outcome.DENIED

    def test_revoked_session_loses_mfa(self, tg, set_trust, mfa_session):
        result = mfa_session("alice", "dev-alice")
        set_trust("alice", 0.95)
        tg.registry.revoke_session(result.session.session_id, "logout")
        d = tg.access.decide_grant("alice", "dev-alice", "payroll-db", ["read"])
        assert d.outcome == Outcome.DENIED

    def test_low_sensitivity_needs_no_mfa(self, tg, set_trust):
        set_trust("alice", 0.95)
        assert tg.access.decide_grant("alice", "dev-alice", "wiki", ["read"]).granted
