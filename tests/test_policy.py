"""Tests for policy engine and store."""

import pytest
import yaml

from trustguard.errors import NotFoundError, PolicyConflictError, ValidationError
from trustguard.policy import (
    AllOf,
    AnyOf,
    Condition,
    Not,
    Policy,
    PolicyCondition,
    PolicyEffect,
    PolicyEngine,
    PolicyRule,
    PolicyStore,
    load_default_policies,
)


@pytest.fixture
def engine():
    return PolicyEngine()


@pytest.fixture
def store():
    s = PolicyStore()
    load_default_policies(s)
    return s


class TestPolicyCondition:
    def test_eq(self):
        c = PolicyCondition("zone", "eq", "internal")
        assert c.evaluate({"zone": "internal"})
        assert not c.evaluate({"zone": "external"})

    def test_gt(self):
        c = PolicyCondition("risk", "gt", 0.5)
        assert c.evaluate({"risk": 0.8})
        assert not c.evaluate({"risk": 0.3})

    def test_lt(self):
        c = PolicyCondition("risk", "lt", 0.5)
        assert c.evaluate({"risk": 0.3})

    def test_in(self):
        c = PolicyCondition("action", "in", ["read", "write"])
        assert c.evaluate({"action": "read"})
        assert not c.evaluate({"action": "delete"})

    def test_missing_field(self):
        c = PolicyCondition("zone", "eq", "internal")
        assert not c.evaluate({})

    def test_dotted_path(self):
        c = PolicyCondition("attributes.department", "eq", "finance")
        assert c.evaluate({"attributes": {"department": "finance"}})
        assert not c.evaluate({"attributes": {}})

    def test_exists(self):
        assert PolicyCondition("mfa", "exists").evaluate({"mfa": False})
        assert not PolicyCondition("mfa", "exists").evaluate({})
        assert PolicyCondition("mfa", "exists", False).evaluate({})

    def test_type_mismatch_is_false(self):
        assert not PolicyCondition("risk", "gt", 0.5).evaluate({"risk": "high"})

    def test_unknown_operator(self):
        with pytest.raises(ValidationError):
            PolicyCondition("risk", "matches", ".*")


class TestComposites:
    def test_all_any_not(self):
        cond = AllOf([
            PolicyCondition("risk_level", "ne", "high"),
            AnyOf([PolicyCondition("mfa_verified", "eq", True), PolicyCondition("network_segment", "eq", "corp")]),
            Not(PolicyCondition("device_trust_level", "eq", "untrusted")),
        ])
        ctx = {"risk_level": "low", "mfa_verified": False, "network_segment": "corp", "device_trust_level": "trusted"}
        assert cond.evaluate(ctx)
        assert not cond.evaluate({**ctx, "network_segment": "cafe"})
        assert not cond.evaluate({**ctx, "device_trust_level": "untrusted"})

    def test_from_dict_roundtrip(self):
        raw = {"any_of": [{"field": "a", "operator": "eq", "value": 1}, {"not": {"field": "b", "operator": "exists"}}]}
        cond = Condition.from_dict(raw)
        assert isinstance(cond, AnyOf)
        assert Condition.from_dict(cond.to_dict()) == cond

    def test_from_dict_missing_key(self):
        with pytest.raises(ValidationError):
            Condition.from_dict({"field": "a"})


class TestPolicyModel:
    def test_rules_required(self):
        with pytest.raises(ValidationError):
            Policy(policy_id="p", name="Empty", rules=[])

    def test_duplicate_rule_ids(self):
        with pytest.raises(ValidationError):
            Policy(policy_id="p", name="Dup", rules=[PolicyRule("r"), PolicyRule("r", PolicyEffect.ALLOW)])

    def test_frozen(self, risk_policy):
        with pytest.raises(AttributeError):
            risk_policy.name = "changed"

    def test_scope(self, store):
        base = store.get("zero-trust-base")
        data = store.get("high-risk-data")
        assert base.is_base and base.applies_to("low")
        assert data.applies_to("high") and not data.applies_to("low")
        assert data.ref == "high-risk-data@1"


class TestPolicyEngine:
    def test_deny_priority_scenario(self, engine, risk_policy):
        result = engine.evaluate(risk_policy, {"risk_level": "high"})
        assert not result.allowed
        assert result.matched_rule_id == "deny-high"

    def test_allow(self, engine, risk_policy):
        result = engine.evaluate(risk_policy, {"risk_level": "low"})
        assert result.allowed
        assert result.matched_rule_id == "allow-all"

    def test_deny_after_allow_still_wins(self, engine):
        policy = Policy("p", "Order", rules=[
            PolicyRule("allow-corp", PolicyEffect.ALLOW, [PolicyCondition("network_segment", "eq", "corp")]),
            PolicyRule("deny-untrusted", PolicyEffect.DENY, [PolicyCondition("device_trust_level", "eq", "untrusted")]),
        ])
        result = engine.evaluate(policy, {"network_segment": "corp", "device_trust_level": "untrusted"})
        assert not result.allowed
        assert result.matched_rule_id == "deny-untrusted"

    def test_first_allow_wins(self, engine):
        policy = Policy("p", "Allows", rules=[
            PolicyRule("a1", PolicyEffect.ALLOW, [PolicyCondition("x", "eq", 1)]),
            PolicyRule("a2", PolicyEffect.ALLOW, []),
        ])
        assert engine.evaluate(policy, {"x": 1}).matched_rule_id == "a1"

    def test_fail_closed(self, engine):
        policy = Policy("p", "Narrow", rules=[
            PolicyRule("allow-corp", PolicyEffect.ALLOW, [PolicyCondition("network_segment", "eq", "corp")]),
        ])
        result = engine.evaluate(policy, {"network_segment": "cafe"})
        assert not result.allowed
        assert result.matched_rule_id is None
        assert result.default_deny

    def test_context_is_read_only(self, engine):
        class Mutator(Condition):
            def evaluate(self, context):
                context["risk_level"] = "low"
                return True

        policy = Policy("p", "Bad", rules=[PolicyRule("r", PolicyEffect.ALLOW, [Mutator()])])
        ctx = {"risk_level": "high"}
        with pytest.raises(TypeError):
            engine.evaluate(policy, ctx)
        assert ctx["risk_level"] == "high"

    def test_combine_is_and(self, engine, risk_policy, store):
        ctx = {"risk_level": "low", "device_trust_level": "provisional", "identity_enabled": True,
               "geo_anomalous": False, "network_anomalous": False}
        combined = engine.evaluate_all([risk_policy, *store.applicable("high")], ctx)
        assert not combined.allowed
        assert [r.policy_id for r in combined.denying] == ["high-risk-data"]

    def test_combine_empty_denies(self, engine):
        assert not engine.combine([]).allowed

    def test_simulate(self, engine, risk_policy):
        results = engine.simulate(risk_policy, [{"risk_level": "high"}, {"risk_level": "medium"}])
        assert [r.allowed for r in results] == [False, True]


class TestPolicyStore:
    def test_defaults_loaded(self, store):
        assert {p.policy_id for p in store.list()} == {"zero-trust-base", "high-risk-data"}

    def test_create_duplicate(self, store, risk_policy):
        store.create(risk_policy)
        with pytest.raises(ValidationError):
            store.create(risk_policy)

    def test_update_creates_version(self, store):
        v2 = store.update("zero-trust-base", description="tightened")
        assert v2.version == 2
        assert store.get("zero-trust-base").description == "tightened"
        assert store.get("zero-trust-base", version=1).description != "tightened"
        assert [p.version for p in store.history("zero-trust-base")] == [1, 2]

    def test_update_rules_from_dicts(self, store):
        v2 = store.update("zero-trust-base", rules=[{"rule_id": "deny-all", "effect": "deny"}])
        assert v2.rules[0].rule_id == "deny-all"

    def test_update_rejects_unknown_fields(self, store):
        with pytest.raises(ValidationError):
            store.update("zero-trust-base", version=99)

    def test_delete_keeps_history(self, store):
        store.delete("high-risk-data")
        with pytest.raises(NotFoundError):
            store.get("high-risk-data")
        assert store.get("high-risk-data", version=1).name == "High-Risk Data Access Policy"
        assert store.history("high-risk-data")[-1].deleted

    def test_recreate_after_delete(self, store, risk_policy):
        store.create(risk_policy)
        store.delete("risk-gate")
        assert store.create(risk_policy).version == 3

    def test_applicable(self, store):
        store.update("zero-trust-base", enabled=False)
        assert [p.policy_id for p in store.applicable("high")] == ["high-risk-data"]
        assert store.applicable("low") == []

    def test_merge_obligations(self, store):
        merged = store.merge_obligations(store.applicable("high"))
        assert merged == {"require_mfa": True, "max_grant_seconds": 3600}

    def test_obligations_read_only(self, store):
        policy = store.get("high-risk-data")
        with pytest.raises(TypeError):
            policy.obligations["max_grant_seconds"] = 10**9
        exported = policy.to_dict()
        exported["obligations"]["require_mfa"] = False
        assert store.get("high-risk-data").obligations["require_mfa"] is True

    def test_obligations_copied_on_create(self):
        source = {"max_grant_seconds": 60}
        s = PolicyStore()
        s.create(Policy("p", "P", rules=[PolicyRule("allow", PolicyEffect.ALLOW)], obligations=source))
        source["max_grant_seconds"] = 10**9
        assert s.get("p").obligations["max_grant_seconds"] == 60

    def test_obligation_conflict(self, store):
        store.create(Policy(
            "short-grants", "Short Grants", rules=[PolicyRule("allow", PolicyEffect.ALLOW)],
            sensitivities=["high"], obligations={"max_grant_seconds": 600},
        ))
        with pytest.raises(PolicyConflictError):
            store.merge_obligations(store.applicable("high"))

    def test_detect_conflicts(self, store):
        conflicts = store.detect_conflicts()
        assert conflicts
        assert all(c["type"] == "overlapping_conditions_different_effects" for c in conflicts)

    def test_disjoint_rules_no_conflict(self):
        s = PolicyStore()
        s.create(Policy("p", "Disjoint", rules=[
            PolicyRule("deny-ext", PolicyEffect.DENY, [PolicyCondition("zone", "eq", "external")]),
            PolicyRule("allow-int", PolicyEffect.ALLOW, [PolicyCondition("zone", "eq", "internal")]),
        ]))
        assert s.detect_conflicts() == []

    def test_yaml_roundtrip(self, store):
        exported = store.export_yaml()
        data = yaml.safe_load(exported)
        assert len(data["policies"]) == 2
        fresh = PolicyStore()
        loaded = fresh.load_yaml(exported)
        assert [p.policy_id for p in loaded] == [p.policy_id for p in store.list()]
        assert fresh.get("high-risk-data").rules == store.get("high-risk-data").rules

    def test_load_single_policy(self):
        s = PolicyStore()
        s.load_yaml("policy_id: solo\nname: Solo\nrules:\n  - rule_id: r1\n    effect: allow\n")
        assert s.get("solo").rules[0].effect == PolicyEffect.ALLOW

    def test_load_invalid(self):
        with pytest.raises(ValidationError):
            PolicyStore().load_yaml("- just\n- a list\n")

    def test_summary(self, store):
        summary = store.summary()
        assert summary["total_policies"] == 2
        assert summary["total_rules"] == 8
