"""Shared test fixtures for TrustGuard."""

import pytest

from trustguard.clock import ManualClock
from trustguard.config import TrustGuardSettings
from trustguard.core import TrustGuard
from trustguard.identity import IdentityRegistry
from trustguard.policy import Policy, PolicyCondition, PolicyEffect, PolicyRule
from trustguard.risk import RiskEngine


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def settings():
    return TrustGuardSettings(_env_file=None, transient_retry_backoff=0)


@pytest.fixture
def registry(clock):
    reg = IdentityRegistry(clock)
    reg.upsert_identity("alice", {"department": "engineering", "role": "developer"})
    reg.upsert_identity("bob", {"department": "finance", "role": "analyst"})
    reg.register_device("dev-alice", "alice", {"disk_encrypted": True}, "trusted")
    reg.register_device("dev-bob", "bob", {"disk_encrypted": False}, "provisional")
    return reg


@pytest.fixture
def risk_engine(clock):
    return RiskEngine(clock)


@pytest.fixture
def risk_policy():
    """Deny on high risk, allow everything else."""
    return Policy(
        policy_id="risk-gate",
        name="Risk Gate",
        rules=[
            PolicyRule("deny-high", PolicyEffect.DENY, [PolicyCondition("risk_level", "eq", "high")]),
            PolicyRule("allow-all", PolicyEffect.ALLOW, []),
        ],
    )


@pytest.fixture
def tg(settings, clock):
    engine = TrustGuard(settings, clock=clock)
    engine.registry.upsert_identity("alice", {"department": "engineering"})
    engine.registry.upsert_identity("bob", {"department": "finance"})
    engine.registry.register_device("dev-alice", "alice", {"disk_encrypted": True}, "trusted")
    engine.registry.register_device("dev-bob", "bob", {}, "trusted")
    engine.registry.register_device("phone-bob", "bob", {}, "provisional")
    engine.resources.register("payroll-db", "high", ["read", "write"])
    engine.resources.register("wiki", "low")
    for ident in ("alice", "bob"):
        engine.registry.record_verification(ident)
    return engine


@pytest.fixture
def set_trust(tg):
    def _set(identity_id, value):
        return tg.registry.update_trust_score(identity_id, lambda _: value)
    return _set


@pytest.fixture
def mfa_session(tg):
    """Verify an identity on a device with TOTP so its session carries MFA."""
    def _verify(identity_id, device_id, code="424242"):
        tg.mfa.issue(identity_id, code)
        return tg.verification.verify(identity_id, device_id, mfa={"method": "totp", "code": code})
    return _verify
