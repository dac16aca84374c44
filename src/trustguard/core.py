"""
Engine wiring.

Builds every component from one ``TrustGuardSettings`` and one clock so
the registry, risk engine, monitor and decision service agree on time
and thresholds.
"""

from __future__ import annotations

from typing import Any

import structlog

from .access import (
    AccessDecisionEngine,
    InMemoryMfaVerifier,
    ResourceCatalog,
    VerificationService,
)
from .access.verification import IdentityVerifier, MfaVerifier
from .audit import AuditLog
from .clock import Clock, SystemClock
from .config import TrustGuardSettings
from .events import EventBroadcaster
from .identity import IdentityRegistry
from .monitor import ContinuousMonitor
from .policy import PolicyEngine, PolicyStore, load_default_policies
from .risk import RiskEngine

logger = structlog.get_logger(__name__)


class TrustGuard:
    """The assembled engine."""

    def __init__(
        self,
        settings: TrustGuardSettings | None = None,
        clock: Clock | None = None,
        identity_verifier: IdentityVerifier | None = None,
        mfa_verifiers: dict[str, MfaVerifier] | None = None,
        load_defaults: bool = True,
    ):
        s = self.settings = settings or TrustGuardSettings()
        self.clock = clock or SystemClock()

        self.registry = IdentityRegistry(self.clock, initial_trust_score=s.initial_trust_score)
        self.risk = RiskEngine(
            self.clock,
            verification_ttl=s.verification_ttl,
            staleness_window=s.effective_staleness_window,
            anomaly_penalty=s.anomaly_penalty,
        )
        self.policies = PolicyStore()
        if load_defaults:
            load_default_policies(self.policies)
        self.policy_engine = PolicyEngine()
        self.audit = AuditLog(self.clock)
        self.events = EventBroadcaster(self.clock, buffer_size=s.event_buffer_size)
        self.resources = ResourceCatalog()

        self.monitor = ContinuousMonitor(
            self.registry,
            self.risk,
            self.audit,
            self.events,
            clock=self.clock,
            aging_after=s.aging_after,
            stale_after=s.stale_after,
            aging_decay_per_hour=s.aging_decay_per_hour,
            stale_decay_per_hour=s.stale_decay_per_hour,
            trust_recompute_interval=s.trust_recompute_interval,
            threat_scan_interval=s.threat_scan_interval,
            session_max_age=s.session_max_age,
            session_retention=s.session_retention,
        )
        self.access = AccessDecisionEngine(
            self.registry,
            self.risk,
            self.policies,
            self.audit,
            self.events,
            self.resources,
            policy_engine=self.policy_engine,
            clock=self.clock,
            grant_trust_floor=s.grant_trust_floor,
            high_sensitivity_min_trust=s.high_sensitivity_min_trust,
            open_violation_on_policy_denial=s.open_violation_on_policy_denial,
            retry_attempts=s.transient_retry_attempts,
            retry_backoff=s.transient_retry_backoff,
            phase_of=lambda subject_type, subject_id: self.monitor.phase_of(subject_type, subject_id).value,
            violation_sink=self.monitor.record_violation,
        )

        self.mfa = InMemoryMfaVerifier()
        self.verification = VerificationService(
            self.registry,
            self.risk,
            identity_verifier=identity_verifier,
            mfa_verifiers=mfa_verifiers if mfa_verifiers is not None else {"totp": self.mfa},
            trust_boost=s.verification_trust_boost,
            failure_penalty=s.verification_failure_penalty,
            retry_attempts=s.transient_retry_attempts,
            retry_backoff=s.transient_retry_backoff,
            timeout=s.collaborator_timeout,
            max_workers=s.collaborator_workers,
        )

    def start(self) -> None:
        self.monitor.start()

    def stop(self) -> None:
        self.monitor.stop()

    def close(self) -> None:
        """Stop the monitor and release the verification pool."""
        self.stop()
        self.verification.close()

    def summary(self) -> dict[str, Any]:
        return {
            "identities": self.registry.summary(),
            "policies": self.policies.summary(),
            "audit": self.audit.stats(),
            "events": self.events.stats(),
            "risk": self.monitor.risk_summary(),
        }
