"""
Access decision service.

Makes grant and check decisions: resolves the identity and device,
snapshots the trust score, assesses risk, evaluates every applicable policy
with AND semantics, applies the hard trust floors, and only then commits
the fully built decision to the audit log and publishes it.
"""

from __future__ import annotations

import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, TypeVar

import structlog

from ..audit import AccessDecision, AuditLog, DecisionKind, Outcome, Severity, SubjectType
from ..clock import Clock, SystemClock
from ..errors import NotFoundError, PolicyConflictError
from ..events import Event, EventBroadcaster, EventType
from ..identity import Device, Identity, IdentityRegistry, Session
from ..policy import PolicyEngine, PolicyStore
from ..risk import RiskEngine, RiskLevel, RiskResult
from .context import RequestContext, require_id, validate_permissions
from .resources import Resource, ResourceCatalog, Sensitivity
from .retry import with_retry

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Grant:
    """A live grant produced by a granted ``decide_grant``."""
    decision_id: str
    identity_id: str
    device_id: str
    resource_id: str
    permissions: tuple[str, ...]
    granted_at: float
    expires_at: float | None = None
    obligations: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "obligations", MappingProxyType(dict(self.obligations)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "identity_id": self.identity_id,
            "device_id": self.device_id,
            "resource_id": self.resource_id,
            "permissions": list(self.permissions),
            "granted_at": self.granted_at,
            "expires_at": self.expires_at,
            "obligations": dict(self.obligations),
        }


class AccessDecisionEngine:
    """
    Risk-based zero trust access control.

    ``phase_of(subject_type, subject_id)`` reports a monitor phase. A revoked
    identity or device is refused for grants and checks alike; a stale
    identity is refused grants only. The policy context takes
    ``mfa_verified`` from the verified session on the device, never from the
    caller. ``violation_sink`` opens violations for
    policy denials; it defaults to writing straight into the audit log.
    """

    def __init__(
        self,
        registry: IdentityRegistry,
        risk_engine: RiskEngine,
        policy_store: PolicyStore,
        audit: AuditLog,
        broadcaster: EventBroadcaster,
        resources: ResourceCatalog,
        policy_engine: PolicyEngine | None = None,
        clock: Clock | None = None,
        grant_trust_floor: float = 0.7,
        high_sensitivity_min_trust: float = 0.9,
        open_violation_on_policy_denial: bool = True,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
        phase_of: Callable[[str, str], str] | None = None,
        violation_sink: Callable[..., Any] | None = None,
    ):
        self.registry = registry
        self.risk_engine = risk_engine
        self.policy_store = policy_store
        self.policy_engine = policy_engine or PolicyEngine()
        self.audit = audit
        self.broadcaster = broadcaster
        self.resources = resources
        self.clock = clock or SystemClock()
        self.grant_trust_floor = grant_trust_floor
        self.high_sensitivity_min_trust = high_sensitivity_min_trust
        self.open_violation_on_policy_denial = open_violation_on_policy_denial
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.phase_of = phase_of
        self.violation_sink = violation_sink or audit.open_violation

        self._grants: dict[str, list[Grant]] = {}
        self._grants_lock = threading.Lock()
        broadcaster.add_listener(self._on_event, [EventType.RISK_CHANGE])

    # --- Public API ---

    def decide_grant(
        self,
        identity_id: str,
        device_id: str,
        resource_id: str,
        permissions: Iterable[str],
        context: Mapping[str, Any] | RequestContext | None = None,
    ) -> AccessDecision:
        require_id(identity_id, "identity_id")
        require_id(device_id, "device_id")
        require_id(resource_id, "resource_id")
        perms = validate_permissions(permissions)
        ctx = RequestContext.from_dict(context)
        return self._decide(DecisionKind.GRANT, identity_id, device_id, resource_id, perms, ctx)

    def decide_check(
        self,
        identity_id: str,
        resource_id: str,
        action: str,
        device_id: str | None = None,
        context: Mapping[str, Any] | RequestContext | None = None,
    ) -> AccessDecision:
        """Check whether ``action`` is allowed now. Has no effect on grants."""
        require_id(identity_id, "identity_id")
        require_id(resource_id, "resource_id")
        require_id(action, "action")
        if device_id is not None:
            require_id(device_id, "device_id")
        ctx = RequestContext.from_dict(context)
        return self._decide(DecisionKind.CHECK, identity_id, device_id, resource_id, (action,), ctx)

    def active_grants(self, identity_id: str | None = None) -> list[Grant]:
        now = self.clock.now()
        with self._grants_lock:
            pools = [self._grants.get(identity_id, [])] if identity_id else list(self._grants.values())
            return [g for pool in pools for g in pool if g.expires_at is None or g.expires_at > now]

    def revoke_grants(
        self, identity_id: str | None = None, device_id: str | None = None, reason: str = "revoked"
    ) -> int:
        """Invalidate live grants by identity and/or device; returns how many were dropped."""
        removed = 0
        with self._grants_lock:
            for ident in list(self._grants):
                if identity_id is not None and ident != identity_id:
                    continue
                keep = [g for g in self._grants[ident] if device_id is not None and g.device_id != device_id]
                removed += len(self._grants[ident]) - len(keep)
                if keep:
                    self._grants[ident] = keep
                else:
                    del self._grants[ident]
        if removed:
            logger.warning("grants_revoked", identity_id=identity_id, device_id=device_id,
                           count=removed, reason=reason)
        return removed

    def recent_decisions(self, n: int = 50) -> list[dict[str, Any]]:
        return [d.to_dict() for d in self.audit.decisions(limit=n)]

    def decision_stats(self) -> dict[str, int]:
        decisions = self.audit.decisions()
        stats = Counter(d.outcome.value for d in decisions)
        by_kind = Counter(f"{d.kind.value}_{d.outcome.value}" for d in decisions)
        return {Outcome.GRANTED.value: 0, Outcome.DENIED.value: 0, **stats, **by_kind}

    # --- Decision pipeline ---

    def _decide(
        self,
        kind: DecisionKind,
        identity_id: str,
        device_id: str | None,
        resource_id: str,
        permissions: tuple[str, ...],
        ctx: RequestContext,
    ) -> AccessDecision:
        ident, device, session = self._retry(lambda: self._resolve(identity_id, device_id), "resolve")
        resource = self.resources.get(resource_id)

        # The decision works on this snapshot; later monitor updates are not seen.
        trust_snapshot = ident.trust_score
        risk = self.risk_engine.assess(ident, device, ctx.to_dict())

        policies = self.policy_store.applicable(resource.sensitivity.value)
        try:
            obligations = PolicyStore.merge_obligations(policies)
        except PolicyConflictError as e:
            logger.error("policy_conflict", identity_id=identity_id, resource_id=resource_id, **e.details)
            raise

        policy_ctx = self._policy_context(
            kind, ident, device, session, resource, permissions, risk, ctx, trust_snapshot
        )
        combined = self.policy_engine.evaluate_all(policies, policy_ctx)

        reasons: list[str] = []
        if combined.allowed:
            reasons.extend(combined.reasons)
        else:
            reasons.extend(r for result in combined.denying for r in result.reasons)
            if not policies:
                reasons.append(f"no policy applies to '{resource_id}' (default deny)")

        gate_reasons = self._gate_reasons(kind, ident, device, resource, permissions, trust_snapshot)
        reasons.extend(gate_reasons)
        granted = combined.allowed and not gate_reasons

        decision = AccessDecision(
            decision_id=f"dec-{uuid.uuid4().hex[:12]}",
            kind=kind,
            identity_id=ident.identity_id,
            device_id=device.device_id,
            resource_id=resource_id,
            requested_permissions=permissions,
            policy_ids_evaluated=tuple(p.ref for p in policies),
            outcome=Outcome.GRANTED if granted else Outcome.DENIED,
            reasons=tuple(reasons),
            risk_level=risk.level.value,
            risk_score=risk.score,
            trust_score_snapshot=trust_snapshot,
            timestamp=self.clock.now(),
            obligations=obligations if granted else {},
        )
        self._retry(lambda: self.audit.record_decision(decision), "record_decision")

        logger.info(
            "access_decision",
            decision_id=decision.decision_id,
            kind=kind.value,
            identity_id=identity_id,
            resource_id=resource_id,
            outcome=decision.outcome.value,
            risk_level=decision.risk_level,
            trust=trust_snapshot,
        )

        if granted and kind == DecisionKind.GRANT:
            self._store_grant(decision)

        denying_rules = [r for r in combined.denying if r.matched_rule_id is not None]
        if denying_rules and self.open_violation_on_policy_denial:
            first = denying_rules[0]
            self.violation_sink(
                SubjectType.IDENTITY,
                identity_id,
                Severity.HIGH if risk.level == RiskLevel.HIGH else Severity.MEDIUM,
                first.matched_rule_id,
                f"{kind.value} of {resource_id} denied by {first.policy_id}@{first.policy_version}",
            )

        self.broadcaster.emit(EventType.DECISION, identity_id, decision.to_dict())
        return decision

    def _resolve(self, identity_id: str, device_id: str | None) -> tuple[Identity, Device, Session | None]:
        ident = self.registry.get_identity(identity_id)
        sessions = self.registry.active_sessions(identity_id)
        if device_id is None:
            if not sessions:
                raise NotFoundError("device", f"<active session of {identity_id}>")
            device_id = max(sessions, key=lambda s: s.started_at).device_id
        on_device = [s for s in sessions if s.device_id == device_id]
        session = max(on_device, key=lambda s: s.started_at) if on_device else None
        return ident, self.registry.get_device(device_id), session

    def _gate_reasons(
        self,
        kind: DecisionKind,
        ident: Identity,
        device: Device,
        resource: Resource,
        permissions: tuple[str, ...],
        trust: float,
    ) -> list[str]:
        reasons = []
        missing = resource.permits(permissions)
        if missing:
            reasons.append(f"insufficient permissions: {', '.join(missing)} not offered by '{resource.resource_id}'")

        identity_phase = device_phase = None
        if self.phase_of is not None:
            identity_phase = self.phase_of(SubjectType.IDENTITY.value, ident.identity_id)
            device_phase = self.phase_of(SubjectType.DEVICE.value, device.device_id)
        if identity_phase == "revoked":
            reasons.append("identity is revoked; re-verification required")
        if device_phase == "revoked":
            reasons.append(f"device '{device.device_id}' is revoked")
        if kind != DecisionKind.GRANT:
            return reasons

        if trust <= self.grant_trust_floor:
            reasons.append(f"trust score floor not met ({trust:.2f} <= {self.grant_trust_floor:.2f})")
        if resource.sensitivity == Sensitivity.HIGH and trust <= self.high_sensitivity_min_trust:
            reasons.append(
                f"trust score floor for high sensitivity not met "
                f"({trust:.2f} < {self.high_sensitivity_min_trust:.2f} required)"
            )
        if identity_phase == "stale":
            reasons.append("identity is stale; re-verification required")
        return reasons

    @staticmethod
    def _policy_context(
        kind: DecisionKind,
        ident: Identity,
        device: Device,
        session: Session | None,
        resource: Resource,
        permissions: tuple[str, ...],
        risk: RiskResult,
        ctx: RequestContext,
        trust: float,
    ) -> dict[str, Any]:
        return {
            **ctx.to_dict(),
            "kind": kind.value,
            "identity_id": ident.identity_id,
            "identity_enabled": ident.enabled,
            "attributes": dict(ident.attributes),
            "trust_score": trust,
            "device_id": device.device_id,
            "device_trust_level": device.trust_level.value,
            "device_owned": device.owner_id == ident.identity_id,
            "posture": dict(device.posture_signals),
            "session_id": session.session_id if session else None,
            "mfa_verified": bool(session is not None and session.context.get("mfa_verified") is True),
            "resource_id": resource.resource_id,
            "sensitivity": resource.sensitivity.value,
            "resource": dict(resource.attributes),
            "permissions": list(permissions),
            "action": permissions[0] if kind == DecisionKind.CHECK else None,
            "risk_level": risk.level.value,
            "risk_score": risk.score,
        }

    def _store_grant(self, decision: AccessDecision) -> None:
        max_seconds = decision.obligations.get("max_grant_seconds")
        grant = Grant(
            decision_id=decision.decision_id,
            identity_id=decision.identity_id,
            device_id=decision.device_id,
            resource_id=decision.resource_id,
            permissions=decision.requested_permissions,
            granted_at=decision.timestamp,
            expires_at=decision.timestamp + float(max_seconds) if max_seconds else None,
            obligations=dict(decision.obligations),
        )
        with self._grants_lock:
            self._grants.setdefault(decision.identity_id, []).append(grant)

    def _retry(self, fn: Callable[[], T], operation: str) -> T:
        return with_retry(fn, self.retry_attempts, self.retry_backoff, operation)

    # --- Event handling ---

    def _on_event(self, event: Event) -> None:
        """Drop grants of subjects the monitor has revoked."""
        if event.payload.get("phase") != "revoked":
            return
        subject_type = event.payload.get("subject_type")
        if subject_type == SubjectType.IDENTITY.value:
            self.revoke_grants(identity_id=event.subject_id, reason="identity_revoked")
        elif subject_type == SubjectType.DEVICE.value:
            self.revoke_grants(device_id=event.subject_id, reason="device_revoked")
