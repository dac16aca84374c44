"""
Policy evaluation engine.

Rules are evaluated first-match with deny priority: any matching deny rule
ends evaluation with a denial; otherwise the first matching allow rule
grants; a request no rule matches is denied (fail-closed).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .models import Policy, PolicyEffect


@dataclass(frozen=True)
class PolicyResult:
    allowed: bool
    matched_rule_id: str | None
    reasons: list[str] = field(default_factory=list)
    policy_id: str = ""
    policy_version: int = 0
    default_deny: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "matched_rule_id": self.matched_rule_id,
            "reasons": list(self.reasons),
            "policy_id": self.policy_id,
            "policy_version": self.policy_version,
            "default_deny": self.default_deny,
        }


@dataclass(frozen=True)
class CombinedResult:
    allowed: bool
    results: list[PolicyResult] = field(default_factory=list)

    @property
    def reasons(self) -> list[str]:
        return [r for result in self.results for r in result.reasons]

    @property
    def denying(self) -> list[PolicyResult]:
        return [r for r in self.results if not r.allowed]


class PolicyEngine:
    """Evaluates a single policy, or a set of policies with AND semantics."""

    def evaluate(self, policy: Policy, context: Mapping[str, Any]) -> PolicyResult:
        # Conditions get a read-only view of the request context.
        view = MappingProxyType(dict(context))
        first_allow = None

        for rule in policy.rules:
            if not rule.evaluate(view):
                continue
            if rule.effect == PolicyEffect.DENY:
                return PolicyResult(
                    allowed=False,
                    matched_rule_id=rule.rule_id,
                    reasons=[f"{policy.policy_id}: denied by rule '{rule.rule_id}'"
                             + (f" ({rule.description})" if rule.description else "")],
                    policy_id=policy.policy_id,
                    policy_version=policy.version,
                )
            if first_allow is None:
                first_allow = rule

        if first_allow is not None:
            return PolicyResult(
                allowed=True,
                matched_rule_id=first_allow.rule_id,
                reasons=[f"{policy.policy_id}: allowed by rule '{first_allow.rule_id}'"],
                policy_id=policy.policy_id,
                policy_version=policy.version,
            )

        return PolicyResult(
            allowed=False,
            matched_rule_id=None,
            reasons=[f"{policy.policy_id}: no rule matched (default deny)"],
            policy_id=policy.policy_id,
            policy_version=policy.version,
            default_deny=True,
        )

    def evaluate_all(self, policies: Iterable[Policy], context: Mapping[str, Any]) -> CombinedResult:
        """Evaluate every policy; the request is allowed only if all allow."""
        results = [self.evaluate(p, context) for p in policies]
        return self.combine(results)

    @staticmethod
    def combine(results: list[PolicyResult]) -> CombinedResult:
        # An empty policy set cannot allow anything.
        allowed = bool(results) and all(r.allowed for r in results)
        return CombinedResult(allowed=allowed, results=list(results))

    def simulate(self, policy: Policy, contexts: list[Mapping[str, Any]]) -> list[PolicyResult]:
        """What-if evaluation of one policy across several contexts."""
        return [self.evaluate(policy, ctx) for ctx in contexts]
