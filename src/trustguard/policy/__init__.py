"""Policy evaluation and storage for TrustGuard."""

from .defaults import DEFAULT_POLICIES_YAML, load_default_policies
from .engine import CombinedResult, PolicyEngine, PolicyResult
from .models import AllOf, AnyOf, Condition, Not, Policy, PolicyCondition, PolicyEffect, PolicyRule
from .store import PolicyStore

__all__ = [
    "AllOf",
    "AnyOf",
    "CombinedResult",
    "Condition",
    "DEFAULT_POLICIES_YAML",
    "Not",
    "Policy",
    "PolicyCondition",
    "PolicyEffect",
    "PolicyEngine",
    "PolicyResult",
    "PolicyRule",
    "PolicyStore",
    "load_default_policies",
]
