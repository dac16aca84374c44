"""
Policy data models.

YAML-compatible policy definitions for zero trust access control.
Policies are frozen: an update produces a new version and earlier
versions stay available so audit records remain reproducible.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping

from ..errors import ValidationError


class PolicyEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


_MISSING = object()


def resolve_field(context: Mapping[str, Any], path: str) -> Any:
    """Look up ``a.b.c`` in nested mappings; missing keys yield a sentinel."""
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, v: a == v,
    "ne": lambda a, v: a != v,
    "gt": lambda a, v: a > v,
    "lt": lambda a, v: a < v,
    "gte": lambda a, v: a >= v,
    "lte": lambda a, v: a <= v,
    "in": lambda a, v: a in v,
    "not_in": lambda a, v: a not in v,
    "contains": lambda a, v: v in a,
}


class Condition:
    """A side-effect-free predicate over a request context."""

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> Condition:
        if not isinstance(data, Mapping):
            raise ValidationError("condition must be a mapping", {"condition": data})
        if "all_of" in data:
            return AllOf([Condition.from_dict(c) for c in data["all_of"]])
        if "any_of" in data:
            return AnyOf([Condition.from_dict(c) for c in data["any_of"]])
        if "not" in data:
            return Not(Condition.from_dict(data["not"]))
        try:
            return PolicyCondition(
                field=data["field"],
                operator=data["operator"],
                value=data.get("value"),
            )
        except KeyError as e:
            raise ValidationError(f"condition is missing '{e.args[0]}'", {"condition": dict(data)}) from None


@dataclass(frozen=True)
class PolicyCondition(Condition):
    """Compare one context field against a value."""
    field: str  # e.g. "risk_level", "attributes.department"
    operator: str  # eq, ne, gt, lt, gte, lte, in, not_in, contains, exists
    value: Any = None

    def __post_init__(self):
        if self.operator != "exists" and self.operator not in OPERATORS:
            raise ValidationError(f"unknown operator '{self.operator}'", {"allowed": sorted([*OPERATORS, "exists"])})

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        actual = resolve_field(context, self.field)
        if self.operator == "exists":
            return (actual is not _MISSING) == bool(self.value if self.value is not None else True)
        if actual is _MISSING or actual is None:
            return False
        try:
            return bool(OPERATORS[self.operator](actual, self.value))
        except (TypeError, ValueError):
            return False

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class AllOf(Condition):
    conditions: tuple[Condition, ...] = ()

    def __init__(self, conditions):
        object.__setattr__(self, "conditions", tuple(conditions))

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return all(c.evaluate(context) for c in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"all_of": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class AnyOf(Condition):
    conditions: tuple[Condition, ...] = ()

    def __init__(self, conditions):
        object.__setattr__(self, "conditions", tuple(conditions))

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return any(c.evaluate(context) for c in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"any_of": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class Not(Condition):
    condition: Condition

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(context)

    def to_dict(self) -> dict[str, Any]:
        return {"not": self.condition.to_dict()}


@dataclass(frozen=True)
class PolicyRule:
    """A single rule within a policy. An empty condition list always matches."""
    rule_id: str
    effect: PolicyEffect = PolicyEffect.DENY
    conditions: tuple[Condition, ...] = ()
    description: str = ""

    def __post_init__(self):
        if not self.rule_id:
            raise ValidationError("rule_id is required")
        object.__setattr__(self, "effect", PolicyEffect(self.effect))
        object.__setattr__(self, "conditions", tuple(self.conditions))

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        """Return True if all conditions match."""
        return all(c.evaluate(context) for c in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "description": self.description,
            "effect": self.effect.value,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PolicyRule:
        try:
            effect = PolicyEffect(data.get("effect", "deny"))
        except ValueError:
            raise ValidationError(f"unknown rule effect '{data.get('effect')}'") from None
        if "rule_id" not in data:
            raise ValidationError("rule is missing 'rule_id'", {"rule": dict(data)})
        return cls(
            rule_id=data["rule_id"],
            effect=effect,
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions", [])),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class Policy:
    """
    A named, versioned, ordered set of rules.

    ``sensitivities`` scopes the policy: empty means a base policy that
    applies to every request; otherwise it applies only to resources of
    the listed sensitivities. ``obligations`` are settings a grant must
    honour (e.g. ``max_grant_seconds``, ``require_mfa``).
    """
    policy_id: str
    name: str
    rules: tuple[PolicyRule, ...] = ()
    version: int = 1
    enabled: bool = True
    description: str = ""
    tags: tuple[str, ...] = ()
    sensitivities: tuple[str, ...] = ()
    obligations: Mapping[str, Any] = field(default_factory=dict)
    deleted: bool = False

    def __post_init__(self):
        if not self.policy_id:
            raise ValidationError("policy_id is required")
        if not self.name:
            raise ValidationError("policy name is required", {"policy_id": self.policy_id})
        rules = tuple(self.rules)
        if not rules:
            raise ValidationError("policy must contain at least one rule", {"policy_id": self.policy_id})
        ids = [r.rule_id for r in rules]
        if len(ids) != len(set(ids)):
            raise ValidationError("rule ids must be unique within a policy", {"policy_id": self.policy_id})
        object.__setattr__(self, "rules", rules)
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "sensitivities", tuple(self.sensitivities))
        object.__setattr__(self, "obligations", MappingProxyType(dict(self.obligations)))

    @property
    def ref(self) -> str:
        return f"{self.policy_id}@{self.version}"

    @property
    def is_base(self) -> bool:
        return not self.sensitivities

    def applies_to(self, sensitivity: str) -> bool:
        return self.is_base or sensitivity in self.sensitivities

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "enabled": self.enabled,
            "tags": list(self.tags),
            "sensitivities": list(self.sensitivities),
            "obligations": dict(self.obligations),
            "rules": [r.to_dict() for r in self.rules],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Policy:
        if not isinstance(data, Mapping):
            raise ValidationError("policy must be a mapping")
        for key in ("policy_id", "name"):
            if key not in data:
                raise ValidationError(f"policy is missing '{key}'")
        return cls(
            policy_id=data["policy_id"],
            name=data["name"],
            rules=tuple(PolicyRule.from_dict(rd) for rd in data.get("rules", [])),
            version=int(data.get("version", 1)),
            enabled=data.get("enabled", True),
            description=data.get("description", ""),
            tags=tuple(data.get("tags", [])),
            sensitivities=tuple(data.get("sensitivities", [])),
            obligations=dict(data.get("obligations", {})),
        )
