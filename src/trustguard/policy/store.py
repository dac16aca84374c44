"""
Versioned policy store.

Create/update/list/delete interface for policies. Every update writes a new
version and keeps the old ones, so a decision's ``policy@version``
reference always resolves to the rules that produced it.
"""

from __future__ import annotations

import dataclasses
import threading
from typing import Any

import structlog
import yaml

from ..errors import NotFoundError, PolicyConflictError, ValidationError
from .models import Condition, Policy, PolicyCondition, PolicyRule

logger = structlog.get_logger(__name__)

_UPDATABLE = {"name", "rules", "enabled", "description", "tags", "sensitivities", "obligations"}


class PolicyStore:
    """Holds every version of every policy."""

    def __init__(self):
        self._versions: dict[str, list[Policy]] = {}
        self._lock = threading.RLock()

    def create(self, policy: Policy) -> Policy:
        with self._lock:
            existing = self._versions.get(policy.policy_id)
            if existing and not existing[-1].deleted:
                raise ValidationError(f"policy '{policy.policy_id}' already exists; use update")
            version = existing[-1].version + 1 if existing else 1
            stored = dataclasses.replace(policy, version=version, deleted=False)
            self._versions.setdefault(policy.policy_id, []).append(stored)
        logger.info("policy_created", policy_id=stored.policy_id, version=stored.version)
        return stored

    def update(self, policy_id: str, **changes: Any) -> Policy:
        """Write a new version with ``changes`` applied; earlier versions stay intact."""
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError(f"cannot update fields: {sorted(unknown)}")
        if "rules" in changes:
            changes["rules"] = tuple(
                r if isinstance(r, PolicyRule) else PolicyRule.from_dict(r) for r in changes["rules"]
            )
        with self._lock:
            current = self.get(policy_id)
            stored = dataclasses.replace(current, version=current.version + 1, **changes)
            self._versions[policy_id].append(stored)
        logger.info("policy_updated", policy_id=policy_id, version=stored.version, fields=sorted(changes))
        return stored

    def delete(self, policy_id: str) -> Policy:
        """Tombstone a policy. Its versions remain for audit lookups."""
        with self._lock:
            current = self.get(policy_id)
            tombstone = dataclasses.replace(current, version=current.version + 1, enabled=False, deleted=True)
            self._versions[policy_id].append(tombstone)
        logger.info("policy_deleted", policy_id=policy_id, version=tombstone.version)
        return tombstone

    def get(self, policy_id: str, version: int | None = None) -> Policy:
        with self._lock:
            versions = self._versions.get(policy_id)
            if not versions:
                raise NotFoundError("policy", policy_id)
            if version is None:
                if versions[-1].deleted:
                    raise NotFoundError("policy", policy_id)
                return versions[-1]
            for p in versions:
                if p.version == version:
                    return p
        raise NotFoundError("policy", f"{policy_id}@{version}")

    def history(self, policy_id: str) -> list[Policy]:
        with self._lock:
            if policy_id not in self._versions:
                raise NotFoundError("policy", policy_id)
            return list(self._versions[policy_id])

    def list(self, include_disabled: bool = True) -> list[Policy]:
        with self._lock:
            latest = [v[-1] for v in self._versions.values() if not v[-1].deleted]
        return [p for p in latest if include_disabled or p.enabled]

    def applicable(self, sensitivity: str) -> list[Policy]:
        """Enabled base policies plus policies scoped to ``sensitivity``."""
        return [p for p in self.list(include_disabled=False) if p.applies_to(sensitivity)]

    @staticmethod
    def merge_obligations(policies: list[Policy]) -> dict[str, Any]:
        """Union of obligations; the same key with different values is a conflict."""
        merged: dict[str, Any] = {}
        owners: dict[str, str] = {}
        for p in policies:
            for key, value in p.obligations.items():
                if key in merged and merged[key] != value:
                    raise PolicyConflictError(
                        f"policies '{owners[key]}' and '{p.ref}' disagree on obligation '{key}'",
                        {"obligation": key, "values": [merged[key], value], "policies": [owners[key], p.ref]},
                    )
                merged[key] = value
                owners[key] = p.ref
        return merged

    # --- Operator reports ---

    def detect_conflicts(self) -> list[dict[str, Any]]:
        """Detect rules with opposite effects whose conditions can overlap."""
        conflicts = []
        all_rules: list[tuple[str, PolicyRule]] = []

        for policy in self.list(include_disabled=False):
            for rule in policy.rules:
                all_rules.append((policy.policy_id, rule))

        for i in range(len(all_rules)):
            for j in range(i + 1, len(all_rules)):
                pid1, r1 = all_rules[i]
                pid2, r2 = all_rules[j]

                if r1.effect == r2.effect:
                    continue

                if self._conditions_overlap(r1.conditions, r2.conditions):
                    deny_rule = r1 if r1.effect.value == "deny" else r2
                    conflicts.append({
                        "rule_1": {"policy_id": pid1, "rule_id": r1.rule_id, "effect": r1.effect.value},
                        "rule_2": {"policy_id": pid2, "rule_id": r2.rule_id, "effect": r2.effect.value},
                        "type": "overlapping_conditions_different_effects",
                        "resolved_by": "deny_priority" if pid1 == pid2 else "and_combination",
                        "winner": deny_rule.rule_id,
                    })

        return conflicts

    def _conditions_overlap(
        self, conds1: tuple[Condition, ...], conds2: tuple[Condition, ...]
    ) -> bool:
        """Check if two condition sets could match the same context."""
        simple1 = [c for c in conds1 if isinstance(c, PolicyCondition)]
        simple2 = [c for c in conds2 if isinstance(c, PolicyCondition)]
        shared = {c.field for c in simple1} & {c.field for c in simple2}

        for fld in shared:
            for a in (c for c in simple1 if c.field == fld):
                for b in (c for c in simple2 if c.field == fld):
                    if a.operator == "eq" and b.operator == "eq" and a.value != b.value:
                        return False

        return True

    # --- YAML ---

    def load_yaml(self, yaml_str: str) -> list[Policy]:
        """Create policies from a YAML document (a ``policies`` list or one policy)."""
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValidationError("policy document must be a mapping")
        entries = data.get("policies", [data] if "policy_id" in data else [])
        return [self.create(Policy.from_dict(pdata)) for pdata in entries]

    def export_yaml(self) -> str:
        data = {"policies": [p.to_dict() for p in self.list()]}
        return yaml.dump(data, default_flow_style=False, sort_keys=False)

    def summary(self) -> dict[str, Any]:
        policies = self.list()
        return {
            "total_policies": len(policies),
            "enabled_policies": sum(1 for p in policies if p.enabled),
            "total_rules": sum(len(p.rules) for p in policies),
            "policies": [
                {
                    "policy_id": p.policy_id,
                    "name": p.name,
                    "version": p.version,
                    "enabled": p.enabled,
                    "sensitivities": list(p.sensitivities),
                    "rule_count": len(p.rules),
                }
                for p in policies
            ],
        }
