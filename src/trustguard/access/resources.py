"""Resource catalog: sensitivity and permitted actions per resource."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import NotFoundError, ValidationError


class Sensitivity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Resource:
    resource_id: str
    sensitivity: Sensitivity = Sensitivity.LOW
    actions: tuple[str, ...] = ()  # empty = any action
    attributes: dict[str, Any] = field(default_factory=dict)

    def permits(self, permissions: tuple[str, ...]) -> list[str]:
        """Return the requested permissions this resource does not offer."""
        if not self.actions:
            return []
        return [p for p in permissions if p not in self.actions]

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "sensitivity": self.sensitivity.value,
            "actions": list(self.actions),
            "attributes": dict(self.attributes),
        }


class ResourceCatalog:
    """Resource metadata consulted when selecting policies."""

    def __init__(self):
        self._resources: dict[str, Resource] = {}
        self._lock = threading.Lock()

    def register(
        self,
        resource_id: str,
        sensitivity: Sensitivity | str = Sensitivity.LOW,
        actions: list[str] | tuple[str, ...] = (),
        attributes: dict[str, Any] | None = None,
    ) -> Resource:
        if not isinstance(resource_id, str) or not resource_id.strip():
            raise ValidationError("resource_id is required", {"field": "resource_id"})
        try:
            level = Sensitivity(sensitivity)
        except ValueError:
            raise ValidationError(
                f"unknown sensitivity '{sensitivity}'", {"allowed": [s.value for s in Sensitivity]}
            ) from None
        resource = Resource(resource_id, level, tuple(actions), dict(attributes or {}))
        with self._lock:
            self._resources[resource_id] = resource
        return resource

    def get(self, resource_id: str) -> Resource:
        with self._lock:
            resource = self._resources.get(resource_id)
        if resource is None:
            raise NotFoundError("resource", resource_id)
        return resource

    def remove(self, resource_id: str) -> None:
        with self._lock:
            if self._resources.pop(resource_id, None) is None:
                raise NotFoundError("resource", resource_id)

    def list(self) -> list[Resource]:
        with self._lock:
            return list(self._resources.values())
