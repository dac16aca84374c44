"""
Request context for access decisions.

Captures the caller-supplied signals a decision is made against:
location, network segment, anomaly flags and MFA state. Anomaly flags are
computed by external collaborators; the engine only consumes them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from ..errors import ValidationError

_BOOL_FIELDS = ("geo_anomalous", "network_anomalous", "mfa_verified")
_STR_FIELDS = ("geolocation", "network_segment", "source_ip")


@dataclass(frozen=True)
class RequestContext:
    """Contextual signals attached to one request."""
    geolocation: str = ""
    network_segment: str = ""
    geo_anomalous: bool = False
    network_anomalous: bool = False
    mfa_verified: bool = False
    source_ip: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def anomalous(self) -> bool:
        return self.geo_anomalous or self.network_anomalous

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | RequestContext | None) -> RequestContext:
        """Validate a raw context mapping. Unknown keys are kept under ``extra``."""
        if data is None:
            return cls()
        if isinstance(data, RequestContext):
            return data
        if not isinstance(data, Mapping):
            raise ValidationError("context must be a mapping", {"field": "context"})

        values: dict[str, Any] = {}
        for name in _BOOL_FIELDS:
            if name in data:
                if not isinstance(data[name], bool):
                    raise ValidationError(f"context.{name} must be a boolean", {"field": name})
                values[name] = data[name]
        for name in _STR_FIELDS:
            if name in data and data[name] is not None:
                if not isinstance(data[name], str):
                    raise ValidationError(f"context.{name} must be a string", {"field": name})
                values[name] = data[name]

        extra = dict(data.get("extra") or {})
        extra.update({k: v for k, v in data.items() if k not in (*_BOOL_FIELDS, *_STR_FIELDS, "extra")})
        return cls(extra=extra, **values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "geolocation": self.geolocation,
            "network_segment": self.network_segment,
            "geo_anomalous": self.geo_anomalous,
            "network_anomalous": self.network_anomalous,
            "mfa_verified": self.mfa_verified,
            "source_ip": self.source_ip,
            "extra": dict(self.extra),
        }


def require_id(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required", {"field": name})
    return value


def validate_permissions(permissions: Iterable[str] | None) -> tuple[str, ...]:
    """Permissions must be a non-empty list of non-empty strings."""
    if permissions is None or isinstance(permissions, (str, bytes)):
        raise ValidationError("permissions must be a non-empty list", {"field": "permissions"})
    perms = tuple(permissions)
    if not perms:
        raise ValidationError("permissions must be a non-empty list", {"field": "permissions"})
    for p in perms:
        if not isinstance(p, str) or not p.strip():
            raise ValidationError("each permission must be a non-empty string", {"field": "permissions"})
    return perms
