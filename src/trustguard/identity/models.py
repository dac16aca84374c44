"""Identity, device and session data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DeviceTrustLevel(str, Enum):
    UNTRUSTED = "untrusted"
    PROVISIONAL = "provisional"
    TRUSTED = "trusted"
    QUARANTINED = "quarantined"  # terminal until reinstated


@dataclass
class Identity:
    """A user or service identity."""
    identity_id: str
    attributes: dict[str, Any] = field(default_factory=dict)  # role, department, ...
    trust_score: float = 0.5  # 0.0-1.0
    last_verified_at: float | None = None
    active_sessions: set[str] = field(default_factory=set)
    created_at: float = 0.0
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "attributes": dict(self.attributes),
            "trust_score": self.trust_score,
            "last_verified_at": self.last_verified_at,
            "active_sessions": sorted(self.active_sessions),
            "enabled": self.enabled,
        }


@dataclass
class Device:
    """A managed device."""
    device_id: str
    owner_id: str
    trust_level: DeviceTrustLevel = DeviceTrustLevel.PROVISIONAL
    posture_signals: dict[str, Any] = field(default_factory=dict)
    last_seen_at: float = 0.0

    @property
    def quarantined(self) -> bool:
        return self.trust_level == DeviceTrustLevel.QUARANTINED

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "owner_id": self.owner_id,
            "trust_level": self.trust_level.value,
            "posture_signals": dict(self.posture_signals),
            "last_seen_at": self.last_seen_at,
        }


@dataclass
class Session:
    """An authenticated session, created at successful verification."""
    session_id: str
    identity_id: str
    device_id: str
    started_at: float
    context: dict[str, Any] = field(default_factory=dict)  # geolocation, network_segment
    current_risk_score: float = 0.0  # derived by the engine, never client-set
    active: bool = True
    revoked_at: float | None = None
    revoked_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "identity_id": self.identity_id,
            "device_id": self.device_id,
            "started_at": self.started_at,
            "context": dict(self.context),
            "current_risk_score": self.current_risk_score,
            "active": self.active,
            "revoked_at": self.revoked_at,
            "revoked_reason": self.revoked_reason,
        }
