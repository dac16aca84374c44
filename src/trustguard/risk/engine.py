"""
Composite risk scoring engine.

Scores an identity/device/context triple on a 0-100 scale as the sum of
independently weighted factor contributions. Factor evaluators are
registered by name; assessment is a pure function of its inputs and the
clock reading.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

import numpy as np

from ..clock import Clock, SystemClock
from ..identity.models import Device, DeviceTrustLevel, Identity


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


LOW_MAX = 40.0
MEDIUM_MAX = 70.0

STALENESS_CAP = 30.0
TRUST_WEIGHT = 25.0
DEVICE_POINTS = {
    DeviceTrustLevel.UNTRUSTED: 30.0,
    DeviceTrustLevel.PROVISIONAL: 15.0,
    DeviceTrustLevel.TRUSTED: 0.0,
    DeviceTrustLevel.QUARANTINED: 0.0,  # handled as a hard override
}
UNKNOWN_DEVICE_POINTS = 30.0


def level_for_score(score: float) -> RiskLevel:
    """Map a 0-100 score to a coarse level. 40 is low, 41 is medium, 71 is high."""
    if score <= LOW_MAX:
        return RiskLevel.LOW
    if score <= MEDIUM_MAX:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


@dataclass(frozen=True)
class FactorContribution:
    factor: str  # identity, device, context
    signal: str
    points: float
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"factor": self.factor, "signal": self.signal, "points": self.points, "detail": self.detail}


@dataclass(frozen=True)
class RiskResult:
    """Risk assessment with factor breakdown."""
    level: RiskLevel
    score: float  # 0 (safe) to 100
    factors: list[FactorContribution] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    quarantine_override: bool = False

    def points_by_factor(self) -> dict[str, float]:
        totals: dict[str, float] = {}
        for c in self.factors:
            totals[c.factor] = round(totals.get(c.factor, 0.0) + c.points, 2)
        return totals

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "score": self.score,
            "factors": [c.to_dict() for c in self.factors],
            "recommendations": list(self.recommendations),
            "quarantine_override": self.quarantine_override,
        }


FactorFn = Callable[..., list[FactorContribution]]

RECOMMENDATIONS = {
    "identity": "Re-verify the identity before granting further access",
    "device": "Verify device trust and security posture",
    "context": "Confirm the request location and network segment",
}


class RiskEngine:
    """
    Calculates composite risk scores from identity, device and context signals.

    ``verification_ttl`` and ``staleness_window`` are seconds; the staleness
    penalty starts once verification is older than the TTL and reaches its
    cap one window later.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        verification_ttl: float = 3600.0,
        staleness_window: float | None = None,
        anomaly_penalty: float = 20.0,
    ):
        self.clock = clock or SystemClock()
        self.verification_ttl = verification_ttl
        self.staleness_window = staleness_window or verification_ttl
        self.anomaly_penalty = anomaly_penalty
        self.factors: dict[str, FactorFn] = {
            "identity": self._identity_factor,
            "device": self._device_factor,
            "context": self._context_factor,
        }

    def register_factor(self, name: str, fn: FactorFn) -> None:
        """Add or replace a named factor evaluator."""
        self.factors[name] = fn

    def assess(
        self,
        identity: Identity,
        device: Device | None,
        context: Mapping[str, Any] | None = None,
    ) -> RiskResult:
        """Assess risk. Has no side effects; callers persist derived scores."""
        now = self.clock.now()
        ctx = context or {}
        contributions: list[FactorContribution] = []
        for fn in self.factors.values():
            contributions.extend(fn(identity, device, ctx, now))

        total = sum(c.points for c in contributions)
        score = round(float(np.clip(total, 0.0, 100.0)), 2)
        level = level_for_score(score)

        override = device is not None and device.quarantined
        if override:
            level = RiskLevel.HIGH

        return RiskResult(
            level=level,
            score=score,
            factors=contributions,
            recommendations=self._recommendations(contributions, override),
            quarantine_override=override,
        )

    # --- Factor evaluators ---

    def _identity_factor(
        self, identity: Identity, device: Device | None, ctx: Mapping[str, Any], now: float
    ) -> list[FactorContribution]:
        out = []
        if identity.last_verified_at is None:
            out.append(FactorContribution("identity", "staleness", STALENESS_CAP, "never verified"))
        else:
            age = now - identity.last_verified_at
            if age > self.verification_ttl:
                ratio = min(1.0, (age - self.verification_ttl) / self.staleness_window)
                points = round(STALENESS_CAP * ratio, 2)
                out.append(FactorContribution(
                    "identity", "staleness", points,
                    f"verified {age:.0f}s ago (ttl {self.verification_ttl:.0f}s)",
                ))

        trust_points = round((1.0 - identity.trust_score) * TRUST_WEIGHT, 2)
        if trust_points > 0:
            out.append(FactorContribution(
                "identity", "trust_score", trust_points, f"trust score {identity.trust_score:.2f}",
            ))
        return out

    def _device_factor(
        self, identity: Identity, device: Device | None, ctx: Mapping[str, Any], now: float
    ) -> list[FactorContribution]:
        if device is None:
            return [FactorContribution("device", "trust_level", UNKNOWN_DEVICE_POINTS, "unknown device")]
        if device.quarantined:
            return [FactorContribution("device", "trust_level", 0.0, "quarantined (forces high risk)")]
        points = DEVICE_POINTS[device.trust_level]
        if points == 0:
            return []
        return [FactorContribution("device", "trust_level", points, f"{device.trust_level.value} device")]

    def _context_factor(
        self, identity: Identity, device: Device | None, ctx: Mapping[str, Any], now: float
    ) -> list[FactorContribution]:
        anomalies = [
            signal for signal, key in (("geolocation", "geo_anomalous"), ("network_segment", "network_anomalous"))
            if ctx.get(key)
        ]
        if not anomalies:
            return []
        # One fixed penalty however many context signals are anomalous.
        return [FactorContribution(
            "context", "+".join(anomalies), float(self.anomaly_penalty),
            f"anomalous {', '.join(anomalies)}",
        )]

    def _recommendations(self, contributions: list[FactorContribution], override: bool) -> list[str]:
        totals: dict[str, float] = {}
        for c in contributions:
            totals[c.factor] = totals.get(c.factor, 0.0) + c.points
        recs = [RECOMMENDATIONS[f] for f, pts in totals.items() if pts >= 20.0 and f in RECOMMENDATIONS]
        if override:
            recs.append("Remediate the quarantined device and reinstate it explicitly")
        return recs
