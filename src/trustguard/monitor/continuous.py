"""
Continuous trust monitor.

Trust is not a one-time gate: it degrades with time since the last
verification and must be re-earned. Two periodic loops run in the
background. The trust loop recomputes risk and decays trust scores; the
threat scan re-derives session risk and revokes sessions that should no
longer be live.

Subject phases are a pure function of elapsed time (plus an explicit
revocation mark), so the same clock reading always yields the same phase
regardless of how often or in which order ticks run.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import numpy as np
import structlog

from ..audit import AuditLog, Severity, SubjectType, Violation
from ..clock import Clock, SystemClock
from ..errors import NotFoundError, ValidationError
from ..events import EventBroadcaster, EventType
from ..identity import Device, Identity, IdentityRegistry
from ..risk import RiskEngine, RiskLevel

logger = structlog.get_logger(__name__)

SECONDS_PER_HOUR = 3600.0


class Phase(str, Enum):
    FRESH = "fresh"
    AGING = "aging"
    STALE = "stale"
    REVOKED = "revoked"


def phase_for(elapsed: float, aging_after: float, stale_after: float, revoked: bool = False) -> Phase:
    """Phase for a subject last verified (or seen) ``elapsed`` seconds ago."""
    if revoked:
        return Phase.REVOKED
    if elapsed >= stale_after:
        return Phase.STALE
    if elapsed >= aging_after:
        return Phase.AGING
    return Phase.FRESH


@dataclass
class SubjectState:
    """What the monitor last observed about one subject."""
    subject_type: SubjectType
    subject_id: str
    last_level: RiskLevel | None = None
    last_score: float | None = None
    last_recompute_at: float | None = None
    last_decay_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "last_level": self.last_level.value if self.last_level else None,
            "last_score": self.last_score,
            "last_recompute_at": self.last_recompute_at,
            "last_decay_at": self.last_decay_at,
        }


class ContinuousMonitor:
    """Periodic trust recompute, decay, threat scan and violation emission."""

    def __init__(
        self,
        registry: IdentityRegistry,
        risk_engine: RiskEngine,
        audit: AuditLog,
        broadcaster: EventBroadcaster,
        clock: Clock | None = None,
        aging_after: float = 3600.0,
        stale_after: float = 14400.0,
        aging_decay_per_hour: float = 0.02,
        stale_decay_per_hour: float = 0.1,
        trust_recompute_interval: float = 30.0,
        threat_scan_interval: float = 5.0,
        session_max_age: float = 86400.0,
        session_retention: float = 86400.0,
    ):
        if stale_after <= aging_after:
            raise ValidationError("stale_after must be greater than aging_after")
        self.registry = registry
        self.risk_engine = risk_engine
        self.audit = audit
        self.broadcaster = broadcaster
        self.clock = clock or SystemClock()
        self.aging_after = aging_after
        self.stale_after = stale_after
        self.decay_per_hour = {
            Phase.FRESH: 0.0,
            Phase.AGING: aging_decay_per_hour,
            Phase.STALE: stale_decay_per_hour,
            Phase.REVOKED: 0.0,
        }
        self.trust_recompute_interval = trust_recompute_interval
        self.threat_scan_interval = threat_scan_interval
        self.session_max_age = session_max_age
        self.session_retention = session_retention

        self._states: dict[tuple[SubjectType, str], SubjectState] = {}
        self._revoked: dict[tuple[SubjectType, str], str] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # --- Phases ---

    def identity_phase(self, identity: Identity | str) -> Phase:
        ident = identity if isinstance(identity, Identity) else self.registry.get_identity(identity)
        # Never-verified identities age from registration.
        reference = ident.last_verified_at if ident.last_verified_at is not None else ident.created_at
        return phase_for(
            self.clock.now() - reference, self.aging_after, self.stale_after,
            self.is_revoked(SubjectType.IDENTITY, ident.identity_id),
        )

    def device_phase(self, device: Device | str) -> Phase:
        dev = device if isinstance(device, Device) else self.registry.get_device(device)
        return phase_for(
            self.clock.now() - dev.last_seen_at, self.aging_after, self.stale_after,
            self.is_revoked(SubjectType.DEVICE, dev.device_id),
        )

    def session_phase(self, session_id: str) -> Phase:
        session = self.registry.get_session(session_id)
        revoked = not session.active or self.is_revoked(SubjectType.SESSION, session_id)
        return phase_for(self.clock.now() - session.started_at, self.aging_after, self.stale_after, revoked)

    def phase_of(self, subject_type: SubjectType | str, subject_id: str) -> Phase:
        kind = _subject_type(subject_type)
        if kind == SubjectType.IDENTITY:
            return self.identity_phase(subject_id)
        if kind == SubjectType.DEVICE:
            return self.device_phase(subject_id)
        return self.session_phase(subject_id)

    def is_revoked(self, subject_type: SubjectType, subject_id: str) -> bool:
        with self._lock:
            return (subject_type, subject_id) in self._revoked

    def state_of(self, subject_type: SubjectType | str, subject_id: str) -> dict[str, Any]:
        kind = _subject_type(subject_type)
        phase = self.phase_of(kind, subject_id)
        with self._lock:
            state = self._states.get((kind, subject_id)) or SubjectState(kind, subject_id)
            reason = self._revoked.get((kind, subject_id))
        return {**state.to_dict(), "phase": phase.value, "revoked_reason": reason}

    # --- Trust loop ---

    def tick_trust(self) -> dict[str, int]:
        """One pass of risk recompute and trust decay over every identity."""
        now = self.clock.now()
        counts = {"scanned": 0, "recomputed": 0, "decayed": 0, "level_changes": 0, "revoked": 0}
        for ident in self.registry.identities():
            if self._stop.is_set():
                break
            try:
                self._tick_identity(ident, now, counts)
            except NotFoundError:
                # Deprovisioned mid-scan.
                continue
            counts["scanned"] += 1
        logger.debug("trust_tick", **counts)
        return counts

    def _tick_identity(self, ident: Identity, now: float, counts: dict[str, int]) -> None:
        key = (SubjectType.IDENTITY, ident.identity_id)
        with self._lock:
            state = self._states.setdefault(key, SubjectState(*key))

        phase = self.identity_phase(ident)
        if phase == Phase.REVOKED:
            if self.registry.revoke_sessions_for(identity_id=ident.identity_id, reason="identity_revoked"):
                counts["revoked"] += 1
            # No decay accrues while revoked.
            state.last_decay_at = now
            return

        reference = ident.last_verified_at if ident.last_verified_at is not None else ident.created_at
        since = reference if state.last_decay_at is None else max(state.last_decay_at, reference)
        delta = self.decay_between(reference, since, now)
        if delta > 0:
            ident = self.registry.update_trust_score(ident.identity_id, lambda t: t - delta)
            counts["decayed"] += 1
        state.last_decay_at = now

        due = state.last_recompute_at is None or now - state.last_recompute_at >= self.trust_recompute_interval
        if not due:
            return

        device, context = self._identity_device(ident.identity_id)
        result = self.risk_engine.assess(ident, device, context)
        previous = state.last_level
        state.last_level = result.level
        state.last_score = result.score
        state.last_recompute_at = now
        counts["recomputed"] += 1

        # The first recompute only records a baseline level. Escalation violations
        # and risk change events fire on transitions between recomputes.
        if previous is not None and previous != result.level:
            counts["level_changes"] += 1
            self.broadcaster.emit(
                EventType.RISK_CHANGE, ident.identity_id,
                {"subject_type": "identity", "from": previous.value, "to": result.level.value,
                 "score": result.score, "phase": phase.value},
                severity=result.level.value,
            )
            logger.info("risk_level_changed", identity_id=ident.identity_id,
                        previous=previous.value, level=result.level.value, score=result.score)
            if result.level == RiskLevel.HIGH:
                self.record_violation(
                    SubjectType.IDENTITY, ident.identity_id, Severity.HIGH, "risk-escalation",
                    f"risk rose from {previous.value} to high (score {result.score})",
                )

    def decay_between(self, reference: float, start: float, end: float) -> float:
        """
        Trust lost over ``[start, end]`` by a subject last verified at ``reference``.

        Each phase contributes its own rate over the part of the interval it
        covers, so the total depends only on the endpoints and not on how the
        interval was split into ticks.
        """
        segments = (
            (reference + self.aging_after, reference + self.stale_after, self.decay_per_hour[Phase.AGING]),
            (reference + self.stale_after, float("inf"), self.decay_per_hour[Phase.STALE]),
        )
        lost = 0.0
        for seg_start, seg_end, rate in segments:
            overlap = min(end, seg_end) - max(start, seg_start)
            if overlap > 0 and rate > 0:
                lost += rate * overlap / SECONDS_PER_HOUR
        return lost

    def _identity_device(self, identity_id: str) -> tuple[Device | None, dict[str, Any]]:
        """Device and context an identity is currently operating from."""
        session = self.registry.latest_session(identity_id)
        if session is not None:
            try:
                return self.registry.get_device(session.device_id), session.context
            except NotFoundError:
                return None, session.context
        owned = self.registry.devices_for(identity_id)
        if owned:
            return max(owned, key=lambda d: d.last_seen_at), {}
        return None, {}

    # --- Threat scan ---

    def tick_threat_scan(self) -> list[str]:
        """Re-derive session risk; returns the ids of sessions revoked."""
        now = self.clock.now()
        revoked = []
        for session in self.registry.active_sessions():
            if self._stop.is_set():
                break
            reason = self._session_threat(session, now)
            if reason:
                self.registry.revoke_session(session.session_id, reason)
                revoked.append(session.session_id)
        if revoked:
            logger.info("threat_scan_revoked", sessions=len(revoked))
        self.registry.prune_sessions(revoked_before=now - self.session_retention)
        return revoked

    def _session_threat(self, session, now: float) -> str | None:
        if now - session.started_at > self.session_max_age:
            return "session_expired"
        if self.is_revoked(SubjectType.SESSION, session.session_id):
            return "session_revoked"
        try:
            ident = self.registry.get_identity(session.identity_id)
            device = self.registry.get_device(session.device_id)
        except NotFoundError as e:
            return f"{e.kind}_missing"
        if not ident.enabled or self.is_revoked(SubjectType.IDENTITY, ident.identity_id):
            return "identity_revoked"
        if device.quarantined:
            return "device_quarantined"
        if self.is_revoked(SubjectType.DEVICE, device.device_id):
            return "device_revoked"

        result = self.risk_engine.assess(ident, device, session.context)
        try:
            self.registry.refresh_session_risk(session.session_id, result.score)
        except NotFoundError:
            return None
        if result.level == RiskLevel.HIGH:
            self.broadcaster.emit(
                EventType.RISK_CHANGE, session.session_id,
                {"subject_type": "session", "identity_id": ident.identity_id,
                 "to": result.level.value, "score": result.score},
                severity=result.level.value,
            )
            return "risk_high"
        return None

    # --- Violations and revocation ---

    def record_violation(
        self,
        subject_type: SubjectType | str,
        subject_id: str,
        severity: Severity | str,
        rule_id: str,
        description: str = "",
    ) -> Violation:
        """Open a violation and publish it. Critical severity revokes the subject."""
        kind = _subject_type(subject_type)
        self._require_subject(kind, subject_id)
        violation = self.audit.open_violation(kind, subject_id, severity, rule_id, description)
        self.broadcaster.emit(
            EventType.VIOLATION, subject_id,
            {"violation_id": violation.violation_id, "subject_type": kind.value,
             "rule_id": rule_id, "description": description},
            severity=violation.severity.value,
        )
        if violation.severity == Severity.CRITICAL:
            self.revoke(kind, subject_id, reason=f"critical violation {violation.violation_id}")
        return violation

    def revoke(self, subject_type: SubjectType | str, subject_id: str, reason: str = "revoked") -> None:
        """Mark a subject revoked and invalidate its sessions. Terminal until reinstated."""
        kind = _subject_type(subject_type)
        with self._lock:
            already = (kind, subject_id) in self._revoked
            self._revoked[(kind, subject_id)] = reason
        if kind == SubjectType.IDENTITY:
            self.registry.revoke_sessions_for(identity_id=subject_id, reason="identity_revoked")
        elif kind == SubjectType.DEVICE:
            self.registry.revoke_sessions_for(device_id=subject_id, reason="device_revoked")
        else:
            self.registry.revoke_session(subject_id, reason="session_revoked")
        if not already:
            logger.warning("subject_revoked", subject_type=kind.value, subject_id=subject_id, reason=reason)
            self.broadcaster.emit(
                EventType.RISK_CHANGE, subject_id,
                {"subject_type": kind.value, "phase": Phase.REVOKED.value, "reason": reason},
                severity=Severity.CRITICAL.value,
            )

    def reinstate(self, subject_type: SubjectType | str, subject_id: str) -> None:
        kind = _subject_type(subject_type)
        with self._lock:
            if self._revoked.pop((kind, subject_id), None) is None:
                raise ValidationError(f"{kind.value} '{subject_id}' is not revoked")
            # Keep the decay baseline; the revoked interval accrues no decay.
            state = self._states.pop((kind, subject_id), None)
            if state is not None:
                self._states[(kind, subject_id)] = SubjectState(kind, subject_id, last_decay_at=state.last_decay_at)
        logger.info("subject_reinstated", subject_type=kind.value, subject_id=subject_id)

    def _require_subject(self, kind: SubjectType, subject_id: str) -> None:
        lookup: dict[SubjectType, Callable[[str], Any]] = {
            SubjectType.IDENTITY: self.registry.get_identity,
            SubjectType.DEVICE: self.registry.get_device,
            SubjectType.SESSION: self.registry.get_session,
        }
        lookup[kind](subject_id)

    # --- Reporting ---

    def risk_summary(self) -> dict[str, Any]:
        """Aggregate of the latest recomputed identity risk scores."""
        with self._lock:
            states = [s for s in self._states.values() if s.last_score is not None]
        phases = {p.value: 0 for p in Phase}
        for ident in self.registry.identities():
            phases[self.identity_phase(ident).value] += 1

        if not states:
            return {"assessed": 0, "mean_score": 0.0, "max_score": 0.0, "p95_score": 0.0,
                    "levels": {lvl.value: 0 for lvl in RiskLevel}, "phases": phases}

        scores = np.array([s.last_score for s in states], dtype=float)
        return {
            "assessed": int(scores.size),
            "mean_score": round(float(np.mean(scores)), 2),
            "max_score": round(float(np.max(scores)), 2),
            "p95_score": round(float(np.percentile(scores, 95)), 2),
            "levels": {lvl.value: sum(1 for s in states if s.last_level == lvl) for lvl in RiskLevel},
            "phases": phases,
        }

    # --- Background loops ---

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            logger.warning("monitor_already_running")
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, args=(self.tick_trust, self.trust_recompute_interval),
                             name="trustguard-trust-monitor", daemon=True),
            threading.Thread(target=self._loop, args=(self.tick_threat_scan, self.threat_scan_interval),
                             name="trustguard-threat-scan", daemon=True),
        ]
        for t in self._threads:
            t.start()
        logger.info("monitor_started", trust_interval=self.trust_recompute_interval,
                    threat_interval=self.threat_scan_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []
        logger.info("monitor_stopped")

    def _loop(self, tick: Callable[[], Any], interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                tick()
            except Exception:
                logger.exception("monitor_tick_failed", tick=tick.__name__)


def _subject_type(value: SubjectType | str) -> SubjectType:
    try:
        return SubjectType(value)
    except ValueError:
        raise ValidationError(
            f"unknown subject type '{value}'", {"allowed": [s.value for s in SubjectType]}
        ) from None
