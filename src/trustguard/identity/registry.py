"""
Identity and device registry.

The only mutable shared store of the engine. Writes are last-writer-wins
per entity key and guarded by per-key locks, so updates to different
entities never contend. Reads hand out snapshots; mutating a returned
object never changes registry state.
"""

from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import structlog

from ..clock import Clock, SystemClock
from ..errors import InvalidTransitionError, NotFoundError, ValidationError
from .models import Device, DeviceTrustLevel, Identity, Session

logger = structlog.get_logger(__name__)


class KeyedLocks:
    """Lazily created re-entrant lock per key."""

    def __init__(self):
        self._locks: dict[tuple[str, str], threading.RLock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, kind: str, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault((kind, key), threading.RLock())
        with lock:
            yield

    def discard(self, kind: str, key: str) -> None:
        with self._guard:
            self._locks.pop((kind, key), None)


def _require_id(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required", {"field": name})
    return value


def parse_trust_level(level: DeviceTrustLevel | str) -> DeviceTrustLevel:
    try:
        return DeviceTrustLevel(level)
    except ValueError:
        raise ValidationError(
            f"unknown device trust level '{level}'",
            {"allowed": [lvl.value for lvl in DeviceTrustLevel]},
        ) from None


class IdentityRegistry:
    """Central identity, device and session registry."""

    def __init__(self, clock: Clock | None = None, initial_trust_score: float = 0.5):
        self.clock = clock or SystemClock()
        self.initial_trust_score = initial_trust_score
        self._identities: dict[str, Identity] = {}
        self._devices: dict[str, Device] = {}
        self._sessions: dict[str, Session] = {}
        self._locks = KeyedLocks()
        self._index = threading.Lock()  # structural changes to the maps

    # --- Identity management ---

    def upsert_identity(self, identity_id: str, attributes: dict[str, Any] | None = None) -> Identity:
        _require_id(identity_id, "identity_id")
        if attributes is not None and not isinstance(attributes, dict):
            raise ValidationError("attributes must be a mapping", {"field": "attributes"})
        with self._locks.hold("identity", identity_id):
            ident = self._identities.get(identity_id)
            if ident is None:
                ident = Identity(
                    identity_id=identity_id,
                    attributes=dict(attributes or {}),
                    trust_score=self.initial_trust_score,
                    created_at=self.clock.now(),
                )
                with self._index:
                    self._identities[identity_id] = ident
                logger.info("identity_registered", identity_id=identity_id)
            elif attributes is not None:
                ident.attributes = dict(attributes)
            return copy.deepcopy(ident)

    def get_identity(self, identity_id: str) -> Identity:
        ident = self._identities.get(identity_id)
        if ident is None:
            raise NotFoundError("identity", identity_id)
        with self._locks.hold("identity", identity_id):
            return copy.deepcopy(ident)

    def find_by_attribute(self, key: str, value: Any) -> list[Identity]:
        return [i for i in self.identities() if i.attributes.get(key) == value]

    def disable_identity(self, identity_id: str) -> Identity:
        with self._locks.hold("identity", identity_id):
            ident = self._live_identity(identity_id)
            ident.enabled = False
            snapshot = copy.deepcopy(ident)
        self.revoke_sessions_for(identity_id=identity_id, reason="identity_disabled")
        return snapshot

    def deprovision_identity(self, identity_id: str) -> None:
        """Remove an identity and revoke every session it holds."""
        self.revoke_sessions_for(identity_id=identity_id, reason="identity_deprovisioned")
        with self._locks.hold("identity", identity_id):
            self._live_identity(identity_id)
            with self._index:
                del self._identities[identity_id]
        self._locks.discard("identity", identity_id)
        logger.info("identity_deprovisioned", identity_id=identity_id)

    def record_verification(self, identity_id: str, trust_delta: float = 0.0) -> Identity:
        """Stamp a successful verification and nudge the trust score."""
        with self._locks.hold("identity", identity_id):
            ident = self._live_identity(identity_id)
            ident.last_verified_at = self.clock.now()
            ident.trust_score = _clamp_unit(ident.trust_score + trust_delta)
            return copy.deepcopy(ident)

    def update_trust_score(self, identity_id: str, update: Callable[[float], float]) -> Identity:
        """Atomically apply ``update`` to the current trust score."""
        with self._locks.hold("identity", identity_id):
            ident = self._live_identity(identity_id)
            ident.trust_score = _clamp_unit(update(ident.trust_score))
            return copy.deepcopy(ident)

    # --- Device management ---

    def register_device(
        self,
        device_id: str,
        owner_id: str,
        initial_posture: dict[str, Any] | None = None,
        trust_level: DeviceTrustLevel | str = DeviceTrustLevel.PROVISIONAL,
    ) -> Device:
        _require_id(device_id, "device_id")
        _require_id(owner_id, "owner_id")
        level = parse_trust_level(trust_level)
        if owner_id not in self._identities:
            raise NotFoundError("identity", owner_id)
        with self._locks.hold("device", device_id):
            device = self._devices.get(device_id)
            if device is None:
                device = Device(device_id=device_id, owner_id=owner_id, trust_level=level)
                with self._index:
                    self._devices[device_id] = device
                logger.info("device_registered", device_id=device_id, owner_id=owner_id, trust_level=level.value)
            else:
                # Re-registration never lifts a quarantine.
                device.owner_id = owner_id
                if not device.quarantined:
                    device.trust_level = level
            device.posture_signals = dict(initial_posture or {})
            device.last_seen_at = self.clock.now()
            return copy.deepcopy(device)

    def get_device(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise NotFoundError("device", device_id)
        with self._locks.hold("device", device_id):
            return copy.deepcopy(device)

    def devices_for(self, owner_id: str) -> list[Device]:
        return [d for d in self.devices() if d.owner_id == owner_id]

    def update_device_trust_level(self, device_id: str, level: DeviceTrustLevel | str) -> Device:
        new_level = parse_trust_level(level)
        with self._locks.hold("device", device_id):
            device = self._live_device(device_id)
            if device.quarantined and new_level != DeviceTrustLevel.QUARANTINED:
                raise InvalidTransitionError(
                    f"device '{device_id}' is quarantined; use reinstate_device",
                    {"device_id": device_id, "requested": new_level.value},
                )
            device.trust_level = new_level
            snapshot = copy.deepcopy(device)
        if new_level == DeviceTrustLevel.QUARANTINED:
            logger.warning("device_quarantined", device_id=device_id)
            self.revoke_sessions_for(device_id=device_id, reason="device_quarantined")
        return snapshot

    def reinstate_device(
        self, device_id: str, level: DeviceTrustLevel | str = DeviceTrustLevel.PROVISIONAL
    ) -> Device:
        """Explicitly lift a quarantine."""
        new_level = parse_trust_level(level)
        if new_level == DeviceTrustLevel.QUARANTINED:
            raise ValidationError("cannot reinstate a device into quarantine")
        with self._locks.hold("device", device_id):
            device = self._live_device(device_id)
            if not device.quarantined:
                raise InvalidTransitionError(
                    f"device '{device_id}' is not quarantined", {"device_id": device_id}
                )
            device.trust_level = new_level
            logger.info("device_reinstated", device_id=device_id, trust_level=new_level.value)
            return copy.deepcopy(device)

    def update_device_posture(self, device_id: str, signals: dict[str, Any]) -> Device:
        if not isinstance(signals, dict):
            raise ValidationError("posture signals must be a mapping", {"field": "signals"})
        with self._locks.hold("device", device_id):
            device = self._live_device(device_id)
            device.posture_signals.update(signals)
            device.last_seen_at = self.clock.now()
            return copy.deepcopy(device)

    def touch_device(self, device_id: str) -> Device:
        with self._locks.hold("device", device_id):
            device = self._live_device(device_id)
            device.last_seen_at = self.clock.now()
            return copy.deepcopy(device)

    # --- Session tracking ---

    def create_session(
        self,
        identity_id: str,
        device_id: str,
        context: dict[str, Any] | None = None,
        risk_score: float = 0.0,
    ) -> Session:
        self._live_device(device_id)
        session = Session(
            session_id=f"sess-{uuid.uuid4().hex[:16]}",
            identity_id=identity_id,
            device_id=device_id,
            started_at=self.clock.now(),
            context=dict(context or {}),
            current_risk_score=risk_score,
        )
        with self._locks.hold("identity", identity_id):
            ident = self._live_identity(identity_id)
            with self._index:
                self._sessions[session.session_id] = session
            ident.active_sessions.add(session.session_id)
        logger.info("session_started", session_id=session.session_id, identity_id=identity_id, device_id=device_id)
        return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        with self._locks.hold("session", session_id):
            return copy.deepcopy(session)

    def refresh_session_risk(self, session_id: str, risk_score: float) -> Session:
        """Store an engine-derived risk score on a session."""
        with self._locks.hold("session", session_id):
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("session", session_id)
            session.current_risk_score = risk_score
            return copy.deepcopy(session)

    def revoke_session(self, session_id: str, reason: str = "revoked") -> Session:
        """Invalidate a session. Revoked sessions are never reactivated."""
        with self._locks.hold("session", session_id):
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("session", session_id)
            newly_revoked = session.active
            if newly_revoked:
                session.active = False
                session.revoked_at = self.clock.now()
                session.revoked_reason = reason
            snapshot = copy.deepcopy(session)
        # Identity lock is taken separately to keep lock order flat.
        with self._locks.hold("identity", snapshot.identity_id):
            ident = self._identities.get(snapshot.identity_id)
            if ident is not None:
                ident.active_sessions.discard(session_id)
        if newly_revoked:
            logger.info("session_revoked", session_id=session_id, identity_id=snapshot.identity_id, reason=reason)
        return snapshot

    def revoke_sessions_for(
        self, identity_id: str | None = None, device_id: str | None = None, reason: str = "revoked"
    ) -> list[Session]:
        targets = [
            s.session_id for s in self.active_sessions(identity_id)
            if device_id is None or s.device_id == device_id
        ]
        return [self.revoke_session(sid, reason) for sid in targets]

    def active_sessions(self, identity_id: str | None = None) -> list[Session]:
        with self._index:
            items = [
                s for s in self._sessions.values()
                if s.active and (identity_id is None or s.identity_id == identity_id)
            ]
        return [copy.deepcopy(s) for s in items]

    def prune_sessions(self, revoked_before: float) -> int:
        """Forget sessions revoked before ``revoked_before``; returns how many were dropped."""
        with self._index:
            expired = [
                sid for sid, s in self._sessions.items()
                if not s.active and s.revoked_at is not None and s.revoked_at < revoked_before
            ]
            for sid in expired:
                del self._sessions[sid]
        for sid in expired:
            self._locks.discard("session", sid)
        if expired:
            logger.info("sessions_pruned", count=len(expired))
        return len(expired)

    def latest_session(self, identity_id: str) -> Session | None:
        active = self.active_sessions(identity_id)
        if not active:
            return None
        return max(active, key=lambda s: s.started_at)

    # --- Snapshots ---

    def identities(self) -> list[Identity]:
        with self._index:
            items = list(self._identities.values())
        return [copy.deepcopy(i) for i in items]

    def devices(self) -> list[Device]:
        with self._index:
            items = list(self._devices.values())
        return [copy.deepcopy(d) for d in items]

    def sessions(self) -> list[Session]:
        with self._index:
            items = list(self._sessions.values())
        return [copy.deepcopy(s) for s in items]

    def summary(self) -> dict[str, Any]:
        identities = self.identities()
        devices = self.devices()
        return {
            "total_identities": len(identities),
            "enabled_identities": sum(1 for i in identities if i.enabled),
            "total_devices": len(devices),
            "active_sessions": len(self.active_sessions()),
            "device_trust_levels": {
                lvl.value: sum(1 for d in devices if d.trust_level == lvl)
                for lvl in DeviceTrustLevel
            },
        }

    # --- Internals (callers hold the entity lock) ---

    def _live_identity(self, identity_id: str) -> Identity:
        ident = self._identities.get(identity_id)
        if ident is None:
            raise NotFoundError("identity", identity_id)
        return ident

    def _live_device(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise NotFoundError("device", device_id)
        return device


def _clamp_unit(value: float) -> float:
    return round(max(0.0, min(1.0, value)), 4)
