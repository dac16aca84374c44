"""
Identity verification.

Verification happens at session start and on demand, not once at login:
each successful verification opens a new session, refreshes the identity's
verification time and lifts its trust score; each failure lowers it.
Identity and MFA checks are delegated to collaborators that are treated as
opaque, retryable calls with their own timeout.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import structlog

from ..errors import ValidationError
from ..identity import Device, DeviceTrustLevel, Identity, IdentityRegistry, Session
from ..risk import RiskEngine, RiskResult
from .context import RequestContext, require_id
from .retry import call_with_timeout, with_retry

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IdentityCheck:
    """Answer from the identity verification collaborator."""
    verified: bool
    method: str = ""
    confidence: float = 0.0
    reason: str = ""


class IdentityVerifier(Protocol):
    def verify(self, identity: Identity, device: Device, context: Mapping[str, Any]) -> IdentityCheck:
        ...


class MfaVerifier(Protocol):
    def verify(self, identity_id: str, code: str) -> bool:
        ...


class RegistryIdentityVerifier:
    """
    Verifies against registry state alone.

    The identity must be enabled, the device must be neither untrusted nor
    quarantined, and the request must not come from a context that is
    anomalous in both location and network segment.
    """

    method = "registry"

    def verify(self, identity: Identity, device: Device, context: Mapping[str, Any]) -> IdentityCheck:
        if not identity.enabled:
            return IdentityCheck(False, self.method, 1.0, "identity disabled")
        if device.trust_level in (DeviceTrustLevel.UNTRUSTED, DeviceTrustLevel.QUARANTINED):
            return IdentityCheck(False, self.method, 1.0, "device not trusted")
        if context.get("geo_anomalous") and context.get("network_anomalous"):
            return IdentityCheck(False, self.method, 0.8, "high-risk context")
        return IdentityCheck(True, self.method, 0.9, "identity verified")


class InMemoryMfaVerifier:
    """One-time codes held in memory. Each issued code verifies once."""

    def __init__(self):
        self._codes: dict[str, str] = {}
        self._lock = threading.Lock()

    def issue(self, identity_id: str, code: str) -> None:
        with self._lock:
            self._codes[identity_id] = code

    def verify(self, identity_id: str, code: str) -> bool:
        with self._lock:
            expected = self._codes.get(identity_id)
            if expected is None or expected != code:
                return False
            del self._codes[identity_id]
            return True


@dataclass
class VerificationResult:
    verified: bool
    identity_id: str
    device_id: str
    method: str
    confidence: float
    trust_score: float
    reasons: list[str] = field(default_factory=list)
    mfa_method: str | None = None
    session: Session | None = None
    risk: RiskResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "identity_id": self.identity_id,
            "device_id": self.device_id,
            "method": self.method,
            "confidence": self.confidence,
            "trust_score": self.trust_score,
            "reasons": list(self.reasons),
            "mfa_method": self.mfa_method,
            "session": self.session.to_dict() if self.session else None,
            "risk": self.risk.to_dict() if self.risk else None,
        }


class VerificationService:
    """
    Runs identity (and optional MFA) verification and opens sessions.

    Collaborator calls run on a pool of ``max_workers`` threads owned by this
    service. At most ``max_workers`` hung collaborators can be outstanding;
    further calls queue and time out.
    """

    def __init__(
        self,
        registry: IdentityRegistry,
        risk_engine: RiskEngine,
        identity_verifier: IdentityVerifier | None = None,
        mfa_verifiers: dict[str, MfaVerifier] | None = None,
        trust_boost: float = 0.2,
        failure_penalty: float = 0.1,
        retry_attempts: int = 3,
        retry_backoff: float = 0.05,
        timeout: float = 5.0,
        max_workers: int = 4,
    ):
        self.registry = registry
        self.risk_engine = risk_engine
        self.identity_verifier = identity_verifier or RegistryIdentityVerifier()
        self.mfa_verifiers: dict[str, MfaVerifier] = dict(mfa_verifiers or {})
        self.trust_boost = trust_boost
        self.failure_penalty = failure_penalty
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="trustguard-verify")

    def close(self) -> None:
        """Release the collaborator pool; calls still running are abandoned."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def register_mfa(self, method: str, verifier: MfaVerifier) -> None:
        self.mfa_verifiers[method] = verifier

    def verify(
        self,
        identity_id: str,
        device_id: str,
        context: Mapping[str, Any] | RequestContext | None = None,
        mfa: Mapping[str, str] | None = None,
    ) -> VerificationResult:
        require_id(identity_id, "identity_id")
        require_id(device_id, "device_id")
        ctx = RequestContext.from_dict(context)
        mfa_method, mfa_code = self._parse_mfa(mfa)

        ident = self.registry.get_identity(identity_id)
        device = self.registry.get_device(device_id)
        ctx_dict = ctx.to_dict()

        check = self._call(lambda: self.identity_verifier.verify(ident, device, ctx_dict), "identity_verification")
        reasons = [check.reason] if check.reason else []

        mfa_ok: bool | None = None
        if mfa_method is not None and check.verified:
            verifier = self.mfa_verifiers[mfa_method]
            mfa_ok = bool(self._call(lambda: verifier.verify(identity_id, mfa_code), f"mfa_{mfa_method}"))
            reasons.append(f"mfa {mfa_method} {'verified' if mfa_ok else 'failed'}")

        if not check.verified or mfa_ok is False:
            updated = self.registry.update_trust_score(identity_id, lambda t: t - self.failure_penalty)
            logger.warning("verification_failed", identity_id=identity_id, device_id=device_id,
                           reasons=reasons, trust=updated.trust_score)
            return VerificationResult(
                verified=False,
                identity_id=identity_id,
                device_id=device_id,
                method=check.method,
                confidence=check.confidence,
                trust_score=updated.trust_score,
                reasons=reasons,
                mfa_method=mfa_method,
            )

        ident = self.registry.record_verification(identity_id, trust_delta=self.trust_boost)
        device = self.registry.touch_device(device_id)
        session_ctx = {**ctx_dict, "mfa_verified": bool(mfa_ok)}
        risk = self.risk_engine.assess(ident, device, session_ctx)
        session = self.registry.create_session(identity_id, device_id, session_ctx, risk.score)

        logger.info("verification_succeeded", identity_id=identity_id, device_id=device_id,
                    session_id=session.session_id, method=check.method, mfa=mfa_method,
                    trust=ident.trust_score, risk_level=risk.level.value)
        return VerificationResult(
            verified=True,
            identity_id=identity_id,
            device_id=device_id,
            method=check.method,
            confidence=check.confidence,
            trust_score=ident.trust_score,
            reasons=reasons,
            mfa_method=mfa_method,
            session=session,
            risk=risk,
        )

    def _parse_mfa(self, mfa: Mapping[str, str] | None) -> tuple[str | None, str]:
        if mfa is None:
            return None, ""
        if not isinstance(mfa, Mapping):
            raise ValidationError("mfa must be a mapping with 'method' and 'code'", {"field": "mfa"})
        method = mfa.get("method")
        code = mfa.get("code")
        if not method or not isinstance(code, str) or not code:
            raise ValidationError("mfa requires 'method' and 'code'", {"field": "mfa"})
        if method not in self.mfa_verifiers:
            raise ValidationError(
                f"unsupported MFA method '{method}'", {"allowed": sorted(self.mfa_verifiers)}
            )
        return method, code

    def _call(self, fn, operation: str):
        return with_retry(
            lambda: call_with_timeout(fn, self.timeout, self._executor, operation),
            self.retry_attempts,
            self.retry_backoff,
            operation,
        )
