"""
Error taxonomy for TrustGuard.

Every failure that is not a clean ``denied`` decision surfaces as one of
these exceptions so callers can tell "engine failed" from "access denied".
"""

from __future__ import annotations

from typing import Any


class TrustGuardError(Exception):
    """Base exception for the engine."""

    code = "TRUSTGUARD_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(TrustGuardError):
    """Malformed or missing input, rejected before any state change."""

    code = "VALIDATION_ERROR"


class InvalidTransitionError(ValidationError):
    """A state transition that the entity's lifecycle does not permit."""

    code = "INVALID_TRANSITION"


class NotFoundError(TrustGuardError):
    """Unknown identity, device, session, policy or resource."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} '{entity_id}' not found", {"kind": kind, "id": entity_id})


class TransientInfraError(TrustGuardError):
    """Registry or storage unavailable. Retryable; never a security decision."""

    code = "TRANSIENT_INFRA_ERROR"
    retryable = True


class PolicyConflictError(TrustGuardError):
    """Applicable policies carry contradictory, non-combinable configuration."""

    code = "POLICY_CONFLICT"
