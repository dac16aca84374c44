"""Access decisions and identity verification for TrustGuard."""

from ..audit import AccessDecision
from .context import RequestContext
from .engine import AccessDecisionEngine, Grant
from .resources import Resource, ResourceCatalog, Sensitivity
from .verification import (
    IdentityCheck,
    InMemoryMfaVerifier,
    RegistryIdentityVerifier,
    VerificationResult,
    VerificationService,
)

__all__ = [
    "AccessDecision",
    "AccessDecisionEngine",
    "Grant",
    "IdentityCheck",
    "InMemoryMfaVerifier",
    "RegistryIdentityVerifier",
    "RequestContext",
    "Resource",
    "ResourceCatalog",
    "Sensitivity",
    "VerificationResult",
    "VerificationService",
]
