"""
Engine configuration.

Settings are read from ``TRUSTGUARD_*`` environment variables (or a
``.env`` file) and can also be loaded from a YAML document.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TrustGuardSettings(BaseSettings):
    """Tunables for scoring, gating, monitoring and delivery."""

    model_config = SettingsConfigDict(
        env_prefix="TRUSTGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="info", description="Root log level")
    json_logs: bool = Field(default=False, description="Render logs as JSON")

    # Risk assessment
    verification_ttl: float = Field(default=3600.0, gt=0, description="Seconds before verification is stale")
    staleness_window: float | None = Field(
        default=None, gt=0, description="Seconds past the TTL over which the staleness penalty ramps to its cap"
    )
    anomaly_penalty: float = Field(default=20.0, ge=0, le=100, description="Context anomaly penalty")

    # Access gates
    grant_trust_floor: float = Field(default=0.7, ge=0, le=1)
    high_sensitivity_min_trust: float = Field(default=0.9, ge=0, le=1)
    open_violation_on_policy_denial: bool = Field(default=True)

    # Trust lifecycle
    initial_trust_score: float = Field(default=0.5, ge=0, le=1)
    verification_trust_boost: float = Field(default=0.2, ge=0, le=1)
    verification_failure_penalty: float = Field(default=0.1, ge=0, le=1)

    # Continuous monitoring
    aging_after: float = Field(default=3600.0, gt=0, description="Seconds until a subject is aging")
    stale_after: float = Field(default=14400.0, gt=0, description="Seconds until a subject is stale")
    aging_decay_per_hour: float = Field(default=0.02, ge=0, le=1)
    stale_decay_per_hour: float = Field(default=0.1, ge=0, le=1)
    trust_recompute_interval: float = Field(default=30.0, gt=0)
    threat_scan_interval: float = Field(default=5.0, gt=0)
    session_max_age: float = Field(default=86400.0, gt=0)
    session_retention: float = Field(
        default=86400.0, ge=0, description="Seconds a revoked session is kept before it is pruned"
    )

    # Infrastructure
    transient_retry_attempts: int = Field(default=3, ge=1)
    transient_retry_backoff: float = Field(default=0.05, ge=0)
    collaborator_timeout: float = Field(default=5.0, gt=0)
    collaborator_workers: int = Field(
        default=4, ge=1, description="Threads for verification collaborators; bounds concurrent hung calls"
    )
    event_buffer_size: int = Field(default=256, ge=1)

    @model_validator(mode="after")
    def _check_ordering(self) -> "TrustGuardSettings":
        if self.stale_after <= self.aging_after:
            raise ValueError("stale_after must be greater than aging_after")
        if self.high_sensitivity_min_trust < self.grant_trust_floor:
            raise ValueError("high_sensitivity_min_trust must not be below grant_trust_floor")
        return self

    @property
    def effective_staleness_window(self) -> float:
        return self.staleness_window or self.verification_ttl

    @classmethod
    def from_yaml(cls, path: str | Path) -> "TrustGuardSettings":
        """Load settings from a YAML mapping; unknown keys are ignored."""
        with open(path) as f:
            data: Any = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping of settings")
        return cls(**data)
