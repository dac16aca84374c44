"""Built-in zero trust policies."""

from __future__ import annotations

from .store import PolicyStore

DEFAULT_POLICIES_YAML = """
policies:
  - policy_id: zero-trust-base
    name: Default Zero-Trust Policy
    description: Never trust, always verify. Applies to every request.
    tags: [baseline]
    rules:
      - rule_id: deny-high-risk
        description: High composite risk is never granted
        effect: deny
        conditions:
          - {field: risk_level, operator: eq, value: high}
      - rule_id: deny-untrusted-device
        description: Untrusted or quarantined devices are blocked
        effect: deny
        conditions:
          - {field: device_trust_level, operator: in, value: [untrusted, quarantined]}
      - rule_id: deny-disabled-identity
        description: Disabled identities are blocked
        effect: deny
        conditions:
          - {field: identity_enabled, operator: eq, value: false}
      - rule_id: allow-verified
        description: Everything else is allowed subject to the trust floors
        effect: allow
        conditions: []

  - policy_id: high-risk-data
    name: High-Risk Data Access Policy
    description: Additional controls for high sensitivity data
    tags: [data]
    sensitivities: [high]
    obligations:
      require_mfa: true
      max_grant_seconds: 3600
    rules:
      - rule_id: device-trust
        description: Device must be trusted for high-risk data access
        effect: deny
        conditions:
          - {field: device_trust_level, operator: ne, value: trusted}
      - rule_id: location-restriction
        description: Access only from approved locations
        effect: deny
        conditions:
          - any_of:
              - {field: geo_anomalous, operator: eq, value: true}
              - {field: network_anomalous, operator: eq, value: true}
      - rule_id: mfa-required
        description: The session on the requesting device must have passed MFA
        effect: deny
        conditions:
          - {field: mfa_verified, operator: ne, value: true}
      - rule_id: allow-trusted
        effect: allow
        conditions: []
"""


def load_default_policies(store: PolicyStore) -> None:
    """Install the built-in policies into ``store``."""
    store.load_yaml(DEFAULT_POLICIES_YAML)
