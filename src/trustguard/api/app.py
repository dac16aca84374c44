"""
Flask REST API for TrustGuard.

Thin adapter over the engine: parses JSON bodies, calls the engine and
maps the error taxonomy onto HTTP status codes. A denial is a successful
response with ``outcome=denied``; an engine failure never is.
"""

from __future__ import annotations

from typing import Any

from flask import Flask, jsonify, request

from ..core import TrustGuard
from ..errors import (
    NotFoundError,
    PolicyConflictError,
    TransientInfraError,
    TrustGuardError,
    ValidationError,
)
from ..policy import Policy

STATUS_CODES: dict[type[TrustGuardError], int] = {
    ValidationError: 400,
    NotFoundError: 404,
    PolicyConflictError: 409,
    TransientInfraError: 503,
}


def _status_for(error: TrustGuardError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


def _body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def _float_arg(name: str) -> float | None:
    raw = request.args.get(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"query parameter '{name}' must be a number") from None


def create_app(engine: TrustGuard | None = None) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    tg = engine or TrustGuard()
    app.config["TRUSTGUARD"] = tg

    @app.errorhandler(TrustGuardError)
    def handle_error(error: TrustGuardError):
        return jsonify({"error": error.to_dict()}), _status_for(error)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "healthy", "timestamp": tg.clock.now(), "monitor_running": tg.monitor.running})

    # --- Identities and devices ---

    @app.route("/api/v1/identities", methods=["GET"])
    def identity_list():
        return jsonify({
            "identities": [i.to_dict() for i in tg.registry.identities()],
            "summary": tg.registry.summary(),
        })

    @app.route("/api/v1/identities", methods=["POST"])
    def identity_upsert():
        data = _body()
        ident = tg.registry.upsert_identity(data.get("identity_id"), data.get("attributes"))
        return jsonify(ident.to_dict()), 201

    @app.route("/api/v1/identities/<identity_id>", methods=["GET"])
    def identity_get(identity_id: str):
        ident = tg.registry.get_identity(identity_id)
        return jsonify({**ident.to_dict(), "monitor": tg.monitor.state_of("identity", identity_id)})

    @app.route("/api/v1/identities/<identity_id>", methods=["DELETE"])
    def identity_deprovision(identity_id: str):
        tg.access.revoke_grants(identity_id=identity_id, reason="identity_deprovisioned")
        tg.registry.deprovision_identity(identity_id)
        return jsonify({"status": "deprovisioned", "identity_id": identity_id})

    @app.route("/api/v1/devices", methods=["POST"])
    def device_register():
        data = _body()
        device = tg.registry.register_device(
            data.get("device_id"),
            data.get("owner_id"),
            data.get("posture"),
            data.get("trust_level", "provisional"),
        )
        return jsonify(device.to_dict()), 201

    @app.route("/api/v1/devices/<device_id>", methods=["GET"])
    def device_get(device_id: str):
        return jsonify(tg.registry.get_device(device_id).to_dict())

    @app.route("/api/v1/devices/<device_id>/trust", methods=["PUT"])
    def device_trust(device_id: str):
        data = _body()
        device = tg.registry.update_device_trust_level(device_id, data.get("trust_level", ""))
        return jsonify(device.to_dict())

    @app.route("/api/v1/devices/<device_id>/reinstate", methods=["POST"])
    def device_reinstate(device_id: str):
        data = _body()
        device = tg.registry.reinstate_device(device_id, data.get("trust_level", "provisional"))
        return jsonify(device.to_dict())

    @app.route("/api/v1/resources", methods=["POST"])
    def resource_register():
        data = _body()
        resource = tg.resources.register(
            data.get("resource_id"),
            data.get("sensitivity", "low"),
            data.get("actions", ()),
            data.get("attributes"),
        )
        return jsonify(resource.to_dict()), 201

    # --- Verification and access ---

    @app.route("/api/v1/verify", methods=["POST"])
    def verify():
        data = _body()
        result = tg.verification.verify(
            data.get("identity_id"), data.get("device_id"), data.get("context"), data.get("mfa"),
        )
        return jsonify(result.to_dict())

    @app.route("/api/v1/access/grant", methods=["POST"])
    def access_grant():
        data = _body()
        decision = tg.access.decide_grant(
            data.get("identity_id"),
            data.get("device_id"),
            data.get("resource_id"),
            data.get("permissions"),
            data.get("context"),
        )
        return jsonify(decision.to_dict())

    @app.route("/api/v1/access/check", methods=["POST"])
    def access_check():
        data = _body()
        decision = tg.access.decide_check(
            data.get("identity_id"),
            data.get("resource_id"),
            data.get("action"),
            device_id=data.get("device_id"),
            context=data.get("context"),
        )
        return jsonify(decision.to_dict())

    @app.route("/api/v1/access/grants/<identity_id>", methods=["GET"])
    def access_grants(identity_id: str):
        return jsonify({"grants": [g.to_dict() for g in tg.access.active_grants(identity_id)]})

    @app.route("/api/v1/access/stats", methods=["GET"])
    def access_stats():
        return jsonify(tg.access.decision_stats())

    # --- Policies ---

    @app.route("/api/v1/policies", methods=["GET"])
    def policy_list():
        return jsonify({"policies": [p.to_dict() for p in tg.policies.list()]})

    @app.route("/api/v1/policies", methods=["POST"])
    def policy_create():
        policy = tg.policies.create(Policy.from_dict(_body()))
        return jsonify(policy.to_dict()), 201

    @app.route("/api/v1/policies/conflicts", methods=["GET"])
    def policy_conflicts():
        return jsonify({"conflicts": tg.policies.detect_conflicts()})

    @app.route("/api/v1/policies/<policy_id>", methods=["GET"])
    def policy_get(policy_id: str):
        version = request.args.get("version", type=int)
        return jsonify(tg.policies.get(policy_id, version).to_dict())

    @app.route("/api/v1/policies/<policy_id>", methods=["PUT"])
    def policy_update(policy_id: str):
        policy = tg.policies.update(policy_id, **_body())
        return jsonify(policy.to_dict())

    @app.route("/api/v1/policies/<policy_id>", methods=["DELETE"])
    def policy_delete(policy_id: str):
        tombstone = tg.policies.delete(policy_id)
        return jsonify({"status": "deleted", "policy_id": policy_id, "version": tombstone.version})

    @app.route("/api/v1/policies/<policy_id>/history", methods=["GET"])
    def policy_history(policy_id: str):
        return jsonify({"versions": [p.to_dict() for p in tg.policies.history(policy_id)]})

    # --- Audit ---

    @app.route("/api/v1/audit/decisions", methods=["GET"])
    def audit_decisions():
        decisions = tg.audit.decisions(
            subject_id=request.args.get("subject_id"),
            since=_float_arg("since"),
            until=_float_arg("until"),
            outcome=request.args.get("outcome"),
            limit=request.args.get("limit", type=int),
        )
        return jsonify({"decisions": [d.to_dict() for d in decisions]})

    @app.route("/api/v1/audit/violations", methods=["GET"])
    def audit_violations():
        violations = tg.audit.violations(
            subject_id=request.args.get("subject_id"),
            since=_float_arg("since"),
            until=_float_arg("until"),
            severity=request.args.get("severity"),
            status=request.args.get("status"),
        )
        return jsonify({"violations": [v.to_dict() for v in violations]})

    @app.route("/api/v1/audit/violations/<violation_id>/status", methods=["POST"])
    def audit_violation_status(violation_id: str):
        data = _body()
        violation = tg.audit.transition_violation(violation_id, data.get("status", ""), data.get("note", ""))
        return jsonify(violation.to_dict())

    # --- Risk ---

    @app.route("/api/v1/risk/summary", methods=["GET"])
    def risk_summary():
        return jsonify(tg.monitor.risk_summary())

    return app
