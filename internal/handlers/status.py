"""Health and status HTTP handlers for the replication controller.

Endpoints:
  GET /healthz                        — Liveness
  GET /readyz                         — Readiness (operator watching the CRD)
  GET /api/replicationgroups          — Last reconcile outcome of every group seen
  GET /api/replicationgroups/<name>   — Last reconcile outcome of one group

The operator is taken from ``app.config["REPLICATION_OPERATOR"]``.
"""

from flask import Blueprint, current_app, jsonify

status_bp = Blueprint("status", __name__)


def _operator():
    return current_app.config.get("REPLICATION_OPERATOR")


@status_bp.get("/healthz")
def healthz():
    return jsonify({"status": "ok", "service": "replication-controller"}), 200


@status_bp.get("/readyz")
def readyz():
    operator = _operator()
    if operator is None or not operator.ready.is_set():
        return jsonify({"status": "not ready"}), 503
    return jsonify({"status": "ready", "workers": operator.max_workers}), 200


@status_bp.get("/api/replicationgroups")
def list_outcomes():
    operator = _operator()
    if operator is None:
        return jsonify({"error": "operator not configured"}), 503
    return jsonify({"replicationGroups": operator.history.all()}), 200


@status_bp.get("/api/replicationgroups/<name>")
def get_outcome(name: str):
    operator = _operator()
    if operator is None:
        return jsonify({"error": "operator not configured"}), 503
    entry = operator.history.get(name)
    if entry is None:
        return jsonify({"error": f"Replication group '{name}' has not been reconciled"}), 404
    return jsonify(entry), 200
