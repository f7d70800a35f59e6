"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready: simple 200 for load balancers
    GET /api/v1/health/live: database reachability and schema presence
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from betaprogram.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

CORE_TABLES = (
    "titles", "beta_agreements", "beta_enrollments", "beta_tasks",
    "beta_task_completions", "beta_feedback",
)


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe; always 200 if the app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Schema ───────────────────────────────────────────────────────
    if overall:
        present = set(inspect(db.engine).get_table_names())
        missing = [t for t in CORE_TABLES if t not in present]
        checks["schema"] = {"status": "ok" if not missing else "missing_tables", "missing": missing}
        overall = not missing

    # ── Collaborators ────────────────────────────────────────────────
    ledger = current_app.extensions.get("beta_reward_ledger")
    notifier = current_app.extensions.get("beta_notifier")
    checks["collaborators"] = {
        "reward_ledger": type(ledger).__name__ if ledger else None,
        "notifier": type(notifier).__name__ if notifier else None,
    }

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Beta Testing Program Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
