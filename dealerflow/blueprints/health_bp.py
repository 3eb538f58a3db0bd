"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — detailed system health (DB, catalog, notifications)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from dealerflow.models import db
from dealerflow.services.workflow_service import get_engine

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
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
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Stage catalog ────────────────────────────────────────────────
    engine = get_engine()
    process_types = engine.catalog.process_types()
    checks["catalog"] = {
        "status": "ok" if process_types else "empty",
        "process_types": process_types,
    }
    if not process_types:
        overall = False

    # ── Notification delivery ────────────────────────────────────────
    dispatcher = engine.emitter.dispatcher
    checks["notifications"] = {
        "status": "ok",
        "async": dispatcher.run_async,
        "channels": [c.name for c in dispatcher.channels],
        "dropped": dispatcher.dropped,
    }

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "DealerFlow Workflow Engine",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
