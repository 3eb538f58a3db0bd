"""
Dashboard Blueprint — read-only organization and personal views.

Endpoints:
    GET /api/v1/dashboard                    — organization aggregate
    GET /api/v1/users/<user_id>/dashboard    — workload, workflows, notifications
    GET /api/v1/users/<user_id>/workload     — {total, overdue, urgent, blocked}
    GET /api/v1/roles/<role>/workload        — per-role aggregate with per-user split
"""

import logging

from flask import Blueprint, jsonify

from dealerflow.blueprints import register_error_handlers
from dealerflow.services.dashboard import DashboardAggregator
from dealerflow.services.workflow_service import get_engine

logger = logging.getLogger(__name__)

dashboard_bp = Blueprint("dashboard_bp", __name__, url_prefix="/api/v1")
register_error_handlers(dashboard_bp)


@dashboard_bp.route("/dashboard", methods=["GET"])
def organization_dashboard():
    return jsonify(DashboardAggregator(get_engine()).organization_view())


@dashboard_bp.route("/users/<user_id>/dashboard", methods=["GET"])
def user_dashboard(user_id):
    return jsonify(DashboardAggregator(get_engine()).user_view(user_id))


@dashboard_bp.route("/users/<user_id>/workload", methods=["GET"])
def user_workload(user_id):
    workload = get_engine().resolver.workload_for(user_id)
    return jsonify({"user_id": user_id, **workload})


@dashboard_bp.route("/roles/<role>/workload", methods=["GET"])
def role_workload(role):
    return jsonify(get_engine().resolver.workload_for_role(role))
