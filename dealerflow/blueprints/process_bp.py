"""
Process catalog Blueprint — browse stage definitions and congestion.

Endpoints:
    GET /api/v1/processes                              — process types with stage counts
    GET /api/v1/processes/<process_type>               — ordered stages with DoD requirements
    GET /api/v1/processes/<process_type>/bottlenecks   — congested stages + distribution
"""

from flask import Blueprint, jsonify

from dealerflow.blueprints import register_error_handlers
from dealerflow.services.workflow_service import get_engine

process_bp = Blueprint("process_bp", __name__, url_prefix="/api/v1/processes")
register_error_handlers(process_bp)


@process_bp.route("", methods=["GET"])
def list_processes():
    catalog = get_engine().catalog
    items = [p.to_dict(include_stages=False) for p in catalog.processes()]
    return jsonify({"items": items, "total": len(items)})


@process_bp.route("/<process_type>", methods=["GET"])
def get_process(process_type):
    return jsonify(get_engine().catalog.get_process(process_type).to_dict())


@process_bp.route("/<process_type>/bottlenecks", methods=["GET"])
def get_bottlenecks(process_type):
    analyzer = get_engine().analyzer
    return jsonify({
        "process_type": process_type,
        "bottlenecks": analyzer.bottlenecks(process_type),
        "stage_distribution": analyzer.stage_distribution(process_type),
    })
