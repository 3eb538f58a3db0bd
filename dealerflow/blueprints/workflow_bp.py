"""
Workflow Blueprint — the advancement protocol over HTTP.

Endpoints (all under /api/v1):
    POST /workflows                                  — create (201 | 409 duplicate)
    GET  /workflows                                  — list (?process_type&status&assigned_to&record_id)
    GET  /workflows/<id>                             — detail with deadline, progress + next actions
    POST /workflows/<id>/advance                     — 200 | 422 gate | 409 transition | 410 closed
    POST /workflows/<id>/cancel                      — explicit cancellation
    POST /workflows/<id>/blockers                    — 201 blocker (410 only when cancelled)
    POST /workflows/<id>/blockers/<bid>/resolve      — 200 | 404 (optional {"resolution"})
    GET  /validate/<validation_type>/<record_id>     — DoD pre-flight check (order-workflow: pipeline summary)
    GET  /records/<record_id>/facts                  — record snapshot
    PUT  /records/<record_id>/facts                  — merge (or ?replace=true) facts
"""

import logging

from flask import Blueprint, jsonify, request

from dealerflow.blueprints import json_body, paginate_list, register_error_handlers
from dealerflow.services.workflow_service import ORDER_WORKFLOW_VALIDATION, get_engine
from dealerflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow_bp", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


def _text(data, key):
    value = data.get(key)
    if isinstance(value, str):
        value = value.strip()
    return value or None


# ═════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflows", methods=["POST"])
def create_workflow():
    data = json_body()
    record_id = _text(data, "record_id")
    process_type = _text(data, "process_type")
    if not record_id or not process_type:
        return api_error(E.VALIDATION_REQUIRED, "record_id and process_type are required")

    watchers = data.get("watchers") or []
    if not isinstance(watchers, list) or not all(isinstance(w, str) for w in watchers):
        return api_error(E.VALIDATION_INVALID, "watchers must be a list of user ids")

    engine = get_engine()
    wf = engine.create(record_id, process_type, created_by=_text(data, "created_by"), watchers=watchers)
    return jsonify(engine.describe(wf)), 201


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    engine = get_engine()
    workflows = engine.list_workflows(
        process_type=request.args.get("process_type") or None,
        status=request.args.get("status") or None,
        assigned_to=request.args.get("assigned_to") or None,
        record_id=request.args.get("record_id") or None,
    )
    items, total = paginate_list(workflows)
    return jsonify({"items": [engine.describe(wf) for wf in items], "total": total})


@workflow_bp.route("/workflows/<workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    engine = get_engine()
    return jsonify(engine.describe(engine.get(workflow_id)))


@workflow_bp.route("/workflows/<workflow_id>/advance", methods=["POST"])
def advance_workflow(workflow_id):
    data = json_body()
    target_stage = _text(data, "target_stage")
    if not target_stage:
        return api_error(E.VALIDATION_REQUIRED, "target_stage is required")

    snapshot = data.get("snapshot")
    if snapshot is not None and not isinstance(snapshot, dict):
        return api_error(E.VALIDATION_INVALID, "snapshot must be an object")

    engine = get_engine()
    wf = engine.advance(workflow_id, target_stage, actor=_text(data, "actor"), snapshot=snapshot)
    return jsonify(engine.describe(wf))


@workflow_bp.route("/workflows/<workflow_id>/cancel", methods=["POST"])
def cancel_workflow(workflow_id):
    data = json_body()
    engine = get_engine()
    wf = engine.cancel(workflow_id, reason=_text(data, "reason"), actor=_text(data, "actor"))
    return jsonify(engine.describe(wf))


# ═════════════════════════════════════════════════════════════════════════
# Blockers
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflows/<workflow_id>/blockers", methods=["POST"])
def add_blocker(workflow_id):
    data = json_body()
    description = _text(data, "description")
    if not description:
        return api_error(E.VALIDATION_REQUIRED, "description is required")

    blocker = get_engine().add_blocker(
        workflow_id, description,
        severity=_text(data, "severity") or "medium",
        created_by=_text(data, "created_by"),
    )
    return jsonify(blocker.to_dict()), 201


@workflow_bp.route("/workflows/<workflow_id>/blockers/<blocker_id>/resolve", methods=["POST"])
def resolve_blocker(workflow_id, blocker_id):
    data = json_body()
    resolution = data.get("resolution")
    if resolution is not None and not isinstance(resolution, str):
        return api_error(E.VALIDATION_INVALID, "resolution must be a string")
    blocker = get_engine().resolve_blocker(workflow_id, blocker_id, resolution=resolution)
    return jsonify(blocker.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# DoD pre-flight & record facts
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/validate/<validation_type>/<record_id>", methods=["GET"])
def validate_record(validation_type, record_id):
    """Pre-flight check for a UI action; never writes."""
    engine = get_engine()
    if validation_type == ORDER_WORKFLOW_VALIDATION:
        return jsonify(engine.order_summary(record_id))
    return jsonify(engine.preflight(validation_type, record_id))


@workflow_bp.route("/records/<record_id>/facts", methods=["GET"])
def get_record_facts(record_id):
    return jsonify({"record_id": record_id, "facts": get_engine().get_record_facts(record_id)})


@workflow_bp.route("/records/<record_id>/facts", methods=["PUT"])
def put_record_facts(record_id):
    data = json_body()
    facts = data.get("facts", data)
    if not isinstance(facts, dict):
        return api_error(E.VALIDATION_INVALID, "facts must be an object")
    replace = request.args.get("replace", "false").lower() == "true"
    stored = get_engine().set_record_facts(record_id, facts, merge=not replace)
    return jsonify({"record_id": record_id, "facts": stored})
