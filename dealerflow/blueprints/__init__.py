"""
DealerFlow Workflow Engine
Blueprint registry and shared blueprint helpers.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from dealerflow.core.exceptions import (
    BlockerNotFound,
    ConcurrentUpdate,
    ConflictError,
    DuplicateWorkflow,
    GateNotSatisfied,
    InvalidTransition,
    NotFoundError,
    UnknownProcessType,
    UnknownStage,
    ValidationError,
    WorkflowCancelled,
    WorkflowComplete,
)
from dealerflow.models import db
from dealerflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_list(items, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to an in-memory list.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = len(items)
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return items[offset:offset + limit], total


def register_error_handlers(bp):
    """Map engine exceptions to JSON error responses on ``bp``."""

    @bp.errorhandler(GateNotSatisfied)
    def _handle_gate(error: GateNotSatisfied):
        return api_error(E.GATE_NOT_SATISFIED, str(error), details=error.details,
                         extra={"failed_requirements": error.failed_requirements})

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), status=422, details=error.details)

    @bp.errorhandler(InvalidTransition)
    def _handle_transition(error: InvalidTransition):
        return api_error(E.INVALID_TRANSITION, str(error), details={
            "current_stage": error.current_stage,
            "target_stage": error.target_stage,
            "expected_stage": error.expected_stage,
        })

    @bp.errorhandler(WorkflowComplete)
    def _handle_complete(error: WorkflowComplete):
        return api_error(E.WORKFLOW_COMPLETE, str(error))

    @bp.errorhandler(WorkflowCancelled)
    def _handle_cancelled(error: WorkflowCancelled):
        return api_error(E.WORKFLOW_CANCELLED, str(error))

    @bp.errorhandler(DuplicateWorkflow)
    def _handle_duplicate(error: DuplicateWorkflow):
        details = {"record_id": error.record_id, "process_type": error.process_type}
        if error.existing_id:
            details["existing_workflow_id"] = error.existing_id
        return api_error(E.DUPLICATE_WORKFLOW, str(error), details=details)

    @bp.errorhandler(ConcurrentUpdate)
    def _handle_concurrent(error: ConcurrentUpdate):
        return api_error(E.CONCURRENT_UPDATE, str(error))

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(UnknownProcessType)
    def _handle_unknown_process(error: UnknownProcessType):
        return api_error(E.UNKNOWN_PROCESS_TYPE, str(error))

    @bp.errorhandler(UnknownStage)
    def _handle_unknown_stage(error: UnknownStage):
        return api_error(E.UNKNOWN_STAGE, str(error))

    @bp.errorhandler(BlockerNotFound)
    def _handle_blocker(error: BlockerNotFound):
        return api_error(E.BLOCKER_NOT_FOUND, str(error))

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(SQLAlchemyError)
    def _handle_db(error: SQLAlchemyError):
        logger.exception("Database error in %s endpoint=%s", bp.name, request.endpoint)
        db.session.rollback()
        return api_error(E.DATABASE, "Database error")

    @bp.errorhandler(HTTPException)
    def _handle_http(error: HTTPException):
        return {"error": error.description}, error.code

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")


def json_body() -> dict:
    """Request JSON object, or an empty dict for a missing / non-object body."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data
