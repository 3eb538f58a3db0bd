"""Standardised API error responses.

Usage
-----
    from dealerflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Workflow not found")
    return api_error(E.VALIDATION_REQUIRED, "record_id is required")
    return api_error(E.GATE_NOT_SATISFIED, "Gate blocked",
                     extra={"failed_requirements": [...]})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"
    UNKNOWN_PROCESS_TYPE = "ERR_UNKNOWN_PROCESS_TYPE"
    UNKNOWN_STAGE = "ERR_UNKNOWN_STAGE"
    BLOCKER_NOT_FOUND = "ERR_BLOCKER_NOT_FOUND"

    # Conflict – HTTP 409
    DUPLICATE_WORKFLOW = "ERR_DUPLICATE_WORKFLOW"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONCURRENT_UPDATE = "ERR_CONCURRENT_UPDATE"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"

    # Gone – HTTP 410
    WORKFLOW_COMPLETE = "ERR_WORKFLOW_COMPLETE"
    WORKFLOW_CANCELLED = "ERR_WORKFLOW_CANCELLED"

    # Definition of Done – HTTP 422
    GATE_NOT_SATISFIED = "ERR_GATE_NOT_SATISFIED"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.UNKNOWN_PROCESS_TYPE: 404,
    E.UNKNOWN_STAGE: 404,
    E.BLOCKER_NOT_FOUND: 404,
    E.DUPLICATE_WORKFLOW: 409,
    E.CONFLICT_DUPLICATE: 409,
    E.CONCURRENT_UPDATE: 409,
    E.INVALID_TRANSITION: 409,
    E.WORKFLOW_COMPLETE: 410,
    E.WORKFLOW_CANCELLED: 410,
    E.GATE_NOT_SATISFIED: 422,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    extra: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload nested under ``details``.
    extra : dict, optional
        Top-level keys merged into the body (e.g. ``failed_requirements``).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details
    if extra:
        body.update(extra)

    return jsonify(body), http_status
