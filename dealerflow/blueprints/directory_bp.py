"""
Directory Blueprint — roles and users used for task assignment.

Endpoints:
    GET  /api/v1/roles
    POST /api/v1/roles    {name, department?, permissions?}
    GET  /api/v1/users    ?role=&active=true
    POST /api/v1/users    {user_id, display_name, role, is_active?}
"""

from flask import Blueprint, jsonify, request

from dealerflow.blueprints import json_body, register_error_handlers
from dealerflow.domain import RoleInfo, UserInfo
from dealerflow.services.workflow_service import get_engine
from dealerflow.utils.errors import E, api_error

directory_bp = Blueprint("directory_bp", __name__, url_prefix="/api/v1")
register_error_handlers(directory_bp)


@directory_bp.route("/roles", methods=["GET"])
def list_roles():
    roles = get_engine().repository.list_roles()
    return jsonify({"items": [r.to_dict() for r in roles], "total": len(roles)})


@directory_bp.route("/roles", methods=["POST"])
def create_role():
    data = json_body()
    name = (data.get("name") or "").strip()
    if not name:
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    permissions = data.get("permissions") or []
    if not isinstance(permissions, list):
        return api_error(E.VALIDATION_INVALID, "permissions must be a list")

    role = get_engine().repository.add_role(RoleInfo(
        name=name,
        department=(data.get("department") or "").strip(),
        permissions=tuple(str(p) for p in permissions),
    ))
    return jsonify(role.to_dict()), 201


@directory_bp.route("/users", methods=["GET"])
def list_users():
    users = get_engine().repository.list_users(
        role=request.args.get("role") or None,
        active_only=request.args.get("active", "false").lower() == "true",
    )
    return jsonify({"items": [u.to_dict() for u in users], "total": len(users)})


@directory_bp.route("/users", methods=["POST"])
def create_user():
    data = json_body()
    user_id = (data.get("user_id") or "").strip()
    role = (data.get("role") or "").strip()
    if not user_id or not role:
        return api_error(E.VALIDATION_REQUIRED, "user_id and role are required")

    repository = get_engine().repository
    if repository.get_role(role) is None:
        return api_error(E.VALIDATION_INVALID, f"Unknown role: {role}")

    user = repository.add_user(UserInfo(
        user_id=user_id,
        display_name=(data.get("display_name") or user_id).strip(),
        role=role,
        is_active=bool(data.get("is_active", True)),
    ))
    return jsonify(user.to_dict()), 201
