"""
Notification Blueprint — recipient inbox.

Notifications are produced by the workflow engine only; this blueprint reads
them and flips the read flag.

Endpoints:
    GET  /api/v1/users/<user_id>/notifications            — ?unread=true&limit=50
    POST /api/v1/notifications/<notification_id>/read
    POST /api/v1/users/<user_id>/notifications/read-all
"""

from flask import Blueprint, jsonify, request

from dealerflow.blueprints import register_error_handlers
from dealerflow.services.workflow_service import get_engine
from dealerflow.utils.errors import E, api_error

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)


@notification_bp.route("/users/<user_id>/notifications", methods=["GET"])
def list_notifications(user_id):
    unread_only = request.args.get("unread", "false").lower() == "true"
    limit = request.args.get("limit", 50, type=int)
    inbox = get_engine().inbox
    items = inbox.list_for(user_id, unread_only=unread_only, limit=min(max(limit, 1), 500))
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": len(items),
        "unread_count": inbox.unread_count(user_id),
    })


@notification_bp.route("/notifications/<notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    notif = get_engine().inbox.mark_read(notification_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/users/<user_id>/notifications/read-all", methods=["POST"])
def mark_all_read(user_id):
    count = get_engine().inbox.mark_all_read(user_id)
    return jsonify({"marked_read": count})
