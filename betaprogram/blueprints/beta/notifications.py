"""The caller's in-app notifications."""

from flask import jsonify, request

from betaprogram.blueprints.beta import beta_bp, current_caller
from betaprogram.core.exceptions import NotFoundError
from betaprogram.services.notification import NotificationService


@beta_bp.route("/me/notifications", methods=["GET"])
def list_notifications():
    caller = current_caller()
    unread_only = (request.args.get("unread") or "").lower() in ("1", "true")
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)
    items, total = NotificationService.list_for_recipient(
        caller.user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread": NotificationService.unread_count(caller.user_id),
    }), 200


@beta_bp.route("/me/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id):
    notif = NotificationService.mark_read(notification_id, current_caller().user_id)
    if notif is None:
        raise NotFoundError(resource="Notification", resource_id=notification_id)
    return jsonify(notif.to_dict()), 200


@beta_bp.route("/me/notifications/read-all", methods=["POST"])
def mark_all_notifications_read():
    count = NotificationService.mark_all_read(current_caller().user_id)
    return jsonify({"marked": count}), 200
