"""Feedback intake and triage endpoints."""

from flask import jsonify, request

from betaprogram.blueprints.beta import beta_bp, current_caller, json_body
from betaprogram.services import feedback_service


def _filters():
    return request.args.get("kind") or None, request.args.get("status") or None


@beta_bp.route("/titles/<int:title_id>/feedback", methods=["POST"])
def submit_feedback(title_id):
    """Body: {kind, title, description, severity?, attachment?, device_info?}"""
    caller = current_caller()
    data = json_body()
    item = feedback_service.submit(
        caller,
        caller.user_id,
        title_id,
        kind=data.get("kind"),
        title=data.get("title"),
        description=data.get("description"),
        severity=data.get("severity"),
        attachment=data.get("attachment"),
        device_info=data.get("device_info"),
    )
    return jsonify(item.to_dict()), 201


@beta_bp.route("/titles/<int:title_id>/feedback", methods=["GET"])
def list_title_feedback(title_id):
    kind, status = _filters()
    items = feedback_service.list_by_title(current_caller(), title_id, kind=kind, status=status)
    return jsonify({"items": [f.to_dict() for f in items], "total": len(items)}), 200


@beta_bp.route("/titles/<int:title_id>/feedback/summary", methods=["GET"])
def feedback_summary(title_id):
    return jsonify(feedback_service.summary_by_title(current_caller(), title_id)), 200


@beta_bp.route("/feedback/<int:feedback_id>/status", methods=["PATCH"])
def set_feedback_status(feedback_id):
    """Body: {"status": NEW | IN_PROGRESS | RESOLVED | CLOSED}"""
    item = feedback_service.set_status(current_caller(), feedback_id, json_body().get("status"))
    return jsonify(item.to_dict()), 200


@beta_bp.route("/feedback/mine", methods=["GET"])
def my_feedback():
    caller = current_caller()
    items = feedback_service.list_for_tester(caller, caller.user_id)
    return jsonify({"items": [f.to_dict() for f in items], "total": len(items)}), 200


@beta_bp.route("/feedback/all", methods=["GET"])
def publisher_feedback():
    kind, status = _filters()
    items = feedback_service.list_for_publisher(current_caller(), kind=kind, status=status)
    return jsonify({"items": [f.to_dict() for f in items], "total": len(items)}), 200
