"""Enrollment endpoints and the tester's own dashboards."""

import logging

from flask import jsonify

from betaprogram.blueprints.beta import beta_bp, current_caller, json_body
from betaprogram.core.exceptions import AlreadyEnrolledError
from betaprogram.services import enrollment_service

logger = logging.getLogger(__name__)


@beta_bp.route("/titles/<int:title_id>/join", methods=["POST"])
def join(title_id):
    """Join the testing program. Joining twice returns the existing enrollment."""
    caller = current_caller()
    try:
        enrollment = enrollment_service.join(caller, caller.user_id, title_id)
    except AlreadyEnrolledError as exc:
        logger.debug("Duplicate join absorbed tester=%s title_id=%s", caller.user_id, title_id)
        body = exc.enrollment.to_dict()
        body["already_enrolled"] = True
        return jsonify(body), 200
    body = enrollment.to_dict()
    body["already_enrolled"] = False
    return jsonify(body), 201


@beta_bp.route("/titles/<int:title_id>/leave", methods=["POST"])
def leave(title_id):
    caller = current_caller()
    enrollment = enrollment_service.deactivate(caller, caller.user_id, title_id)
    return jsonify(enrollment.to_dict()), 200


@beta_bp.route("/titles/<int:title_id>/testers/<tester_id>/deactivate", methods=["POST"])
def deactivate_tester(title_id, tester_id):
    enrollment = enrollment_service.deactivate(current_caller(), tester_id, title_id)
    return jsonify(enrollment.to_dict()), 200


@beta_bp.route("/titles/<int:title_id>/session-time", methods=["POST"])
def session_time(title_id):
    """Body: {"seconds": int ≥ 0}"""
    caller = current_caller()
    data = json_body()
    enrollment = enrollment_service.record_session_time(
        caller, caller.user_id, title_id, data.get("seconds"),
    )
    return jsonify(enrollment.to_dict()), 200


@beta_bp.route("/me/tests", methods=["GET"])
def my_tests():
    tests = enrollment_service.list_my_tests(current_caller())
    return jsonify({"items": tests, "total": len(tests)}), 200


@beta_bp.route("/me/stats", methods=["GET"])
def my_stats():
    return jsonify(enrollment_service.tester_stats(current_caller())), 200
