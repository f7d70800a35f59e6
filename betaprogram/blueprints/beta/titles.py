"""Title lifecycle and promotion gate endpoints.

    POST /titles                       register a DRAFT title
    GET  /titles/<id>                  title card
    POST /titles/<id>/open-testing     DRAFT → TESTING
    POST /titles/<id>/promote          TESTING → RELEASED (one-way)
    GET  /titles/<id>/overview         aggregate program statistics
"""

from flask import jsonify

from betaprogram.blueprints.beta import beta_bp, current_caller, json_body
from betaprogram.services import promotion_service


@beta_bp.route("/titles", methods=["POST"])
def register_title():
    data = json_body()
    title = promotion_service.register_title(current_caller(), data.get("name"))
    return jsonify(title.to_dict()), 201


@beta_bp.route("/titles/<int:title_id>", methods=["GET"])
def get_title(title_id):
    current_caller()
    return jsonify(promotion_service.get_title_detail(title_id)), 200


@beta_bp.route("/titles/<int:title_id>/open-testing", methods=["POST"])
def open_for_testing(title_id):
    title = promotion_service.open_for_testing(current_caller(), title_id)
    return jsonify(title.to_dict()), 200


@beta_bp.route("/titles/<int:title_id>/promote", methods=["POST"])
def promote(title_id):
    """Promote the title out of testing. A second call fails with ALREADY_RELEASED."""
    title = promotion_service.promote(current_caller(), title_id)
    return jsonify(title.to_dict()), 200


@beta_bp.route("/titles/<int:title_id>/overview", methods=["GET"])
def overview(title_id):
    return jsonify(promotion_service.promotion_overview(current_caller(), title_id)), 200
