"""Confidentiality agreement endpoints."""

from flask import jsonify, request

from betaprogram.blueprints.beta import beta_bp, current_caller, json_body
from betaprogram.core.exceptions import ValidationError
from betaprogram.services import agreement_service


@beta_bp.route("/titles/<int:title_id>/agreement", methods=["GET"])
def agreement_status(title_id):
    caller = current_caller()
    return jsonify(agreement_service.get_agreement_status(caller, caller.user_id, title_id)), 200


@beta_bp.route("/titles/<int:title_id>/agreement", methods=["POST"])
def accept_agreement(title_id):
    """Record the caller's acceptance.

    Body: {"confirmed": true, "origin"?: str}
    Returns 201 for a new record, 200 when it already existed.
    The request's IP address and user agent are stored as evidence.
    """
    caller = current_caller()
    data = json_body()
    if data.get("confirmed") is not True:
        raise ValidationError(
            "The agreement must be explicitly confirmed",
            details={"confirmed": "must be true"},
        )
    origin = data.get("origin") or "api"
    evidence = {
        "origin": origin,
        "ip_address": request.headers.get("X-Forwarded-For", request.remote_addr),
        "user_agent": request.headers.get("User-Agent", ""),
    }
    record, created = agreement_service.record_acceptance(
        caller, caller.user_id, title_id, evidence, origin=origin,
    )
    body = record.to_dict()
    body["created"] = created
    return jsonify(body), 201 if created else 200


@beta_bp.route("/agreements/stats", methods=["GET"])
def agreement_stats():
    title_id = request.args.get("title_id", type=int)
    return jsonify(agreement_service.agreement_stats(current_caller(), title_id)), 200
