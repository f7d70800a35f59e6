"""Task catalog and completion endpoints."""

from flask import jsonify, request

from betaprogram.blueprints.beta import beta_bp, current_caller, json_body, query_flag
from betaprogram.services import task_service


@beta_bp.route("/titles/<int:title_id>/tasks", methods=["GET"])
def list_tasks(title_id):
    """Publisher progress view with completion and tester counts."""
    items = task_service.list_tasks(current_caller(), title_id)
    return jsonify({"items": items, "total": len(items)}), 200


@beta_bp.route("/titles/<int:title_id>/tasks", methods=["POST"])
def create_task(title_id):
    task = task_service.create_task(current_caller(), title_id, json_body())
    return jsonify(task.to_dict()), 201


@beta_bp.route("/titles/<int:title_id>/completions", methods=["GET"])
def list_completions(title_id):
    """Who completed which task and when. Optional ?task_id= filter."""
    task_id = request.args.get("task_id", type=int)
    items = task_service.list_completions(current_caller(), title_id, task_id=task_id)
    return jsonify({"items": items, "total": len(items)}), 200


@beta_bp.route("/titles/<int:title_id>/my-tasks", methods=["GET"])
def my_tasks(title_id):
    caller = current_caller()
    items = task_service.list_tasks_for_tester(caller, caller.user_id, title_id)
    return jsonify({"items": items, "total": len(items)}), 200


@beta_bp.route("/tasks/<int:task_id>", methods=["PATCH"])
def update_task(task_id):
    task = task_service.update_task(current_caller(), task_id, json_body())
    return jsonify(task.to_dict()), 200


@beta_bp.route("/tasks/<int:task_id>", methods=["DELETE"])
def delete_task(task_id):
    """Delete a task and its completions. Requires ?confirm=true."""
    result = task_service.delete_task(current_caller(), task_id, confirm=query_flag("confirm"))
    return jsonify(result), 200


@beta_bp.route("/tasks/<int:task_id>/complete", methods=["POST"])
def complete_task(task_id):
    """201 with the reward on first completion, 200 with already_completed afterwards."""
    caller = current_caller()
    result = task_service.complete_task(caller, task_id, caller.user_id)
    return jsonify(result.to_dict()), 200 if result.already_completed else 201
