"""
Beta program: Task Catalog & Completion Tracker.

Publishers author tasks on their titles; enrolled testers complete them.
A TaskCompletion is the single trigger for reward issuance: it is created
at most once per (task, tester) and the reward is handed to the ledger
only after the completion is committed.

Rules:
  - catalog writes are publisher-only and audited.
  - completion counts are always derived from completion rows at read time.
  - Enrollment.tasks_completed moves only by SQL increments, in the same
    transaction as the completion insert or delete.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from betaprogram.core.exceptions import ValidationError
from betaprogram.models import db
from betaprogram.models.audit import write_audit
from betaprogram.models.beta import (
    DEFAULT_POINTS_REWARD,
    DEFAULT_XP_REWARD,
    POINTS_REWARD_MAX,
    POINTS_REWARD_MIN,
    TASK_KINDS,
    XP_REWARD_MAX,
    XP_REWARD_MIN,
    Enrollment,
    Task,
    TaskCompletion,
)
from betaprogram.services.helpers.lookups import (
    clean_text,
    get_or_raise,
    get_title,
    parse_bool,
    parse_bounded_int,
    parse_choice,
    require_active_enrollment,
)
from betaprogram.services.notification import notify_new_task
from betaprogram.services.permission import Caller, check_capability
from betaprogram.services.rewards import RewardEvent, dispatch_reward

logger = logging.getLogger(__name__)

TASK_TITLE_MAX = 200
UPDATABLE_FIELDS = ("title", "description", "kind", "xp_reward", "points_reward",
                    "is_optional", "display_order")


@dataclass
class CompletionResult:
    """Outcome of ``complete_task``.

    ``reward`` is set only on the call that created the completion.
    """

    already_completed: bool
    completion: TaskCompletion
    reward: RewardEvent | None = None

    def to_dict(self) -> dict:
        return {
            "already_completed": self.already_completed,
            "completion": self.completion.to_dict(),
            "reward": self.reward.to_dict() if self.reward else None,
        }


def get_task(task_id) -> Task:
    return get_or_raise(Task, task_id, "Task")


def task_publisher(task: Task) -> str:
    return get_title(task.title_id).publisher_id


def _validate_fields(data: dict, partial: bool) -> dict:
    """Return the validated subset of task fields present in ``data``."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be an object")
    clean = {}
    if "title" in data or not partial:
        clean["title"] = clean_text(data.get("title"), "title", TASK_TITLE_MAX)
    if "kind" in data or not partial:
        clean["kind"] = parse_choice(data.get("kind"), "kind", TASK_KINDS)
    if "description" in data:
        desc = data.get("description")
        if desc is not None and not isinstance(desc, str):
            raise ValidationError("description must be a string", details={"description": desc})
        clean["description"] = (desc or "").strip()
    if "xp_reward" in data:
        clean["xp_reward"] = parse_bounded_int(data["xp_reward"], "xp_reward",
                                               XP_REWARD_MIN, XP_REWARD_MAX)
    if "points_reward" in data:
        clean["points_reward"] = parse_bounded_int(data["points_reward"], "points_reward",
                                                   POINTS_REWARD_MIN, POINTS_REWARD_MAX)
    if "is_optional" in data:
        clean["is_optional"] = parse_bool(data["is_optional"], "is_optional")
    if "display_order" in data:
        clean["display_order"] = parse_bounded_int(data["display_order"], "display_order", 0)
    return clean


def _next_display_order(title_id: int) -> int:
    current = db.session.execute(
        select(func.max(Task.display_order)).where(Task.title_id == title_id)
    ).scalar()
    return 0 if current is None else current + 1


# ═════════════════════════════════════════════════════════════════════════════
# Catalog (publisher)
# ═════════════════════════════════════════════════════════════════════════════


def create_task(caller: Caller, title_id: int, data: dict) -> Task:
    """
    Add a task to a title's catalog.

    Args:
        caller:   Publisher identity; must own the title.
        title_id: Target title.
        data:     {"title", "kind", "description"?, "xp_reward"?, "points_reward"?,
                   "is_optional"?, "display_order"?}

    Returns:
        The created Task.

    Raises:
        ForbiddenError, NotFoundError, ValidationError.
    """
    title = get_title(title_id)
    check_capability(caller, "task.create", owner_id=title.publisher_id)
    fields = _validate_fields(data, partial=False)
    fields.setdefault("xp_reward", DEFAULT_XP_REWARD)
    fields.setdefault("points_reward", DEFAULT_POINTS_REWARD)
    fields.setdefault("is_optional", False)
    fields.setdefault("description", "")
    if "display_order" not in fields:
        fields["display_order"] = _next_display_order(title.id)

    task = Task(title_id=title.id, **fields)
    db.session.add(task)
    db.session.flush()
    write_audit(
        entity_type="task", entity_id=task.id, action="task.create",
        actor=caller.user_id, title_id=title.id,
        diff={"title": task.title, "kind": task.kind,
              "xp_reward": task.xp_reward, "points_reward": task.points_reward},
    )
    db.session.commit()
    logger.info(
        "Task created id=%s title_id=%s kind=%s", task.id, title.id, task.kind,
        extra={"title_id": title.id, "event_type": "task_created"},
    )
    notify_new_task(title, task)
    return task


def update_task(caller: Caller, task_id: int, data: dict) -> Task:
    """Partially update a task. Existing completions keep their reward snapshot."""
    task = get_task(task_id)
    check_capability(caller, "task.update", owner_id=task_publisher(task))
    fields = _validate_fields(data, partial=True)

    diff = {}
    for key in UPDATABLE_FIELDS:
        if key in fields and getattr(task, key) != fields[key]:
            diff[key] = {"old": getattr(task, key), "new": fields[key]}
            setattr(task, key, fields[key])
    if not diff:
        return task

    write_audit(
        entity_type="task", entity_id=task.id, action="task.update",
        actor=caller.user_id, title_id=task.title_id, diff=diff,
    )
    db.session.commit()
    logger.info("Task updated id=%s fields=%s", task.id, sorted(diff),
                extra={"title_id": task.title_id, "event_type": "task_updated"})
    return task


def delete_task(caller: Caller, task_id: int, confirm: bool = False) -> dict:
    """
    Delete a task together with all of its completions.

    Affected testers' ``tasks_completed`` counters are decremented in the
    same transaction so they keep matching the remaining completion rows.
    Rewards already handed to the ledger are not revoked.

    Returns:
        {"task_id": int, "completions_removed": int}

    Raises:
        ValidationError: ``confirm`` is not True.
    """
    task = get_task(task_id)
    check_capability(caller, "task.delete", owner_id=task_publisher(task))
    if confirm is not True:
        raise ValidationError(
            "Deleting a task removes all of its completions; pass confirm=true",
            details={"confirm": "required"},
        )

    title_id = task.title_id
    tester_ids = db.session.execute(
        select(TaskCompletion.tester_id).where(TaskCompletion.task_id == task.id)
    ).scalars().all()

    if tester_ids:
        db.session.execute(
            update(Enrollment)
            .where(Enrollment.title_id == title_id, Enrollment.tester_id.in_(tester_ids))
            .values(tasks_completed=Enrollment.tasks_completed - 1)
            .execution_options(synchronize_session=False)
        )
        db.session.execute(
            delete(TaskCompletion)
            .where(TaskCompletion.task_id == task.id)
            .execution_options(synchronize_session=False)
        )

    write_audit(
        entity_type="task", entity_id=task.id, action="task.delete",
        actor=caller.user_id, title_id=title_id,
        diff={"title": task.title, "kind": task.kind, "completions_removed": len(tester_ids)},
    )
    db.session.delete(task)
    db.session.commit()
    db.session.expire_all()
    logger.warning(
        "Task deleted id=%s title_id=%s completions_removed=%d by=%s",
        task_id, title_id, len(tester_ids), caller.user_id,
        extra={"title_id": title_id, "event_type": "task_deleted"},
    )
    return {"task_id": int(task_id), "completions_removed": len(tester_ids)}


def list_tasks(caller: Caller, title_id: int) -> list[dict]:
    """Publisher progress view: each task with completion and tester counts."""
    title = get_title(title_id)
    check_capability(caller, "task.progress", owner_id=title.publisher_id)

    tasks = (
        Task.query.filter_by(title_id=title.id)
        .order_by(Task.display_order, Task.id).all()
    )
    counts = dict(
        db.session.execute(
            select(TaskCompletion.task_id, func.count(TaskCompletion.id))
            .where(TaskCompletion.title_id == title.id)
            .group_by(TaskCompletion.task_id)
        ).all()
    )
    tester_count = db.session.execute(
        select(func.count(Enrollment.id)).where(
            Enrollment.title_id == title.id, Enrollment.is_active.is_(True),
        )
    ).scalar_one()

    result = []
    for t in tasks:
        d = t.to_dict()
        d["completion_count"] = counts.get(t.id, 0)
        d["tester_count"] = tester_count
        result.append(d)
    return result


def list_completions(caller: Caller, title_id: int, task_id: int | None = None) -> list[dict]:
    """Publisher view of who completed which task and when, newest first."""
    title = get_title(title_id)
    check_capability(caller, "task.progress", owner_id=title.publisher_id)

    stmt = (
        select(TaskCompletion, Task.title)
        .join(Task, Task.id == TaskCompletion.task_id)
        .where(TaskCompletion.title_id == title.id)
    )
    if task_id is not None:
        task = get_task(task_id)
        if task.title_id != title.id:
            raise ValidationError(
                f"Task {task.id} does not belong to title {title.id}",
                details={"task_id": "not a task of this title"},
            )
        stmt = stmt.where(TaskCompletion.task_id == task.id)

    rows = db.session.execute(
        stmt.order_by(TaskCompletion.completed_at.desc(), TaskCompletion.id.desc())
    ).all()
    result = []
    for completion, task_title in rows:
        d = completion.to_dict()
        d["task_title"] = task_title
        result.append(d)
    return result


def list_tasks_for_tester(caller: Caller, tester_id: str, title_id: int) -> list[dict]:
    """Enrolled tester's view with per-task completion state."""
    check_capability(caller, "task.view", owner_id=tester_id)
    title = get_title(title_id)
    require_active_enrollment(tester_id, title.id)

    tasks = (
        Task.query.filter_by(title_id=title.id)
        .order_by(Task.display_order, Task.id).all()
    )
    done = {
        c.task_id: c for c in TaskCompletion.query.filter_by(
            tester_id=tester_id, title_id=title.id,
        ).all()
    }
    result = []
    for t in tasks:
        d = t.to_dict()
        completion = done.get(t.id)
        d["completed"] = completion is not None
        d["completed_at"] = completion.completed_at.isoformat() if completion else None
        result.append(d)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Completion (tester)
# ═════════════════════════════════════════════════════════════════════════════


def _find_completion(task_id: int, tester_id: str) -> TaskCompletion | None:
    return db.session.execute(
        select(TaskCompletion).where(
            TaskCompletion.task_id == task_id,
            TaskCompletion.tester_id == tester_id,
        )
    ).scalar_one_or_none()


def complete_task(caller: Caller, task_id: int, tester_id: str) -> CompletionResult:
    """
    Mark a task completed by a tester and issue its reward once.

    The completion insert and the ``tasks_completed`` increment share one
    transaction. A concurrent duplicate loses on the (task, tester) unique
    constraint and is reported as ``already_completed``; it never emits a
    second reward. The reward is dispatched after commit.

    Raises:
        ForbiddenError:   caller is not the tester.
        NotFoundError:    unknown task.
        NotEnrolledError: no active enrollment on the task's title.
    """
    check_capability(caller, "task.complete", owner_id=tester_id)
    task = get_task(task_id)
    require_active_enrollment(tester_id, task.title_id)

    existing = _find_completion(task.id, tester_id)
    if existing is not None:
        return CompletionResult(already_completed=True, completion=existing)

    completion = TaskCompletion(
        task_id=task.id,
        tester_id=tester_id,
        title_id=task.title_id,
        xp_awarded=task.xp_reward,
        points_awarded=task.points_reward,
    )
    try:
        db.session.add(completion)
        db.session.flush()
        db.session.execute(
            update(Enrollment)
            .where(Enrollment.tester_id == tester_id, Enrollment.title_id == task.title_id)
            .values(tasks_completed=Enrollment.tasks_completed + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        winner = _find_completion(task.id, tester_id)
        if winner is None:
            raise
        logger.info("Duplicate completion resolved by constraint task_id=%s tester=%s",
                    task.id, tester_id)
        return CompletionResult(already_completed=True, completion=winner)

    logger.info(
        "Task completed task_id=%s tester=%s xp=%d points=%d",
        task.id, tester_id, completion.xp_awarded, completion.points_awarded,
        extra={"tester_id": tester_id, "title_id": task.title_id, "event_type": "task_completed"},
    )
    reward = dispatch_reward(completion)
    return CompletionResult(already_completed=False, completion=completion, reward=reward)
