"""
Beta program: Feedback Intake & Triage.

Enrolled testers submit bugs, suggestions and general notes; the title's
publisher moves them through NEW / IN_PROGRESS / RESOLVED / CLOSED.

Rules:
  - severity is required for BUG and rejected for every other kind.
  - content is immutable after creation; only ``status`` moves.
  - a BUG submission increments Enrollment.bugs_reported in the same
    transaction as the insert.
  - status changes are any-to-any among the four statuses, CLOSED → NEW
    included.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import func, select, update

from betaprogram.core.exceptions import ValidationError
from betaprogram.models import db
from betaprogram.models.audit import write_audit
from betaprogram.models.beta import (
    FEEDBACK_KINDS,
    FEEDBACK_SEVERITIES,
    FEEDBACK_STATUSES,
    FEEDBACK_TASK_KIND,
    Enrollment,
    FeedbackItem,
    Task,
)
from betaprogram.models.title import Title
from betaprogram.services.helpers.lookups import (
    clean_text,
    get_or_raise,
    get_title,
    parse_choice,
    require_active_enrollment,
)
from betaprogram.services.notification import notify_feedback_status
from betaprogram.services.permission import Caller, check_capability
from betaprogram.services.task_service import complete_task

logger = logging.getLogger(__name__)

FEEDBACK_TITLE_MAX = 200
OPAQUE_REF_MAX = 500


def _optional_ref(value, field: str) -> str | None:
    """Opaque reference: type and length checked, otherwise stored as given."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: value})
    if len(value) > OPAQUE_REF_MAX:
        raise ValidationError(f"{field} must be ≤ {OPAQUE_REF_MAX} characters",
                              details={field: f"max length {OPAQUE_REF_MAX}"})
    return value


def _validate_severity(kind: str, severity) -> str | None:
    if kind == "BUG":
        if severity is None:
            raise ValidationError("severity is required for BUG feedback",
                                  details={"severity": "required"})
        return parse_choice(severity, "severity", FEEDBACK_SEVERITIES)
    if severity is not None:
        raise ValidationError(f"severity is only allowed for BUG feedback, not {kind}",
                              details={"severity": "not allowed"})
    return None


def submit(
    caller: Caller,
    tester_id: str,
    title_id: int,
    kind: str,
    title: str,
    description: str,
    severity: str | None = None,
    attachment: str | None = None,
    device_info: str | None = None,
) -> FeedbackItem:
    """
    Record a feedback item from an enrolled tester.

    Returns:
        The created FeedbackItem in status NEW.

    Raises:
        ForbiddenError:   caller is not the tester.
        ValidationError:  bad kind, severity rule broken, blank title/description.
        NotFoundError:    unknown title.
        NotEnrolledError: no active enrollment.
    """
    check_capability(caller, "feedback.submit", owner_id=tester_id)
    kind = parse_choice(kind, "kind", FEEDBACK_KINDS)
    severity = _validate_severity(kind, severity)
    title_text = clean_text(title, "title", FEEDBACK_TITLE_MAX)
    description = clean_text(description, "description")
    attachment = _optional_ref(attachment, "attachment")
    device_info = _optional_ref(device_info, "device_info")

    beta_title = get_title(title_id)
    enrollment = require_active_enrollment(tester_id, beta_title.id)

    item = FeedbackItem(
        title_id=beta_title.id,
        tester_id=tester_id,
        kind=kind,
        title=title_text,
        description=description,
        severity=severity,
        status="NEW",
        attachment_ref=attachment,
        device_info=device_info,
    )
    db.session.add(item)
    if kind == "BUG":
        db.session.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment.id)
            .values(bugs_reported=Enrollment.bugs_reported + 1)
            .execution_options(synchronize_session=False)
        )
    db.session.commit()
    db.session.refresh(enrollment)
    logger.info(
        "Feedback submitted id=%s kind=%s severity=%s tester=%s title_id=%s",
        item.id, kind, severity, tester_id, beta_title.id,
        extra={"tester_id": tester_id, "title_id": beta_title.id, "event_type": "feedback_submitted"},
    )

    if current_app.config.get("BETA_FEEDBACK_AUTO_COMPLETES_TASKS") and kind in FEEDBACK_TASK_KIND:
        _auto_complete_tasks(caller, tester_id, beta_title.id, FEEDBACK_TASK_KIND[kind])
    return item


def _auto_complete_tasks(caller: Caller, tester_id: str, title_id: int, task_kind: str) -> int:
    """Complete the title's tasks of ``task_kind`` for the tester. Returns new completions."""
    task_ids = db.session.execute(
        select(Task.id).where(Task.title_id == title_id, Task.kind == task_kind)
        .order_by(Task.display_order, Task.id)
    ).scalars().all()
    created = 0
    for task_id in task_ids:
        if not complete_task(caller, task_id, tester_id).already_completed:
            created += 1
    if created:
        logger.info("Feedback auto-completed %d %s task(s) tester=%s title_id=%s",
                    created, task_kind, tester_id, title_id)
    return created


def set_status(caller: Caller, feedback_id: int, new_status: str) -> FeedbackItem:
    """
    Move a feedback item to a new status (publisher of its title only).

    Setting the current status again is a no-op without audit or notification.
    """
    item = get_or_raise(FeedbackItem, feedback_id, "FeedbackItem")
    check_capability(caller, "feedback.triage", owner_id=get_title(item.title_id).publisher_id)
    new_status = parse_choice(new_status, "status", FEEDBACK_STATUSES)

    old_status = item.status
    if old_status == new_status:
        return item

    item.status = new_status
    write_audit(
        entity_type="feedback", entity_id=item.id, action="feedback.set_status",
        actor=caller.user_id, title_id=item.title_id,
        diff={"status": {"old": old_status, "new": new_status}},
    )
    db.session.commit()
    logger.info(
        "Feedback status id=%s %s → %s", item.id, old_status, new_status,
        extra={"title_id": item.title_id, "event_type": "feedback_status_changed"},
    )
    notify_feedback_status(item, old_status)
    return item


# ── Dashboard reads ──────────────────────────────────────────────────────────


def _apply_filters(q, kind, status):
    if kind is not None:
        q = q.filter(FeedbackItem.kind == parse_choice(kind, "kind", FEEDBACK_KINDS))
    if status is not None:
        q = q.filter(FeedbackItem.status == parse_choice(status, "status", FEEDBACK_STATUSES))
    return q


def list_by_title(caller: Caller, title_id: int, kind: str | None = None,
                  status: str | None = None) -> list[FeedbackItem]:
    """Feedback for one title, newest first, optionally filtered."""
    title = get_title(title_id)
    check_capability(caller, "feedback.view", owner_id=title.publisher_id)
    q = _apply_filters(FeedbackItem.query.filter_by(title_id=title.id), kind, status)
    return q.order_by(FeedbackItem.created_at.desc(), FeedbackItem.id.desc()).all()


def summary_by_title(caller: Caller, title_id: int) -> dict:
    """Counts by kind and by status; every known value is present, zero-filled."""
    title = get_title(title_id)
    check_capability(caller, "feedback.view", owner_id=title.publisher_id)
    return feedback_counts(title.id)


def feedback_counts(title_id: int) -> dict:
    return _summarize(FeedbackItem.title_id == title_id)


def _summarize(condition) -> dict:
    by_kind = {k: 0 for k in sorted(FEEDBACK_KINDS)}
    by_status = {s: 0 for s in sorted(FEEDBACK_STATUSES)}
    for kind, count in db.session.execute(
        select(FeedbackItem.kind, func.count(FeedbackItem.id))
        .where(condition).group_by(FeedbackItem.kind)
    ).all():
        by_kind[kind] = count
    for status, count in db.session.execute(
        select(FeedbackItem.status, func.count(FeedbackItem.id))
        .where(condition).group_by(FeedbackItem.status)
    ).all():
        by_status[status] = count
    return {"total": sum(by_kind.values()), "by_kind": by_kind, "by_status": by_status}


def list_for_tester(caller: Caller, tester_id: str) -> list[FeedbackItem]:
    """The tester's own submissions across all titles."""
    check_capability(caller, "feedback.view_own", owner_id=tester_id)
    return (
        FeedbackItem.query.filter_by(tester_id=tester_id)
        .order_by(FeedbackItem.created_at.desc(), FeedbackItem.id.desc())
        .all()
    )


def list_for_publisher(caller: Caller, kind: str | None = None,
                       status: str | None = None) -> list[FeedbackItem]:
    """Every feedback item on titles owned by the calling publisher."""
    check_capability(caller, "feedback.view")
    owned = select(Title.id).where(Title.publisher_id == caller.user_id)
    q = _apply_filters(FeedbackItem.query.filter(FeedbackItem.title_id.in_(owned)), kind, status)
    return q.order_by(FeedbackItem.created_at.desc(), FeedbackItem.id.desc()).all()
