"""
Beta program: Enrollment Registry.

Tracks which testers are active on which titles.

State machine per (tester, title):
    NotEnrolled ──join──▶ Active ──deactivate──▶ Inactive ──join──▶ Active

Rejoining keeps the lifetime counters. Enrollment rows are never
deleted. Counters are changed only through SQL increments so concurrent
updates are never lost.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError

from betaprogram.core.exceptions import (
    AgreementRequiredError,
    AlreadyEnrolledError,
    NotFoundError,
    TitleNotInTestingError,
)
from betaprogram.models import db
from betaprogram.models.beta import Enrollment, FeedbackItem, Task, TaskCompletion
from betaprogram.services import agreement_service
from betaprogram.services.helpers.lookups import (
    get_enrollment,
    get_title,
    parse_bounded_int,
    require_active_enrollment,
)
from betaprogram.services.notification import notify_tester_joined
from betaprogram.services.permission import Caller, check_capability, has_capability

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def join(caller: Caller, tester_id: str, title_id: int) -> Enrollment:
    """Enroll a tester on a title.

    Preconditions (checked in this order, before any write):
      1. the title exists and is in TESTING,
      2. the tester accepted the agreement for this exact title,
      3. the tester has no active enrollment on it.

    The engine never accepts the agreement on the tester's behalf.

    Raises:
        ForbiddenError:          caller is not the tester.
        NotFoundError:           unknown title.
        TitleNotInTestingError:  title is DRAFT or RELEASED.
        AgreementRequiredError:  no AgreementRecord for (tester, title).
        AlreadyEnrolledError:    an active enrollment exists.
    """
    check_capability(caller, "enrollment.join", owner_id=tester_id)
    title = get_title(title_id)
    if not title.in_testing:
        raise TitleNotInTestingError(title_id=title.id, release_state=title.release_state)
    if not agreement_service.has_accepted(tester_id, title.id):
        raise AgreementRequiredError(tester_id=tester_id, title_id=title.id)

    existing = get_enrollment(tester_id, title.id)
    if existing is not None:
        if existing.is_active:
            raise AlreadyEnrolledError(existing)
        # Conditional re-activation: only one concurrent rejoin can flip the flag.
        result = db.session.execute(
            update(Enrollment)
            .where(Enrollment.id == existing.id, Enrollment.is_active.is_(False))
            .values(is_active=True, deactivated_at=None, last_active_at=_utcnow())
        )
        db.session.commit()
        db.session.refresh(existing)
        if result.rowcount == 0:
            raise AlreadyEnrolledError(existing)
        enrollment = existing
        logger.info(
            "Tester rejoined tester=%s title_id=%s", tester_id, title.id,
            extra={"tester_id": tester_id, "title_id": title.id, "event_type": "enrollment_rejoined"},
        )
    else:
        enrollment = Enrollment(tester_id=tester_id, title_id=title.id, is_active=True,
                                last_active_at=_utcnow())
        db.session.add(enrollment)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            winner = get_enrollment(tester_id, title.id)
            if winner is None:
                raise
            raise AlreadyEnrolledError(winner)
        logger.info(
            "Tester joined tester=%s title_id=%s", tester_id, title.id,
            extra={"tester_id": tester_id, "title_id": title.id, "event_type": "enrollment_joined"},
        )

    notify_tester_joined(title, tester_id)
    return enrollment


def deactivate(caller: Caller, tester_id: str, title_id: int) -> Enrollment:
    """Deactivate an enrollment; history and counters are kept. Idempotent.

    Callable by the tester themselves or by the title's publisher.

    Raises:
        ForbiddenError: caller is neither the tester nor the publisher.
        NotFoundError:  unknown title or no enrollment for the pair.
    """
    title = get_title(title_id)
    if not has_capability(caller, "enrollment.leave", owner_id=tester_id):
        check_capability(caller, "enrollment.deactivate", owner_id=title.publisher_id)

    enrollment = get_enrollment(tester_id, title.id)
    if enrollment is None:
        raise NotFoundError(resource="Enrollment", resource_id=f"{tester_id}@{title.id}")
    if not enrollment.is_active:
        return enrollment

    enrollment.is_active = False
    enrollment.deactivated_at = _utcnow()
    db.session.commit()
    logger.info(
        "Enrollment deactivated tester=%s title_id=%s by=%s", tester_id, title.id, caller.user_id,
        extra={"tester_id": tester_id, "title_id": title.id, "event_type": "enrollment_deactivated"},
    )
    return enrollment


def record_session_time(caller: Caller, tester_id: str, title_id: int, seconds) -> Enrollment:
    """Add play-session time to an active enrollment. Additive, never resets.

    Raises:
        ValidationError:  seconds is not a non-negative integer.
        NotEnrolledError: no active enrollment.
    """
    check_capability(caller, "enrollment.session_time", owner_id=tester_id)
    seconds = parse_bounded_int(seconds, "seconds", 0)
    enrollment = require_active_enrollment(tester_id, title_id)

    db.session.execute(
        update(Enrollment)
        .where(Enrollment.id == enrollment.id)
        .values(
            time_spent_seconds=Enrollment.time_spent_seconds + seconds,
            last_active_at=_utcnow(),
        )
    )
    db.session.commit()
    db.session.refresh(enrollment)
    logger.debug("Session time +%ds tester=%s title_id=%s", seconds, tester_id, title_id)
    return enrollment


# ── Tester-facing reads ──────────────────────────────────────────────────────


def list_my_tests(caller: Caller) -> list[dict]:
    """The caller's enrollments with task progress derived from completion rows."""
    check_capability(caller, "enrollment.view_own")
    enrollments = (
        Enrollment.query.filter_by(tester_id=caller.user_id)
        .order_by(Enrollment.last_active_at.desc(), Enrollment.id.desc())
        .all()
    )
    if not enrollments:
        return []
    title_ids = [e.title_id for e in enrollments]

    task_totals = dict(
        db.session.execute(
            select(Task.title_id, func.count(Task.id))
            .where(Task.title_id.in_(title_ids))
            .group_by(Task.title_id)
        ).all()
    )
    done = dict(
        db.session.execute(
            select(TaskCompletion.title_id, func.count(TaskCompletion.id))
            .where(TaskCompletion.tester_id == caller.user_id,
                   TaskCompletion.title_id.in_(title_ids))
            .group_by(TaskCompletion.title_id)
        ).all()
    )

    result = []
    for e in enrollments:
        total = task_totals.get(e.title_id, 0)
        completed = done.get(e.title_id, 0)
        d = e.to_dict()
        d["title"] = e.title.to_dict() if e.title else None
        d["total_tasks"] = total
        d["tasks_completed"] = completed
        d["progress"] = round(completed / total * 100, 1) if total else 0.0
        result.append(d)
    return result


def tester_stats(caller: Caller) -> dict:
    """Lifetime beta statistics for the calling tester.

    XP and points are summed from the tester's completion rows, so they
    only count rewards issued by this engine.
    """
    check_capability(caller, "enrollment.view_own")
    xp, points, completed = db.session.execute(
        select(
            func.coalesce(func.sum(TaskCompletion.xp_awarded), 0),
            func.coalesce(func.sum(TaskCompletion.points_awarded), 0),
            func.count(TaskCompletion.id),
        ).where(TaskCompletion.tester_id == caller.user_id)
    ).one()
    bugs = db.session.execute(
        select(func.count(FeedbackItem.id)).where(
            FeedbackItem.tester_id == caller.user_id, FeedbackItem.kind == "BUG",
        )
    ).scalar_one()
    titles_tested, active = db.session.execute(
        select(
            func.count(Enrollment.id),
            func.coalesce(func.sum(case((Enrollment.is_active.is_(True), 1), else_=0)), 0),
        ).where(Enrollment.tester_id == caller.user_id)
    ).one()
    return {
        "total_xp": int(xp),
        "total_points": int(points),
        "total_tasks_completed": int(completed),
        "total_bugs_reported": int(bugs),
        "total_titles_tested": int(titles_tested),
        "active_tests": int(active),
    }
