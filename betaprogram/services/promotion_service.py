"""
Beta program: Promotion Gate and title lifecycle.

    DRAFT ──open_for_testing──▶ TESTING ──promote──▶ RELEASED (terminal)

Both transitions are single-row compare-and-set updates: the row moves
only if it is still in the expected state, so of two concurrent callers
exactly one wins. There is no inverse operation.

The overview aggregates are for display; they never gate promotion.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import case, func, select, update

from betaprogram.core.exceptions import (
    AlreadyReleasedError,
    PreconditionFailedError,
    TitleNotInTestingError,
)
from betaprogram.models import db
from betaprogram.models.audit import write_audit
from betaprogram.models.beta import AgreementRecord, Enrollment, FeedbackItem, Task, TaskCompletion
from betaprogram.models.title import (
    RELEASE_DRAFT,
    RELEASE_RELEASED,
    RELEASE_TESTING,
    Title,
)
from betaprogram.services.feedback_service import feedback_counts
from betaprogram.services.helpers.lookups import clean_text, get_title
from betaprogram.services.notification import notify_title_promoted
from betaprogram.services.permission import Caller, check_capability

logger = logging.getLogger(__name__)

TITLE_NAME_MAX = 200


def register_title(caller: Caller, name: str) -> Title:
    """Create a DRAFT title owned by the calling publisher."""
    check_capability(caller, "title.register")
    title = Title(publisher_id=caller.user_id, name=clean_text(name, "name", TITLE_NAME_MAX),
                  release_state=RELEASE_DRAFT)
    db.session.add(title)
    db.session.commit()
    logger.info("Title registered id=%s publisher=%s", title.id, caller.user_id,
                extra={"title_id": title.id, "event_type": "title_registered"})
    return title


def get_title_detail(title_id: int) -> dict:
    """Public title card: release state plus tester and task counts."""
    title = get_title(title_id)
    d = title.to_dict()
    d["active_testers"] = db.session.execute(
        select(func.count(Enrollment.id)).where(
            Enrollment.title_id == title.id, Enrollment.is_active.is_(True),
        )
    ).scalar_one()
    d["task_count"] = db.session.execute(
        select(func.count(Task.id)).where(Task.title_id == title.id)
    ).scalar_one()
    return d


def _compare_and_set(title: Title, expected: str, new_state: str, stamp_column: str) -> bool:
    now = datetime.now(timezone.utc)
    result = db.session.execute(
        update(Title)
        .where(Title.id == title.id, Title.release_state == expected)
        .values(release_state=new_state, updated_at=now, **{stamp_column: now})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def open_for_testing(caller: Caller, title_id: int) -> Title:
    """
    Move a DRAFT title into TESTING.

    Raises:
        PreconditionFailedError: reason TITLE_NOT_DRAFT when the title is
            already TESTING or RELEASED.
    """
    title = get_title(title_id)
    check_capability(caller, "title.open_testing", owner_id=title.publisher_id)

    if not _compare_and_set(title, RELEASE_DRAFT, RELEASE_TESTING, "testing_started_at"):
        db.session.rollback()
        db.session.refresh(title)
        raise PreconditionFailedError(
            f"Title {title.id} cannot be opened for testing (state={title.release_state})",
            reason="TITLE_NOT_DRAFT",
        )
    write_audit(
        entity_type="title", entity_id=title.id, action="title.open_testing",
        actor=caller.user_id, title_id=title.id,
        diff={"release_state": {"old": RELEASE_DRAFT, "new": RELEASE_TESTING}},
    )
    db.session.commit()
    db.session.refresh(title)
    logger.info("Title opened for testing id=%s", title.id,
                extra={"title_id": title.id, "event_type": "title_open_testing"})
    return title


def promote(caller: Caller, title_id: int) -> Title:
    """
    Promote a title out of testing: TESTING → RELEASED, once.

    Raises:
        ForbiddenError:         caller is not the title's publisher.
        NotFoundError:          unknown title.
        AlreadyReleasedError:   the title is RELEASED (including a lost race).
        TitleNotInTestingError: the title is still DRAFT.
    """
    title = get_title(title_id)
    check_capability(caller, "title.promote", owner_id=title.publisher_id)

    if not _compare_and_set(title, RELEASE_TESTING, RELEASE_RELEASED, "released_at"):
        db.session.rollback()
        db.session.refresh(title)
        if title.release_state == RELEASE_RELEASED:
            raise AlreadyReleasedError(title_id=title.id)
        raise TitleNotInTestingError(title_id=title.id, release_state=title.release_state)

    write_audit(
        entity_type="title", entity_id=title.id, action="title.promote",
        actor=caller.user_id, title_id=title.id,
        diff={"release_state": {"old": RELEASE_TESTING, "new": RELEASE_RELEASED}},
    )
    db.session.commit()
    db.session.refresh(title)
    logger.info("Title promoted id=%s by=%s", title.id, caller.user_id,
                extra={"title_id": title.id, "event_type": "title_promoted"})
    notify_title_promoted(title)
    return title


def promotion_overview(caller: Caller, title_id: int) -> dict:
    """
    Aggregate program statistics for the publisher's release decision.

    Returns:
        {"title": {...}, "testers": {...}, "agreements": int,
         "tasks": {...}, "feedback": {...}}
    """
    title = get_title(title_id)
    check_capability(caller, "title.overview", owner_id=title.publisher_id)

    total, active, time_spent = db.session.execute(
        select(
            func.count(Enrollment.id),
            func.coalesce(func.sum(case((Enrollment.is_active.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(Enrollment.time_spent_seconds), 0),
        ).where(Enrollment.title_id == title.id)
    ).one()
    agreements = db.session.execute(
        select(func.count(AgreementRecord.id)).where(AgreementRecord.title_id == title.id)
    ).scalar_one()
    task_count = db.session.execute(
        select(func.count(Task.id)).where(Task.title_id == title.id)
    ).scalar_one()
    completions, xp, points = db.session.execute(
        select(
            func.count(TaskCompletion.id),
            func.coalesce(func.sum(TaskCompletion.xp_awarded), 0),
            func.coalesce(func.sum(TaskCompletion.points_awarded), 0),
        ).where(TaskCompletion.title_id == title.id)
    ).one()
    open_bugs = db.session.execute(
        select(func.count(FeedbackItem.id)).where(
            FeedbackItem.title_id == title.id,
            FeedbackItem.kind == "BUG",
            FeedbackItem.status.in_(("NEW", "IN_PROGRESS")),
        )
    ).scalar_one()

    feedback = feedback_counts(title.id)
    feedback["open_bugs"] = open_bugs
    return {
        "title": title.to_dict(),
        "testers": {
            "total": int(total),
            "active": int(active),
            "time_spent_seconds": int(time_spent),
        },
        "agreements": int(agreements),
        "tasks": {
            "total": int(task_count),
            "completions": int(completions),
            "xp_awarded": int(xp),
            "points_awarded": int(points),
        },
        "feedback": feedback,
    }
