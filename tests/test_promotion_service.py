"""Tests for the Promotion Gate and title lifecycle."""

from unittest.mock import patch

import pytest
from sqlalchemy import update

from betaprogram.core.exceptions import (
    AlreadyReleasedError,
    ForbiddenError,
    NotFoundError,
    PreconditionFailedError,
    TitleNotInTestingError,
    ValidationError,
)
from betaprogram.models import db
from betaprogram.models.audit import AuditLog
from betaprogram.models.notification import Notification
from betaprogram.models.title import RELEASE_DRAFT, RELEASE_RELEASED, RELEASE_TESTING, Title
from betaprogram.services import (
    enrollment_service,
    feedback_service,
    promotion_service,
    task_service,
)
from betaprogram.services.permission import Caller


class TestRegisterAndOpen:

    def test_register_creates_draft(self, publisher):
        title = promotion_service.register_title(publisher, "  Moonlight  ")
        assert title.name == "Moonlight"
        assert title.release_state == RELEASE_DRAFT
        assert title.publisher_id == publisher.user_id

    def test_register_requires_name(self, publisher):
        with pytest.raises(ValidationError):
            promotion_service.register_title(publisher, " ")

    def test_tester_cannot_register(self, tester):
        with pytest.raises(ForbiddenError):
            promotion_service.register_title(tester, "Nope")

    def test_open_for_testing(self, publisher):
        title = promotion_service.register_title(publisher, "Moonlight")
        opened = promotion_service.open_for_testing(publisher, title.id)
        assert opened.release_state == RELEASE_TESTING
        assert opened.testing_started_at is not None
        assert AuditLog.query.filter_by(action="title.open_testing").count() == 1

    @pytest.mark.parametrize("state", [RELEASE_TESTING, RELEASE_RELEASED])
    def test_open_requires_draft(self, publisher, make_title, state):
        title = make_title(state=state)
        with pytest.raises(PreconditionFailedError) as exc:
            promotion_service.open_for_testing(publisher, title.id)
        assert exc.value.reason == "TITLE_NOT_DRAFT"

    def test_detail(self, publisher, tester, title, enrolled):
        task_service.create_task(publisher, title.id, {"title": "Play", "kind": "PLAY_LEVEL"})
        detail = promotion_service.get_title_detail(title.id)
        assert detail["release_state"] == RELEASE_TESTING
        assert detail["active_testers"] == 1
        assert detail["task_count"] == 1

    def test_detail_unknown(self):
        with pytest.raises(NotFoundError):
            promotion_service.get_title_detail(999)


class TestPromote:

    def test_promote_once(self, publisher, title):
        released = promotion_service.promote(publisher, title.id)
        assert released.release_state == RELEASE_RELEASED
        assert released.released_at is not None

        log = AuditLog.query.filter_by(action="title.promote").one()
        assert log.actor == publisher.user_id
        assert log.diff["release_state"] == {"old": RELEASE_TESTING, "new": RELEASE_RELEASED}

    def test_second_promote_fails(self, publisher, title):
        promotion_service.promote(publisher, title.id)
        with pytest.raises(AlreadyReleasedError) as exc:
            promotion_service.promote(publisher, title.id)
        assert exc.value.reason == "ALREADY_RELEASED"
        assert AuditLog.query.filter_by(action="title.promote").count() == 1

    def test_draft_cannot_be_promoted(self, publisher, make_title):
        title = make_title(state=RELEASE_DRAFT)
        with pytest.raises(TitleNotInTestingError):
            promotion_service.promote(publisher, title.id)

    def test_other_publisher_forbidden(self, title):
        with pytest.raises(ForbiddenError):
            promotion_service.promote(Caller(user_id="pub-other", role="publisher"), title.id)

    def test_notifies_active_testers(self, publisher, tester, title, enrolled):
        promotion_service.promote(publisher, title.id)
        assert Notification.query.filter_by(recipient=tester.user_id, category="promotion").count() == 1

    def test_release_closes_new_activity(self, publisher, tester, other_tester, title, enrolled):
        promotion_service.promote(publisher, title.id)
        with pytest.raises(TitleNotInTestingError):
            enrollment_service.join(other_tester, other_tester.user_id, title.id)

    def test_existing_enrollment_keeps_working_after_release(self, publisher, tester, title, enrolled):
        task = task_service.create_task(publisher, title.id, {"title": "Play", "kind": "PLAY_LEVEL"})
        promotion_service.promote(publisher, title.id)
        result = task_service.complete_task(tester, task.id, tester.user_id)
        assert result.already_completed is False


class TestOverview:

    def test_aggregates(self, publisher, tester, other_tester, title, enrolled, enroll):
        enroll(other_tester, title.id)
        t1 = task_service.create_task(publisher, title.id, {"title": "A", "kind": "PLAY_LEVEL",
                                                            "xp_reward": 100, "points_reward": 5})
        task_service.create_task(publisher, title.id, {"title": "B", "kind": "TEST_FEATURE"})
        task_service.complete_task(tester, t1.id, tester.user_id)
        task_service.complete_task(other_tester, t1.id, other_tester.user_id)
        enrollment_service.record_session_time(tester, tester.user_id, title.id, 300)
        bug = feedback_service.submit(tester, tester.user_id, title.id, "BUG", "Crash", "Boom",
                                      severity="CRITICAL")
        feedback_service.submit(tester, tester.user_id, title.id, "BUG", "Lag", "Slow", severity="LOW")
        feedback_service.set_status(publisher, bug.id, "RESOLVED")
        enrollment_service.deactivate(other_tester, other_tester.user_id, title.id)

        overview = promotion_service.promotion_overview(publisher, title.id)

        assert overview["title"]["id"] == title.id
        assert overview["testers"] == {"total": 2, "active": 1, "time_spent_seconds": 300}
        assert overview["agreements"] == 2
        assert overview["tasks"] == {"total": 2, "completions": 2, "xp_awarded": 200, "points_awarded": 10}
        assert overview["feedback"]["total"] == 2
        assert overview["feedback"]["by_status"]["RESOLVED"] == 1
        assert overview["feedback"]["open_bugs"] == 1

    def test_empty_title(self, publisher, title):
        overview = promotion_service.promotion_overview(publisher, title.id)
        assert overview["testers"]["total"] == 0
        assert overview["tasks"]["completions"] == 0
        assert overview["feedback"]["total"] == 0

    def test_forbidden_for_others(self, tester, title):
        with pytest.raises(ForbiddenError):
            promotion_service.promotion_overview(tester, title.id)


def test_promote_loses_race_to_concurrent_promoter(publisher, title):
    """Another request releases the title between our read and our compare-and-set."""
    real_cas = promotion_service._compare_and_set

    def _released_first(title_obj, expected, new_state, stamp_column):
        db.session.execute(
            update(Title).where(Title.id == title_obj.id).values(release_state=RELEASE_RELEASED)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return real_cas(title_obj, expected, new_state, stamp_column)

    with patch.object(promotion_service, "_compare_and_set", side_effect=_released_first):
        with pytest.raises(AlreadyReleasedError):
            promotion_service.promote(publisher, title.id)

    assert AuditLog.query.filter_by(action="title.promote").count() == 0
    assert Notification.query.filter_by(category="promotion").count() == 0
