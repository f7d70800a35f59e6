"""Tests for Feedback Intake & Triage."""

import pytest

from betaprogram.core.exceptions import (
    ForbiddenError,
    NotEnrolledError,
    NotFoundError,
    ValidationError,
)
from betaprogram.models.audit import AuditLog
from betaprogram.models.beta import Enrollment, FeedbackItem, TaskCompletion
from betaprogram.models.notification import Notification
from betaprogram.services import feedback_service, task_service
from betaprogram.services.permission import Caller


def _submit(tester, title_obj, kind="BUG", severity="HIGH", **kw):
    return feedback_service.submit(
        tester, tester.user_id, title_obj.id, kind,
        kw.pop("title", "Crash on level 3"), kw.pop("description", "Game freezes after the boss"),
        severity=severity, **kw,
    )


def _bugs_reported(tester_id, title_id):
    return Enrollment.query.filter_by(tester_id=tester_id, title_id=title_id).one().bugs_reported


class TestSubmit:

    def test_bug_with_severity(self, tester, title, enrolled):
        item = _submit(tester, title, device_info="Pixel 8", attachment="s3://shots/1.png")
        assert item.status == "NEW"
        assert item.severity == "HIGH"
        assert item.device_info == "Pixel 8"
        assert item.attachment_ref == "s3://shots/1.png"
        assert _bugs_reported(tester.user_id, title.id) == 1

    def test_references_stored_verbatim(self, tester, title, enrolled):
        item = _submit(tester, title, attachment="  s3://bucket/shot.png  ", device_info="")
        stored = FeedbackItem.query.get(item.id)
        assert stored.attachment_ref == "  s3://bucket/shot.png  "
        assert stored.device_info == ""

    def test_reference_length_bound(self, tester, title, enrolled):
        with pytest.raises(ValidationError):
            _submit(tester, title, attachment="x" * 501)

    def test_non_bug_does_not_count(self, tester, title, enrolled):
        _submit(tester, title, kind="SUGGESTION", severity=None)
        _submit(tester, title, kind="GENERAL", severity=None)
        assert _bugs_reported(tester.user_id, title.id) == 0

    def test_bug_requires_severity(self, tester, title, enrolled):
        with pytest.raises(ValidationError):
            _submit(tester, title, severity=None)
        assert FeedbackItem.query.count() == 0
        assert _bugs_reported(tester.user_id, title.id) == 0

    @pytest.mark.parametrize("kind", ["SUGGESTION", "GENERAL"])
    def test_severity_rejected_for_non_bug(self, tester, title, enrolled, kind):
        with pytest.raises(ValidationError):
            _submit(tester, title, kind=kind, severity="HIGH")
        assert FeedbackItem.query.count() == 0

    @pytest.mark.parametrize("overrides", [
        {"kind": "PRAISE", "severity": None},
        {"severity": "BLOCKER"},
        {"title": "   "},
        {"description": ""},
        {"title": "x" * 201},
        {"device_info": 42},
    ])
    def test_invalid_input(self, tester, title, enrolled, overrides):
        with pytest.raises(ValidationError):
            _submit(tester, title, **overrides)

    def test_requires_active_enrollment(self, tester, title):
        with pytest.raises(NotEnrolledError):
            _submit(tester, title)

    def test_cannot_submit_as_someone_else(self, tester, other_tester, title, enrolled):
        with pytest.raises(ForbiddenError):
            feedback_service.submit(other_tester, tester.user_id, title.id, "GENERAL", "Hi", "There")

    def test_unknown_title(self, tester):
        with pytest.raises(NotFoundError):
            feedback_service.submit(tester, tester.user_id, 404, "GENERAL", "Hi", "There")


class TestAutoComplete:

    def test_disabled_by_default(self, publisher, tester, title, enrolled, ledger):
        task_service.create_task(publisher, title.id, {"title": "Report a bug", "kind": "BUG_REPORT"})
        _submit(tester, title)
        assert TaskCompletion.query.count() == 0
        assert ledger.events == []

    def test_bug_completes_bug_report_tasks(self, app, publisher, tester, title, enrolled, ledger):
        bug_task = task_service.create_task(publisher, title.id, {"title": "Report a bug", "kind": "BUG_REPORT"})
        task_service.create_task(publisher, title.id, {"title": "Suggest", "kind": "SUGGESTION"})
        app.config["BETA_FEEDBACK_AUTO_COMPLETES_TASKS"] = True
        try:
            _submit(tester, title)
            _submit(tester, title, title="Another crash")
        finally:
            app.config["BETA_FEEDBACK_AUTO_COMPLETES_TASKS"] = False

        completions = TaskCompletion.query.all()
        assert [c.task_id for c in completions] == [bug_task.id]
        assert len(ledger.events) == 1

    def test_general_completes_nothing(self, app, publisher, tester, title, enrolled):
        task_service.create_task(publisher, title.id, {"title": "Report a bug", "kind": "BUG_REPORT"})
        app.config["BETA_FEEDBACK_AUTO_COMPLETES_TASKS"] = True
        try:
            _submit(tester, title, kind="GENERAL", severity=None)
        finally:
            app.config["BETA_FEEDBACK_AUTO_COMPLETES_TASKS"] = False
        assert TaskCompletion.query.count() == 0


class TestSetStatus:

    def test_publisher_moves_status(self, publisher, tester, title, enrolled):
        item = _submit(tester, title)
        updated = feedback_service.set_status(publisher, item.id, "IN_PROGRESS")
        assert updated.status == "IN_PROGRESS"

        log = AuditLog.query.filter_by(action="feedback.set_status").one()
        assert log.diff["status"] == {"old": "NEW", "new": "IN_PROGRESS"}

        note = Notification.query.filter_by(recipient=tester.user_id, category="feedback").one()
        assert "IN_PROGRESS" in note.subject

    def test_any_to_any(self, publisher, tester, title, enrolled):
        item = _submit(tester, title)
        for status in ("CLOSED", "NEW", "RESOLVED", "IN_PROGRESS"):
            assert feedback_service.set_status(publisher, item.id, status).status == status
        assert AuditLog.query.filter_by(action="feedback.set_status").count() == 4

    def test_same_status_is_noop(self, publisher, tester, title, enrolled):
        item = _submit(tester, title)
        feedback_service.set_status(publisher, item.id, "NEW")
        assert AuditLog.query.filter_by(action="feedback.set_status").count() == 0
        assert Notification.query.filter_by(category="feedback").count() == 0

    def test_content_unchanged(self, publisher, tester, title, enrolled):
        item = _submit(tester, title)
        feedback_service.set_status(publisher, item.id, "RESOLVED")
        assert item.title == "Crash on level 3"
        assert item.severity == "HIGH"

    def test_invalid_status(self, publisher, tester, title, enrolled):
        item = _submit(tester, title)
        with pytest.raises(ValidationError):
            feedback_service.set_status(publisher, item.id, "WONTFIX")

    def test_only_title_publisher(self, tester, title, enrolled):
        item = _submit(tester, title)
        with pytest.raises(ForbiddenError):
            feedback_service.set_status(Caller(user_id="pub-other", role="publisher"), item.id, "CLOSED")
        with pytest.raises(ForbiddenError):
            feedback_service.set_status(tester, item.id, "CLOSED")

    def test_unknown_item(self, publisher):
        with pytest.raises(NotFoundError):
            feedback_service.set_status(publisher, 999, "CLOSED")


class TestDashboards:

    def test_filters(self, publisher, tester, title, enrolled):
        bug = _submit(tester, title)
        _submit(tester, title, kind="SUGGESTION", severity=None)
        feedback_service.set_status(publisher, bug.id, "RESOLVED")

        assert len(feedback_service.list_by_title(publisher, title.id)) == 2
        bugs = feedback_service.list_by_title(publisher, title.id, kind="BUG")
        assert [i.id for i in bugs] == [bug.id]
        assert feedback_service.list_by_title(publisher, title.id, kind="BUG", status="NEW") == []

    def test_bad_filter(self, publisher, title):
        with pytest.raises(ValidationError):
            feedback_service.list_by_title(publisher, title.id, status="DONE")

    def test_summary_is_zero_filled(self, publisher, tester, title, enrolled):
        _submit(tester, title)
        summary = feedback_service.summary_by_title(publisher, title.id)
        assert summary["total"] == 1
        assert summary["by_kind"] == {"BUG": 1, "GENERAL": 0, "SUGGESTION": 0}
        assert summary["by_status"] == {"CLOSED": 0, "IN_PROGRESS": 0, "NEW": 1, "RESOLVED": 0}

    def test_summary_forbidden_for_tester(self, tester, title):
        with pytest.raises(ForbiddenError):
            feedback_service.summary_by_title(tester, title.id)

    def test_list_for_tester(self, tester, other_tester, title, enrolled, enroll):
        enroll(other_tester, title.id)
        mine = _submit(tester, title)
        _submit(other_tester, title)
        assert [i.id for i in feedback_service.list_for_tester(tester, tester.user_id)] == [mine.id]
        with pytest.raises(ForbiddenError):
            feedback_service.list_for_tester(other_tester, tester.user_id)

    def test_list_for_publisher_only_owned(self, publisher, tester, title, enrolled, make_title, enroll):
        foreign = make_title(publisher_id="pub-other", name="Foreign")
        enroll(tester, foreign.id)
        own = _submit(tester, title)
        feedback_service.submit(tester, tester.user_id, foreign.id, "GENERAL", "Hi", "There")

        items = feedback_service.list_for_publisher(publisher)
        assert [i.id for i in items] == [own.id]
