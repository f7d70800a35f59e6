"""Tests for the Agreement Ledger.

Coverage:
  1. record_acceptance creates one record and is idempotent afterwards
  2. evidence is stored verbatim; accepted_at and version come from the server
  3. a new record requires a TESTING title, an existing one is still returned
  4. a concurrent insert that loses the unique constraint returns the winner
  5. only the tester themselves may accept
  6. get_agreement_status / needs_update
  7. agreement_stats per publisher
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from betaprogram.core.exceptions import (
    ForbiddenError,
    NotFoundError,
    TitleNotInTestingError,
    ValidationError,
)
from betaprogram.models import db
from betaprogram.models.beta import AgreementRecord
from betaprogram.models.title import RELEASE_DRAFT, RELEASE_RELEASED
from betaprogram.services import agreement_service


class TestRecordAcceptance:

    def test_first_acceptance_creates_record(self, tester, title):
        record, created = agreement_service.record_acceptance(
            tester, tester.user_id, title.id,
            {"ip_address": "10.0.0.1", "user_agent": "pytest"}, origin="web",
        )
        assert created is True
        assert record.tester_id == tester.user_id
        assert record.title_id == title.id
        assert record.origin == "web"
        assert record.version == "1.0"
        assert record.evidence["ip_address"] == "10.0.0.1"
        assert agreement_service.has_accepted(tester.user_id, title.id)

    def test_second_acceptance_is_noop(self, tester, title):
        first, _ = agreement_service.record_acceptance(tester, tester.user_id, title.id, origin="web")
        second, created = agreement_service.record_acceptance(
            tester, tester.user_id, title.id, origin="mobile",
        )
        assert created is False
        assert second.id == first.id
        assert second.origin == "web"
        assert AgreementRecord.query.count() == 1

    def test_evidence_stored_verbatim_with_server_timestamp(self, tester, title):
        evidence = {
            "origin": ["not", "a", "string"],
            "accepted_at": "last tuesday",
            "screenshot": "  s3://bucket/consent.png  ",
        }
        before = datetime.now(timezone.utc)

        record, _ = agreement_service.record_acceptance(tester, tester.user_id, title.id, evidence)

        assert record.evidence == evidence
        stamp = record.accepted_at
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        assert stamp >= before - timedelta(seconds=1)
        assert record.origin == ""

    def test_backdated_evidence_does_not_move_accepted_at(self, tester, title):
        record, _ = agreement_service.record_acceptance(
            tester, tester.user_id, title.id, {"accepted_at": "1999-01-01T00:00:00"},
        )
        assert record.accepted_at.year >= 2024

    def test_origin_too_long_rejected(self, tester, title):
        with pytest.raises(ValidationError):
            agreement_service.record_acceptance(tester, tester.user_id, title.id, origin="x" * 101)
        assert AgreementRecord.query.count() == 0

    def test_evidence_must_be_object(self, tester, title):
        with pytest.raises(ValidationError):
            agreement_service.record_acceptance(tester, tester.user_id, title.id, ["web"])

    def test_version_follows_config(self, app, tester, title):
        app.config["BETA_AGREEMENT_VERSION"] = "2.1"
        try:
            record, _ = agreement_service.record_acceptance(tester, tester.user_id, title.id)
        finally:
            app.config["BETA_AGREEMENT_VERSION"] = "1.0"
        assert record.version == "2.1"

    @pytest.mark.parametrize("state", [RELEASE_DRAFT, RELEASE_RELEASED])
    def test_new_record_requires_testing_title(self, tester, make_title, state):
        t = make_title(state=state)
        with pytest.raises(TitleNotInTestingError) as exc:
            agreement_service.record_acceptance(tester, tester.user_id, t.id)
        assert exc.value.reason == "TITLE_NOT_IN_TESTING"
        assert AgreementRecord.query.count() == 0

    def test_existing_record_returned_after_release(self, tester, title):
        agreement_service.record_acceptance(tester, tester.user_id, title.id)
        title.release_state = RELEASE_RELEASED
        db.session.commit()
        _, created = agreement_service.record_acceptance(tester, tester.user_id, title.id)
        assert created is False

    def test_unknown_title(self, tester):
        with pytest.raises(NotFoundError):
            agreement_service.record_acceptance(tester, tester.user_id, 999)

    def test_cannot_accept_for_someone_else(self, tester, other_tester, title):
        with pytest.raises(ForbiddenError):
            agreement_service.record_acceptance(tester, other_tester.user_id, title.id)
        assert not agreement_service.has_accepted(other_tester.user_id, title.id)

    def test_publisher_cannot_accept(self, publisher, title):
        with pytest.raises(ForbiddenError):
            agreement_service.record_acceptance(publisher, publisher.user_id, title.id)

    def test_lost_insert_race_returns_existing(self, tester, title):
        """The fast-path lookup misses, the insert hits the unique constraint."""
        winner = AgreementRecord(tester_id=tester.user_id, title_id=title.id, version="1.0")
        db.session.add(winner)
        db.session.commit()
        winner_id = winner.id

        real_find = agreement_service._find
        calls = {"n": 0}

        def _miss_once(tester_id, title_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_find(tester_id, title_id)

        with patch.object(agreement_service, "_find", side_effect=_miss_once):
            record, created = agreement_service.record_acceptance(tester, tester.user_id, title.id)

        assert created is False
        assert record.id == winner_id
        assert AgreementRecord.query.count() == 1


class TestAgreementStatus:

    def test_status_before_and_after(self, tester, title):
        status = agreement_service.get_agreement_status(tester, tester.user_id, title.id)
        assert status["has_accepted"] is False
        assert status["needs_update"] is False
        assert status["accepted_at"] is None

        agreement_service.record_acceptance(tester, tester.user_id, title.id)
        status = agreement_service.get_agreement_status(tester, tester.user_id, title.id)
        assert status["has_accepted"] is True
        assert status["accepted_version"] == "1.0"

    def test_needs_update_on_new_version(self, app, tester, title):
        agreement_service.record_acceptance(tester, tester.user_id, title.id)
        app.config["BETA_AGREEMENT_VERSION"] = "2.0"
        try:
            status = agreement_service.get_agreement_status(tester, tester.user_id, title.id)
        finally:
            app.config["BETA_AGREEMENT_VERSION"] = "1.0"
        assert status["has_accepted"] is True
        assert status["needs_update"] is True
        assert status["current_version"] == "2.0"


class TestAgreementStats:

    def test_counts_per_owned_title(self, publisher, tester, other_tester, title, make_title, enroll):
        enroll(tester, title.id)
        agreement_service.record_acceptance(other_tester, other_tester.user_id, title.id)
        foreign = make_title(publisher_id="pub-other", name="Not mine")
        agreement_service.record_acceptance(tester, tester.user_id, foreign.id)

        stats = agreement_service.agreement_stats(publisher)

        assert stats["summary"]["total_titles"] == 1
        assert stats["summary"]["total_acceptances"] == 2
        assert stats["summary"]["total_testers"] == 1
        row = stats["titles"][0]
        assert row["title_id"] == title.id
        assert {a["tester_id"] for a in row["acceptances"]} == {tester.user_id, other_tester.user_id}

    def test_tester_cannot_read_stats(self, tester):
        with pytest.raises(ForbiddenError):
            agreement_service.agreement_stats(tester)
