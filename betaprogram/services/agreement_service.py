"""
Beta program: Agreement Ledger.

Records confidentiality-agreement acceptance per (tester, title). A record
is a durable, non-revocable fact: it is never updated or deleted, and it
outlives enrollment so a deactivated tester can rejoin without accepting
again.

Rules:
  - caller identity is always an explicit parameter.
  - db.session.commit() for agreements happens only in this file.
  - evidence is stored verbatim and never interpreted.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from betaprogram.core.exceptions import TitleNotInTestingError, ValidationError
from betaprogram.models import db
from betaprogram.models.beta import AgreementRecord, Enrollment
from betaprogram.models.title import Title
from betaprogram.services.helpers.lookups import get_title
from betaprogram.services.permission import Caller, check_capability

logger = logging.getLogger(__name__)

DEFAULT_AGREEMENT_VERSION = "1.0"
ORIGIN_MAX = 100


def _current_version() -> str:
    return current_app.config.get("BETA_AGREEMENT_VERSION", DEFAULT_AGREEMENT_VERSION)


def _find(tester_id: str, title_id: int) -> AgreementRecord | None:
    return db.session.execute(
        select(AgreementRecord).where(
            AgreementRecord.tester_id == tester_id,
            AgreementRecord.title_id == title_id,
        )
    ).scalar_one_or_none()


def has_accepted(tester_id: str, title_id: int) -> bool:
    """Pure lookup: has this tester accepted the agreement for this title?"""
    return _find(tester_id, title_id) is not None


def record_acceptance(
    caller: Caller,
    tester_id: str,
    title_id: int,
    evidence: dict | None = None,
    origin: str = "",
) -> tuple[AgreementRecord, bool]:
    """Record that a tester accepted the confidentiality agreement.

    Idempotent from the caller's perspective: an existing record is
    returned unchanged with ``created=False``. A concurrent insert that
    loses the unique-constraint race is resolved the same way.

    Args:
        caller:    Identity of the tester accepting (must be ``tester_id``).
        tester_id: Accepting tester.
        title_id:  Title under test.
        evidence:  Audit evidence, e.g. {"origin": "web", "accepted_at": iso,
                   "ip_address": ..., "user_agent": ...}. Stored verbatim.
        origin:    Origin marker of the acceptance (web, mobile, api).

    Returns:
        (AgreementRecord, created)

    Raises:
        ForbiddenError:          caller is not the tester.
        NotFoundError:           unknown title.
        TitleNotInTestingError:  title is not open for testing (new records only).
        ValidationError:         evidence is not an object or origin is too long.
    """
    check_capability(caller, "agreement.accept", owner_id=tester_id)
    title = get_title(title_id)

    existing = _find(tester_id, title.id)
    if existing is not None:
        logger.debug("Agreement already accepted tester=%s title_id=%s", tester_id, title.id)
        return existing, False

    if not title.in_testing:
        raise TitleNotInTestingError(title_id=title.id, release_state=title.release_state)

    if evidence is not None and not isinstance(evidence, dict):
        raise ValidationError("evidence must be an object")
    if not isinstance(origin, str) or len(origin) > ORIGIN_MAX:
        raise ValidationError(
            f"origin must be a string of at most {ORIGIN_MAX} characters",
            details={"origin": f"max length {ORIGIN_MAX}"},
        )

    record = AgreementRecord(
        tester_id=tester_id,
        title_id=title.id,
        version=_current_version(),
        origin=origin,
        evidence_json=json.dumps(evidence or {}, default=str),
        accepted_at=datetime.now(timezone.utc),
    )
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = _find(tester_id, title.id)
        if existing is None:
            raise
        logger.info("Agreement acceptance raced; keeping first record tester=%s title_id=%s",
                    tester_id, title.id)
        return existing, False

    logger.info(
        "Agreement accepted tester=%s title_id=%s version=%s",
        tester_id, title.id, record.version,
        extra={"tester_id": tester_id, "title_id": title.id, "event_type": "agreement_accepted"},
    )
    return record, True


def get_agreement_status(caller: Caller, tester_id: str, title_id: int) -> dict:
    """Return the tester's agreement state for a title.

    ``needs_update`` flags acceptance of an older agreement version; it is
    informational and never affects enrollment gating.
    """
    check_capability(caller, "agreement.view", owner_id=tester_id)
    title = get_title(title_id)
    record = _find(tester_id, title.id)
    current = _current_version()
    return {
        "title_id": title.id,
        "title_name": title.name,
        "publisher_id": title.publisher_id,
        "has_accepted": record is not None,
        "needs_update": record is not None and record.version != current,
        "current_version": current,
        "accepted_version": record.version if record else None,
        "accepted_at": record.accepted_at.isoformat() if record else None,
    }


def agreement_stats(caller: Caller, title_id: int | None = None) -> dict:
    """Acceptance and enrollment counts for the publisher's titles.

    Args:
        caller:   Publisher identity.
        title_id: Optional filter to a single owned title.

    Returns:
        {"summary": {...}, "titles": [...]}
    """
    check_capability(caller, "agreement.stats")
    q = select(Title).where(Title.publisher_id == caller.user_id).order_by(Title.id)
    if title_id is not None:
        q = q.where(Title.id == title_id)
    titles = db.session.execute(q).scalars().all()
    ids = [t.id for t in titles]

    acceptance_counts = dict(
        db.session.execute(
            select(AgreementRecord.title_id, func.count(AgreementRecord.id))
            .where(AgreementRecord.title_id.in_(ids))
            .group_by(AgreementRecord.title_id)
        ).all()
    ) if ids else {}
    enrollment_counts = dict(
        db.session.execute(
            select(Enrollment.title_id, func.count(Enrollment.id))
            .where(Enrollment.title_id.in_(ids))
            .group_by(Enrollment.title_id)
        ).all()
    ) if ids else {}

    rows = []
    for t in titles:
        acceptances = (
            AgreementRecord.query.filter_by(title_id=t.id)
            .order_by(AgreementRecord.accepted_at.desc()).all()
        )
        rows.append({
            "title_id": t.id,
            "title_name": t.name,
            "release_state": t.release_state,
            "total_acceptances": acceptance_counts.get(t.id, 0),
            "total_testers": enrollment_counts.get(t.id, 0),
            "acceptances": [
                {"tester_id": a.tester_id, "version": a.version,
                 "accepted_at": a.accepted_at.isoformat() if a.accepted_at else None}
                for a in acceptances
            ],
        })

    return {
        "summary": {
            "total_titles": len(titles),
            "total_acceptances": sum(r["total_acceptances"] for r in rows),
            "total_testers": sum(r["total_testers"] for r in rows),
            "titles_in_testing": sum(1 for t in titles if t.in_testing),
        },
        "titles": rows,
    }
