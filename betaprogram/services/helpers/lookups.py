"""
Shared lookups and input validation for the beta program services.

Every service resolves titles, tasks, enrollments and feedback through
these helpers so that "missing" always surfaces as NotFoundError and
"not enrolled" always surfaces as NotEnrolledError, whichever component
is asking.

Usage:
    title = get_title(title_id)
    enrollment = require_active_enrollment(tester_id, title_id)
    name = clean_text(data.get("title"), "title")
"""

import logging

from sqlalchemy import select

from betaprogram.core.exceptions import NotEnrolledError, NotFoundError, ValidationError
from betaprogram.models import db
from betaprogram.models.beta import Enrollment
from betaprogram.models.title import Title

logger = logging.getLogger(__name__)


def get_or_raise(model, pk, label: str | None = None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    label = label or model.__name__
    try:
        pk = int(pk)
    except (TypeError, ValueError):
        raise NotFoundError(resource=label, resource_id=pk)
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=label, resource_id=pk)
    return obj


def get_title(title_id) -> Title:
    return get_or_raise(Title, title_id, "Title")


def get_enrollment(tester_id: str, title_id: int) -> Enrollment | None:
    """Return the enrollment for the pair regardless of its active flag."""
    return db.session.execute(
        select(Enrollment).where(
            Enrollment.tester_id == tester_id,
            Enrollment.title_id == title_id,
        )
    ).scalar_one_or_none()


def require_active_enrollment(tester_id: str, title_id: int) -> Enrollment:
    """Return the active enrollment or raise NotEnrolledError."""
    enrollment = get_enrollment(tester_id, title_id)
    if enrollment is None or not enrollment.is_active:
        raise NotEnrolledError(tester_id=tester_id, title_id=title_id)
    return enrollment


# ── Input validation ─────────────────────────────────────────────────────────


def clean_text(value, field: str, max_length: int | None = None) -> str:
    """Strip a required text field; reject missing, non-string or blank values."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", details={field: "must be a non-empty string"})
    value = value.strip()
    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field} must be ≤ {max_length} characters",
            details={field: f"max length {max_length}"},
        )
    return value


def parse_bounded_int(value, field: str, minimum: int, maximum: int | None = None) -> int:
    """Validate an integer field within [minimum, maximum]. Booleans are rejected."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", details={field: "not an integer"})
    if value < minimum or (maximum is not None and value > maximum):
        bound = f"between {minimum} and {maximum}" if maximum is not None else f"≥ {minimum}"
        raise ValidationError(f"{field} must be {bound}", details={field: bound})
    return value


def parse_bool(value, field: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be a boolean", details={field: "not a boolean"})
    return value


def parse_choice(value, field: str, choices) -> str:
    """Validate an enum-like string field (case-sensitive, upper-case values)."""
    if not isinstance(value, str) or value not in choices:
        raise ValidationError(
            f"{field} must be one of: {', '.join(sorted(choices))}",
            details={field: value},
        )
    return value
