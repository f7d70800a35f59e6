"""
Beta Testing Program Blueprint Package

One Blueprint instance (``/api/v1/beta``) split into cohesive sub-modules:

    titles         title lifecycle, promotion gate, overview
    agreements     confidentiality agreement status / acceptance / stats
    enrollments    join, leave, session time, tester dashboards
    tasks          task catalog and completion
    feedback       intake, triage, dashboards
    notifications  the caller's in-app notifications

The blueprint stays thin: it resolves the caller, parses the body and
delegates to the services, which own validation, commits and logging.
Engine exceptions are mapped to JSON here, once for every route.
"""

import logging

from flask import Blueprint, g, request
from werkzeug.exceptions import HTTPException

from betaprogram.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)
from betaprogram.services.permission import Caller
from betaprogram.utils.errors import E, api_error

logger = logging.getLogger(__name__)

beta_bp = Blueprint("beta", __name__, url_prefix="/api/v1/beta")


class Unauthenticated(Exception):
    """No usable identity headers on the request."""


def current_caller() -> Caller:
    """Return the request's caller or raise Unauthenticated."""
    caller = getattr(g, "caller", None)
    if caller is None:
        raise Unauthenticated()
    return caller


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def query_flag(name: str) -> bool:
    return (request.args.get(name) or "").lower() in ("1", "true", "yes")


# ── Error handlers ────────────────────────────────────────────────────────────


@beta_bp.errorhandler(Unauthenticated)
def _handle_unauthenticated(error):
    return api_error(E.UNAUTHENTICATED, "X-User-Id and X-User-Role headers are required")


@beta_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error), details={"action": error.action})


@beta_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error), details={"resource": error.resource})


@beta_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@beta_bp.errorhandler(PreconditionFailedError)
def _handle_precondition(error: PreconditionFailedError):
    return api_error(E.PRECONDITION_FAILED, str(error), details={"reason": error.reason})


@beta_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})


@beta_bp.errorhandler(HTTPException)
def _handle_http(error: HTTPException):
    if error.code == 429:
        return api_error(E.RATE_LIMITED, "Too many requests", status=429,
                         details={"limit": str(error.description)})
    return api_error(E.VALIDATION_INVALID if error.code < 500 else E.INTERNAL,
                     error.description or error.name, status=error.code)


@beta_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in beta endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# Sub-module imports: each module registers routes on beta_bp
from betaprogram.blueprints.beta import titles          # noqa: E402, F401
from betaprogram.blueprints.beta import agreements      # noqa: E402, F401
from betaprogram.blueprints.beta import enrollments     # noqa: E402, F401
from betaprogram.blueprints.beta import tasks           # noqa: E402, F401
from betaprogram.blueprints.beta import feedback        # noqa: E402, F401
from betaprogram.blueprints.beta import notifications   # noqa: E402, F401
