"""Standardised API error responses.

Usage
-----
    from betaprogram.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Task not found")
    return api_error(E.VALIDATION_INVALID, "severity is required for BUG feedback")
    return api_error(E.PRECONDITION_FAILED, "Not enrolled", details={"reason": "NOT_ENROLLED"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_ prefix for every application error
     • precondition failures carry ``details.reason``
    """

    # Validation – HTTP 422
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Authentication – HTTP 401
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / state – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    PRECONDITION_FAILED = "ERR_PRECONDITION_FAILED"

    # Throttling – HTTP 429
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_INVALID: 422,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.PRECONDITION_FAILED: 409,
    E.RATE_LIMITED: 429,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (precondition reason, field errors).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
