"""
Caller identity middleware.

Authentication lives in front of this service; the gateway forwards the
authenticated identity as headers, which are trusted input here:

    X-User-Id:   opaque user id
    X-User-Role: tester | publisher

Sets ``g.caller`` to a ``Caller`` or None. Blueprints decide whether an
anonymous request is acceptable; services always receive the caller
explicitly.

Usage:
    from betaprogram.middleware.caller_context import init_caller_context
    init_caller_context(app)
"""

import logging

from flask import g, request

from betaprogram.services.permission import ROLES, Caller

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"


def caller_from_headers(headers) -> Caller | None:
    """Build a Caller from request headers; None when missing or malformed."""
    user_id = (headers.get(USER_ID_HEADER) or "").strip()
    role = (headers.get(USER_ROLE_HEADER) or "").strip().lower()
    if not user_id or role not in ROLES:
        return None
    return Caller(user_id=user_id[:64], role=role)


def init_caller_context(app):
    """Register the before_request hook that resolves the caller."""

    @app.before_request
    def _resolve_caller():
        g.caller = caller_from_headers(request.headers)
        if g.caller is None and request.headers.get(USER_ID_HEADER):
            logger.debug("Ignoring identity headers with unknown role on %s", request.path)
