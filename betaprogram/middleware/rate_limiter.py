"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter
instance is created in betaprogram/__init__.py with no default limits;
this module applies the write limit to the beta API.

Usage:
    from betaprogram.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_METHODS = ["POST", "PUT", "PATCH", "DELETE"]


def caller_rate_limit_key():
    """Rate limit key: caller id if known, else remote IP."""
    caller = getattr(g, "caller", None)
    if caller is not None:
        return f"user:{caller.user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per caller):
        - Beta write endpoints: BETA_WRITE_RATE_LIMIT (default 60/minute)
        - Reads:                unlimited
        - Health check:         exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("BETA_WRITE_RATE_LIMIT", "60/minute")
    bp = app.blueprints.get("beta")
    if bp:
        limiter.limit(write_limit, methods=WRITE_METHODS)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: beta writes %s per caller", write_limit)
