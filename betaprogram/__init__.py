"""
Beta Testing Program Engine
Flask Application Factory.

Usage:
    from betaprogram import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from betaprogram.config import config
from betaprogram.models import db
from betaprogram.middleware.caller_context import init_caller_context
from betaprogram.middleware.logging_config import configure_logging
from betaprogram.middleware.rate_limiter import caller_rate_limit_key, init_rate_limits
from betaprogram.middleware.timing import init_request_timing
from betaprogram.services.notification import init_notifier
from betaprogram.services.rewards import init_reward_ledger

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=caller_rate_limit_key,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_caller_context(app)

    # ── Engine collaborators ─────────────────────────────────────────────
    init_reward_ledger(app)
    init_notifier(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from betaprogram.models import title as _title_models            # noqa: F401
    from betaprogram.models import beta as _beta_models              # noqa: F401
    from betaprogram.models import notification as _notification_models  # noqa: F401
    from betaprogram.models import audit as _audit_models            # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name != "production":
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()
            app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from betaprogram.blueprints import register_blueprints
    register_blueprints(app)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("redeliver-rewards")
    @click.option("--limit", default=100, show_default=True, help="Max completions to replay.")
    def redeliver_rewards_cmd(limit):
        """Re-emit rewards whose post-commit hand-off to the ledger failed."""
        from betaprogram.services.rewards import redeliver_pending_rewards
        result = redeliver_pending_rewards(limit=limit)
        click.echo(f"Attempted {result['attempted']}, delivered {result['delivered']}.")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": "ERR_NOT_FOUND", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error", "code": "ERR_INTERNAL"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
