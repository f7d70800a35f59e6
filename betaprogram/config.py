"""
Beta Testing Program Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'betaprogram_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name, default="false"):
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _database_url():
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else None


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }

    # Redis (rate-limit storage)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Request guard
    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1 MB

    # Beta program
    BETA_AGREEMENT_VERSION = os.getenv("BETA_AGREEMENT_VERSION", "1.0")
    BETA_FEEDBACK_AUTO_COMPLETES_TASKS = _env_bool("BETA_FEEDBACK_AUTO_COMPLETES_TASKS")
    BETA_WRITE_RATE_LIMIT = os.getenv("BETA_WRITE_RATE_LIMIT", "60/minute")

    # Reward ledger collaborator (empty URL → log-only ledger)
    REWARD_LEDGER_URL = os.getenv("REWARD_LEDGER_URL", "")
    REWARD_LEDGER_TIMEOUT = float(os.getenv("REWARD_LEDGER_TIMEOUT", "5"))


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url() or _SQLITE_DEV


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    REWARD_LEDGER_URL = ""
    BETA_FEEDBACK_AUTO_COMPLETES_TASKS = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Pool sizing and PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
