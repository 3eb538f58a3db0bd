"""
DealerFlow Workflow Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'dealerflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Bundled stage catalog
_CATALOG_DIR = os.path.join(os.path.dirname(__file__), "data", "processes")

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name, default):
    return os.getenv(name, "true" if default else "false").lower() in ("1", "true", "yes")


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Stage catalog & analyzer
    WORKFLOW_CATALOG_DIR = os.getenv("WORKFLOW_CATALOG_DIR", _CATALOG_DIR)
    WORKFLOW_DEADLINE_ALERT_DAYS = int(os.getenv("WORKFLOW_DEADLINE_ALERT_DAYS", "3"))
    WORKFLOW_BOTTLENECK_MULTIPLIER = float(os.getenv("WORKFLOW_BOTTLENECK_MULTIPLIER", "2.0"))
    WORKFLOW_BOTTLENECK_MIN_COUNT = int(os.getenv("WORKFLOW_BOTTLENECK_MIN_COUNT", "3"))
    WORKFLOW_BOTTLENECK_TOP_N = int(os.getenv("WORKFLOW_BOTTLENECK_TOP_N", "0"))
    # Process types composed by the order-workflow summary, in sales order
    WORKFLOW_ORDER_PIPELINE = tuple(
        p.strip() for p in os.getenv(
            "WORKFLOW_ORDER_PIPELINE",
            "lead-to-quote,quote-to-proposal,proposal-to-contract,order-fulfillment",
        ).split(",") if p.strip()
    )

    # Notification delivery
    NOTIFICATION_ASYNC = _env_bool("NOTIFICATION_ASYNC", True)
    NOTIFICATION_WORKERS = int(os.getenv("NOTIFICATION_WORKERS", "4"))
    NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3"))
    NOTIFICATION_BACKOFF_SECONDS = float(os.getenv("NOTIFICATION_BACKOFF_SECONDS", "1.0"))
    NOTIFICATION_BACKOFF_MAX_SECONDS = float(os.getenv("NOTIFICATION_BACKOFF_MAX_SECONDS", "8.0"))
    NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5.0"))
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )
    # File-based SQLite does not take QueuePool sizing options
    SQLALCHEMY_ENGINE_OPTIONS = {} if not _raw_db_url else Config.SQLALCHEMY_ENGINE_OPTIONS


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    # Deliver inline so tests observe notifications deterministically
    NOTIFICATION_ASYNC = False
    NOTIFICATION_BACKOFF_SECONDS = 0.0
    NOTIFICATION_BACKOFF_MAX_SECONDS = 0.0
    NOTIFICATION_WEBHOOK_URL = None


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement timeout
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
