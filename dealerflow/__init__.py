"""
DealerFlow Workflow Engine
Flask Application Factory.

Usage:
    from dealerflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_migrate import Migrate

from dealerflow.config import config
from dealerflow.models import db
from dealerflow.middleware.logging_config import configure_logging
from dealerflow.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None, repository=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        repository: Optional workflow repository. Defaults to the
                    SQLAlchemy-backed store.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from dealerflow.models import workflow as _workflow_models          # noqa: F401
    from dealerflow.models import notification as _notification_models  # noqa: F401
    from dealerflow.models import directory as _directory_models        # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name != "production" or os.getenv("DB_AUTO_CREATE", "true").lower() == "true":
        if config_name == "development":
            os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()

    # ── Workflow engine ──────────────────────────────────────────────────
    from dealerflow.services.workflow_service import init_workflow_engine
    init_workflow_engine(app, repository=repository)

    # ── Blueprints ───────────────────────────────────────────────────────
    from dealerflow.blueprints.workflow_bp import workflow_bp
    from dealerflow.blueprints.process_bp import process_bp
    from dealerflow.blueprints.dashboard_bp import dashboard_bp
    from dealerflow.blueprints.notification_bp import notification_bp
    from dealerflow.blueprints.directory_bp import directory_bp
    from dealerflow.blueprints.health_bp import health_bp

    app.register_blueprint(workflow_bp)
    app.register_blueprint(process_bp)
    app.register_blueprint(dashboard_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(directory_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-directory")
    @click.option("--file", "path", default=None, help="Directory JSON (defaults to the bundled one).")
    def seed_directory_cmd(path):
        """Seed roles and users used for task assignment."""
        from dealerflow.services.directory import seed_directory
        from dealerflow.services.workflow_service import get_engine
        added = seed_directory(get_engine().repository, path)
        click.echo(f"Seeded {added['roles']} role(s) and {added['users']} user(s).")

    @app.cli.command("scan-deadlines")
    def scan_deadlines_cmd():
        """Emit deadline notifications for workflows inside the alert window."""
        from dealerflow.services.workflow_service import get_engine
        engine = get_engine()
        alerted = engine.scan_deadlines()
        engine.emitter.dispatcher.flush(timeout=60)
        click.echo(f"Deadline alerts emitted for {len(alerted)} workflow(s).")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    return app
