"""
Pipetrack Takeoff & Progress Ledger
Flask Application Factory.

Usage:
    from pipetrack import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from pipetrack.config import config
from pipetrack.middleware.logging_config import configure_logging
from pipetrack.middleware.rate_limiter import init_rate_limits
from pipetrack.middleware.timing import init_request_timing
from pipetrack.models import db

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
    key_func=get_remote_address,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("REDIS_URL", "memory://"),
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
    config_obj = config[config_name]
    app.config.from_object(config_obj() if config_name == "production" else config_obj)

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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Models (register tables with SQLAlchemy metadata) ────────────────
    from pipetrack.models import audit, component, milestone_event, needs_review  # noqa: F401
    from pipetrack.models import operator, progress_template, project  # noqa: F401

    # ── Blueprints ───────────────────────────────────────────────────────
    from pipetrack.blueprints.health_bp import health_bp
    from pipetrack.blueprints.import_bp import import_bp
    from pipetrack.blueprints.milestone_bp import milestone_bp
    from pipetrack.blueprints.project_bp import project_bp
    from pipetrack.blueprints.review_bp import review_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(project_bp)
    app.register_blueprint(import_bp)
    app.register_blueprint(milestone_bp)
    app.register_blueprint(review_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-templates")
    def seed_templates_cmd():
        """Seed version 1 of the default progress template for every component type."""
        from pipetrack.services.template_service import seed_default_templates
        count = seed_default_templates()
        db.session.commit()
        logger.info("Seeded %s new progress templates.", count)

    @app.cli.command("verify-ledger")
    @click.argument("project_id", type=int)
    @click.option("--repair", is_flag=True, help="Rebuild drifted component caches.")
    def verify_ledger_cmd(project_id, repair):
        """Compare every component's cached progress with its milestone ledger."""
        from pipetrack.models.component import Component
        from pipetrack.services.progress_ledger_service import (
            rebuild_component_state,
            verify_component_ledger,
        )
        drifted = 0
        ids = [cid for (cid,) in db.session.query(Component.id).filter_by(project_id=project_id)]
        for component_id in ids:
            if verify_component_ledger(component_id)["consistent"]:
                continue
            drifted += 1
            if repair:
                rebuild_component_state(component_id, actor_id="cli")
        logger.info("Checked %d components, %d drifted%s.", len(ids), drifted,
                    " (repaired)" if repair and drifted else "")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Upload too large", "max_bytes": app.config.get("MAX_CONTENT_LENGTH")}, 413

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
