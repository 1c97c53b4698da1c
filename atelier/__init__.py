"""
Atelier Platform
Flask Application Factory.

Usage:
    from atelier import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from atelier.config import config
from atelier.models import db
from atelier.middleware.logging_config import configure_logging
from atelier.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per route
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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from atelier.models import user as _user_models                # noqa: F401
    from atelier.models import workshop as _workshop_models        # noqa: F401
    from atelier.models import participation as _participation_models  # noqa: F401
    from atelier.models import progression as _progression_models  # noqa: F401
    from atelier.models import history as _history_models          # noqa: F401
    from atelier.models import feedback as _feedback_models        # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name == "development":
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from atelier.blueprints.health_bp import health_bp
    from atelier.blueprints.workshops_bp import workshops_bp
    from atelier.blueprints.participations_bp import participations_bp
    from atelier.blueprints.classification_bp import classification_bp
    from atelier.blueprints.progression_bp import progression_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workshops_bp)
    app.register_blueprint(participations_bp)
    app.register_blueprint(classification_bp)
    app.register_blueprint(progression_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("close-ended-workshops")
    def close_ended_workshops_cmd():
        """Close every active workshop whose end has passed."""
        from atelier.services.workshop_lifecycle import close_ended_workshops
        closed = close_ended_workshops()
        db.session.commit()
        logger.info("Closed %s ended workshop(s).", len(closed))

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": "ERR_RATE_LIMITED",
                "retry_after": e.description}, 429

    return app
