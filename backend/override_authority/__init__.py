# backend/override_authority/__init__.py
from flask import Flask, current_app, jsonify
from werkzeug.exceptions import HTTPException

from .config import Config
from .errors import OverrideError
from .extensions import db, migrate
from .time_utils import seconds_until


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(OverrideError)
    def handle_override_error(exc: OverrideError):
        response = jsonify(exc.to_dict())
        response.status_code = exc.status_code
        locked_until = getattr(exc, "locked_until", None)
        if locked_until is not None:
            response.headers["Retry-After"] = str(seconds_until(locked_until))
        return response

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        current_app.logger.exception("Unhandled error")
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.rate_limit_service import EXTENSION_KEY, RateLimiter
    app.extensions[EXTENSION_KEY] = RateLimiter.from_config(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.overrides import overrides_bp
    from .routes.thresholds import thresholds_bp
    from .routes.pins import pins_bp
    from .routes.audit import audit_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(overrides_bp)
    app.register_blueprint(thresholds_bp)
    app.register_blueprint(pins_bp)
    app.register_blueprint(audit_bp)

    register_error_handlers(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
