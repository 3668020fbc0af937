"""
Flask application factory.

Creates and configures the Flask app, registers all blueprints.
"""
import os
from flask import Flask


def create_app():
    """Create and configure the Flask application."""
    from app.logging_config import configure_logging

    app = Flask(__name__)

    configure_logging(app)

    app.secret_key = os.getenv('SECRET_KEY', 'dev-secret-change-me')
    app.json.ensure_ascii = False

    # Register blueprints
    from app.routes.dashboard import bp as dashboard_bp
    from app.routes.pipeline import bp as pipeline_bp

    app.register_blueprint(dashboard_bp)
    app.register_blueprint(pipeline_bp)

    # Initialize circuit breakers for external API services
    from app.extensions import redis_client
    from app.services.circuit_breaker import init_breakers
    init_breakers(redis_client)

    # Import models so Base.metadata knows about them (required for SQLAlchemy).
    # Schema is managed by Alembic — no init_db() call.
    import importlib
    importlib.import_module('app.models.db_run')
    importlib.import_module('app.models.lead')
    importlib.import_module('app.models.lead_run')
    importlib.import_module('app.models.activity')

    return app
