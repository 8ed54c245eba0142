# backend/academy/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate
from .log_utils import configure_logging
from .services.email_service import MAILER_EXTENSION_KEY, Mailer
from .services.stripe_gateway import GATEWAY_EXTENSION_KEY, StripeGateway


def create_app(config_object=None, *, payment_gateway=None, mailer=None) -> Flask:
    """
    Application factory.

    payment_gateway / mailer: external clients, constructed here once per
    process unless injected (tests pass fakes).
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)

    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    app.extensions[GATEWAY_EXTENSION_KEY] = payment_gateway or StripeGateway.from_config(app.config)
    app.extensions[MAILER_EXTENSION_KEY] = mailer or Mailer.from_config(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.athletes import athletes_bp
    from .routes.waiver import waiver_bp
    from .routes.products import products_bp
    from .routes.cart import cart_bp
    from .routes.checkout import checkout_bp
    from .routes.payments import payments_bp
    from .routes.webhooks import webhooks_bp
    from .routes.admin import admin_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(athletes_bp)
    app.register_blueprint(waiver_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(cart_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_bp)

    allowed_origins = set(app.config.get("CORS_ALLOWED_ORIGINS", []))

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin and origin.lower() in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
