import os
from datetime import datetime, timezone

from flask import Flask, session, g

from config import Config
from extensions import db, init_extensions, login_manager
from errors import register_error_handlers
from gateway import PaymentGateway
from logger import setup_app_logging
from models import User


def create_app(config_class=Config, payment_gateway=None):
    """
    Application factory. The payment gateway is injected so tests can swap
    in a fake; by default it is built from config.
    """
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    # ------------------------------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------------------------------
    setup_app_logging(app)

    # ------------------------------------------------------------------------------------------
    # Database location
    # ------------------------------------------------------------------------------------------
    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if database_uri.startswith("sqlite:///") and ":memory:" not in database_uri:
        os.makedirs(os.path.dirname(database_uri.replace("sqlite:///", "", 1)) or ".", exist_ok=True)

    # ------------------------------------------------------------------------------------------
    # Extensions and collaborators
    # ------------------------------------------------------------------------------------------
    init_extensions(app)
    app.extensions["payment_gateway"] = payment_gateway or PaymentGateway.from_config(app.config)

    # ------------------------------------------------------------------------------------------
    # Register blueprints
    # ------------------------------------------------------------------------------------------
    def register_blueprints(app):
        from blueprints.auth import bp as auth_bp
        from blueprints.orders import bp as orders_bp
        from blueprints.affiliate import bp as affiliate_bp
        from blueprints.admin import admin_bp
        from blueprints.payment_webhooks import bp as webhooks_bp

        app.register_blueprint(auth_bp)
        app.register_blueprint(orders_bp)
        app.register_blueprint(affiliate_bp)
        app.register_blueprint(admin_bp)
        app.register_blueprint(webhooks_bp)

    register_blueprints(app)
    register_error_handlers(app)

    # ------------------------------------------------------------------------------------------
    # Flask-Login user_loader
    # ------------------------------------------------------------------------------------------
    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    # ----------------------
    # Global before_request
    # ----------------------
    @app.before_request
    def load_logged_in_user():
        g.user = None
        user_id = session.get("user_id")
        if user_id:
            g.user = db.session.get(User, user_id)

    @app.route("/healthz")
    def healthz():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}, 200

    app.logger.info("SongSculptors app created")
    return app
