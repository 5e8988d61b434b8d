import logging

import click
from flask import Flask, jsonify
from flask_migrate import Migrate

from config import Config
from routes import health_bp, booking_bp, payments_bp, webhook_bp, promo_bp, audit_bp
from models import db
from services import booking_service, promo_engine
from services.errors import BookingError
from services.sweeper import sweeper
from utils.auth_context import load_current_user


def configure_logging(app):
    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # APScheduler logs every job run at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    configure_logging(app)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(promo_bp)
    app.register_blueprint(audit_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    @app.before_request
    def _load_user():
        load_current_user()

    @app.errorhandler(BookingError)
    def _booking_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    sweeper.init_app(app)
    if app.config.get("SWEEPER_ENABLED"):
        sweeper.start()

    register_cli(app)

    return app

#-------------------------

def register_cli(app):
    @app.cli.command("sweep")
    def sweep():
        """Expire unpaid bookings and drop stale holds now."""
        result = booking_service.sweep()
        print(f"expired={result.expired} completed={result.completed} orphan_holds={result.orphan_holds}")

    @app.cli.command("promo-deactivate")
    @click.argument("code")
    def promo_deactivate(code):
        """Soft-deactivate a promo code by its code."""
        promo = promo_engine.find(code)
        if not promo:
            print("Promo code not found")
            return
        promo_engine.deactivate(promo.id)
        print(f"{promo.code} deactivated")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Only the long-running server runs the expiry sweep
    if not sweeper.running:
        sweeper.start()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
