import logging

import click
from flask import Flask, jsonify, request
from flask_migrate import Migrate
from sqlalchemy.exc import OperationalError

from config import Config
from models import db
from routes import admin_bp, auth_bp, booking_bp, cron_bp, health_bp, payments_bp, webhook_bp
from security import nonce_store, rate_limit
from security.csrf import csrf_protect
from security.rbac import permission_graph
from services.errors import BookingCoreError
from services.state_machine import state_machine
from utils.auth_context import load_current_user

logger = logging.getLogger(__name__)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(admin_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Graph caches and concurrency-safety stores
    state_machine.init_app(app)
    permission_graph.init_app(app)
    nonce_store.init_app(app)
    rate_limit.init_app(app)

    @app.before_request
    def _load_user():
        load_current_user()

    # Runs after _load_user so the check knows whether a session cookie is in play
    app.before_request(csrf_protect)

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_error_handlers(app)
    register_cli(app)

    return app


def register_error_handlers(app):
    @app.errorhandler(BookingCoreError)
    def _core_error(exc):
        resp = jsonify(exc.to_dict())
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            resp.headers["Retry-After"] = str(retry_after)
        return resp, exc.status_code

    @app.errorhandler(OperationalError)
    def _store_unavailable(exc):
        db.session.rollback()
        logger.exception("database unavailable during %s %s", request.method, request.path)
        resp = jsonify(error="Service temporarily unavailable; try again shortly")
        resp.headers["Retry-After"] = "2"
        return resp, 503


#-------------------------
def register_cli(app):
    from models.user import Role, User
    from services.expiry import expiry_healer
    from services.payments import payment_service
    from services.reservations import prune_expired_keys
    from utils.seed import seed_graph

    @app.cli.command("seed-graph")
    def seed_graph_command():
        """Create the default booking states/transitions, permissions and roles."""
        added = seed_graph()
        state_machine.invalidate()
        permission_graph.invalidate()
        click.echo(f"Booking graph seeded ({added} new transitions)")

    @app.cli.command("expire-reservations")
    def expire_reservations_command():
        """Run one scheduled expiry sweep."""
        processed = expiry_healer.run_scheduled()
        click.echo(f"Expired {processed} reservation(s)")

    @app.cli.command("expire-payments")
    def expire_payments_command():
        """Expire initiated payments left unpaid past their window."""
        processed = payment_service.expire_payments()
        click.echo(f"Expired {processed} payment(s)")

    @app.cli.command("prune-idempotency")
    def prune_idempotency_command():
        """Delete idempotency keys past their TTL and sweep expired nonces/rate windows."""
        deleted = prune_expired_keys()
        nonce_store.get_nonce_store().cleanup()
        rate_limit.sweep_expired()
        click.echo(f"Deleted {deleted} idempotency key(s)")

    @app.cli.command("grant-role")
    @click.argument("email")
    @click.argument("role_name")
    def grant_role(email, role_name):
        """Give a user a role by email (bootstrap owners and admins)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return

        role = Role.query.filter_by(name=role_name.upper()).first()
        if not role:
            click.echo(f"Role {role_name.upper()} not found; run `flask seed-graph` first")
            return

        if role not in user.roles:
            user.roles.append(role)
            db.session.commit()

        click.echo(f"{user.email} granted {role.name}")


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
