import logging

from flask import Flask, jsonify
from config import Config
from routes import health_bp, reservations_bp, payments_bp, webhook_bp

from models import db
from flask_migrate import Migrate
from services.errors import BookingCoreError

logger = logging.getLogger(__name__)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(reservations_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    @app.errorhandler(BookingCoreError)
    def handle_core_error(exc):
        db.session.rollback()
        if exc.status_code >= 500:
            logger.error("%s: %s %s", exc.code, exc.message, exc.details)
        return jsonify(exc.to_dict()), exc.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------
import click
from jobs.reconciliation import ReconciliationSweep, run_forever
from services import ledger
from services.outbox import drain_outbox

def register_cli(app):
    @app.cli.command("reconcile")
    @click.option("--loop", is_flag=True, help="Keep running every --interval-minutes.")
    @click.option("--interval-minutes", type=int, default=None)
    def reconcile(loop, interval_minutes):
        """Repair stuck reservations and abandoned payments."""
        if loop:
            run_forever(interval_minutes)
            return
        report = ReconciliationSweep().run()
        click.echo(", ".join(f"{k}={v}" for k, v in report.to_dict().items()))

    @app.cli.command("drain-outbox")
    @click.option("--limit", type=int, default=50)
    def drain(limit):
        """Send pending booking follow-ups (confirmation emails)."""
        counts = drain_outbox(limit=limit)
        click.echo(", ".join(f"{k}={v}" for k, v in counts.items()))

    @app.cli.command("review-queue")
    @click.option("--limit", type=int, default=200)
    def review_queue(limit):
        """List payments flagged for operator follow-up."""
        rows = ledger.review_queue(limit=limit)
        if not rows:
            click.echo("Nothing to review")
            return
        for row in rows:
            click.echo(f"{row.order_id}\t{row.status}\t{row.amount} {row.currency}\t"
                       f"{row.gateway_payment_id or '-'}\t{row.review_reason}")

#-------------------------




if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
