import json
import os
import subprocess
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from tradesafe.extensions import cors, db, migrate
from tradesafe.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from tradesafe.integrations.notifications.factory import build_notifications_provider
from tradesafe.integrations.payments.factory import build_payments_provider, payment_health
from tradesafe.segments.segment_disputes import admin_disputes_bp, disputes_bp
from tradesafe.segments.segment_fulfillment import fulfillment_bp
from tradesafe.segments.segment_orders import orders_bp
from tradesafe.segments.segment_payment_webhooks import webhooks_bp
from tradesafe.segments.segment_promotions import promotions_bp
from tradesafe.segments.segment_wallets import recon_bp, wallets_bp
from tradesafe.services.errors import CoreError, InvariantViolation
from tradesafe.services.reconciliation_service import contain_violation
from tradesafe.utils.jwt_utils import decode_token, get_bearer_token
from tradesafe.utils.observability import init_sentry, install_request_observers
from tradesafe.utils.settings import load_settings


def _resolve_git_sha() -> str:
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(value, maximum))


def _error_payload(code: str, message: str, status: int, detail: dict | None = None) -> dict:
    payload = {"ok": False, "error": code, "message": message, "status": int(status)}
    if detail:
        payload["detail"] = detail
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    settings = load_settings()
    env = settings.env

    # Production safety checks
    if settings.is_production:
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["FULFILLMENT_API_KEY"] = (os.getenv("FULFILLMENT_API_KEY") or "").strip()

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(instance_dir, 'tradesafe.db').replace(os.sep, '/')}"
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if settings.is_production:
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    # collaborators shared by every request; tests swap "payments" for a mock
    ext = {"settings": settings, "payments": None, "payments_error": None}
    try:
        ext["payments"] = build_payments_provider(settings)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as exc:
        ext["payments_error"] = exc
        app.logger.warning("payments_provider_unavailable reason=%s", exc)
    app.extensions["tradesafe"] = ext

    if database_url.startswith("sqlite://"):
        with app.app_context():
            import tradesafe.models  # noqa: F401

            db.create_all()

    @app.errorhandler(CoreError)
    def _api_core_error(error: CoreError):
        if isinstance(error, InvariantViolation):
            app.logger.critical(
                "invariant_violation path=%s message=%s detail=%s",
                request.path,
                error.message,
                json.dumps(error.detail, default=str),
            )
            if error.contained is None:
                contain_violation(db.session, error)
            return jsonify(_error_payload("INTERNAL_ERROR", "Internal server error", 500)), 500
        return jsonify(_error_payload(error.code, error.message, error.http_status, error.detail)), int(error.http_status)

    @app.errorhandler(IntegrationDisabledError)
    @app.errorhandler(IntegrationMisconfiguredError)
    def _api_integration_error(error: Exception):
        app.logger.warning("integration_unavailable path=%s reason=%s", request.path, error)
        code = "INTEGRATION_DISABLED" if isinstance(error, IntegrationDisabledError) else "INTEGRATION_MISCONFIGURED"
        return jsonify(_error_payload(code, str(error), 503)), 503

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        return jsonify(_error_payload(error.name, error.description or error.name, int(error.code or 500))), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(fulfillment_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(admin_disputes_bp)
    app.register_blueprint(wallets_bp)
    app.register_blueprint(recon_bp)
    app.register_blueprint(promotions_bp)
    app.register_blueprint(webhooks_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            db_error = str(e)[:300]
        payload = {
            "ok": True,
            "service": "tradesafe-backend",
            "env": env,
            "db": db_state,
            "payments": payment_health(settings),
            "git_sha": _resolve_git_sha(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/api/version")
    def version():
        return jsonify({"ok": True, "git_sha": _resolve_git_sha()})

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        token = get_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        sub = str(payload.get("sub") or "").strip()
        if not sub:
            return
        g.auth_user_id = sub[:64]
        g.auth_role = (str(payload.get("role") or "user")).strip().lower()

    @app.before_request
    def _reset_db_session():
        db.session.rollback()

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    _register_cli(app)
    return app


def _register_cli(app):
    from tradesafe.jobs.escrow_runner import run_auto_completion, run_transfer_retries
    from tradesafe.jobs.maintenance import run_event_dispatch, run_promotion_expiry, run_reconciliation
    from tradesafe.services.core import core_for_app

    @app.cli.command("init-db")
    def init_db():
        import tradesafe.models  # noqa: F401

        db.create_all()
        click.echo("init_db_ok")

    @app.cli.command("auto-complete")
    @click.option("--limit", default=200, show_default=True, type=int)
    def auto_complete(limit: int):
        click.echo(json.dumps(run_auto_completion(core_for_app(app), limit=limit)))

    @app.cli.command("retry-transfers")
    @click.option("--limit", default=50, show_default=True, type=int)
    def retry_transfers(limit: int):
        click.echo(json.dumps(run_transfer_retries(core_for_app(app), limit=limit)))

    @app.cli.command("expire-promotions")
    def expire_promotions():
        click.echo(json.dumps(run_promotion_expiry(core_for_app(app))))

    @app.cli.command("dispatch-events")
    @click.option("--limit", default=100, show_default=True, type=int)
    def dispatch_events(limit: int):
        notifier = build_notifications_provider(app.extensions["tradesafe"]["settings"])
        click.echo(json.dumps(run_event_dispatch(db.session, notifier, limit=limit)))

    @app.cli.command("reconcile-wallets")
    @click.option("--no-persist", is_flag=True, default=False)
    def reconcile_wallets(no_persist: bool):
        summary = run_reconciliation(db.session, persist=not no_persist, created_by="cli")
        click.echo(json.dumps(summary, indent=2))
        if not summary["ok"]:
            raise click.ClickException(f"drift detected in {summary['drift_count']} wallet(s)")
