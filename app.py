from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from flask import Flask, jsonify
from sqlalchemy import inspect
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config
from extensions import db, limiter, mail, migrate
from routes.attendance_routes import attendance_bp
from routes.audit_routes import audit_bp
from routes.auth_routes import auth_bp
from routes.cohort_routes import cohort_bp
from routes.equipment_routes import equipment_bp
from routes.fee_routes import fee_bp
from routes.leave_routes import leave_bp
from utils.security import hash_password

BLUEPRINTS = (auth_bp, cohort_bp, fee_bp, attendance_bp, leave_bp, equipment_bp, audit_bp)


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    app.logger.setLevel(level)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(404)
    def _not_found(_err):
        return jsonify({"ok": False, "error": "Not found"}), 404

    @app.errorhandler(405)
    def _method_not_allowed(_err):
        return jsonify({"ok": False, "error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def _rate_limited(err):
        return jsonify({"ok": False, "error": f"Too many requests: {err.description}"}), 429

    @app.errorhandler(500)
    def _server_error(_err):
        db.session.rollback()
        return jsonify({"ok": False, "error": "Internal server error"}), 500


def _bootstrap_admin(app: Flask) -> None:
    """Create the first super admin from config when the users table is empty."""
    from models import User

    email = (app.config.get("BOOTSTRAP_ADMIN_EMAIL") or "").strip().lower()
    password = app.config.get("BOOTSTRAP_ADMIN_PASSWORD") or ""
    if not email or not password:
        return
    if not inspect(db.engine).has_table(User.__tablename__):
        app.logger.warning("Users table missing; run migrations before bootstrapping an admin")
        return
    if User.query.first() is not None:
        return
    db.session.add(User(email=email, name="Administrator", role="super_admin",
                        password_hash=hash_password(password)))
    db.session.commit()
    app.logger.info("Bootstrap super admin %s created", email)


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)

    # Load configuration from Config, then any explicit overrides (tests)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    _configure_logging(app)

    # Trust reverse proxy headers for scheme/host when enabled
    if app.config.get("TRUST_PROXY", True):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)  # type: ignore[assignment]

    db.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)
    limiter.init_app(app)

    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)

    # Set security headers on every response
    @app.after_request
    def _set_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        resp.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
        resp.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        # HSTS only when cookies marked secure (implies HTTPS)
        if app.config.get("SESSION_COOKIE_SECURE", False):
            resp.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return resp

    @app.route("/healthz")
    def healthz():
        return jsonify({"ok": True, "app": app.config.get("APP_NAME")})

    _register_error_handlers(app)

    with app.app_context():
        import models  # noqa: F401 - register tables on the metadata

        if app.config.get("AUTO_CREATE_TABLES"):
            db.create_all()
        _bootstrap_admin(app)

    if app.config.get("ENABLE_SCHEDULER"):
        from scheduler import start_scheduler

        app.extensions["cohort_scheduler"] = start_scheduler(app)

    return app


app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
