import logging
import os
from datetime import timedelta

from flask import Flask, g, request
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from app.crm.config import load_config
from app.crm.db import init_db, teardown_db_session
from app.crm.routes import bp as routes_bp
from app.crm.auth import bp as auth_bp, load_current_user
from app.crm.modules.customers.api import bp as customers_bp, history_bp as customer_histories_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/v1/users")
    app.register_blueprint(customers_bp, url_prefix="/v1")
    app.register_blueprint(customer_histories_bp, url_prefix="/v1")

    app.before_request(load_current_user)

    # CSRF applies to cookie sessions only; bearer tokens are never sent ambiently.
    from app.crm.security import validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow auth endpoints to pass through (login/logout)
            if (request.endpoint or "").startswith("auth."):
                return None
            if g.get("auth_via_bearer") or not g.get("acting_username"):
                return None
            if not validate_csrf(request):
                return {"status": 400, "message": "CSRF token missing or invalid."}, 400
        return None

    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(HTTPException)
    def _err_http(e):  # type: ignore[no-redef]
        return {"status": e.code, "message": e.description}, e.code

    @app.errorhandler(Exception)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return {"status": 500, "message": "Internal server error", "request_id": rid}, 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
