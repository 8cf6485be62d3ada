from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta
from functools import wraps
from typing import Any

from flask import Blueprint, current_app, g, request, session
from werkzeug.security import check_password_hash

from app.crm import outcome
from app.crm.db import db_session
from app.crm.models import User
from app.crm.security import bearer_token, ensure_csrf_token, issue_access_token, read_access_token
from app.crm.utils import send_response, serialize_user

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Resolves g.acting_username from a bearer token, else from the signed session cookie.
    The username is not looked up here; services resolve it against users per call.
    Also assigns a simple per-request request_id (for log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.auth_via_bearer = False
    g.acting_username = None
    if request.path.startswith(("/health", "/healthz")):
        return

    token = bearer_token(request)
    if token:
        g.acting_username = read_access_token(token)
        g.auth_via_bearer = g.acting_username is not None
        return

    username = session.get("username")
    if isinstance(username, str) and username:
        g.acting_username = username


def current_username() -> str:
    username = getattr(g, "acting_username", None)
    if not username:
        raise RuntimeError("No acting user")
    return username


def require_user(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        if not getattr(g, "acting_username", None):
            return {"status": 401, "message": "Authentication required"}, 401
        return fn(*args, **kwargs)

    return wrapped


@bp.post("/login")
def login_post():
    payload = request.get_json(silent=True) or {}
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return {"status": 429, "message": "Too many login attempts. Please wait 5 minutes."}, 429

    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.username == username).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        current_app.logger.warning("Login failed (username=%s request_id=%s)", username, g.request_id)
        return {"status": 401, "message": "Invalid credentials"}, 401

    session["username"] = user.username
    session.permanent = True
    _login_attempts[ip].clear()
    current_app.logger.info("Login ok (username=%s request_id=%s)", user.username, g.request_id)
    return send_response(
        outcome.ok(
            "Success login",
            {
                "access_token": issue_access_token(user.username),
                "token_type": "bearer",
                "csrf_token": ensure_csrf_token(),
            },
        )
    )


@bp.post("/logout")
def logout():
    session.pop("username", None)
    return send_response(outcome.ok("Success logout"))


@bp.get("/me")
@require_user
def me():
    s = db_session()
    user = (
        s.query(User)
        .filter(User.username == current_username(), User.is_active.is_(True))
        .one_or_none()
    )
    if not user:
        return send_response(outcome.not_found("User is not found"))
    return send_response(outcome.ok("Success get user data", serialize_user(user)))
