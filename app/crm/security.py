import secrets

from flask import current_app, session, Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

_TOKEN_SALT = "crm.access-token"


def _token_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=_TOKEN_SALT)


def issue_access_token(username: str) -> str:
    """Signed, timestamped bearer token carrying the username."""
    return _token_serializer().dumps({"username": username})


def read_access_token(token: str) -> str | None:
    """Username from a bearer token, or None if tampered/expired/malformed."""
    max_age = int(current_app.config.get("TOKEN_MAX_AGE_SECONDS") or 0) or None
    try:
        data = _token_serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        current_app.logger.info("Rejected expired access token")
        return None
    except BadSignature:
        return None
    username = data.get("username") if isinstance(data, dict) else None
    return username if isinstance(username, str) and username else None


def bearer_token(req: Request) -> str | None:
    header = req.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header or JSON body."""
    token = req.headers.get("X-CSRF-Token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True)
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")
    return bool(token and secrets.compare_digest(str(token), str(session.get("csrf_token") or "")))
