from __future__ import annotations

from datetime import date, datetime
from typing import Any

from flask import jsonify

from app.crm.models import User
from app.crm.outcome import Outcome

# User columns never exposed when a user is embedded in another record.
_USER_HIDDEN = frozenset({"id", "password_hash", "created_at", "updated_at"})


def _json_value(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def serialize_row(obj: Any, *, exclude: frozenset[str] | set[str] = frozenset()) -> dict[str, Any]:
    """Column values of an ORM row as a JSON-safe dict."""
    return {
        col.key: _json_value(getattr(obj, col.key))
        for col in obj.__table__.columns
        if col.key not in exclude
    }


def serialize_user(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return serialize_row(user, exclude=_USER_HIDDEN)


def send_response(outcome: Outcome):
    """Envelope an Outcome as `{"status", "message"[, "data"]}` with its HTTP status."""
    body: dict[str, Any] = {"status": outcome.status_code, "message": outcome.message}
    if outcome.data is not None:
        body["data"] = outcome.data
    return jsonify(body), outcome.status_code


def parse_int_arg(raw: str | None) -> int:
    """Leading-integer parse for query params; anything unparseable is 0."""
    text = (raw or "").strip()
    if not text:
        return 0
    sign = 1
    if text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    digits = ""
    for ch in text:
        if not ch.isdigit():
            break
        digits += ch
    return sign * int(digits) if digits else 0
