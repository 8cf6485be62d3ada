from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, g, request
from sqlalchemy.orm import Session

from app.crm import outcome
from app.crm.auth import current_username, require_user
from app.crm.db import db_session
from app.crm.modules.customers.history import get_customer_history, list_customer_histories
from app.crm.modules.customers.service import (
    create_customer,
    get_customer,
    get_customers_by_scroll,
    update_customer,
)
from app.crm.outcome import Outcome
from app.crm.utils import parse_int_arg, send_response, serialize_row, serialize_user

bp = Blueprint("customers", __name__)
history_bp = Blueprint("customer_histories", __name__)


def _json_body() -> dict[str, Any] | None:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else None


def _finish(s: Session, result: Outcome):
    """Commit a successful write, roll back a refused one, then envelope it."""
    try:
        if result.succeeded:
            s.commit()
        else:
            s.rollback()
    except Exception:
        s.rollback()
        current_app.logger.exception("Commit failed (request_id=%s)", getattr(g, "request_id", None))
        raise
    return send_response(result)


@bp.post("/customers")
@require_user
def customers_create():
    payload = _json_body()
    if payload is None:
        return send_response(outcome.invalid("Request body must be a JSON object."))
    s = db_session()
    try:
        result = create_customer(s, current_username(), payload)
    except Exception:
        s.rollback()
        raise
    return _finish(s, result)


@bp.get("/customers")
@require_user
def customers_scroll():
    s = db_session()
    result = get_customers_by_scroll(
        s,
        last_id=parse_int_arg(request.args.get("lastID")),
        limit=parse_int_arg(request.args.get("limit")),
        key=request.args.get("key") or "",
    )
    return send_response(result)


@bp.get("/customers/<int:customer_id>")
@require_user
def customer_detail(customer_id: int):
    s = db_session()
    return send_response(get_customer(s, customer_id))


@bp.put("/customers/<int:customer_id>")
@require_user
def customer_update(customer_id: int):
    payload = _json_body()
    if payload is None:
        return send_response(outcome.invalid("Request body must be a JSON object."))
    s = db_session()
    try:
        result = update_customer(s, customer_id, current_username(), payload)
    except Exception:
        s.rollback()
        raise
    return _finish(s, result)


def _serialize_history(h) -> dict[str, Any]:
    data = serialize_row(h, exclude={"user_id"})
    data["user"] = serialize_user(h.user)
    return data


@history_bp.get("/customer_histories")
@require_user
def customer_histories_list():
    s = db_session()
    raw_customer_id = (request.args.get("customer_id") or "").strip()
    customer_id = parse_int_arg(raw_customer_id) if raw_customer_id else None
    limit = parse_int_arg(request.args.get("limit")) if request.args.get("limit") else 50
    rows = list_customer_histories(s, customer_id=customer_id, limit=limit)
    return send_response(
        outcome.ok("Success get customer histories", [_serialize_history(h) for h in rows])
    )


@history_bp.get("/customer_histories/<int:history_id>")
@require_user
def customer_history_detail(history_id: int):
    s = db_session()
    h = get_customer_history(s, history_id)
    if not h:
        return send_response(outcome.not_found("Customer history is not found"))
    return send_response(outcome.ok("Success get customer history", _serialize_history(h)))
