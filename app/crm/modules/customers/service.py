"""
CUSTOMER ACCESS LAYER
=====================

Operation          | Success            | Refusals
-------------------|--------------------|------------------------------------------
create_customer    | created (201)      | not_found (user), invalid, conflict
scroll             | ok (200)           | none
get_customer       | ok (200)           | not_found (customer)
update_customer    | ok (200)           | not_found (customer, then user), invalid, forbidden

Refusals are checked left to right: lookups first, then the payload.

INVARIANTS:
- phone and email are each globally unique across customers. The pre-check gives
  the friendly refusal; the unique constraints catch what races past it.
- Every successful update writes exactly one CustomerHistory row holding the values
  the customer had before the update, in the same SAVEPOINT as the overwrite.
- The updater becomes the owner (customers.user_id).

Callers own the transaction: commit when the outcome succeeded, roll back otherwise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from app.crm import outcome
from app.crm.models import User
from app.crm.modules.customers.history import record_customer_history
from app.crm.modules.customers.models import CUSTOMER_FIELDS, MAX_ROW_ID, Customer
from app.crm.outcome import Outcome
from app.crm.utils import serialize_row, serialize_user

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("fullname", "phone", "email")

# Unique constraints whose violation means "phone or email taken".
CONTACT_CONSTRAINTS = ("uq_customers_phone", "uq_customers_email")
_CONTACT_COLUMNS = ("customers.phone", "customers.email")


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


def validate_customer_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errs: list[ValidationError] = []
    for field in CUSTOMER_FIELDS:
        value = payload.get(field)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (str, int, float))):
            errs.append(ValidationError(field, "Must be a string."))
    for field in REQUIRED_FIELDS:
        value = payload.get(field)
        if isinstance(value, (str, int, float)) and not isinstance(value, bool) and str(value).strip():
            continue
        if not any(e.field == field for e in errs):
            errs.append(ValidationError(field, f"{field.capitalize()} is required."))
    birthday = payload.get("birthday")
    if isinstance(birthday, str) and birthday.strip():
        try:
            date.fromisoformat(birthday.strip())
        except ValueError:
            errs.append(ValidationError("birthday", "Birthday must be an ISO date (YYYY-MM-DD)."))
    elif isinstance(birthday, (int, float)) and not isinstance(birthday, bool):
        errs.append(ValidationError("birthday", "Birthday must be an ISO date (YYYY-MM-DD)."))
    return errs


def customer_fields_from_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Normalized column values; call only on a payload that validated."""
    fields: dict[str, Any] = {}
    for field in CUSTOMER_FIELDS:
        raw = payload.get(field)
        fields[field] = (str(raw).strip() or None) if raw is not None else None
    if fields["birthday"]:
        fields["birthday"] = date.fromisoformat(fields["birthday"])
    return fields


def _invalid(errs: list[ValidationError]) -> Outcome:
    return outcome.invalid(
        "; ".join(f"{e.field}: {e.message}" for e in errs),
        [{"field": e.field, "message": e.message} for e in errs],
    )


def is_contact_collision(exc: IntegrityError) -> bool:
    """True when the violated constraint is the phone or email uniqueness."""
    orig = exc.orig
    name = getattr(getattr(orig, "diag", None), "constraint_name", None)
    if name:
        return name in CONTACT_CONSTRAINTS
    # SQLite reports the columns ("UNIQUE constraint failed: customers.phone"), not the name.
    text = str(orig)
    return "UNIQUE" in text.upper() and any(
        token in text for token in CONTACT_CONSTRAINTS + _CONTACT_COLUMNS
    )


def get_user_by_username(s: Session, username: str | None) -> User | None:
    """Active user by username; deactivated accounts resolve to None."""
    if not username:
        return None
    return (
        s.query(User)
        .filter(User.username == username, User.is_active.is_(True))
        .one_or_none()
    )


def get_customer_by_id(s: Session, customer_id: int) -> Customer | None:
    if not 0 < customer_id <= MAX_ROW_ID:
        return None
    return s.query(Customer).filter(Customer.id == customer_id).one_or_none()


def find_duplicate_customer(s: Session, *, phone: str, email: str, exclude_id: int | None = None) -> Customer | None:
    """Any customer sharing the phone OR the email (each matched on its own)."""
    query = s.query(Customer).filter(or_(Customer.phone == phone, Customer.email == email))
    if exclude_id is not None:
        query = query.filter(Customer.id != exclude_id)
    return query.first()


def serialize_customer(c: Customer) -> dict[str, Any]:
    data = serialize_row(c, exclude={"user_id"})
    data["user"] = serialize_user(c.user)
    return data


def create_customer(s: Session, acting_username: str | None, payload: dict[str, Any]) -> Outcome:
    user = get_user_by_username(s, acting_username)
    if not user:
        return outcome.not_found("User is not found")

    errs = validate_customer_payload(payload)
    if errs:
        return _invalid(errs)
    fields = customer_fields_from_payload(payload)

    if find_duplicate_customer(s, phone=fields["phone"], email=fields["email"]):
        logger.warning("customer.create refused: duplicate phone/email (user=%s)", user.username)
        return outcome.conflict("Customer already exist")

    try:
        with s.begin_nested():
            c = Customer(**fields, user_id=user.id, updated_at=datetime.utcnow())
            s.add(c)
            s.flush()  # Force unique constraint check
    except IntegrityError as exc:
        if not is_contact_collision(exc):
            raise
        # Another request inserted the same phone/email after our pre-check.
        logger.warning("customer.create refused: unique constraint (user=%s)", user.username)
        return outcome.conflict("Customer already exist")

    logger.info("customer.create id=%s user=%s", c.id, user.username)
    return outcome.created(
        "Success create customer",
        {"fullname": c.fullname, "company": c.company, "product": c.product},
    )


def build_scroll_query(s: Session, *, key: str, last_id: int, limit: int) -> Query:
    """
    Customers whose fullname or company contains `key`, after cursor `last_id`,
    ascending by id, at most `limit` rows. `key` is bound and LIKE-escaped.
    Callers keep `last_id` and `limit` within MAX_ROW_ID.
    """
    query = s.query(Customer)
    if key:
        query = query.filter(
            or_(
                Customer.fullname.contains(key, autoescape=True),
                Customer.company.contains(key, autoescape=True),
            )
        )
    if last_id >= 1:
        query = query.filter(Customer.id > min(last_id, MAX_ROW_ID))
    return query.order_by(Customer.id.asc()).limit(min(max(limit, 0), MAX_ROW_ID))


def get_customers_by_scroll(s: Session, *, last_id: int = 0, limit: int = 0, key: str = "") -> Outcome:
    limit = min(max(limit, 0), MAX_ROW_ID)
    if last_id >= MAX_ROW_ID:
        rows: list[Customer] = []  # no id can follow the largest storable one
    else:
        rows = build_scroll_query(s, key=key or "", last_id=last_id, limit=limit).all()
    # hasMore only says the page came back full; it does not look ahead for a next row.
    payload = {
        "datas": [serialize_customer(c) for c in rows],
        "lastID": rows[-1].id if rows else 0,
        "hasMore": len(rows) >= limit,
    }
    return outcome.ok("Success get customers data", payload)


def get_customer(s: Session, customer_id: int) -> Outcome:
    c = get_customer_by_id(s, customer_id)
    if not c:
        return outcome.not_found("Customer is not found")
    return outcome.ok("Success get customer data", serialize_customer(c))


def update_customer(s: Session, customer_id: int, acting_username: str | None, payload: dict[str, Any]) -> Outcome:
    c = get_customer_by_id(s, customer_id)
    if not c:
        return outcome.not_found("Customer is not found")

    user = get_user_by_username(s, acting_username)
    if not user:
        return outcome.not_found("User is not found")

    errs = validate_customer_payload(payload)
    if errs:
        return _invalid(errs)
    fields = customer_fields_from_payload(payload)

    if find_duplicate_customer(s, phone=fields["phone"], email=fields["email"], exclude_id=c.id):
        logger.warning("customer.update refused: phone/email in use (id=%s user=%s)", c.id, user.username)
        return outcome.forbidden("Phone or email already used")

    previous_owner = c.user_id
    try:
        with s.begin_nested():
            record_customer_history(s, c)
            for field, value in fields.items():
                setattr(c, field, value)
            c.user_id = user.id
            c.updated_at = datetime.utcnow()
            s.flush()
    except IntegrityError as exc:
        if not is_contact_collision(exc):
            raise
        logger.warning("customer.update refused: unique constraint (id=%s user=%s)", customer_id, user.username)
        return outcome.forbidden("Phone or email already used")

    logger.info(
        "customer.update id=%s user=%s previous_owner_id=%s",
        c.id,
        user.username,
        previous_owner,
    )
    return outcome.ok("Success update customer")
