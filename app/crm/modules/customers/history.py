from __future__ import annotations

from sqlalchemy.orm import Session

from app.crm.modules.customers.models import CUSTOMER_FIELDS, MAX_ROW_ID, Customer, CustomerHistory


def record_customer_history(s: Session, customer: Customer) -> CustomerHistory:
    """
    Append-only snapshot of `customer` as currently loaded.
    Call before mutating the customer so the row keeps the old values.
    """
    snapshot = {field: getattr(customer, field) for field in CUSTOMER_FIELDS}
    h = CustomerHistory(
        customer_id=customer.id,
        user_id=customer.user_id,
        **snapshot,
    )
    s.add(h)
    return h


def list_customer_histories(s: Session, *, customer_id: int | None = None, limit: int = 50) -> list[CustomerHistory]:
    if customer_id is not None and not 0 < customer_id <= MAX_ROW_ID:
        return []
    query = s.query(CustomerHistory)
    if customer_id is not None:
        query = query.filter(CustomerHistory.customer_id == customer_id)
    return query.order_by(CustomerHistory.id.desc()).limit(min(max(limit, 0), MAX_ROW_ID)).all()


def get_customer_history(s: Session, history_id: int) -> CustomerHistory | None:
    if not 0 < history_id <= MAX_ROW_ID:
        return None
    return s.query(CustomerHistory).filter(CustomerHistory.id == history_id).one_or_none()
