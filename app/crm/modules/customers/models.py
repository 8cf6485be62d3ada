from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.crm.models import Base


# Largest value a 32-bit INTEGER id column holds.
MAX_ROW_ID = 2**31 - 1

# Columns shared by the live row and its history snapshot, in display order.
CUSTOMER_FIELDS = ("fullname", "company", "address", "phone", "email", "birthday", "product", "note")


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("phone", name="uq_customers_phone"),
        UniqueConstraint("email", name="uq_customers_email"),
        Index("idx_customers_fullname", "fullname"),
        Index("idx_customers_company", "company"),
        Index("idx_customers_user_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    fullname: Mapped[str] = mapped_column(Text, nullable=False)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    birthday: Mapped[date | None] = mapped_column(Date, nullable=True)
    product: Mapped[str | None] = mapped_column(Text, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user = relationship("User", back_populates="customers", lazy="joined")
    histories: Mapped[list["CustomerHistory"]] = relationship(
        "CustomerHistory",
        back_populates="customer",
        order_by="CustomerHistory.id",
        lazy="select",
    )


class CustomerHistory(Base):
    """
    Snapshot of a customer's values as they were before an update.
    Rows are only ever inserted.
    """

    __tablename__ = "customer_histories"
    __table_args__ = (
        Index("idx_customer_histories_customer_id", "customer_id", "id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    fullname: Mapped[str] = mapped_column(Text, nullable=False)
    company: Mapped[str | None] = mapped_column(Text, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str] = mapped_column(Text, nullable=False)  # not unique: old values repeat
    email: Mapped[str] = mapped_column(Text, nullable=False)
    birthday: Mapped[date | None] = mapped_column(Date, nullable=True)
    product: Mapped[str | None] = mapped_column(Text, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="histories", lazy="select")
    user = relationship("User", foreign_keys=[user_id], lazy="joined")
