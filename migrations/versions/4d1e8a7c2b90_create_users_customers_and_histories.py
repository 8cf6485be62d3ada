"""create users, customers and customer histories

Revision ID: 4d1e8a7c2b90
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "4d1e8a7c2b90"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=False),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=False),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    existing_tables = set(inspect(bind).get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("username", sa.String(length=150), nullable=False),
            sa.Column("fullname", sa.String(length=255), nullable=True),
            sa.Column("email", sa.String(length=320), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.UniqueConstraint("username", name="uq_users_username"),
        )

    if "customers" not in existing_tables:
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("fullname", sa.Text(), nullable=False),
            sa.Column("company", sa.Text(), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("phone", sa.Text(), nullable=False),
            sa.Column("email", sa.Text(), nullable=False),
            sa.Column("birthday", sa.Date(), nullable=True),
            sa.Column("product", sa.Text(), nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column("user_id", sa.Integer(), nullable=False),
            *_timestamps(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
            sa.UniqueConstraint("phone", name="uq_customers_phone"),
            sa.UniqueConstraint("email", name="uq_customers_email"),
        )
        op.create_index("idx_customers_fullname", "customers", ["fullname"])
        op.create_index("idx_customers_company", "customers", ["company"])
        op.create_index("idx_customers_user_id", "customers", ["user_id"])

    if "customer_histories" not in existing_tables:
        op.create_table(
            "customer_histories",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("fullname", sa.Text(), nullable=False),
            sa.Column("company", sa.Text(), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("phone", sa.Text(), nullable=False),
            sa.Column("email", sa.Text(), nullable=False),
            sa.Column("birthday", sa.Date(), nullable=True),
            sa.Column("product", sa.Text(), nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=False),
                nullable=False,
                server_default=sa.func.current_timestamp(),
            ),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_customer_histories_customer_id", "customer_histories", ["customer_id", "id"])


def downgrade() -> None:
    op.drop_index("idx_customer_histories_customer_id", table_name="customer_histories")
    op.drop_table("customer_histories")

    op.drop_index("idx_customers_user_id", table_name="customers")
    op.drop_index("idx_customers_company", table_name="customers")
    op.drop_index("idx_customers_fullname", table_name="customers")
    op.drop_table("customers")

    op.drop_table("users")
