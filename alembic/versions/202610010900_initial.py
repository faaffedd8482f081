"""initial schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=254), nullable=False, unique=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("password_hash", sa.String(length=128), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "user_roles",
        sa.Column(
            "user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True
        ),
        sa.Column(
            "role_id", sa.Integer(), sa.ForeignKey("roles.id"), primary_key=True
        ),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("cash_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_account_user_name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type_of_flow",
            sa.Enum("income", "outgo", name="typeofflow"),
            nullable=False,
        ),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "type_of_flow", "name", name="uq_category_user_flow_name"
        ),
    )

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("category_id", "name", name="uq_product_category_name"),
    )

    op.create_table(
        "paying_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("summ_cents", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("summ_cents >= 0", name="ck_paying_items_summ_positive"),
    )
    op.create_index("ix_paying_items_user_date", "paying_items", ["user_id", "date"])
    op.create_index(
        "ix_paying_items_user_category_date",
        "paying_items",
        ["user_id", "category_id", "date"],
    )

    op.create_table(
        "paying_item_products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "paying_item_id",
            sa.Integer(),
            sa.ForeignKey("paying_items.id"),
            nullable=False,
        ),
        sa.Column(
            "product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False
        ),
        sa.Column("summ_cents", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "summ_cents >= 0", name="ck_paying_item_products_summ_positive"
        ),
    )

    op.create_table(
        "plan_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("summ_plan_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("summ_fact_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("closed", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "category_id", "month", name="uq_plan_item_user_category_month"
        ),
        sa.CheckConstraint("summ_plan_cents >= 0", name="ck_plan_items_plan_positive"),
    )
    op.create_index("ix_plan_items_user_month", "plan_items", ["user_id", "month"])


def downgrade():
    op.drop_index("ix_plan_items_user_month", table_name="plan_items")
    op.drop_table("plan_items")
    op.drop_table("paying_item_products")
    op.drop_index("ix_paying_items_user_category_date", table_name="paying_items")
    op.drop_index("ix_paying_items_user_date", table_name="paying_items")
    op.drop_table("paying_items")
    op.drop_table("products")
    op.drop_table("categories")
    op.drop_table("accounts")
    op.drop_table("user_roles")
    op.drop_table("roles")
    op.drop_table("users")
