"""initial budget schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _tombstone():
    return [
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime()),
    ]


def upgrade():
    transaction_type = sa.Enum("income", "expense", name="transactiontype")

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=50), nullable=False, unique=True),
        sa.Column("email", sa.String(length=120), nullable=False, unique=True),
        sa.Column("first_name", sa.String(length=100)),
        sa.Column("last_name", sa.String(length=100)),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        *_tombstone(),
    )
    op.create_index("ix_users_is_deleted", "users", ["is_deleted"])

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column(
            "type",
            sa.Enum("cash", "bank", "credit", "investment", "other", name="accounttype"),
            nullable=False,
        ),
        sa.Column("description", sa.Text()),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "opening_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        *_tombstone(),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])
    op.create_index("ix_accounts_is_deleted", "accounts", ["is_deleted"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column(
            "icon", sa.String(length=50), nullable=False, server_default="default-icon"
        ),
        sa.Column("color", sa.String(length=9), nullable=False, server_default="#000000"),
        *_timestamps(),
        *_tombstone(),
    )
    op.create_index("ix_categories_is_deleted", "categories", ["is_deleted"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("img_url", sa.String(length=500)),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        *_tombstone(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index("ix_transactions_category", "transactions", ["category_id"])
    op.create_index("ix_transactions_is_deleted", "transactions", ["is_deleted"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "period",
            sa.Enum(
                "daily",
                "weekly",
                "monthly",
                "quarterly",
                "yearly",
                "custom",
                name="budgetperiod",
            ),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        *_timestamps(),
        *_tombstone(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budgets_amount_positive"),
    )
    op.create_index("ix_budgets_user_period", "budgets", ["user_id", "period"])
    op.create_index("ix_budgets_is_deleted", "budgets", ["is_deleted"])

    op.create_table(
        "balance_adjustments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "operation",
            sa.Enum("add", "subtract", name="balanceoperation"),
            nullable=False,
        ),
        sa.Column("delta_cents", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
    )
    op.create_index(
        "ix_balance_adjustments_account", "balance_adjustments", ["account_id"]
    )


def downgrade():
    op.drop_index("ix_balance_adjustments_account", table_name="balance_adjustments")
    op.drop_table("balance_adjustments")
    op.drop_index("ix_budgets_is_deleted", table_name="budgets")
    op.drop_index("ix_budgets_user_period", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_is_deleted", table_name="transactions")
    op.drop_index("ix_transactions_category", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_is_deleted", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_accounts_is_deleted", table_name="accounts")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
    op.drop_index("ix_users_is_deleted", table_name="users")
    op.drop_table("users")
