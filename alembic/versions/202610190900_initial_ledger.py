"""household ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", "transfer", name="transactiontype")
ACCOUNT_TYPE = sa.Enum("payroll", "savings", "cash", "investments", name="accounttype")
BUDGET_TYPE = sa.Enum("monthly", "annually", name="budgettype")
FREQUENCY = sa.Enum(
    "once", "weekly", "biweekly", "monthly", "yearly", name="recurrencefrequency"
)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", ACCOUNT_TYPE, nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "opening_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        *_timestamps(),
    )
    op.create_index("ix_accounts_group", "accounts", ["group_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=200)),
        sa.Column("default_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        *_timestamps(),
    )
    op.create_index("ix_users_group", "users", ["group_id"])

    op.create_table(
        "account_users",
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), primary_key=True
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("key", sa.String(length=60), nullable=False),
        sa.Column("label", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False, server_default="#6B7280"),
        sa.Column("icon", sa.String(length=60), nullable=False, server_default="default"),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "key", name="uq_category_group_key"),
    )

    op.create_table(
        "recurring_series",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=60), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("due_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_executed_on", sa.Date()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_series_amount_positive"),
        sa.CheckConstraint("due_day >= 1 AND due_day <= 31", name="ck_series_due_day"),
    )
    op.create_index("ix_recurring_series_user", "recurring_series", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=60), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "recurring_series_id", sa.Integer(), sa.ForeignKey("recurring_series.id")
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "recurring_series_id", "date", name="uq_txn_series_occurrence"
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "to_account_id IS NULL OR to_account_id != account_id",
            name="ck_transactions_distinct_accounts",
        ),
    )
    op.create_index("ix_transactions_group_date", "transactions", ["group_id", "date"])
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category", "date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("description", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", BUDGET_TYPE, nullable=False),
        sa.Column("categories", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )
    op.create_index("ix_budgets_user", "budgets", ["user_id"])
    op.create_index("ix_budgets_group", "budgets", ["group_id"])

    op.create_table(
        "budget_periods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_budget_period_dates",
        ),
    )
    op.create_index(
        "ix_budget_periods_user_start", "budget_periods", ["user_id", "start_date"]
    )
    op.create_index(
        "uq_budget_period_user_active",
        "budget_periods",
        ["user_id"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "investments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("symbol", sa.String(length=20), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("shares_acquired", sa.Numeric(18, 6), nullable=False),
        sa.Column("purchased_on", sa.Date(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_investment_amount_positive"),
    )
    op.create_index("ix_investments_user", "investments", ["user_id"])


def downgrade():
    op.drop_index("ix_investments_user", table_name="investments")
    op.drop_table("investments")
    op.drop_index("uq_budget_period_user_active", table_name="budget_periods")
    op.drop_index("ix_budget_periods_user_start", table_name="budget_periods")
    op.drop_table("budget_periods")
    op.drop_index("ix_budgets_group", table_name="budgets")
    op.drop_index("ix_budgets_user", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_index("ix_transactions_group_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_recurring_series_user", table_name="recurring_series")
    op.drop_table("recurring_series")
    op.drop_table("categories")
    op.drop_table("account_users")
    op.drop_index("ix_users_group", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_accounts_group", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("groups")
