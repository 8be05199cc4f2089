"""users, profiles, categories and transactions

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_TYPE = sa.Enum("INCOME", "EXPENSE", name="transactiontype")
PAYMENT_METHOD = sa.Enum(
    "CREDIT_CARD", "DEBIT_CARD", "CASH", "PIX", "OTHER", name="paymentmethod"
)


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "profiles",
        sa.Column(
            "user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True
        ),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column(
            "monthly_salary_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("financial_goals", sa.Text(), nullable=False, server_default=""),
        sa.Column("bio", sa.Text(), nullable=False, server_default=""),
        sa.Column("avatar", sa.Text()),
        sa.Column("credit_card_closing_day", sa.Integer()),
        sa.Column("credit_card_due_day", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "credit_card_closing_day IS NULL OR credit_card_closing_day BETWEEN 1 AND 31",
            name="ck_profile_closing_day",
        ),
        sa.CheckConstraint(
            "credit_card_due_day IS NULL OR credit_card_due_day BETWEEN 1 AND 31",
            name="ck_profile_due_day",
        ),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("color", sa.String(length=7), nullable=False, server_default="#94a3b8"),
        sa.Column("budget_limit_cents", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
        sa.CheckConstraint(
            "budget_limit_cents IS NULL OR budget_limit_cents >= 0",
            name="ck_category_limit_positive",
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("payment_method", PAYMENT_METHOD, nullable=False),
        sa.Column("installment_current", sa.Integer()),
        sa.Column("installment_total", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_transactions_amount_positive"
        ),
        sa.CheckConstraint(
            "(installment_current IS NULL AND installment_total IS NULL) OR "
            "(installment_current >= 1 AND installment_current <= installment_total)",
            name="ck_transactions_installments",
        ),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "date"]
    )
    op.create_index(
        "ix_transactions_user_category", "transactions", ["user_id", "category"]
    )


def downgrade():
    op.drop_index("ix_transactions_user_category", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("profiles")
    op.drop_table("users")
    TRANSACTION_TYPE.drop(op.get_bind(), checkfirst=True)
    PAYMENT_METHOD.drop(op.get_bind(), checkfirst=True)
