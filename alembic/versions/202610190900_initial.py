"""initial schema: categories, transactions, budgets, goals

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

transaction_type = sa.Enum("income", "expense", name="transactiontype")
goal_type = sa.Enum("saving", "debt", name="goaltype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False, server_default=""),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_created", "transactions", ["user_id", "created_at"]
    )
    op.create_index(
        "ix_transactions_user_type_created",
        "transactions",
        ["user_id", "type", "created_at"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "category", name="uq_budget_user_category"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_non_negative"),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", goal_type, nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("deadline", sa.Date(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
        sa.CheckConstraint(
            "current_amount_cents >= 0", name="ck_goal_current_non_negative"
        ),
    )
    op.create_index("ix_goals_user_deadline", "goals", ["user_id", "deadline"])


def downgrade() -> None:
    op.drop_index("ix_goals_user_deadline", table_name="goals")
    op.drop_table("goals")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_type_created", table_name="transactions")
    op.drop_index("ix_transactions_user_created", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
