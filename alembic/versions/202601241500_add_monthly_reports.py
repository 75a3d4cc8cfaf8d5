"""add monthly reports and user summaries

Revision ID: 202601241500
Revises: 202601101200
Create Date: 2026-01-24 15:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601241500"
down_revision = "202601101200"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "monthly_reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "total_spent_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("top_category", sa.String(length=100)),
        sa.Column("overbudget_categories", sa.JSON()),
        sa.Column("category_breakdown", sa.JSON()),
        sa.Column("payment_method_stats", sa.JSON()),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("user_id", "year", "month", name="uq_report_user_month"),
    )

    op.create_table(
        "user_summaries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "total_lifetime_spent_cents",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column("most_used_category", sa.String(length=100)),
        sa.Column("most_used_payment_method", sa.String(length=100)),
        sa.Column(
            "last_updated", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    )


def downgrade():
    op.drop_table("user_summaries")
    op.drop_table("monthly_reports")
