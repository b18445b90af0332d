"""credit_usage

Revision ID: 7c1e4a92d3f0
Revises:
Create Date: 2026-10-17 09:12:44.318205

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "7c1e4a92d3f0"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "user_credit_usage",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("credits_used", sa.Float(), nullable=False, server_default="0.0"),
        sa.Column("credit_limit", sa.Float(), nullable=True),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "usage_turn",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("input_tokens", sa.Integer(), nullable=False),
        sa.Column("output_tokens", sa.Integer(), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=False),
        sa.Column("model_multiplier", sa.Float(), nullable=False),
        sa.Column("credits_charged", sa.Float(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default="0.0"),
        sa.Column("call_type", sa.String(), nullable=False),
        sa.Column("endpoint", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_usage_turn_user_id_created_at",
        "usage_turn",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_usage_turn_user_id_created_at", table_name="usage_turn")
    op.drop_table("usage_turn")
    op.drop_table("user_credit_usage")
