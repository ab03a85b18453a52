"""Add stage responses

Stages can ask the member for a response before they count as complete;
responses are stored one per (trail, stage).

Revision ID: 8d4b2f61c7e3
Revises: 5c1e7a30b9d2
Create Date: 2026-10-19 12:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "8d4b2f61c7e3"
down_revision = "5c1e7a30b9d2"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "trail_stages",
        sa.Column(
            "requires_response", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
    )

    op.create_table(
        "stage_responses",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column(
            "trail_id", sa.Integer(),
            sa.ForeignKey("trails.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "stage_id", sa.Integer(),
            sa.ForeignKey("trail_stages.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("response_text", sa.Text(), nullable=True),
        sa.Column("response_data", postgresql.JSONB(), server_default="{}"),
        sa.Column("file_urls", postgresql.JSONB(), server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("trail_id", "stage_id", name="uq_stage_responses_trail_stage"),
    )
    op.create_index("ix_stage_responses_user", "stage_responses", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_stage_responses_user", table_name="stage_responses")
    op.drop_table("stage_responses")
    op.drop_column("trail_stages", "requires_response")
