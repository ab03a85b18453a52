"""Create trail tables

Badges, templates, per-member trails with their own stage copies, stage
progress, badge awards (one per trail + badge) and the admin audit log.

Revision ID: 5c1e7a30b9d2
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "5c1e7a30b9d2"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "trail_badges",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("icon", sa.String(50), nullable=False, server_default="award"),
        sa.Column("color", sa.String(7), nullable=False, server_default="#1E40AF"),
        sa.Column("badge_type", sa.String(50), nullable=False, server_default="completion"),
        sa.Column("coins_reward", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("life_area", sa.String(100), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("coins_reward >= 0", name="ck_trail_badges_coins_non_negative"),
    )
    op.create_index("ix_trail_badges_company", "trail_badges", ["company_id"])

    op.create_table(
        "trail_templates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("life_area", sa.String(100), nullable=True),
        sa.Column("cover_url", sa.String(500), nullable=True),
        sa.Column("access_criteria", postgresql.JSONB(), nullable=True),
        sa.Column("prerequisite_ids", postgresql.JSONB(), nullable=True),
        sa.Column(
            "completion_badge_id", sa.Integer(),
            sa.ForeignKey("trail_badges.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("auto_complete", sa.Boolean(), server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("is_pinned", sa.Boolean(), server_default=sa.false()),
        sa.Column("pinned_order", sa.Integer(), nullable=True),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_trail_templates_company_order", "trail_templates", ["company_id", "order_index"]
    )

    op.create_table(
        "trails",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "template_id", sa.Integer(), sa.ForeignKey("trail_templates.id"), nullable=True
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("life_area", sa.String(100), nullable=True),
        sa.Column("auto_complete", sa.Boolean(), server_default=sa.true()),
        sa.Column(
            "completion_badge_id", sa.Integer(),
            sa.ForeignKey("trail_badges.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "template_id", name="uq_trails_user_template"),
        sa.CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)",
            name="ck_trails_completed_at_matches_status",
        ),
    )
    op.create_index("ix_trails_user_status", "trails", ["user_id", "status"])
    op.create_index("ix_trails_company", "trails", ["company_id"])

    op.create_table(
        "trail_stages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column(
            "template_id", sa.Integer(),
            sa.ForeignKey("trail_templates.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column(
            "trail_id", sa.Integer(),
            sa.ForeignKey("trails.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("guidance_text", sa.Text(), nullable=True),
        sa.Column("is_required", sa.Boolean(), server_default=sa.true()),
        sa.Column("target_value", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "(template_id IS NULL) <> (trail_id IS NULL)",
            name="ck_trail_stages_single_parent",
        ),
        sa.CheckConstraint("target_value >= 1", name="ck_trail_stages_target_positive"),
        sa.UniqueConstraint(
            "template_id", "order_index", name="uq_trail_stages_template_order"
        ),
        sa.UniqueConstraint("trail_id", "order_index", name="uq_trail_stages_trail_order"),
    )

    op.create_table(
        "stage_progress",
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
        sa.Column("progress_value", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target_value", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("trail_id", "stage_id", name="uq_stage_progress_trail_stage"),
        sa.CheckConstraint(
            "NOT is_completed OR (completed_at IS NOT NULL AND progress_value >= target_value)",
            name="ck_stage_progress_completed_consistent",
        ),
    )

    op.create_table(
        "trail_badge_awards",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "trail_id", sa.Integer(),
            sa.ForeignKey("trails.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "badge_id", sa.Integer(),
            sa.ForeignKey("trail_badges.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("coins_reward", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credit_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("credit_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credit_error", sa.Text(), nullable=True),
        sa.Column("credited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("earned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("trail_id", "badge_id", name="uq_badge_awards_trail_badge"),
    )
    op.create_index(
        "ix_badge_awards_user", "trail_badge_awards", ["user_id", "earned_at"]
    )
    op.create_index(
        "ix_badge_awards_credit_status", "trail_badge_awards", ["credit_status"]
    )

    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"]
    )


def downgrade() -> None:
    for table in (
        "admin_log",
        "trail_badge_awards",
        "stage_progress",
        "trail_stages",
        "trails",
        "trail_templates",
        "trail_badges",
    ):
        op.drop_table(table)
