from __future__ import annotations
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)
TS = sa.TIMESTAMP(timezone=True)

def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=True),
        sa.Column("external_reward_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "workspaces",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_workspaces_slug", "workspaces", ["slug"], unique=True)

    op.create_table(
        "workspace_memberships",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("workspace_id", UUID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=16), server_default="PARTICIPANT", nullable=False),
        sa.Column("joined_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("user_id", "workspace_id", name="uq_membership_user_workspace"),
        sa.CheckConstraint("role IN ('ADMIN','MANAGER','PARTICIPANT')", name="ck_membership_role"),
    )
    op.create_index("ix_workspace_memberships_user_id", "workspace_memberships", ["user_id"])
    op.create_index("ix_workspace_memberships_workspace_id", "workspace_memberships", ["workspace_id"])

    op.create_table(
        "challenges",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("workspace_id", UUID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("require_manager_approval", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("reward_type", sa.String(length=16), nullable=True),
        sa.Column("reward_config", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_challenges_workspace_id", "challenges", ["workspace_id"])

    op.create_table(
        "activities",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("challenge_id", UUID, sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("points_value", sa.Integer(), server_default="0", nullable=False),
    )
    op.create_index("ix_activities_challenge_id", "activities", ["challenge_id"])

    op.create_table(
        "enrollments",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("challenge_id", UUID, sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("enrolled_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("user_id", "challenge_id", name="uq_enrollment_user_challenge"),
    )
    op.create_index("ix_enrollments_challenge_id", "enrollments", ["challenge_id"])
    op.create_index("ix_enrollments_user_id", "enrollments", ["user_id"])

    op.create_table(
        "challenge_assignments",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("manager_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("challenge_id", UUID, sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("workspace_id", UUID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("assigned_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("manager_id", "challenge_id", name="uq_assignment_manager_challenge"),
    )
    op.create_index("ix_challenge_assignments_manager_id", "challenge_assignments", ["manager_id"])
    op.create_index("ix_challenge_assignments_challenge_id", "challenge_assignments", ["challenge_id"])
    op.create_index("ix_challenge_assignments_workspace_id", "challenge_assignments", ["workspace_id"])

    op.create_table(
        "submissions",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("activity_id", UUID, sa.ForeignKey("activities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("enrollment_id", UUID, sa.ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(length=24), server_default="PENDING", nullable=False),
        sa.Column("text_content", sa.Text(), nullable=True),
        sa.Column("file_urls", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("link_url", sa.Text(), nullable=True),
        sa.Column("submitted_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.Column("manager_reviewed_at", TS, nullable=True),
        sa.Column("manager_reviewed_by", UUID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("manager_notes", sa.Text(), nullable=True),
        sa.Column("reviewed_at", TS, nullable=True),
        sa.Column("reviewed_by", UUID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("points_awarded", sa.Integer(), nullable=True),
        sa.Column("reward_issued", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("reward_issuance_id", UUID, nullable=True),
        sa.CheckConstraint(
            "status IN ('PENDING','MANAGER_APPROVED','NEEDS_REVISION','APPROVED','REJECTED')",
            name="ck_submission_status",
        ),
    )
    op.create_index("ix_submissions_activity_id", "submissions", ["activity_id"])
    op.create_index("ix_submissions_user_id", "submissions", ["user_id"])
    op.create_index("ix_submissions_enrollment_id", "submissions", ["enrollment_id"])
    op.create_index("ix_submissions_status", "submissions", ["status"])

    for table, scope_col, scope_fk, ck in (
        ("workspace_points_budgets", "workspace_id", "workspaces.id", "ck_workspace_budget_allocated"),
        ("challenge_points_budgets", "challenge_id", "challenges.id", "ck_challenge_budget_allocated"),
    ):
        cols = [
            sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
            sa.Column(scope_col, UUID, sa.ForeignKey(scope_fk, ondelete="CASCADE"), nullable=False, unique=True),
        ]
        if scope_col == "challenge_id":
            cols.append(sa.Column("workspace_id", UUID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False))
        op.create_table(
            table,
            *cols,
            sa.Column("total_budget", sa.Integer(), server_default="0", nullable=False),
            sa.Column("allocated", sa.Integer(), server_default="0", nullable=False),
            sa.Column("updated_by", UUID, nullable=True),
            sa.Column("updated_at", TS, server_default=sa.text("now()"), nullable=False),
            sa.CheckConstraint("allocated >= 0 AND allocated <= total_budget", name=ck),
        )
    op.create_index("ix_challenge_points_budgets_workspace_id", "challenge_points_budgets", ["workspace_id"])

    op.create_table(
        "reward_issuances",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("workspace_id", UUID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("challenge_id", UUID, sa.ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True),
        sa.Column("submission_id", UUID, sa.ForeignKey("submissions.id", ondelete="SET NULL"), nullable=True),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("sku_id", sa.String(length=64), nullable=True),
        sa.Column("provider", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), server_default="PENDING", nullable=False),
        sa.Column("external_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("actor_user_id", UUID, nullable=True),
        sa.Column("issued_at", TS, nullable=True),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("type IN ('points','sku','monetary')", name="ck_reward_issuance_type"),
        sa.CheckConstraint("status IN ('PENDING','ISSUED','FAILED','CANCELLED')", name="ck_reward_issuance_status"),
    )
    op.create_index("ix_reward_issuances_workspace_id", "reward_issuances", ["workspace_id"])
    op.create_index("ix_reward_issuances_user_id", "reward_issuances", ["user_id"])
    op.create_index("ix_reward_issuances_challenge_id", "reward_issuances", ["challenge_id"])
    op.create_index("ix_reward_issuances_status", "reward_issuances", ["status"])
    op.create_index("ix_reward_issuances_external_transaction_id", "reward_issuances", ["external_transaction_id"])
    # At most one live (non-FAILED) issuance per submission and reward type
    op.create_index(
        "uq_reward_issuance_live_per_submission",
        "reward_issuances",
        ["submission_id", "type"],
        unique=True,
        postgresql_where=sa.text("status <> 'FAILED' AND submission_id IS NOT NULL"),
    )

    op.create_table(
        "points_balances",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("workspace_id", UUID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("total_points", sa.Integer(), server_default="0", nullable=False),
        sa.Column("available_points", sa.Integer(), server_default="0", nullable=False),
        sa.Column("updated_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("user_id", "workspace_id", name="uq_points_balance_user_workspace"),
    )
    op.create_index("ix_points_balances_user_id", "points_balances", ["user_id"])
    op.create_index("ix_points_balances_workspace_id", "points_balances", ["workspace_id"])

    op.create_table(
        "points_ledger",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("workspace_id", UUID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("challenge_id", UUID, sa.ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True),
        sa.Column("to_user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=20), nullable=False),
        sa.Column("submission_id", UUID, sa.ForeignKey("submissions.id", ondelete="SET NULL"), nullable=True),
        sa.Column("reward_issuance_id", UUID, nullable=True),
        sa.Column("actor_user_id", UUID, nullable=True),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_points_ledger_amount_positive"),
    )
    op.create_index("ix_points_ledger_workspace_id", "points_ledger", ["workspace_id"])
    op.create_index("ix_points_ledger_challenge_id", "points_ledger", ["challenge_id"])
    op.create_index("ix_points_ledger_to_user_id", "points_ledger", ["to_user_id"])
    op.create_index("ix_points_ledger_submission_id", "points_ledger", ["submission_id"])
    op.create_index("ix_points_ledger_reward_issuance_id", "points_ledger", ["reward_issuance_id"])

    op.create_table(
        "activity_events",
        sa.Column("id", UUID, primary_key=True, server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("workspace_id", UUID, sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("challenge_id", UUID, sa.ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("actor_user_id", UUID, nullable=True),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column("created_at", TS, server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_activity_events_workspace_id", "activity_events", ["workspace_id"])
    op.create_index("ix_activity_events_challenge_id", "activity_events", ["challenge_id"])
    op.create_index("ix_activity_events_type", "activity_events", ["type"])

def downgrade() -> None:
    op.drop_table("activity_events")
    op.drop_table("points_ledger")
    op.drop_table("points_balances")
    op.drop_index("uq_reward_issuance_live_per_submission", table_name="reward_issuances")
    op.drop_table("reward_issuances")
    op.drop_table("challenge_points_budgets")
    op.drop_table("workspace_points_budgets")
    op.drop_table("submissions")
    op.drop_table("challenge_assignments")
    op.drop_table("enrollments")
    op.drop_table("activities")
    op.drop_table("challenges")
    op.drop_table("workspace_memberships")
    op.drop_table("workspaces")
    op.drop_table("users")
