"""beta_program_schema

Creates the beta testing program tables:
  - titles                 creative works with their release state
  - beta_agreements        confidentiality acceptance, unique per (tester, title)
  - beta_enrollments       tester membership, unique per (tester, title)
  - beta_tasks             publisher-authored tasks
  - beta_task_completions  one completion per (task, tester)
  - beta_feedback          bug / suggestion / general feedback
  - notifications          in-app notification channel
  - audit_logs             append-only audit trail

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-18 09:12:44.501233
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1b2c3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Title ─────────────────────────────────────────────────────────────
    if "titles" not in existing:
        op.create_table(
            "titles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("publisher_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column(
                "release_state", sa.String(length=20), nullable=False,
                server_default="DRAFT", comment="DRAFT | TESTING | RELEASED",
            ),
            _ts("testing_started_at"),
            _ts("released_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_titles_publisher_id", "titles", ["publisher_id"])

    # ── AgreementRecord ───────────────────────────────────────────────────
    if "beta_agreements" not in existing:
        op.create_table(
            "beta_agreements",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tester_id", sa.String(length=64), nullable=False),
            sa.Column("title_id", sa.Integer(), nullable=False),
            sa.Column("version", sa.String(length=20), nullable=False, server_default="1.0"),
            sa.Column("origin", sa.String(length=100), nullable=True,
                      comment="Origin marker supplied by the caller"),
            sa.Column("evidence_json", sa.Text(), nullable=True,
                      comment="Caller evidence stored verbatim"),
            _ts("accepted_at", nullable=False),
            sa.ForeignKeyConstraint(["title_id"], ["titles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tester_id", "title_id", name="uq_beta_agreement_tester_title"),
        )
        op.create_index("ix_beta_agreements_tester_id", "beta_agreements", ["tester_id"])
        op.create_index("ix_beta_agreements_title_id", "beta_agreements", ["title_id"])

    # ── Enrollment ────────────────────────────────────────────────────────
    if "beta_enrollments" not in existing:
        op.create_table(
            "beta_enrollments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tester_id", sa.String(length=64), nullable=False),
            sa.Column("title_id", sa.Integer(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("joined_at", nullable=False),
            _ts("deactivated_at"),
            _ts("last_active_at"),
            sa.Column("bugs_reported", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("tasks_completed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("time_spent_seconds", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["title_id"], ["titles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tester_id", "title_id", name="uq_beta_enrollment_tester_title"),
        )
        op.create_index("ix_beta_enrollments_tester_id", "beta_enrollments", ["tester_id"])
        op.create_index("ix_beta_enrollments_title_id", "beta_enrollments", ["title_id"])
        op.create_index("ix_beta_enrollments_title_active", "beta_enrollments", ["title_id", "is_active"])

    # ── Task ──────────────────────────────────────────────────────────────
    if "beta_tasks" not in existing:
        op.create_table(
            "beta_tasks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("kind", sa.String(length=20), nullable=False,
                      comment="BUG_REPORT | SUGGESTION | PLAY_LEVEL | TEST_FEATURE"),
            sa.Column("xp_reward", sa.Integer(), nullable=False, server_default="50"),
            sa.Column("points_reward", sa.Integer(), nullable=False, server_default="10"),
            sa.Column("is_optional", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["title_id"], ["titles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_beta_tasks_title_id", "beta_tasks", ["title_id"])
        op.create_index("ix_beta_tasks_title_order", "beta_tasks", ["title_id", "display_order"])

    # ── TaskCompletion ────────────────────────────────────────────────────
    if "beta_task_completions" not in existing:
        op.create_table(
            "beta_task_completions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("task_id", sa.Integer(), nullable=False),
            sa.Column("tester_id", sa.String(length=64), nullable=False),
            sa.Column("title_id", sa.Integer(), nullable=False),
            sa.Column("xp_awarded", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("points_awarded", sa.Integer(), nullable=False, server_default="0"),
            _ts("completed_at", nullable=False),
            _ts("reward_dispatched_at"),
            sa.ForeignKeyConstraint(["task_id"], ["beta_tasks.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["title_id"], ["titles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("task_id", "tester_id", name="uq_beta_completion_task_tester"),
        )
        op.create_index("ix_beta_task_completions_task_id", "beta_task_completions", ["task_id"])
        op.create_index("ix_beta_task_completions_title_id", "beta_task_completions", ["title_id"])
        op.create_index("ix_beta_completions_tester", "beta_task_completions", ["tester_id"])

    # ── FeedbackItem ──────────────────────────────────────────────────────
    if "beta_feedback" not in existing:
        op.create_table(
            "beta_feedback",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title_id", sa.Integer(), nullable=False),
            sa.Column("tester_id", sa.String(length=64), nullable=False),
            sa.Column("kind", sa.String(length=20), nullable=False, comment="BUG | SUGGESTION | GENERAL"),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("severity", sa.String(length=20), nullable=True,
                      comment="CRITICAL | HIGH | MEDIUM | LOW (BUG only)"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="NEW"),
            sa.Column("attachment_ref", sa.String(length=500), nullable=True),
            sa.Column("device_info", sa.String(length=500), nullable=True),
            _ts("created_at", nullable=False),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["title_id"], ["titles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_beta_feedback_title_id", "beta_feedback", ["title_id"])
        op.create_index("ix_beta_feedback_title_status", "beta_feedback", ["title_id", "status"])
        op.create_index("ix_beta_feedback_tester", "beta_feedback", ["tester_id"])

    # ── Notification ──────────────────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title_id", sa.Integer(), nullable=True),
            sa.Column("recipient", sa.String(length=64), nullable=False),
            sa.Column("subject", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            _ts("read_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["title_id"], ["titles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])
        op.create_index("ix_notifications_title_id", "notifications", ["title_id"])

    # ── AuditLog ──────────────────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            _ts("timestamp", nullable=False),
            sa.ForeignKeyConstraint(["title_id"], ["titles.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_title", "audit_logs", ["title_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # Children before parents
    for table in (
        "audit_logs",
        "notifications",
        "beta_feedback",
        "beta_task_completions",
        "beta_tasks",
        "beta_enrollments",
        "beta_agreements",
        "titles",
    ):
        if table in existing:
            op.drop_table(table)
