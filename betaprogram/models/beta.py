"""
Beta Testing Program Engine
Beta program domain models.

Models:
    - AgreementRecord:  confidentiality acceptance per (tester, title); append-only
    - Enrollment:       tester membership on a title with lifetime counters
    - Task:             publisher-authored assignment with a reward
    - TaskCompletion:   one-shot record that a tester finished a task (reward trigger)
    - FeedbackItem:     bug / suggestion / general note submitted by a tester

Architecture:
    Title ──1:N──▶ AgreementRecord
    Title ──1:N──▶ Enrollment
    Title ──1:N──▶ Task ──1:N──▶ TaskCompletion
    Title ──1:N──▶ FeedbackItem

Uniqueness:
    (tester_id, title_id)  on AgreementRecord and Enrollment
    (task_id, tester_id)   on TaskCompletion, the reward idempotency boundary
"""

import json
from datetime import datetime, timezone

from betaprogram.models import db


# ── Constants ────────────────────────────────────────────────────────────────

TASK_KINDS = {"BUG_REPORT", "SUGGESTION", "PLAY_LEVEL", "TEST_FEATURE"}

XP_REWARD_MIN, XP_REWARD_MAX = 0, 1000
POINTS_REWARD_MIN, POINTS_REWARD_MAX = 0, 100
DEFAULT_XP_REWARD = 50
DEFAULT_POINTS_REWARD = 10

FEEDBACK_KINDS = {"BUG", "SUGGESTION", "GENERAL"}
FEEDBACK_SEVERITIES = {"CRITICAL", "HIGH", "MEDIUM", "LOW"}
FEEDBACK_STATUSES = {"NEW", "IN_PROGRESS", "RESOLVED", "CLOSED"}

# Feedback kind → task kind it satisfies when auto-completion is enabled
FEEDBACK_TASK_KIND = {
    "BUG": "BUG_REPORT",
    "SUGGESTION": "SUGGESTION",
}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# Agreement Ledger
# ═════════════════════════════════════════════════════════════════════════════


class AgreementRecord(db.Model):
    """
    Confidentiality agreement acceptance.

    Immutable once written and never deleted: the row is the sole proof
    of consent and survives enrollment deactivation.
    """

    __tablename__ = "beta_agreements"
    __table_args__ = (
        db.UniqueConstraint("tester_id", "title_id", name="uq_beta_agreement_tester_title"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tester_id = db.Column(db.String(64), nullable=False, index=True)
    title_id = db.Column(
        db.Integer, db.ForeignKey("titles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    version = db.Column(db.String(20), nullable=False, default="1.0")
    origin = db.Column(db.String(100), default="", comment="Origin marker supplied by the caller")
    evidence_json = db.Column(db.Text, default="{}", comment="Caller evidence stored verbatim")
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def evidence(self) -> dict:
        try:
            return json.loads(self.evidence_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "tester_id": self.tester_id,
            "title_id": self.title_id,
            "version": self.version,
            "origin": self.origin,
            "evidence": self.evidence,
            "accepted_at": _iso(self.accepted_at),
        }

    def __repr__(self):
        return f"<AgreementRecord {self.tester_id}@{self.title_id} v{self.version}>"


# ═════════════════════════════════════════════════════════════════════════════
# Enrollment Registry
# ═════════════════════════════════════════════════════════════════════════════


class Enrollment(db.Model):
    """
    Tester membership on a title.

    Soft-deactivated, never deleted. Counters hold lifetime contribution
    and are only changed through SQL increments issued by the services.
    """

    __tablename__ = "beta_enrollments"
    __table_args__ = (
        db.UniqueConstraint("tester_id", "title_id", name="uq_beta_enrollment_tester_title"),
        db.Index("ix_beta_enrollments_title_active", "title_id", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tester_id = db.Column(db.String(64), nullable=False, index=True)
    title_id = db.Column(
        db.Integer, db.ForeignKey("titles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    joined_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_active_at = db.Column(db.DateTime(timezone=True), nullable=True)

    bugs_reported = db.Column(db.Integer, nullable=False, default=0)
    tasks_completed = db.Column(db.Integer, nullable=False, default=0)
    time_spent_seconds = db.Column(db.Integer, nullable=False, default=0)

    title = db.relationship("Title", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "tester_id": self.tester_id,
            "title_id": self.title_id,
            "is_active": self.is_active,
            "joined_at": _iso(self.joined_at),
            "deactivated_at": _iso(self.deactivated_at),
            "last_active_at": _iso(self.last_active_at),
            "bugs_reported": self.bugs_reported,
            "tasks_completed": self.tasks_completed,
            "time_spent_seconds": self.time_spent_seconds,
        }

    def __repr__(self):
        state = "active" if self.is_active else "inactive"
        return f"<Enrollment {self.tester_id}@{self.title_id} {state}>"


# ═════════════════════════════════════════════════════════════════════════════
# Task Catalog & Completion Tracker
# ═════════════════════════════════════════════════════════════════════════════


class Task(db.Model):
    """Publisher-defined assignment with an XP / points reward."""

    __tablename__ = "beta_tasks"
    __table_args__ = (
        db.Index("ix_beta_tasks_title_order", "title_id", "display_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    title_id = db.Column(
        db.Integer, db.ForeignKey("titles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    kind = db.Column(db.String(20), nullable=False, comment="BUG_REPORT | SUGGESTION | PLAY_LEVEL | TEST_FEATURE")
    xp_reward = db.Column(db.Integer, nullable=False, default=DEFAULT_XP_REWARD)
    points_reward = db.Column(db.Integer, nullable=False, default=DEFAULT_POINTS_REWARD)
    is_optional = db.Column(db.Boolean, nullable=False, default=False)
    display_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    completions = db.relationship(
        "TaskCompletion", back_populates="task",
        lazy="dynamic", cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "title_id": self.title_id,
            "title": self.title,
            "description": self.description,
            "kind": self.kind,
            "xp_reward": self.xp_reward,
            "points_reward": self.points_reward,
            "is_optional": self.is_optional,
            "display_order": self.display_order,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Task {self.id}: {self.title[:40]} ({self.kind})>"


class TaskCompletion(db.Model):
    """
    One-shot completion of a task by a tester.

    The reward snapshot is copied from the task at completion time so the
    reward hand-off can be replayed without re-deriving engine state.
    ``reward_dispatched_at`` stays NULL until the reward ledger accepted it.
    """

    __tablename__ = "beta_task_completions"
    __table_args__ = (
        db.UniqueConstraint("task_id", "tester_id", name="uq_beta_completion_task_tester"),
        db.Index("ix_beta_completions_tester", "tester_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("beta_tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    tester_id = db.Column(db.String(64), nullable=False)
    title_id = db.Column(
        db.Integer, db.ForeignKey("titles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    xp_awarded = db.Column(db.Integer, nullable=False, default=0)
    points_awarded = db.Column(db.Integer, nullable=False, default=0)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    reward_dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    task = db.relationship("Task", back_populates="completions")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "tester_id": self.tester_id,
            "title_id": self.title_id,
            "xp_awarded": self.xp_awarded,
            "points_awarded": self.points_awarded,
            "completed_at": _iso(self.completed_at),
            "reward_dispatched": self.reward_dispatched_at is not None,
        }

    def __repr__(self):
        return f"<TaskCompletion task={self.task_id} tester={self.tester_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# Feedback Intake & Triage
# ═════════════════════════════════════════════════════════════════════════════


class FeedbackItem(db.Model):
    """
    Structured tester feedback.

    Content is immutable after creation; only ``status`` moves, and only
    by the title's publisher. Severity is set for BUG items only.
    """

    __tablename__ = "beta_feedback"
    __table_args__ = (
        db.Index("ix_beta_feedback_title_status", "title_id", "status"),
        db.Index("ix_beta_feedback_tester", "tester_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    title_id = db.Column(
        db.Integer, db.ForeignKey("titles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    tester_id = db.Column(db.String(64), nullable=False)
    kind = db.Column(db.String(20), nullable=False, comment="BUG | SUGGESTION | GENERAL")
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    severity = db.Column(db.String(20), nullable=True, comment="CRITICAL | HIGH | MEDIUM | LOW (BUG only)")
    status = db.Column(db.String(20), nullable=False, default="NEW")
    attachment_ref = db.Column(db.String(500), nullable=True, comment="Opaque storage reference")
    device_info = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "title_id": self.title_id,
            "tester_id": self.tester_id,
            "kind": self.kind,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "status": self.status,
            "attachment_ref": self.attachment_ref,
            "device_info": self.device_info,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<FeedbackItem {self.id}: {self.kind} {self.title[:40]} [{self.status}]>"
