"""
Beta Testing Program Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for irreversible and
      publisher-driven lifecycle events.
"""

import json
from datetime import datetime, timezone

from betaprogram.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"title", "task", "feedback"}

AUDIT_ACTIONS = {
    # Title lifecycle
    "title.open_testing",
    "title.promote",
    # Task catalog
    "task.create",
    "task.update",
    "task.delete",
    # Feedback triage
    "feedback.set_status",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every irreversible engine event.

    One row per action.  ``diff_json`` carries the old→new snapshot or,
    for cascading deletes, what was removed.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_title", "title_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    title_id = db.Column(
        db.Integer,
        db.ForeignKey("titles.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(db.String(30), nullable=False, comment="title | task | feedback")
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(db.String(60), nullable=False, comment="task.delete | title.promote | …")
    actor = db.Column(db.String(150), nullable=False, default="system")

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title_id": self.title_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    title_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    if entity_type not in AUDIT_ENTITY_TYPES or action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit event {entity_type}/{action}")
    log = AuditLog(
        title_id=title_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
