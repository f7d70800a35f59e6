"""
Beta Testing Program Engine
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking. Backs the
      default notification collaborator; one row per recipient per event.
"""

from datetime import datetime, timezone

from betaprogram.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"enrollment", "task", "feedback", "promotion", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    """In-app notification entity."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    title_id = db.Column(
        db.Integer, db.ForeignKey("titles.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    recipient = db.Column(db.String(64), nullable=False, index=True, comment="User id of the recipient")
    subject = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="system")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="title/task/feedback/enrollment")
    entity_id = db.Column(db.Integer, nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "title_id": self.title_id,
            "recipient": self.recipient,
            "subject": self.subject,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.subject[:40]}>"
