"""
Beta Testing Program Engine
Notification collaborator.

Engine services announce join, new-task, feedback-status and promotion
events through ``notify_*`` helpers after their own commit. Delivery is
best-effort: a failing notifier is logged and never rolls back the
engine's state transition.

The default ``InAppNotifier`` stores one Notification row per recipient
through ``NotificationService``.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from betaprogram.models import db
from betaprogram.models.beta import Enrollment
from betaprogram.models.notification import Notification

logger = logging.getLogger(__name__)

EXTENSION_KEY = "beta_notifier"


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def broadcast(*, subject, message="", category="system", severity="info",
                  title_id=None, entity_type="", entity_id=None, recipients=()):
        """
        Store one notification per recipient and commit.

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for r in recipients:
            notif = Notification(
                title_id=title_id,
                recipient=r,
                subject=subject,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query.filter_by(recipient=recipient)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient):
        """Return count of unread notifications."""
        return Notification.query.filter_by(recipient=recipient, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient):
        """Mark a single notification as read. Returns None if not the recipient's."""
        notif = db.session.get(Notification, notification_id)
        if not notif or notif.recipient != recipient:
            return None
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient):
        """Mark all notifications for a recipient as read."""
        now = datetime.now(timezone.utc)
        count = (
            Notification.query.filter_by(recipient=recipient, is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count


# ── Notifier collaborator ────────────────────────────────────────────────────


class Notifier(ABC):
    """Interface of the notification delivery channel."""

    @abstractmethod
    def send(self, *, recipients, subject, message, category, title_id=None,
             entity_type="", entity_id=None, severity="info"):
        """Deliver one event to the given recipients. May raise."""


class InAppNotifier(Notifier):
    """Default channel: in-app notification rows."""

    def send(self, *, recipients, subject, message, category, title_id=None,
             entity_type="", entity_id=None, severity="info"):
        NotificationService.broadcast(
            subject=subject,
            message=message,
            category=category,
            severity=severity,
            title_id=title_id,
            entity_type=entity_type,
            entity_id=entity_id,
            recipients=recipients,
        )


def init_notifier(app) -> None:
    app.extensions[EXTENSION_KEY] = InAppNotifier()


def get_notifier() -> Notifier:
    return current_app.extensions[EXTENSION_KEY]


def _deliver(**kwargs):
    """Best-effort delivery; failures are logged and rolled back locally."""
    recipients = [r for r in kwargs.get("recipients", ()) if r]
    if not recipients:
        return False
    kwargs["recipients"] = recipients
    try:
        get_notifier().send(**kwargs)
    except Exception:
        db.session.rollback()
        logger.exception(
            "Notification delivery failed category=%s title_id=%s",
            kwargs.get("category"), kwargs.get("title_id"),
            extra={"title_id": kwargs.get("title_id"), "event_type": "notify_failed"},
        )
        return False
    return True


def _active_tester_ids(title_id):
    return db.session.execute(
        select(Enrollment.tester_id).where(
            Enrollment.title_id == title_id, Enrollment.is_active.is_(True),
        )
    ).scalars().all()


# ── Engine event helpers ─────────────────────────────────────────────────────


def notify_tester_joined(title, tester_id):
    """Tell the publisher a tester joined their title."""
    return _deliver(
        recipients=[title.publisher_id],
        subject=f"New tester joined {title.name}",
        message=f"Tester {tester_id} joined the testing program.",
        category="enrollment",
        title_id=title.id,
        entity_type="title",
        entity_id=title.id,
    )


def notify_new_task(title, task):
    """Tell every active tester about a newly published task."""
    return _deliver(
        recipients=_active_tester_ids(title.id),
        subject=f"New task for {title.name}: {task.title}",
        message=f"Earn {task.xp_reward} XP and {task.points_reward} points.",
        category="task",
        title_id=title.id,
        entity_type="task",
        entity_id=task.id,
    )


def notify_feedback_status(feedback, old_status):
    """Tell the submitting tester their feedback moved."""
    return _deliver(
        recipients=[feedback.tester_id],
        subject=f"Feedback '{feedback.title}' is now {feedback.status}",
        message=f"Status changed from {old_status} to {feedback.status}.",
        category="feedback",
        severity="success" if feedback.status == "RESOLVED" else "info",
        title_id=feedback.title_id,
        entity_type="feedback",
        entity_id=feedback.id,
    )


def notify_title_promoted(title):
    """Tell every active tester the title left testing."""
    return _deliver(
        recipients=_active_tester_ids(title.id),
        subject=f"{title.name} has been released",
        message="Thank you for testing. The title is now generally available.",
        category="promotion",
        severity="success",
        title_id=title.id,
        entity_type="title",
        entity_id=title.id,
    )
