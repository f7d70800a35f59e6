"""
Beta Testing Program Engine
Title domain model.

Models:
    - Title: the creative work under test, owned by a publisher identity.

Lifecycle states (one-way, RELEASED is terminal):
    DRAFT → TESTING → RELEASED
"""

from datetime import datetime, timezone

from betaprogram.models import db


# ── Constants ────────────────────────────────────────────────────────────────

RELEASE_DRAFT = "DRAFT"
RELEASE_TESTING = "TESTING"
RELEASE_RELEASED = "RELEASED"


class Title(db.Model):
    """
    A title referenced by the testing program.

    Only ``release_state`` is owned by the engine; catalog visibility
    derived from it belongs to the external catalog.
    """

    __tablename__ = "titles"

    id = db.Column(db.Integer, primary_key=True)
    publisher_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    release_state = db.Column(
        db.String(20), nullable=False, default=RELEASE_DRAFT,
        comment="DRAFT | TESTING | RELEASED",
    )
    testing_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    @property
    def in_testing(self):
        return self.release_state == RELEASE_TESTING

    def to_dict(self):
        return {
            "id": self.id,
            "publisher_id": self.publisher_id,
            "name": self.name,
            "release_state": self.release_state,
            "testing_started_at": self.testing_started_at.isoformat() if self.testing_started_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Title {self.id}: {self.name[:40]} [{self.release_state}]>"
