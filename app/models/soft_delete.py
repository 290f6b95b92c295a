"""
Soft Delete Mixin: status-flip deactivation.

Deployed hierarchy rows (organization modules, tenant tabs, deployed
reports) are referenced by append-only deployment log entries, so they are
never physically removed. Removal flips ``is_active`` and stamps
``deactivated_at``.

Usage:
    class MyModel(SoftDeleteMixin, db.Model):
        ...

    obj.deactivate()
    db.session.commit()

    MyModel.query_active().all()
"""

from datetime import datetime, timezone

from app.models import db


class SoftDeleteMixin:
    """Mixin that adds is_active / deactivated_at to any SQLAlchemy model."""

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None)

    def deactivate(self):
        """Mark this record as removed."""
        self.is_active = False
        self.deactivated_at = datetime.now(timezone.utc)

    def reactivate(self):
        self.is_active = True
        self.deactivated_at = None

    @property
    def is_deleted(self):
        return not self.is_active

    @classmethod
    def query_active(cls):
        """Return a query that excludes deactivated records."""
        return cls.query.filter(cls.is_active.is_(True))

    @classmethod
    def query_deleted(cls):
        """Return only deactivated records."""
        return cls.query.filter(cls.is_active.is_(False))
