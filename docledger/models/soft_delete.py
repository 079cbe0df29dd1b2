"""
Soft Delete Mixin.

Adds a `deleted_at` timestamp column and select helpers. Artifacts and
change requests are never hard-deleted; drafts are marked deleted and
drop out of every active query.

Usage:
    class ChangeRequest(SoftDeleteMixin, db.Model):
        ...

    card.soft_delete()
    db.session.commit()

    db.session.execute(ChangeRequest.select_active().where(...)).scalars()
"""

from datetime import datetime, timezone

from sqlalchemy import select

from docledger.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    def restore(self):
        """Restore a soft-deleted record."""
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def select_active(cls):
        """Return a select() that excludes soft-deleted records."""
        return select(cls).where(cls.deleted_at.is_(None))
