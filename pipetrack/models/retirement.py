"""
Retirement Mixin

Adds `retired_at` / `retire_reason` columns and query helpers.  Components
and drawings are never physically deleted: a retired row keeps its id, its
milestone ledger and its place in audit history, but drops out of identity
uniqueness checks and progress rollups.

Usage:
    class Drawing(RetirementMixin, db.Model):
        ...

    drawing.retire("merged into DWG-100")
    db.session.commit()

    Drawing.query_active().filter_by(project_id=pid).all()
"""

from datetime import datetime, timezone

from pipetrack.models import db


class RetirementMixin:
    """Mixin that adds soft retirement to a SQLAlchemy model."""

    retired_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)
    retire_reason = db.Column(db.String(200), nullable=True)

    def retire(self, reason=None):
        """Mark this record as retired."""
        self.retired_at = datetime.now(timezone.utc)
        self.retire_reason = reason

    def restore(self):
        """Bring a retired record back into the active set."""
        self.retired_at = None
        self.retire_reason = None

    @property
    def is_retired(self):
        return self.retired_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes retired records."""
        return cls.query.filter(cls.retired_at.is_(None))

    @classmethod
    def query_retired(cls):
        """Return only retired records."""
        return cls.query.filter(cls.retired_at.isnot(None))
