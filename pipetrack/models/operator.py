"""
Field operator registry (welders and other certified crafts).

An operator is identified on site by a short stencil (e.g. "K-07").  New
stencils start ``unverified``; completions that require an operator still
accept them, but once an unverified stencil has been used
OPERATOR_VERIFY_THRESHOLD times the review queue asks someone to verify it.
"""

import re
from datetime import datetime, timezone

from pipetrack.models import db

OPERATOR_STATUSES = {"unverified", "verified"}

STENCIL_PATTERN = re.compile(r"^[A-Z0-9-]{2,12}$")


class Operator(db.Model):
    __tablename__ = "operators"
    __table_args__ = (
        db.UniqueConstraint("project_id", "stencil_norm", name="uq_operators_project_stencil"),
        db.CheckConstraint(
            "status IN ('unverified','verified')",
            name="ck_operator_status",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name = db.Column(db.String(120), nullable=False)
    stencil = db.Column(db.String(20), nullable=False)
    stencil_norm = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="unverified")
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_verified(self):
        return self.status == "verified"

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "stencil": self.stencil,
            "stencil_norm": self.stencil_norm,
            "status": self.status,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "verified_by": self.verified_by,
        }

    def __repr__(self):
        return f"<Operator {self.id}: {self.stencil_norm} [{self.status}]>"
