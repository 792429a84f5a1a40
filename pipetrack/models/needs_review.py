"""
Needs-review queue model.

Models:
    - ReviewItem: a detected anomaly that needs a human decision.

Types:
    out_of_sequence          milestone completed before its prerequisites
    rollback                 a completed milestone was rolled back
    quantity_delta           grouped-quantity count changed on re-import
    parent_document_change   a component moved to a different drawing
    similar_parent_document  a new drawing number looks like an existing one
    unverified_operator      an unverified operator keeps appearing on completions

Lifecycle:
    pending → resolved | ignored     (both terminal)

Payload shapes (JSON):
    quantity_delta           {component_type, group_key, old_count, new_count, delta, applied, sources: [...]}
    similar_parent_document  {drawing_id, raw_value, normalized_value, variant_of_existing,
                              matches: [{drawing_id, normalized_value, score}]}
    parent_document_change   {old_drawing_id, new_drawing_id, old_drawing_no, new_drawing_no}
    out_of_sequence          {milestone, missing_prerequisites: [...], event_id}
    rollback                 {milestone, previous_value, reason, event_id}
    unverified_operator      {operator_id, stencil, uses}
"""

from datetime import datetime, timezone

from pipetrack.models import db

REVIEW_TYPES = {
    "out_of_sequence",
    "rollback",
    "quantity_delta",
    "parent_document_change",
    "similar_parent_document",
    "unverified_operator",
}

REVIEW_STATUSES = {"pending", "resolved", "ignored"}

REVIEW_TRANSITIONS = {
    "pending":  ["resolved", "ignored"],
    "resolved": [],
    "ignored":  [],
}


def validate_review_transition(old_status, new_status):
    """Return True if ReviewItem status transition is valid."""
    return new_status in REVIEW_TRANSITIONS.get(old_status, [])


class ReviewItem(db.Model):
    __tablename__ = "needs_review"
    __table_args__ = (
        db.Index("idx_needs_review_project_status", "project_id", "status"),
        db.Index("idx_needs_review_coalesce", "project_id", "type", "group_token", "status"),
        db.Index("idx_needs_review_component", "component_id"),
        db.CheckConstraint(
            "status IN ('pending','resolved','ignored')",
            name="ck_needs_review_status",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    component_id = db.Column(
        db.Integer, db.ForeignKey("components.id", ondelete="SET NULL"), nullable=True,
    )
    drawing_id = db.Column(
        db.Integer, db.ForeignKey("drawings.id", ondelete="SET NULL"), nullable=True,
    )
    type = db.Column(db.String(40), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    group_token = db.Column(
        db.String(400), nullable=True,
        comment="Coalescing key: grouped identity for quantity deltas, raw drawing for similarity",
    )
    description = db.Column(db.String(500), default="")
    payload = db.Column(db.JSON, nullable=False, default=dict)

    created_by = db.Column(db.String(64), nullable=True)
    resolved_by = db.Column(db.String(64), nullable=True)
    resolution_note = db.Column(db.Text, nullable=True)
    resolution = db.Column(db.JSON, nullable=True, comment="Handler input + outcome")

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "component_id": self.component_id,
            "drawing_id": self.drawing_id,
            "type": self.type,
            "status": self.status,
            "description": self.description,
            "payload": self.payload or {},
            "created_by": self.created_by,
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "resolution": self.resolution,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    def __repr__(self):
        return f"<ReviewItem {self.id}: {self.type} [{self.status}]>"
