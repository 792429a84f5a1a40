"""
Milestone event ledger.

Models:
    - MilestoneEvent: one immutable row per milestone state change.

The ledger is APPEND-ONLY.  Updates and deletes are refused at flush time;
corrections are new events (a rollback, or an update to a lower value).
Replaying a component's events in id order reproduces its current
milestone state exactly.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from pipetrack.models import db

MILESTONE_ACTIONS = {"complete", "rollback", "update"}


class MilestoneEvent(db.Model):
    __tablename__ = "milestone_events"
    __table_args__ = (
        db.Index("idx_milestone_events_component", "component_id", "id"),
        db.Index("idx_milestone_events_project", "project_id"),
        db.Index("idx_milestone_events_operator", "operator_id", "action"),
        db.CheckConstraint(
            "action IN ('complete','rollback','update')",
            name="ck_milestone_event_action",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    component_id = db.Column(
        db.Integer, db.ForeignKey("components.id", ondelete="CASCADE"), nullable=False,
    )
    milestone_name = db.Column(db.String(60), nullable=False)
    action = db.Column(db.String(20), nullable=False, comment="complete | rollback | update")
    value = db.Column(db.JSON, nullable=True, comment="true/false for discrete, 0-100 for partial")
    previous_value = db.Column(db.JSON, nullable=True)
    actor_id = db.Column(db.String(64), nullable=True)
    operator_id = db.Column(
        db.Integer, db.ForeignKey("operators.id"), nullable=True,
        comment="Operator credited with a completion that requires one",
    )
    details = db.Column(
        "metadata", db.JSON, nullable=False, default=dict,
        comment="Free-form context: reason, operator_id, source, ...",
    )
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "component_id": self.component_id,
            "milestone_name": self.milestone_name,
            "action": self.action,
            "value": self.value,
            "previous_value": self.previous_value,
            "actor_id": self.actor_id,
            "operator_id": self.operator_id,
            "metadata": self.details or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<MilestoneEvent {self.id}: {self.action} {self.milestone_name} on {self.component_id}>"


@event.listens_for(MilestoneEvent, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError(f"milestone_events is append-only (update of id={target.id})")


@event.listens_for(MilestoneEvent, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise RuntimeError(f"milestone_events is append-only (delete of id={target.id})")
