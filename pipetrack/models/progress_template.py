"""
Progress template model + default template catalogue.

A template is an ordered list of weighted milestones for one component
type.  Templates are versioned and immutable once a component references
them: changing weights means publishing a new version, and only components
created afterwards pick it up.

milestones_config shape (JSON list):
    [{"name": "Receive", "weight": 10, "order": 1,
      "is_partial": false, "requires_operator": false}, ...]

Structural rules (weights sum to exactly 100, unique names, unique orders)
are enforced by services.progress_calculator.load_template_milestones().
"""

from datetime import datetime, timezone

from pipetrack.models import db

WORKFLOW_TYPES = {"discrete", "quantity", "hybrid"}


def _m(name, weight, order, is_partial=False, requires_operator=False):
    return {
        "name": name,
        "weight": weight,
        "order": order,
        "is_partial": is_partial,
        "requires_operator": requires_operator,
    }


_STANDARD_INSTALL = [
    _m("Receive", 10, 1),
    _m("Install", 60, 2),
    _m("Punch", 10, 3),
    _m("Test", 15, 4),
    _m("Restore", 5, 5),
]

# component_type → (workflow_type, milestones)
DEFAULT_TEMPLATES = {
    "spool": ("discrete", [
        _m("Receive", 5, 1),
        _m("Erect", 40, 2),
        _m("Connect", 40, 3),
        _m("Punch", 5, 4),
        _m("Test", 5, 5),
        _m("Restore", 5, 6),
    ]),
    "field_weld": ("discrete", [
        _m("Fit-Up", 10, 1),
        _m("Weld Made", 60, 2, requires_operator=True),
        _m("Punch", 10, 3),
        _m("Test", 15, 4),
        _m("Restore", 5, 5),
    ]),
    "support": ("discrete", _STANDARD_INSTALL),
    "valve": ("discrete", _STANDARD_INSTALL),
    "fitting": ("discrete", _STANDARD_INSTALL),
    "flange": ("discrete", _STANDARD_INSTALL),
    "instrument": ("discrete", _STANDARD_INSTALL),
    "tubing": ("discrete", _STANDARD_INSTALL),
    "hose": ("discrete", _STANDARD_INSTALL),
    "misc_component": ("discrete", _STANDARD_INSTALL),
    "threaded_pipe": ("hybrid", [
        _m("Fabricate", 16, 1, is_partial=True),
        _m("Install", 16, 2, is_partial=True),
        _m("Erect", 16, 3, is_partial=True),
        _m("Connect", 16, 4, is_partial=True),
        _m("Support", 16, 5, is_partial=True),
        _m("Punch", 5, 6),
        _m("Test", 10, 7),
        _m("Restore", 5, 8),
    ]),
}


class ProgressTemplate(db.Model):
    __tablename__ = "progress_templates"
    __table_args__ = (
        db.UniqueConstraint("component_type", "version", name="uq_progress_templates_type_version"),
        db.CheckConstraint(
            "workflow_type IN ('discrete','quantity','hybrid')",
            name="ck_progress_template_workflow",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    component_type = db.Column(db.String(30), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    workflow_type = db.Column(
        db.String(20), nullable=False, default="discrete",
        comment="discrete | quantity | hybrid",
    )
    milestones_config = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def milestone_names(self):
        return [m["name"] for m in sorted(self.milestones_config or [], key=lambda m: m["order"])]

    def to_dict(self):
        return {
            "id": self.id,
            "component_type": self.component_type,
            "version": self.version,
            "workflow_type": self.workflow_type,
            "milestones": sorted(self.milestones_config or [], key=lambda m: m["order"]),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ProgressTemplate {self.component_type} v{self.version}>"
