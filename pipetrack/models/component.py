"""
Component domain model.

Models:
    - Component: one trackable physical item (spool, weld, valve, ...) with
      its identity key, attribute bag, cached milestone state and cached
      percent complete.

Identity classes:
    exact    (spool, field_weld)   one natural key field per component;
                                   any repeat is a hard conflict
    grouped  (everything else)     (drawing, commodity code, size, seq);
                                   a takeoff line with QTY n explodes into
                                   n components numbered seq 1..n

``identity_token`` is the canonical string form of the key and carries the
uniqueness index among active rows.  ``group_token`` + ``seq`` duplicate the
grouped key in queryable columns so max-sequence lookups stay index-only.

``current_milestones`` and ``percent_complete`` are caches.  The
milestone_events ledger is the source of truth; both are rebuilt from it by
progress_ledger_service.rebuild_component_state().
"""

from datetime import datetime, timezone
from enum import Enum

from pipetrack.models import db
from pipetrack.models.retirement import RetirementMixin


class ComponentType(str, Enum):
    SPOOL = "spool"
    FIELD_WELD = "field_weld"
    SUPPORT = "support"
    VALVE = "valve"
    FITTING = "fitting"
    FLANGE = "flange"
    INSTRUMENT = "instrument"
    TUBING = "tubing"
    HOSE = "hose"
    MISC_COMPONENT = "misc_component"
    THREADED_PIPE = "threaded_pipe"


# Exact-identity types → the row field that carries their natural key
EXACT_IDENTITY_FIELDS = {
    ComponentType.SPOOL: "spool_id",
    ComponentType.FIELD_WELD: "weld_number",
}

COMPONENT_TYPE_VALUES = {t.value for t in ComponentType}


def is_exact_identity(component_type) -> bool:
    return ComponentType(component_type) in EXACT_IDENTITY_FIELDS


class Component(RetirementMixin, db.Model):
    __tablename__ = "components"
    __table_args__ = (
        db.Index(
            "uq_components_identity_active",
            "project_id", "component_type", "identity_token",
            unique=True,
            postgresql_where=db.text("retired_at IS NULL"),
            sqlite_where=db.text("retired_at IS NULL"),
        ),
        db.Index("idx_components_group", "project_id", "group_token", "seq"),
        db.Index("idx_components_drawing", "drawing_id"),
        db.Index("idx_components_project_type", "project_id", "component_type"),
        db.CheckConstraint(
            "percent_complete >= 0 AND percent_complete <= 100",
            name="ck_components_percent_range",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    drawing_id = db.Column(
        db.Integer, db.ForeignKey("drawings.id", ondelete="RESTRICT"), nullable=False,
    )
    component_type = db.Column(db.String(30), nullable=False)
    progress_template_id = db.Column(
        db.Integer, db.ForeignKey("progress_templates.id", ondelete="RESTRICT"), nullable=False,
        comment="Template version fixed at creation time",
    )

    # Identity
    identity_key = db.Column(db.JSON, nullable=False)
    identity_token = db.Column(db.String(400), nullable=False)
    group_token = db.Column(
        db.String(360), nullable=True,
        comment="DRAWING|CODE|SIZE for grouped types; NULL for exact identity",
    )
    seq = db.Column(db.Integer, nullable=True)

    # Descriptive data
    attributes = db.Column(db.JSON, nullable=False, default=dict)
    area_id = db.Column(db.Integer, db.ForeignKey("areas.id", ondelete="SET NULL"), nullable=True)
    system_id = db.Column(db.Integer, db.ForeignKey("systems.id", ondelete="SET NULL"), nullable=True)
    test_package_id = db.Column(
        db.Integer, db.ForeignKey("test_packages.id", ondelete="SET NULL"), nullable=True,
    )

    # Progress caches
    current_milestones = db.Column(db.JSON, nullable=False, default=dict)
    percent_complete = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    # Audit
    created_by = db.Column(db.String(64), nullable=True)
    last_updated_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    last_updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships ────────────────────────────────────────────────────
    drawing = db.relationship("Drawing", foreign_keys=[drawing_id])
    template = db.relationship("ProgressTemplate", foreign_keys=[progress_template_id])
    area = db.relationship("Area", foreign_keys=[area_id])
    system = db.relationship("System", foreign_keys=[system_id])
    test_package = db.relationship("TestPackage", foreign_keys=[test_package_id])

    def to_dict(self, include_milestones=True):
        result = {
            "id": self.id,
            "project_id": self.project_id,
            "drawing_id": self.drawing_id,
            "component_type": self.component_type,
            "progress_template_id": self.progress_template_id,
            "identity_key": self.identity_key,
            "identity_token": self.identity_token,
            "seq": self.seq,
            "attributes": self.attributes or {},
            "area_id": self.area_id,
            "system_id": self.system_id,
            "test_package_id": self.test_package_id,
            "percent_complete": float(self.percent_complete or 0),
            "is_retired": self.is_retired,
            "retire_reason": self.retire_reason,
            "created_by": self.created_by,
            "last_updated_by": self.last_updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
        }
        if include_milestones:
            result["current_milestones"] = self.current_milestones or {}
        return result

    def __repr__(self):
        return f"<Component {self.id}: {self.component_type} {self.identity_token}>"
