"""
Project domain models.

Models:
    - Project:      top-level construction project; every other row is scoped to one
    - Drawing:      parent document (isometric / drawing) that components hang off
    - Area:         project area registry, upserted by takeoff import
    - System:       project system registry, upserted by takeoff import
    - TestPackage:  hydro/test package registry, upserted by takeoff import

Architecture:
    Project ──1:N──▶ Drawing ──1:N──▶ Component
    Project ──1:N──▶ Area | System | TestPackage ──1:N──▶ Component

Drawing numbers are stored twice: the raw spelling from the first import
that created the drawing, and the normalized value that identity keys and
the uniqueness index use.  Only one *active* drawing may carry a given
normalized value per project.
"""

from datetime import datetime, timezone

from pipetrack.models import db
from pipetrack.models.retirement import RetirementMixin


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.code}>"


class Drawing(RetirementMixin, db.Model):
    """Parent document that components belong to."""

    __tablename__ = "drawings"
    __table_args__ = (
        db.Index(
            "uq_drawings_project_norm_active",
            "project_id", "drawing_no_norm",
            unique=True,
            postgresql_where=db.text("retired_at IS NULL"),
            sqlite_where=db.text("retired_at IS NULL"),
        ),
        db.Index("idx_drawings_project", "project_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    drawing_no_raw = db.Column(
        db.String(120), nullable=False,
        comment="Drawing number as first seen in a takeoff",
    )
    drawing_no_norm = db.Column(
        db.String(120), nullable=False,
        comment="normalize_identifier(drawing_no_raw)",
    )
    title = db.Column(db.String(255), default="")
    rev = db.Column(db.String(20), default="")
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "drawing_no_raw": self.drawing_no_raw,
            "drawing_no_norm": self.drawing_no_norm,
            "title": self.title,
            "rev": self.rev,
            "is_retired": self.is_retired,
            "retire_reason": self.retire_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Drawing {self.id}: {self.drawing_no_norm}>"


class _NamedRegistryMixin:
    """Shared columns for the project-scoped name registries."""

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, default="")
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
        }


class Area(_NamedRegistryMixin, db.Model):
    __tablename__ = "areas"
    __table_args__ = (
        db.UniqueConstraint("project_id", "name", name="uq_areas_project_name"),
    )

    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )


class System(_NamedRegistryMixin, db.Model):
    __tablename__ = "systems"
    __table_args__ = (
        db.UniqueConstraint("project_id", "name", name="uq_systems_project_name"),
    )

    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )


class TestPackage(_NamedRegistryMixin, db.Model):
    __tablename__ = "test_packages"
    __table_args__ = (
        db.UniqueConstraint("project_id", "name", name="uq_test_packages_project_name"),
    )
    __test__ = False  # not a pytest class

    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    target_date = db.Column(db.Date, nullable=True)

    def to_dict(self):
        result = super().to_dict()
        result["target_date"] = self.target_date.isoformat() if self.target_date else None
        return result


# Metadata registries keyed by the takeoff column that feeds them
METADATA_REGISTRIES = {
    "area": Area,
    "system": System,
    "test_package": TestPackage,
}
