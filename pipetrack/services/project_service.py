"""
Project, drawing and component reads plus project creation.
"""

import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pipetrack.core.exceptions import ConflictError, NotFoundError, PersistenceFailure, ValidationError
from pipetrack.models import db
from pipetrack.models.component import COMPONENT_TYPE_VALUES, Component
from pipetrack.models.project import Drawing, Project
from pipetrack.services.normalizer import normalize_identifier
from pipetrack.services.similarity import find_similar

logger = logging.getLogger(__name__)


def create_project(code: str, name: str, description: str = "") -> dict:
    code = (code or "").strip()
    name = (name or "").strip()
    errors = {}
    if not code:
        errors["code"] = "required"
    if not name:
        errors["name"] = "required"
    if errors:
        raise ValidationError("code and name are required", details=errors)
    if Project.query.filter_by(code=code).first():
        raise ConflictError("Project", "code", code)

    project = Project(code=code, name=name, description=description or "")
    db.session.add(project)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Project", "code", code) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Creating project %s failed", code)
        raise PersistenceFailure() from exc
    logger.info("Created project %s (%s)", project.id, code, extra={"project_id": project.id})
    return project.to_dict()


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


def list_projects() -> list[dict]:
    return [p.to_dict() for p in Project.query.order_by(Project.code).all()]


def list_drawings(project_id: int, include_retired: bool = False) -> list[dict]:
    get_project(project_id)
    q = Drawing.query if include_retired else Drawing.query_active()
    q = q.filter(Drawing.project_id == project_id)
    return [d.to_dict() for d in q.order_by(Drawing.drawing_no_norm).all()]


def similar_drawings(project_id: int, raw_value: str) -> dict:
    """Where a free-text drawing number would land, and what it resembles."""
    get_project(project_id)
    normalized = normalize_identifier(raw_value)
    if not normalized:
        raise ValidationError("drawing number is required", details={"drawing": "required"})
    existing = (
        Drawing.query_active()
        .filter_by(project_id=project_id, drawing_no_norm=normalized)
        .first()
    )
    matches = find_similar(
        project_id, normalized, exclude_document_id=existing.id if existing else None,
    )
    return {
        "raw_value": raw_value,
        "normalized_value": normalized,
        "existing_drawing": existing.to_dict() if existing else None,
        "matches": [m.to_dict() for m in matches],
    }


def list_components(project_id: int, drawing_id=None, component_type=None,
                    include_retired: bool = False) -> list[dict]:
    get_project(project_id)
    if component_type and component_type not in COMPONENT_TYPE_VALUES:
        raise ValidationError(
            f"Unknown component type '{component_type}'",
            details={"valid_types": sorted(COMPONENT_TYPE_VALUES)},
        )
    q = Component.query if include_retired else Component.query_active()
    q = q.filter(Component.project_id == project_id)
    if drawing_id:
        q = q.filter(Component.drawing_id == drawing_id)
    if component_type:
        q = q.filter(Component.component_type == component_type)
    return [
        c.to_dict(include_milestones=False)
        for c in q.order_by(Component.component_type, Component.identity_token).all()
    ]


def get_component(component_id: int) -> dict:
    comp = db.session.get(Component, component_id)
    if comp is None:
        raise NotFoundError("Component", component_id)
    return comp.to_dict()
