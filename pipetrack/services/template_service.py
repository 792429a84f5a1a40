"""
Progress template catalogue.

Templates are never edited in place.  Publishing a change creates the next
version for the component type; components keep pointing at the version
they were created with, so historical percentages never shift under them.
"""

import logging

from sqlalchemy import func

from pipetrack.core.exceptions import NotFoundError, ValidationError
from pipetrack.models import db
from pipetrack.models.audit import write_audit
from pipetrack.models.component import COMPONENT_TYPE_VALUES
from pipetrack.models.progress_template import DEFAULT_TEMPLATES, WORKFLOW_TYPES, ProgressTemplate
from pipetrack.services.progress_calculator import load_template_milestones

logger = logging.getLogger(__name__)


def seed_default_templates() -> int:
    """Create version 1 of each default template that does not exist yet.

    Flushes only; the caller commits.  Returns the number created.
    """
    existing = {
        row.component_type
        for row in ProgressTemplate.query.with_entities(ProgressTemplate.component_type).distinct()
    }
    created = 0
    for component_type, (workflow_type, milestones) in DEFAULT_TEMPLATES.items():
        if component_type in existing:
            continue
        load_template_milestones(milestones)
        db.session.add(ProgressTemplate(
            component_type=component_type,
            version=1,
            workflow_type=workflow_type,
            milestones_config=[dict(m) for m in milestones],
        ))
        created += 1
    db.session.flush()
    return created


def get_active_template(component_type: str) -> ProgressTemplate:
    """Highest published version for *component_type*."""
    template = (
        ProgressTemplate.query
        .filter_by(component_type=component_type)
        .order_by(ProgressTemplate.version.desc())
        .first()
    )
    if template is None:
        raise NotFoundError("ProgressTemplate", component_type)
    return template


def active_templates_by_type(component_types) -> dict:
    """component_type → active ProgressTemplate, one query for the whole set."""
    types = list(set(component_types))
    if not types:
        return {}
    latest = (
        db.session.query(
            ProgressTemplate.component_type,
            func.max(ProgressTemplate.version).label("version"),
        )
        .filter(ProgressTemplate.component_type.in_(types))
        .group_by(ProgressTemplate.component_type)
        .subquery()
    )
    rows = (
        ProgressTemplate.query
        .join(
            latest,
            (ProgressTemplate.component_type == latest.c.component_type)
            & (ProgressTemplate.version == latest.c.version),
        )
        .all()
    )
    return {t.component_type: t for t in rows}


def create_template_version(component_type, workflow_type, milestones, actor_id=None) -> dict:
    """Publish a new template version; weights are validated before anything is written."""
    if component_type not in COMPONENT_TYPE_VALUES:
        raise ValidationError(
            f"Unknown component type '{component_type}'",
            details={"valid_types": sorted(COMPONENT_TYPE_VALUES)},
        )
    if workflow_type not in WORKFLOW_TYPES:
        raise ValidationError(
            f"Unknown workflow type '{workflow_type}'",
            details={"valid_workflow_types": sorted(WORKFLOW_TYPES)},
        )
    specs = load_template_milestones(milestones)

    current = (
        db.session.query(func.max(ProgressTemplate.version))
        .filter(ProgressTemplate.component_type == component_type)
        .scalar()
    ) or 0
    template = ProgressTemplate(
        component_type=component_type,
        version=current + 1,
        workflow_type=workflow_type,
        milestones_config=[
            {
                "name": s.name,
                "weight": float(s.weight) if s.weight % 1 else int(s.weight),
                "order": s.order,
                "is_partial": s.is_partial,
                "requires_operator": s.requires_operator,
            }
            for s in specs
        ],
    )
    db.session.add(template)
    db.session.flush()
    write_audit(
        entity_type="template", entity_id=template.id, action="template.publish",
        actor=actor_id, diff={"component_type": component_type, "version": template.version},
    )
    db.session.commit()
    logger.info("Published template %s v%d", component_type, template.version)
    return template.to_dict()


def list_templates(component_type=None) -> list[dict]:
    q = ProgressTemplate.query
    if component_type:
        q = q.filter_by(component_type=component_type)
    return [
        t.to_dict()
        for t in q.order_by(ProgressTemplate.component_type, ProgressTemplate.version).all()
    ]
