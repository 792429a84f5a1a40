"""
Field operator (welder) registry.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from pipetrack.core.exceptions import ConflictError, NotFoundError, PersistenceFailure, ValidationError
from pipetrack.models import db
from pipetrack.models.audit import write_audit
from pipetrack.models.operator import STENCIL_PATTERN, Operator
from pipetrack.services.normalizer import normalize_stencil

logger = logging.getLogger(__name__)


def register_operator(project_id: int, name: str, stencil: str, verified: bool = False,
                      actor_id: str | None = None) -> dict:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    stencil_norm = normalize_stencil(stencil)
    if not STENCIL_PATTERN.match(stencil_norm):
        raise ValidationError(
            "stencil must be 2-12 characters of A-Z, 0-9 or '-'",
            details={"stencil": stencil},
        )
    if Operator.query.filter_by(project_id=project_id, stencil_norm=stencil_norm).first():
        raise ConflictError("Operator", "stencil", stencil_norm)

    operator = Operator(
        project_id=project_id,
        name=name,
        stencil=(stencil or "").strip(),
        stencil_norm=stencil_norm,
        status="unverified",
    )
    db.session.add(operator)
    try:
        db.session.flush()
        if verified:
            mark_verified(operator, actor_id)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Operator", "stencil", stencil_norm) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Registering operator %s failed", stencil_norm)
        raise PersistenceFailure() from exc
    return operator.to_dict()


def mark_verified(operator: Operator, actor_id: str | None):
    """Flip an operator to verified.  Flushes only."""
    if operator.is_verified:
        return operator
    operator.status = "verified"
    operator.verified_at = datetime.now(timezone.utc)
    operator.verified_by = actor_id
    db.session.flush()
    write_audit(
        entity_type="operator", entity_id=operator.id, action="operator.verify",
        actor=actor_id, project_id=operator.project_id,
        diff={"stencil": operator.stencil_norm},
    )
    return operator


def verify_operator(operator_id: int, actor_id: str | None) -> dict:
    operator = db.session.get(Operator, operator_id)
    if operator is None:
        raise NotFoundError("Operator", operator_id)
    try:
        mark_verified(operator, actor_id)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Verifying operator %s failed", operator_id)
        raise PersistenceFailure() from exc
    return operator.to_dict()


def list_operators(project_id: int, status: str | None = None) -> list[dict]:
    q = Operator.query.filter_by(project_id=project_id)
    if status:
        q = q.filter_by(status=status)
    return [o.to_dict() for o in q.order_by(Operator.stencil_norm).all()]


def find_operator(project_id: int, reference) -> Operator | None:
    """Look an operator up by id or by stencil."""
    if reference is None or reference == "":
        return None
    if isinstance(reference, int) or (isinstance(reference, str) and reference.isdigit()):
        operator = db.session.get(Operator, int(reference))
        if operator is not None and operator.project_id == project_id:
            return operator
    return Operator.query.filter_by(
        project_id=project_id, stencil_norm=normalize_stencil(reference),
    ).first()
