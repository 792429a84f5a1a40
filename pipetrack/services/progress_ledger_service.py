"""
Progress Ledger Service — milestone writes, replay and cache repair.

Every milestone change is one MilestoneEvent appended to the ledger.  The
component's ``current_milestones`` map and ``percent_complete`` are caches
of that ledger and are updated in the same transaction as the event, so a
reader never sees one without the other.

Write path (update_milestone):
    component_lock → SELECT … FOR UPDATE → state machine → append event
    → recompute percent → raise reviews → single commit

Reviews raised here never block the write:
    out_of_sequence      completion while lower-order milestones are open
    rollback             every rollback, so regressions are visible
    unverified_operator  an unverified stencil reached OPERATOR_VERIFY_THRESHOLD
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from pipetrack.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceFailure,
    ValidationError,
)
from pipetrack.models import db
from pipetrack.models.audit import write_audit
from pipetrack.models.component import Component
from pipetrack.models.milestone_event import MILESTONE_ACTIONS, MilestoneEvent
from pipetrack.models.needs_review import ReviewItem
from pipetrack.services import review_queue_service
from pipetrack.services.locks import component_lock
from pipetrack.services.operator_service import find_operator
from pipetrack.services.progress_calculator import (
    apply_milestone_action,
    calculate_percent,
    find_milestone,
    load_template_milestones,
    reaches_completion,
    unsatisfied_prerequisites,
)

logger = logging.getLogger(__name__)


def _component_for_update(component_id: int) -> Component:
    comp = (
        Component.query
        .filter(Component.id == component_id)
        .with_for_update()
        .first()
    )
    if comp is None:
        raise NotFoundError("Component", component_id)
    return comp


def _milestones_for(comp: Component):
    return load_template_milestones(comp.template.milestones_config)


# ═══════════════════════════════════════════════════════════════
# Write
# ═══════════════════════════════════════════════════════════════

def update_milestone(component_id: int, milestone_name: str, action: str, actor_id: str | None,
                     value=None, metadata: dict | None = None) -> tuple[dict, int, list[int]]:
    """Apply one milestone action and return ``(component, event_id, review_ids)``."""
    if action not in MILESTONE_ACTIONS:
        raise ValidationError(
            f"Unknown milestone action '{action}'",
            details={"valid_actions": sorted(MILESTONE_ACTIONS)},
        )
    metadata = dict(metadata or {})
    operator_uses = _prior_operator_uses(component_id, metadata)

    with component_lock(component_id):
        try:
            comp = _component_for_update(component_id)
            if comp.is_retired:
                raise InvalidTransitionError(f"component {comp.id}", "retired", action)
            event, review_ids = _apply(comp, milestone_name, action, actor_id, value, metadata, operator_uses)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("Milestone write failed component=%s", component_id,
                             extra={"component_id": component_id})
            raise PersistenceFailure() from exc
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "Milestone %s %s on component=%s → %s%%",
        action, milestone_name, component_id, comp.percent_complete,
        extra={"project_id": comp.project_id, "component_id": component_id},
    )
    return comp.to_dict(), event.id, review_ids


def _apply(comp, milestone_name, action, actor_id, value, metadata, operator_uses=None):
    """State change + event + cache + reviews.  Flushes only."""
    milestones = _milestones_for(comp)
    spec = find_milestone(milestones, milestone_name)
    state = dict(comp.current_milestones or {})
    previous = state.get(spec.name)

    new_value = apply_milestone_action(spec, previous, action, value)

    operator = None
    if spec.requires_operator and reaches_completion(spec, previous, new_value):
        operator_ref = metadata.get("operator_id") or metadata.get("stencil")
        if operator_ref:
            operator = find_operator(comp.project_id, operator_ref)
            if operator is None:
                raise ValidationError(
                    f"Unknown operator '{operator_ref}'",
                    details={"operator": operator_ref},
                )
            metadata["operator_id"] = operator.id

    prerequisites = []
    if reaches_completion(spec, previous, new_value):
        prerequisites = unsatisfied_prerequisites(milestones, state, spec.name)
    if prerequisites:
        metadata["out_of_sequence"] = prerequisites

    event = MilestoneEvent(
        project_id=comp.project_id,
        component_id=comp.id,
        milestone_name=spec.name,
        action=action,
        value=new_value,
        previous_value=previous,
        actor_id=actor_id,
        operator_id=operator.id if operator is not None else None,
        details=metadata,
    )
    db.session.add(event)

    state[spec.name] = new_value
    comp.current_milestones = state
    comp.percent_complete = calculate_percent(milestones, state)
    comp.last_updated_by = actor_id
    db.session.flush()

    review_ids = []
    if prerequisites:
        item, _ = review_queue_service.raise_review(
            comp.project_id, "out_of_sequence",
            {
                "milestone": spec.name,
                "missing_prerequisites": prerequisites,
                "event_id": event.id,
            },
            component_id=comp.id, drawing_id=comp.drawing_id, created_by=actor_id,
            description=f"{spec.name} completed before {', '.join(prerequisites)} on component {comp.id}",
        )
        review_ids.append(item.id)
    if action == "rollback":
        item, _ = review_queue_service.raise_review(
            comp.project_id, "rollback",
            {
                "milestone": spec.name,
                "previous_value": previous,
                "event_id": event.id,
                "reason": metadata.get("reason"),
            },
            component_id=comp.id, drawing_id=comp.drawing_id, created_by=actor_id,
            description=f"{spec.name} rolled back on component {comp.id}",
        )
        review_ids.append(item.id)
    if operator is not None and not operator.is_verified:
        uses = (operator_uses or {}).get(operator.id, 0) + 1
        item = _check_operator_threshold(comp, operator, uses, actor_id)
        if item is not None:
            review_ids.append(item.id)
    return event, review_ids


def _prior_operator_uses(component_id: int, metadata: dict) -> dict:
    """{operator_id: credited completions so far} for an unverified operator.

    One indexed COUNT, taken before the component lock.
    """
    operator_ref = metadata.get("operator_id") or metadata.get("stencil")
    if not operator_ref:
        return {}
    project_id = db.session.query(Component.project_id).filter(Component.id == component_id).scalar()
    if project_id is None:
        return {}
    operator = find_operator(project_id, operator_ref)
    if operator is None or operator.is_verified:
        return {}
    uses = (
        db.session.query(func.count(MilestoneEvent.id))
        .filter(
            MilestoneEvent.operator_id == operator.id,
            MilestoneEvent.action.in_(("complete", "update")),
        )
        .scalar()
    )
    return {operator.id: uses or 0}


def _check_operator_threshold(comp, operator, uses, actor_id):
    threshold = int(current_app.config.get("OPERATOR_VERIFY_THRESHOLD", 5))
    if uses < threshold:
        return None
    token = f"operator:{operator.id}"
    if token in review_queue_service.pending_group_tokens(comp.project_id, "unverified_operator"):
        return None
    item, _ = review_queue_service.raise_review(
        comp.project_id, "unverified_operator",
        {"operator_id": operator.id, "stencil": operator.stencil_norm, "uses": uses},
        component_id=comp.id, group_token=token, created_by=actor_id,
        description=f"Unverified operator {operator.stencil_norm} has {uses} completions",
    )
    return item


def bulk_update_milestones(project_id: int, component_ids: list[int], milestone_name: str,
                           actor_id: str | None, metadata: dict | None = None) -> dict:
    """Complete *milestone_name* on many components; one transaction per component.

    Components whose template lacks the milestone, or where it is already
    complete, are skipped.  Out-of-sequence completions are applied and
    counted as flagged.
    """
    if not component_ids:
        raise ValidationError("component_ids must be a non-empty list")

    updated, skipped, flagged = 0, 0, 0
    errors, review_ids = [], []
    for component_id in component_ids:
        comp = db.session.get(Component, component_id)
        if comp is None or comp.project_id != project_id:
            errors.append({"component_id": component_id, "reason": "not found in this project"})
            continue
        if comp.is_retired:
            skipped += 1
            continue
        if milestone_name not in comp.template.milestone_names():
            skipped += 1
            continue
        try:
            _, _, raised = update_milestone(
                component_id, milestone_name, "complete", actor_id, metadata=metadata,
            )
        except InvalidTransitionError:
            skipped += 1
            continue
        except ValidationError as exc:
            errors.append({"component_id": component_id, "reason": str(exc)})
            continue
        updated += 1
        if any(db.session.get(ReviewItem, rid).type == "out_of_sequence" for rid in raised):
            flagged += 1
        review_ids.extend(raised)

    logger.info(
        "Bulk %s project=%s updated=%d skipped=%d flagged=%d errors=%d",
        milestone_name, project_id, updated, skipped, flagged, len(errors),
        extra={"project_id": project_id},
    )
    return {
        "milestone": milestone_name,
        "updated": updated,
        "skipped": skipped,
        "flagged": flagged,
        "errors": errors,
        "reviews_created": review_ids,
    }


# ═══════════════════════════════════════════════════════════════
# Ledger reads / repair
# ═══════════════════════════════════════════════════════════════

def list_events(component_id: int) -> list[dict]:
    if db.session.get(Component, component_id) is None:
        raise NotFoundError("Component", component_id)
    events = (
        MilestoneEvent.query
        .filter_by(component_id=component_id)
        .order_by(MilestoneEvent.id)
        .all()
    )
    return [e.to_dict() for e in events]


def replay_milestones(component_id: int) -> dict:
    """Milestone map reconstructed from the ledger in arrival order."""
    state = {}
    rows = (
        db.session.query(MilestoneEvent.milestone_name, MilestoneEvent.value)
        .filter(MilestoneEvent.component_id == component_id)
        .order_by(MilestoneEvent.id)
        .all()
    )
    for name, value in rows:
        state[name] = value
    return state


def verify_component_ledger(component_id: int) -> dict:
    """Compare the cached state with a replay of the ledger."""
    comp = db.session.get(Component, component_id)
    if comp is None:
        raise NotFoundError("Component", component_id)
    replayed = replay_milestones(component_id)
    expected_percent = calculate_percent(_milestones_for(comp), replayed)
    cached = comp.current_milestones or {}
    consistent = cached == replayed and comp.percent_complete == expected_percent
    return {
        "component_id": comp.id,
        "consistent": consistent,
        "cached_milestones": cached,
        "ledger_milestones": replayed,
        "cached_percent": float(comp.percent_complete or 0),
        "ledger_percent": float(expected_percent),
    }


def rebuild_component_state(component_id: int, actor_id: str | None = None) -> dict:
    """Overwrite the caches with the ledger replay when they disagree."""
    with component_lock(component_id):
        try:
            comp = _component_for_update(component_id)
            report = verify_component_ledger(component_id)
            if not report["consistent"]:
                comp.current_milestones = report["ledger_milestones"]
                comp.percent_complete = calculate_percent(
                    _milestones_for(comp), report["ledger_milestones"],
                )
                write_audit(
                    entity_type="component", entity_id=comp.id, action="component.rebuild",
                    actor=actor_id, project_id=comp.project_id,
                    diff={
                        "percent_complete": {
                            "old": report["cached_percent"], "new": report["ledger_percent"],
                        },
                    },
                )
                logger.warning(
                    "Rebuilt drifted cache on component=%s", component_id,
                    extra={"project_id": comp.project_id, "component_id": component_id},
                )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise PersistenceFailure() from exc
    report["rebuilt"] = not report["consistent"]
    return report
