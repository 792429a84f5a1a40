"""
Needs-review queue — raise, coalesce, resolve, ignore.

Design decisions:
    - The queue is append-only apart from status changes.  A resolved or
      ignored item is terminal; re-detection of the same anomaly raises a
      fresh item.
    - quantity_delta items coalesce: a new delta for the same grouped key
      while an earlier one is still pending and younger than
      REVIEW_COALESCE_WINDOW_MINUTES is folded into it (deltas summed, the
      first old_count kept, the latest new_count taken).  Repeated re-imports
      of a growing takeoff therefore produce one decision, not a pile.
    - Resolution runs a type-specific handler inside the same transaction as
      the status change.  Handlers that move or retire components take the
      project commit lock, because they change the identity set an import
      validated against.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from pipetrack.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceFailure,
    ValidationError,
)
from pipetrack.models import db
from pipetrack.models.audit import write_audit
from pipetrack.models.component import Component, is_exact_identity
from pipetrack.models.needs_review import REVIEW_STATUSES, REVIEW_TYPES, ReviewItem, validate_review_transition
from pipetrack.models.operator import Operator
from pipetrack.models.project import Drawing
from pipetrack.services.identity_resolver import GroupedIdentityKey, GroupKey
from pipetrack.services.locks import project_commit_lock

logger = logging.getLogger(__name__)

COALESCING_TYPES = {"quantity_delta"}

# Handlers that change component identity or membership
_LOCKING_TYPES = {"quantity_delta", "similar_parent_document"}


def _now():
    return datetime.now(timezone.utc)


def _aware(ts):
    # SQLite returns naive datetimes even for timezone=True columns
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


# ═════════════════════════════════════════════════════════════════════════════
# Raise
# ═════════════════════════════════════════════════════════════════════════════


def raise_review(
    project_id: int,
    review_type: str,
    payload: dict,
    *,
    component_id: int | None = None,
    drawing_id: int | None = None,
    group_token: str | None = None,
    description: str = "",
    created_by: str | None = None,
) -> tuple[ReviewItem, bool]:
    """Append a review item, or fold a quantity delta into a pending one.

    Flushes only; the caller commits.  Returns ``(item, created)``.
    """
    if review_type not in REVIEW_TYPES:
        raise ValidationError(f"Unknown review type '{review_type}'")

    if review_type in COALESCING_TYPES and group_token:
        window = int(current_app.config.get("REVIEW_COALESCE_WINDOW_MINUTES", 60))
        cutoff = _now() - timedelta(minutes=window)
        pending = (
            ReviewItem.query
            .filter_by(project_id=project_id, type=review_type, group_token=group_token, status="pending")
            .order_by(ReviewItem.id.desc())
            .first()
        )
        if pending is not None and _aware(pending.created_at) >= cutoff:
            _coalesce_delta(pending, payload)
            db.session.flush()
            logger.info(
                "Coalesced quantity delta into review %s (delta now %s)",
                pending.id, pending.payload.get("delta"),
                extra={"project_id": project_id},
            )
            return pending, False

    item = ReviewItem(
        project_id=project_id,
        component_id=component_id,
        drawing_id=drawing_id,
        type=review_type,
        status="pending",
        group_token=group_token,
        description=description[:500],
        payload=payload,
        created_by=created_by,
    )
    db.session.add(item)
    db.session.flush()
    return item, True


def _coalesce_delta(pending: ReviewItem, payload: dict):
    merged = dict(pending.payload or {})
    previous = merged.get("new_count", merged.get("old_count"))
    merged.setdefault("old_count", payload.get("old_count"))
    merged["new_count"] = payload.get("new_count", previous)
    # always relative to the count stored when the item was first raised
    merged["delta"] = int(merged["new_count"]) - int(merged["old_count"])
    merged["applied"] = bool(merged.get("applied")) or bool(payload.get("applied"))
    merged["sources"] = list(merged.get("sources", [])) + [
        {"delta": int(merged["new_count"]) - int(previous)},
    ]
    merged["coalesced"] = int(merged.get("coalesced", 0)) + 1
    pending.payload = merged
    direction = "increase" if merged["delta"] > 0 else "decrease"
    pending.description = (
        f"Quantity {direction} {merged['old_count']} → {merged['new_count']} "
        f"for {merged.get('group_key', {}).get('commodity_code', '')}"
    )[:500]


def pending_group_tokens(project_id: int, review_type: str) -> set[str]:
    """group_tokens of pending items of one type (one query)."""
    rows = (
        db.session.query(ReviewItem.group_token)
        .filter_by(project_id=project_id, type=review_type, status="pending")
        .filter(ReviewItem.group_token.isnot(None))
        .all()
    )
    return {r[0] for r in rows}


def pending_delta_counts(project_id: int) -> dict[str, int]:
    """{group_token: new_count} of pending quantity deltas (one query)."""
    rows = (
        db.session.query(ReviewItem.group_token, ReviewItem.payload)
        .filter_by(project_id=project_id, type="quantity_delta", status="pending")
        .filter(ReviewItem.group_token.isnot(None))
        .order_by(ReviewItem.id)
        .all()
    )
    return {token: (payload or {}).get("new_count") for token, payload in rows}


# ═════════════════════════════════════════════════════════════════════════════
# Read
# ═════════════════════════════════════════════════════════════════════════════


def get_review(review_id: int) -> ReviewItem:
    item = db.session.get(ReviewItem, review_id)
    if item is None:
        raise NotFoundError("ReviewItem", review_id)
    return item


def list_reviews(project_id: int, status=None, review_type=None, component_id=None) -> list[dict]:
    if status and status not in REVIEW_STATUSES:
        raise ValidationError(f"Unknown review status '{status}'")
    if review_type and review_type not in REVIEW_TYPES:
        raise ValidationError(f"Unknown review type '{review_type}'")
    q = ReviewItem.query.filter_by(project_id=project_id)
    if status:
        q = q.filter_by(status=status)
    if review_type:
        q = q.filter_by(type=review_type)
    if component_id:
        q = q.filter_by(component_id=component_id)
    return [item.to_dict() for item in q.order_by(ReviewItem.id.desc()).all()]


def review_summary(project_id: int) -> dict:
    rows = (
        db.session.query(ReviewItem.type, ReviewItem.status, db.func.count(ReviewItem.id))
        .filter(ReviewItem.project_id == project_id)
        .group_by(ReviewItem.type, ReviewItem.status)
        .all()
    )
    by_status = {s: 0 for s in sorted(REVIEW_STATUSES)}
    pending_by_type = {t: 0 for t in sorted(REVIEW_TYPES)}
    for review_type, status, count in rows:
        by_status[status] = by_status.get(status, 0) + count
        if status == "pending":
            pending_by_type[review_type] = count
    return {"project_id": project_id, "by_status": by_status, "pending_by_type": pending_by_type}


# ═════════════════════════════════════════════════════════════════════════════
# Resolve / ignore
# ═════════════════════════════════════════════════════════════════════════════


def resolve_review(review_id: int, actor_id: str | None, note: str | None = None,
                   resolution: dict | None = None) -> dict:
    """Run the type's resolution handler and mark the item resolved."""
    item = get_review(review_id)
    _check_transition(item, "resolved")
    resolution = resolution or {}
    handler = _RESOLUTION_HANDLERS.get(item.type, _acknowledge)

    try:
        if item.type in _LOCKING_TYPES:
            with project_commit_lock(item.project_id):
                outcome = handler(item, resolution, actor_id)
                _close(item, "resolved", actor_id, note, resolution, outcome)
                db.session.commit()
        else:
            outcome = handler(item, resolution, actor_id)
            _close(item, "resolved", actor_id, note, resolution, outcome)
            db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Resolving review %s failed", review_id)
        raise PersistenceFailure() from exc
    except Exception:
        db.session.rollback()
        raise

    logger.info("Resolved review %s (%s) outcome=%s", item.id, item.type, outcome,
                extra={"project_id": item.project_id})
    return item.to_dict()


def ignore_review(review_id: int, actor_id: str | None, note: str | None = None) -> dict:
    item = get_review(review_id)
    _check_transition(item, "ignored")
    try:
        _close(item, "ignored", actor_id, note, None, None)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Ignoring review %s failed", review_id)
        raise PersistenceFailure() from exc
    return item.to_dict()


def _check_transition(item: ReviewItem, new_status: str):
    if not validate_review_transition(item.status, new_status):
        verb = "resolve" if new_status == "resolved" else "ignore"
        raise InvalidTransitionError(f"review {item.id}", item.status, verb)


def _close(item, status, actor_id, note, resolution, outcome):
    item.status = status
    item.resolved_by = actor_id
    item.resolved_at = _now()
    item.resolution_note = note
    if status == "resolved":
        item.resolution = {"input": resolution or {}, "outcome": outcome}
    write_audit(
        entity_type="review",
        entity_id=item.id,
        action="review.resolve" if status == "resolved" else "review.ignore",
        actor=actor_id,
        project_id=item.project_id,
        diff={"type": item.type, "status": {"old": "pending", "new": status}, "outcome": outcome},
    )


# ── Handlers ─────────────────────────────────────────────────────────────────


def _acknowledge(item, resolution, actor_id):
    return {"action": "acknowledge"}


def _resolve_quantity_delta(item, resolution, actor_id):
    """Bring the grouped set to the requested instance count."""
    from pipetrack.services.template_service import get_active_template

    payload = item.payload or {}
    component_type = payload.get("component_type")
    group = GroupKey(**payload["group_key"])
    target = resolution.get("target_count", payload.get("new_count"))
    try:
        target = int(target)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"target_count must be a whole number, got {target!r}") from exc
    if target < 0:
        raise ValidationError("target_count cannot be negative")

    members = (
        Component.query_active()
        .filter_by(project_id=item.project_id, component_type=component_type, group_token=group.token)
        .order_by(Component.seq)
        .all()
    )
    created, retired = 0, 0

    if len(members) > target:
        for comp in sorted(members, key=lambda c: c.seq, reverse=True)[:len(members) - target]:
            comp.retire("quantity reduction")
            comp.last_updated_by = actor_id
            retired += 1
    elif len(members) < target:
        drawing = (
            Drawing.query_active()
            .filter_by(project_id=item.project_id, drawing_no_norm=group.drawing_norm)
            .first()
        )
        if drawing is None:
            raise ValidationError(f"Drawing {group.drawing_norm} is no longer active; cannot add instances")
        template = get_active_template(component_type)
        taken = {c.seq for c in members}
        exemplar = members[0] if members else None
        seq = 0
        while len(taken) < target:
            seq += 1
            if seq in taken:
                continue
            key = GroupedIdentityKey(group, seq)
            db.session.add(Component(
                project_id=item.project_id,
                drawing_id=drawing.id,
                component_type=component_type,
                progress_template_id=template.id,
                identity_key=key.as_dict(),
                identity_token=key.token,
                group_token=key.group_token,
                seq=seq,
                attributes=dict(exemplar.attributes or {}) if exemplar else {},
                area_id=exemplar.area_id if exemplar else None,
                system_id=exemplar.system_id if exemplar else None,
                test_package_id=exemplar.test_package_id if exemplar else None,
                current_milestones={},
                percent_complete=0,
                created_by=actor_id,
                last_updated_by=actor_id,
            ))
            taken.add(seq)
            created += 1
    db.session.flush()

    write_audit(
        entity_type="review", entity_id=item.id, action="component.reconcile",
        actor=actor_id, project_id=item.project_id,
        diff={"group_token": group.token, "target_count": target, "created": created, "retired": retired},
    )
    return {"action": "reconcile", "target_count": target, "created": created, "retired": retired}


def _resolve_similar_document(item, resolution, actor_id):
    """confirm (default): keep both drawings.  merge: fold this drawing into another."""
    action = resolution.get("action", "confirm")
    if action == "confirm":
        return {"action": "confirm"}
    if action != "merge":
        raise ValidationError(f"Unknown resolution action '{action}'", details={"valid": ["confirm", "merge"]})

    payload = item.payload or {}
    if payload.get("variant_of_existing"):
        raise ValidationError("This drawing number already resolves to the existing drawing; nothing to merge")
    source = db.session.get(Drawing, item.drawing_id or payload.get("drawing_id"))
    target_id = resolution.get("target_document_id") or next(
        (m["drawing_id"] for m in payload.get("matches", [])), None,
    )
    target = db.session.get(Drawing, target_id) if target_id else None
    if source is None or source.is_retired:
        raise ValidationError("Source drawing is no longer active")
    if target is None or target.is_retired or target.project_id != source.project_id:
        raise ValidationError("target_document_id must be an active drawing of the same project")
    if target.id == source.id:
        raise ValidationError("A drawing cannot be merged into itself")

    moved = merge_drawing(source, target, actor_id)
    return {"action": "merge", "target_document_id": target.id, "moved": moved}


def merge_drawing(source: Drawing, target: Drawing, actor_id) -> int:
    """Move every active component of *source* onto *target* and retire *source*.

    Grouped components are re-keyed onto the target's drawing number and
    appended after the target group's highest sequence, so both groups stay
    gap-free.  Milestone state and history travel with the component.
    """
    components = (
        Component.query_active()
        .filter_by(drawing_id=source.id)
        .order_by(Component.group_token, Component.seq)
        .all()
    )
    next_seq: dict[tuple, int] = {}
    for comp in components:
        comp.drawing_id = target.id
        comp.last_updated_by = actor_id
        if is_exact_identity(comp.component_type):
            continue
        old = comp.identity_key or {}
        group = GroupKey(target.drawing_no_norm, old.get("commodity_code", ""), old.get("size", "NOSIZE"))
        slot = (comp.component_type, group.token)
        if slot not in next_seq:
            next_seq[slot] = (
                db.session.query(db.func.max(Component.seq))
                .filter(
                    Component.project_id == comp.project_id,
                    Component.component_type == comp.component_type,
                    Component.group_token == group.token,
                    Component.retired_at.is_(None),
                )
                .scalar()
            ) or 0
        next_seq[slot] += 1
        key = GroupedIdentityKey(group, next_seq[slot])
        comp.identity_key = key.as_dict()
        comp.identity_token = key.token
        comp.group_token = key.group_token
        comp.seq = key.seq

    source.retire(f"merged into {target.drawing_no_norm}")
    db.session.flush()
    write_audit(
        entity_type="drawing", entity_id=source.id, action="drawing.merge",
        actor=actor_id, project_id=source.project_id,
        diff={"target_drawing_id": target.id, "moved_components": len(components)},
    )
    return len(components)


def _resolve_parent_change(item, resolution, actor_id):
    """accept (default): keep the move.  revert: put the component back."""
    action = resolution.get("action", "accept")
    if action == "accept":
        return {"action": "accept"}
    if action != "revert":
        raise ValidationError(f"Unknown resolution action '{action}'", details={"valid": ["accept", "revert"]})

    comp = db.session.get(Component, item.component_id)
    old_drawing = db.session.get(Drawing, (item.payload or {}).get("old_drawing_id"))
    if comp is None or comp.is_retired:
        raise ValidationError("Component is no longer active")
    if old_drawing is None or old_drawing.is_retired:
        raise ValidationError("The original drawing is no longer active")
    comp.drawing_id = old_drawing.id
    comp.last_updated_by = actor_id
    db.session.flush()
    write_audit(
        entity_type="component", entity_id=comp.id, action="component.move",
        actor=actor_id, project_id=comp.project_id,
        diff={"drawing_id": {"old": item.payload.get("new_drawing_id"), "new": old_drawing.id}},
    )
    return {"action": "revert", "drawing_id": old_drawing.id}


def _resolve_unverified_operator(item, resolution, actor_id):
    from pipetrack.services.operator_service import mark_verified

    operator = db.session.get(Operator, (item.payload or {}).get("operator_id"))
    if operator is None:
        raise NotFoundError("Operator", (item.payload or {}).get("operator_id"))
    mark_verified(operator, actor_id)
    return {"action": "verify", "operator_id": operator.id}


_RESOLUTION_HANDLERS = {
    "quantity_delta": _resolve_quantity_delta,
    "similar_parent_document": _resolve_similar_document,
    "parent_document_change": _resolve_parent_change,
    "unverified_operator": _resolve_unverified_operator,
    "out_of_sequence": _acknowledge,
    "rollback": _acknowledge,
}
