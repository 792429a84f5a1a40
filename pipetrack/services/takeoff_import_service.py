"""
Takeoff Import Service — validate and commit a batch of takeoff rows.

Pipeline:
    parse (takeoff_parser) → plan_import → commit_import_plan

plan_import is read-only.  It loads the project's identity set and active
drawings once, walks every row (normalize → classify → resolve → check),
and collects three kinds of outcome:

    errors     hard row problems; any one aborts the whole batch
    findings   anomalies that are written to the review queue but do not
               block the import (quantity deltas, similar drawings,
               drawing changes on overwritten components)
    writes     drawings / components to create, components to update

commit_import_plan takes the per-project commit lock, checks that the
identity set has not moved since planning, and applies every write plus
the review items and one audit row in a single transaction.  A failure at
any point rolls the whole batch back; a rejected batch leaves no trace,
not even an import record.

Result shape (both dry runs and commits):
    {created, updated, skipped, flagged,
     errors: [{row, field, reason}], diagnostics: [{row, reason}],
     drawings_created, reviews_created, total_rows, committed, dry_run}

``created`` / ``updated`` count components, ``skipped`` counts rows that
needed no write (already imported, or unsupported hardware), ``flagged``
counts review findings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from pipetrack.core.exceptions import (
    ConcurrencyConflict,
    IdentityConflictError,
    ImportAbortedError,
    NotFoundError,
    PersistenceFailure,
    ValidationError,
)
from pipetrack.models import db
from pipetrack.models.audit import IDENTITY_ACTIONS, AuditLog, write_audit
from pipetrack.models.component import Component
from pipetrack.models.project import METADATA_REGISTRIES, Area, Drawing, Project, System, TestPackage
from pipetrack.services import review_queue_service
from pipetrack.services.identity_resolver import ExactIdentityKey, SequenceAllocator, resolve
from pipetrack.services.locks import project_commit_lock
from pipetrack.services.normalizer import normalize_identifier
from pipetrack.services.similarity import ShingleIndex, find_similar
from pipetrack.services.takeoff_parser import TakeoffRow, parse_takeoff_file, rows_from_records
from pipetrack.services.template_service import active_templates_by_type
from pipetrack.services.type_classifier import classify

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# Plan structures
# ═══════════════════════════════════════════════════════════════

@dataclass
class ImportOptions:
    overwrite_approved: bool = False
    approve_quantity_increases: bool = False
    dry_run: bool = False
    actor_id: str | None = None


@dataclass
class PlannedComponent:
    row_num: int
    component_type: str
    key: object
    drawing_norm: str
    attributes: dict
    metadata: dict


@dataclass
class PlannedUpdate:
    row_num: int
    component_id: int
    component_type: str
    drawing_norm: str
    old_drawing_id: int
    attributes: dict
    metadata: dict


@dataclass
class PlannedReview:
    review_type: str
    payload: dict
    description: str
    group_token: str | None = None
    drawing_norm: str | None = None
    drawing_id: int | None = None
    component_id: int | None = None


@dataclass
class ImportPlan:
    project_id: int
    options: ImportOptions
    total_rows: int = 0
    skipped: int = 0
    errors: list = field(default_factory=list)
    diagnostics: list = field(default_factory=list)
    creates: list = field(default_factory=list)
    updates: dict = field(default_factory=dict)
    new_drawings: dict = field(default_factory=dict)
    drawings_by_norm: dict = field(default_factory=dict)
    reviews: list = field(default_factory=list)
    metadata_names: dict = field(default_factory=dict)
    template_ids: dict = field(default_factory=dict)
    fingerprint: tuple = ()

    def error(self, row_num, field_name, reason):
        self.errors.append({"row": row_num, "field": field_name, "reason": reason})

    def to_result(self, committed=False, reviews_created=None) -> dict:
        return {
            "project_id": self.project_id,
            "created": len(self.creates) if not self.errors else 0,
            "updated": len(self.updates) if not self.errors else 0,
            "skipped": self.skipped,
            "flagged": len(self.reviews),
            "errors": sorted(self.errors, key=lambda e: (e["row"], e["field"])),
            "diagnostics": self.diagnostics,
            "drawings_created": len(self.new_drawings) if not self.errors else 0,
            "reviews_created": reviews_created or [],
            "total_rows": self.total_rows,
            "committed": committed,
            "dry_run": self.options.dry_run,
        }


def _cfg(key, default):
    return current_app.config.get(key, default)


# ═══════════════════════════════════════════════════════════════
# Snapshot reads (one bulk read each, before any lock)
# ═══════════════════════════════════════════════════════════════

def identity_fingerprint(project_id: int) -> tuple:
    """Cheap aggregate that changes whenever the project's identity set changes.

    Milestone writes leave it alone: only counts, ids, retirements and the
    latest identity-changing audit row (imports, reconciles, moves, merges)
    take part.
    """
    comp = (
        db.session.query(
            func.count(Component.id),
            func.max(Component.id),
            func.count(Component.retired_at),
        )
        .filter(Component.project_id == project_id)
        .one()
    )
    drw = (
        db.session.query(func.count(Drawing.id), func.max(Drawing.id), func.count(Drawing.retired_at))
        .filter(Drawing.project_id == project_id)
        .one()
    )
    marker = (
        db.session.query(func.max(AuditLog.id))
        .filter(AuditLog.project_id == project_id, AuditLog.action.in_(IDENTITY_ACTIONS))
        .scalar()
    )
    return tuple(str(v) for v in (*comp, *drw, marker))


def _load_existing_identities(project_id: int, component_types: set[str]):
    """exact: {(type, token): (id, drawing_id, attributes, metadata)}; grouped: {type: {group_token: {seq}}}.

    ``metadata`` maps area / system / test_package to the registry name the
    component currently points at, for the kinds that are set.
    """
    exact, grouped = {}, {}
    if not component_types:
        return exact, grouped
    rows = (
        db.session.query(
            Component.id, Component.component_type, Component.identity_token,
            Component.group_token, Component.seq, Component.drawing_id, Component.attributes,
            Area.name, System.name, TestPackage.name,
        )
        .outerjoin(Area, Component.area_id == Area.id)
        .outerjoin(System, Component.system_id == System.id)
        .outerjoin(TestPackage, Component.test_package_id == TestPackage.id)
        .filter(
            Component.project_id == project_id,
            Component.component_type.in_(component_types),
            Component.retired_at.is_(None),
        )
        .all()
    )
    for comp_id, ctype, token, group_token, seq, drawing_id, attributes, area, system, package in rows:
        if group_token is None:
            names = {"area": area, "system": system, "test_package": package}
            metadata = {kind: name for kind, name in names.items() if name}
            exact[(ctype, token)] = (comp_id, drawing_id, attributes or {}, metadata)
        else:
            grouped.setdefault(ctype, {}).setdefault(group_token, set()).add(seq)
    return exact, grouped


# ═══════════════════════════════════════════════════════════════
# Plan (validation, no writes)
# ═══════════════════════════════════════════════════════════════

def plan_import(project_id: int, rows: list[TakeoffRow], options: ImportOptions | None = None) -> ImportPlan:
    """Validate *rows* against the project's current data; return the write plan."""
    options = options or ImportOptions()
    if db.session.get(Project, project_id) is None:
        raise NotFoundError("Project", project_id)

    plan = ImportPlan(project_id=project_id, options=options, total_rows=len(rows))
    plan.fingerprint = identity_fingerprint(project_id)

    excluded = _cfg("IMPORT_EXCLUDED_TYPE_KEYWORDS", ("gasket", "bolt", "nut"))
    policy = _cfg("IMPORT_UNMATCHED_TYPE_POLICY", "misc")

    # 1. Classify every row first so the bulk reads can be scoped by type.
    classified = []
    for row in rows:
        c = classify(row.type, excluded=excluded, unmatched_policy=policy)
        if c.error:
            plan.error(row.row_num, "type", c.error)
        elif c.skip_reason:
            plan.skipped += 1
            plan.diagnostics.append({"row": row.row_num, "reason": c.skip_reason})
        else:
            classified.append((row, c.component_type))

    types_present = {ct.value for _, ct in classified}
    templates = active_templates_by_type(types_present)
    for ctype in sorted(types_present - set(templates)):
        plan.error(0, "type", f"No progress template is configured for component type '{ctype}'")
    plan.template_ids = {ctype: t.id for ctype, t in templates.items()}

    # 2. Bulk reads: identities, drawings (+ similarity index), pending similarity reviews.
    existing_exact, existing_grouped = _load_existing_identities(project_id, types_present)
    allocators = {
        ctype: SequenceAllocator(existing_grouped.get(ctype, {})) for ctype in types_present
    }
    drawing_rows = (
        Drawing.query_active()
        .with_entities(Drawing.id, Drawing.drawing_no_norm, Drawing.drawing_no_raw)
        .filter(Drawing.project_id == project_id)
        .all()
    )
    index = ShingleIndex()
    existing_drawings = {}
    drawing_norm_by_id = {}
    for drawing_id, norm, raw in drawing_rows:
        existing_drawings[norm] = (drawing_id, raw)
        drawing_norm_by_id[drawing_id] = norm
        index.add(drawing_id, norm)
    plan.drawings_by_norm = {norm: v[0] for norm, v in existing_drawings.items()}
    pending_similar = review_queue_service.pending_group_tokens(project_id, "similar_parent_document")
    pending_deltas = review_queue_service.pending_delta_counts(project_id)

    # 3. Walk the rows.
    seen_exact: dict[tuple, int] = {}
    planned_creates_by_token: dict[tuple, PlannedComponent] = {}
    groups_touched: dict[tuple, object] = {}
    rows_with_writes: set[int] = set()
    flagged_variants: set[str] = set()

    for row, component_type in classified:
        ctype = component_type.value
        drawing_norm = normalize_identifier(row.drawing)
        if not drawing_norm:
            plan.error(row.row_num, "drawing", "DRAWING is required")
            continue

        try:
            resolved = resolve(row, component_type, allocators[ctype])
        except ValidationError as exc:
            plan.error(row.row_num, exc.details.get("field", "row"), str(exc))
            continue

        _plan_drawing(plan, row, drawing_norm, existing_drawings, index, pending_similar, flagged_variants)
        metadata = _collect_metadata(plan, row)

        if isinstance(resolved, ExactIdentityKey):
            slot = (ctype, resolved.token)
            if slot in seen_exact:
                if not options.overwrite_approved:
                    conflict = IdentityConflictError(
                        resolved.field, resolved.value, row=row.row_num, existing=False,
                    )
                    plan.errors.append(conflict.as_row_error(f"also on row {seen_exact[slot]}"))
                    continue
                # later row wins
                earlier = planned_creates_by_token.get(slot) or plan.updates.get(slot)
                if earlier is None:
                    # the earlier row matched the stored component unchanged
                    comp_id, old_drawing_id, _, _ = existing_exact[slot]
                    earlier = plan.updates[slot] = PlannedUpdate(
                        row_num=row.row_num, component_id=comp_id, component_type=ctype,
                        drawing_norm=drawing_norm, old_drawing_id=old_drawing_id,
                        attributes={}, metadata={},
                    )
                earlier.attributes = row.attributes()
                earlier.drawing_norm = drawing_norm
                earlier.metadata = metadata
                plan.diagnostics.append({
                    "row": row.row_num,
                    "reason": f"Supersedes row {seen_exact[slot]} for {resolved.field} '{resolved.value}'",
                })
                seen_exact[slot] = row.row_num
                rows_with_writes.add(row.row_num)
                continue

            seen_exact[slot] = row.row_num
            if slot in existing_exact:
                comp_id, old_drawing_id, old_attributes, old_metadata = existing_exact[slot]
                unchanged = (
                    plan.drawings_by_norm.get(drawing_norm) == old_drawing_id
                    and old_attributes == row.attributes()
                    and old_metadata == metadata
                )
                if unchanged:
                    plan.skipped += 1
                    plan.diagnostics.append({"row": row.row_num, "reason": "Already imported; no change"})
                    continue
                if not options.overwrite_approved:
                    conflict = IdentityConflictError(resolved.field, resolved.value, row=row.row_num)
                    plan.errors.append(conflict.as_row_error(
                        f"component {comp_id}; re-submit with overwrite approval to update it",
                    ))
                    continue
                plan.updates[slot] = PlannedUpdate(
                    row_num=row.row_num,
                    component_id=comp_id,
                    component_type=ctype,
                    drawing_norm=drawing_norm,
                    old_drawing_id=old_drawing_id,
                    attributes=row.attributes(),
                    metadata=metadata,
                )
            else:
                planned = PlannedComponent(
                    row_num=row.row_num,
                    component_type=ctype,
                    key=resolved,
                    drawing_norm=drawing_norm,
                    attributes=row.attributes(),
                    metadata=metadata,
                )
                planned_creates_by_token[slot] = planned
                plan.creates.append(planned)
            rows_with_writes.add(row.row_num)
            continue

        # grouped
        allocator = allocators[ctype]
        for key in resolved:
            groups_touched[(ctype, key.group_token)] = key.group
            if allocator.is_existing(key):
                continue
            plan.creates.append(PlannedComponent(
                row_num=row.row_num,
                component_type=ctype,
                key=key,
                drawing_norm=drawing_norm,
                attributes=row.attributes(),
                metadata=metadata,
            ))
            rows_with_writes.add(row.row_num)
        if row.row_num not in rows_with_writes:
            plan.skipped += 1
            plan.diagnostics.append({"row": row.row_num, "reason": "Already imported; no change"})

    # 4. Quantity deltas per grouped key.
    for (ctype, group_token), group in groups_touched.items():
        allocator = allocators[ctype]
        old_count = allocator.existing_count(group_token)
        new_count = allocator.claimed.get(group_token, 0)
        if old_count == 0 or new_count == old_count:
            continue
        if pending_deltas.get(f"{ctype}:{group_token}") == new_count:
            # same count already waiting for a decision
            continue
        if new_count > old_count and options.approve_quantity_increases:
            continue
        delta = new_count - old_count
        plan.reviews.append(PlannedReview(
            review_type="quantity_delta",
            group_token=f"{ctype}:{group_token}",
            drawing_norm=group.drawing_norm,
            description=(
                f"Quantity {'increase' if delta > 0 else 'decrease'} {old_count} → {new_count} "
                f"for {group.commodity_code} {group.size} on {group.drawing_norm}"
            ),
            payload={
                "component_type": ctype,
                "group_key": group.as_dict(),
                "old_count": old_count,
                "new_count": new_count,
                "delta": delta,
                "applied": delta > 0,
                "sources": [{"delta": delta}],
            },
        ))

    # 5. Drawing changes on overwritten exact-identity components.
    for update in plan.updates.values():
        new_id = plan.drawings_by_norm.get(update.drawing_norm)
        if new_id == update.old_drawing_id:
            continue
        plan.reviews.append(PlannedReview(
            review_type="parent_document_change",
            component_id=update.component_id,
            drawing_norm=update.drawing_norm,
            description=(
                f"Component {update.component_id} moved from "
                f"{drawing_norm_by_id.get(update.old_drawing_id, update.old_drawing_id)} to {update.drawing_norm}"
            ),
            payload={
                "old_drawing_id": update.old_drawing_id,
                "old_drawing_no": drawing_norm_by_id.get(update.old_drawing_id),
                "new_drawing_no": update.drawing_norm,
            },
        ))

    logger.info(
        "Planned import project=%s rows=%d creates=%d updates=%d skipped=%d reviews=%d errors=%d",
        project_id, plan.total_rows, len(plan.creates), len(plan.updates),
        plan.skipped, len(plan.reviews), len(plan.errors),
        extra={"project_id": project_id},
    )
    return plan


def _plan_drawing(plan, row, drawing_norm, existing_drawings, index, pending_similar, flagged_variants):
    raw = (row.drawing or "").strip()
    if drawing_norm in existing_drawings:
        drawing_id, existing_raw = existing_drawings[drawing_norm]
        if raw.upper() == (existing_raw or "").strip().upper():
            return
        token = f"variant:{drawing_id}:{raw.upper()}"
        if token in pending_similar or token in flagged_variants:
            return
        flagged_variants.add(token)
        plan.reviews.append(PlannedReview(
            review_type="similar_parent_document",
            group_token=token,
            drawing_id=drawing_id,
            description=f"Drawing '{raw}' resolves to existing drawing '{existing_raw}'",
            payload={
                "drawing_id": drawing_id,
                "raw_value": raw,
                "normalized_value": drawing_norm,
                "variant_of_existing": True,
                "matches": [{"drawing_id": drawing_id, "normalized_value": drawing_norm, "score": 1.0}],
            },
        ))
        return

    if drawing_norm in plan.new_drawings:
        return
    plan.new_drawings[drawing_norm] = {
        "raw": raw,
        "title": row.drawing_title or "",
        "rev": row.drawing_rev or "",
    }
    matches = find_similar(plan.project_id, drawing_norm, index=index)
    if matches:
        plan.reviews.append(PlannedReview(
            review_type="similar_parent_document",
            group_token=f"new:{drawing_norm}",
            drawing_norm=drawing_norm,
            description=(
                f"New drawing '{raw}' looks like existing "
                + ", ".join(m.normalized_value for m in matches)
            ),
            payload={
                "raw_value": raw,
                "normalized_value": drawing_norm,
                "variant_of_existing": False,
                "matches": [m.to_dict() for m in matches],
            },
        ))


def _collect_metadata(plan, row) -> dict:
    metadata = {}
    for kind in METADATA_REGISTRIES:
        name = getattr(row, kind)
        if name:
            plan.metadata_names.setdefault(kind, set()).add(name)
            metadata[kind] = name
    return metadata


# ═══════════════════════════════════════════════════════════════
# Commit
# ═══════════════════════════════════════════════════════════════

def commit_import_plan(plan: ImportPlan) -> dict:
    """Apply a clean plan atomically.  Raises ImportAbortedError if the plan has errors."""
    if plan.errors:
        db.session.rollback()
        logger.warning(
            "Import aborted project=%s errors=%d", plan.project_id, len(plan.errors),
            extra={"project_id": plan.project_id},
        )
        raise ImportAbortedError(plan.to_result())

    actor = plan.options.actor_id
    try:
        with project_commit_lock(plan.project_id):
            if identity_fingerprint(plan.project_id) != plan.fingerprint:
                raise ConcurrencyConflict(
                    "Project data changed while this import was being validated; re-run the import",
                )
            drawing_ids = _write_drawings(plan, actor)
            metadata_ids = _upsert_metadata(plan)
            _write_components(plan, drawing_ids, metadata_ids, actor)
            _apply_updates(plan, drawing_ids, metadata_ids, actor)
            review_ids = _write_reviews(plan, drawing_ids, actor)
            result = plan.to_result(committed=True, reviews_created=review_ids)
            write_audit(
                entity_type="project",
                entity_id=plan.project_id,
                action="import.commit",
                actor=actor,
                project_id=plan.project_id,
                diff={k: result[k] for k in ("created", "updated", "skipped", "flagged",
                                             "drawings_created", "total_rows")},
            )
            db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Import commit failed project=%s", plan.project_id,
                         extra={"project_id": plan.project_id})
        raise PersistenceFailure() from exc
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Import committed project=%s created=%d updated=%d skipped=%d flagged=%d",
        plan.project_id, result["created"], result["updated"], result["skipped"], result["flagged"],
        extra={"project_id": plan.project_id, "import_rows": plan.total_rows},
    )
    return result


def _write_drawings(plan, actor) -> dict:
    drawing_ids = dict(plan.drawings_by_norm)
    new = []
    for norm, info in plan.new_drawings.items():
        drawing = Drawing(
            project_id=plan.project_id,
            drawing_no_raw=info["raw"][:120],
            drawing_no_norm=norm,
            title=info["title"],
            rev=info["rev"],
        )
        db.session.add(drawing)
        new.append(drawing)
    db.session.flush()
    for drawing in new:
        drawing_ids[drawing.drawing_no_norm] = drawing.id
    return drawing_ids


def _upsert_metadata(plan) -> dict:
    """kind → {name: id}; existing names reused, missing ones created."""
    ids = {}
    for kind, names in plan.metadata_names.items():
        model = METADATA_REGISTRIES[kind]
        existing = {
            r.name: r.id
            for r in model.query.filter(model.project_id == plan.project_id, model.name.in_(names)).all()
        }
        for name in sorted(names - set(existing)):
            record = model(project_id=plan.project_id, name=name)
            db.session.add(record)
            db.session.flush()
            existing[name] = record.id
        ids[kind] = existing
    return ids


def _metadata_columns(metadata: dict, metadata_ids: dict) -> dict:
    return {
        f"{kind}_id": metadata_ids[kind][name]
        for kind, name in metadata.items()
    }


def _write_components(plan, drawing_ids, metadata_ids, actor):
    for planned in plan.creates:
        key = planned.key
        db.session.add(Component(
            project_id=plan.project_id,
            drawing_id=drawing_ids[planned.drawing_norm],
            component_type=planned.component_type,
            progress_template_id=plan.template_ids[planned.component_type],
            identity_key=key.as_dict(),
            identity_token=key.token,
            group_token=key.group_token,
            seq=key.seq,
            attributes=planned.attributes,
            current_milestones={},
            percent_complete=0,
            created_by=actor,
            last_updated_by=actor,
            **_metadata_columns(planned.metadata, metadata_ids),
        ))
    db.session.flush()


def _apply_updates(plan, drawing_ids, metadata_ids, actor):
    if not plan.updates:
        return
    by_id = {
        c.id: c
        for c in Component.query.filter(
            Component.id.in_([u.component_id for u in plan.updates.values()])
        ).all()
    }
    for update in plan.updates.values():
        comp = by_id[update.component_id]
        comp.attributes = update.attributes
        comp.drawing_id = drawing_ids[update.drawing_norm]
        comp.area_id = comp.system_id = comp.test_package_id = None
        for column, value in _metadata_columns(update.metadata, metadata_ids).items():
            setattr(comp, column, value)
        comp.last_updated_by = actor
    db.session.flush()


def _write_reviews(plan, drawing_ids, actor) -> list[int]:
    ids = []
    for review in plan.reviews:
        payload = dict(review.payload)
        drawing_id = review.drawing_id
        if drawing_id is None and review.drawing_norm is not None:
            drawing_id = drawing_ids.get(review.drawing_norm)
        if review.review_type == "similar_parent_document":
            payload["drawing_id"] = drawing_id
        if review.review_type == "parent_document_change":
            payload["new_drawing_id"] = drawing_id
        item, created = review_queue_service.raise_review(
            plan.project_id,
            review.review_type,
            payload,
            component_id=review.component_id,
            drawing_id=drawing_id,
            group_token=review.group_token,
            description=review.description,
            created_by=actor,
        )
        if item.id not in ids:
            ids.append(item.id)
    return ids


# ═══════════════════════════════════════════════════════════════
# Entry points
# ═══════════════════════════════════════════════════════════════

def validate_and_commit(project_id: int, rows: list[TakeoffRow], options: ImportOptions | None = None) -> dict:
    """Validate a batch and, unless it is a dry run, commit it atomically.

    Dry runs return the would-be result (including row errors) without
    raising.  Commits raise ImportAbortedError when any row has a hard
    error, ConcurrencyConflict when another writer got there first, and
    PersistenceFailure when storage rejects the write.
    """
    options = options or ImportOptions()
    plan = plan_import(project_id, rows, options)
    if options.dry_run:
        db.session.rollback()
        return plan.to_result()
    return commit_import_plan(plan)


def validate_takeoff(project_id: int, rows: list[TakeoffRow], options: ImportOptions | None = None) -> dict:
    options = options or ImportOptions()
    options.dry_run = True
    return validate_and_commit(project_id, rows, options)


def import_takeoff_file(project_id: int, filename: str | None, file_content,
                        options: ImportOptions | None = None) -> dict:
    """Full pipeline: parse → validate → commit."""
    rows = parse_takeoff_file(filename, file_content, max_rows=_cfg("IMPORT_MAX_ROWS", None))
    return validate_and_commit(project_id, rows, options)


def import_takeoff_records(project_id: int, records: list[dict], options: ImportOptions | None = None) -> dict:
    rows = rows_from_records(records, max_rows=_cfg("IMPORT_MAX_ROWS", None))
    return validate_and_commit(project_id, rows, options)

