"""
Milestone Blueprint — milestone writes and the event ledger.

Endpoints:
  POST /api/v1/components/<id>/milestones        — complete / rollback / update one milestone
  GET  /api/v1/components/<id>/events            — ordered milestone history
  GET  /api/v1/components/<id>/ledger            — cache vs ledger comparison
  POST /api/v1/components/<id>/rebuild           — repair caches from the ledger
  POST /api/v1/projects/<pid>/milestones/bulk    — complete one milestone on many components
"""

import logging

from flask import Blueprint, jsonify, request

from pipetrack.models.project import Project
from pipetrack.services import progress_ledger_service
from pipetrack.utils.errors import E, api_error
from pipetrack.utils.helpers import actor_from_request, get_or_404, register_error_handlers

logger = logging.getLogger(__name__)

milestone_bp = Blueprint("milestone_bp", __name__, url_prefix="/api/v1")
register_error_handlers(milestone_bp)


@milestone_bp.route("/components/<int:component_id>/milestones", methods=["POST"])
def update_milestone(component_id):
    data = request.get_json(silent=True) or {}
    milestone = (data.get("milestone") or "").strip()
    if not milestone:
        return api_error(E.VALIDATION_REQUIRED, "milestone is required")
    action = (data.get("action") or "complete").strip().lower()
    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "metadata must be an object")

    component, event_id, review_ids = progress_ledger_service.update_milestone(
        component_id,
        milestone,
        action,
        actor_from_request(data),
        value=data.get("value"),
        metadata=metadata,
    )
    return jsonify({
        "component": component,
        "event_id": event_id,
        "reviews_created": review_ids,
    }), 200


@milestone_bp.route("/components/<int:component_id>/events", methods=["GET"])
def list_events(component_id):
    return jsonify(progress_ledger_service.list_events(component_id)), 200


@milestone_bp.route("/components/<int:component_id>/ledger", methods=["GET"])
def verify_ledger(component_id):
    return jsonify(progress_ledger_service.verify_component_ledger(component_id)), 200


@milestone_bp.route("/components/<int:component_id>/rebuild", methods=["POST"])
def rebuild(component_id):
    data = request.get_json(silent=True) or {}
    report = progress_ledger_service.rebuild_component_state(component_id, actor_from_request(data))
    return jsonify(report), 200


@milestone_bp.route("/projects/<int:project_id>/milestones/bulk", methods=["POST"])
def bulk_update(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    milestone = (data.get("milestone") or "").strip()
    component_ids = data.get("component_ids")
    if not milestone:
        return api_error(E.VALIDATION_REQUIRED, "milestone is required")
    if not isinstance(component_ids, list) or not component_ids:
        return api_error(E.VALIDATION_REQUIRED, "component_ids must be a non-empty list")
    try:
        component_ids = [int(c) for c in component_ids]
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "component_ids must be integers")

    summary = progress_ledger_service.bulk_update_milestones(
        project_id, component_ids, milestone, actor_from_request(data),
        metadata=data.get("metadata") or None,
    )
    return jsonify(summary), 200
