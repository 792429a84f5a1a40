"""
Review Blueprint — the needs-review exception queue.

Endpoints:
  GET  /api/v1/projects/<pid>/reviews           — list (?status=, ?type=, ?component_id=)
  GET  /api/v1/projects/<pid>/reviews/summary   — counts by status and pending counts by type
  GET  /api/v1/reviews/<id>                     — one item
  POST /api/v1/reviews/<id>/resolve             — run the type's handler and resolve
  POST /api/v1/reviews/<id>/ignore              — dismiss without action
"""

import logging

from flask import Blueprint, jsonify, request

from pipetrack.models.project import Project
from pipetrack.services import review_queue_service
from pipetrack.utils.errors import E, api_error
from pipetrack.utils.helpers import actor_from_request, get_or_404, register_error_handlers

logger = logging.getLogger(__name__)

review_bp = Blueprint("review_bp", __name__, url_prefix="/api/v1")
register_error_handlers(review_bp)


@review_bp.route("/projects/<int:project_id>/reviews", methods=["GET"])
def list_reviews(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    items = review_queue_service.list_reviews(
        project_id,
        status=request.args.get("status"),
        review_type=request.args.get("type"),
        component_id=request.args.get("component_id", type=int),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@review_bp.route("/projects/<int:project_id>/reviews/summary", methods=["GET"])
def review_summary(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    return jsonify(review_queue_service.review_summary(project_id)), 200


@review_bp.route("/reviews/<int:review_id>", methods=["GET"])
def get_review(review_id):
    return jsonify(review_queue_service.get_review(review_id).to_dict()), 200


@review_bp.route("/reviews/<int:review_id>/resolve", methods=["POST"])
def resolve_review(review_id):
    data = request.get_json(silent=True) or {}
    resolution = data.get("resolution") or {}
    if not isinstance(resolution, dict):
        return api_error(E.VALIDATION_INVALID, "resolution must be an object")
    item = review_queue_service.resolve_review(
        review_id, actor_from_request(data), note=data.get("note"), resolution=resolution,
    )
    return jsonify(item), 200


@review_bp.route("/reviews/<int:review_id>/ignore", methods=["POST"])
def ignore_review(review_id):
    data = request.get_json(silent=True) or {}
    item = review_queue_service.ignore_review(review_id, actor_from_request(data), note=data.get("note"))
    return jsonify(item), 200
