"""
Project Blueprint — projects, drawings, components, rollups, operators, templates.

Endpoints:
  GET  /api/v1/projects                                   — list projects
  POST /api/v1/projects                                   — create project
  GET  /api/v1/projects/<pid>                             — project detail
  GET  /api/v1/projects/<pid>/drawings                    — active drawings (?include_retired=1)
  GET  /api/v1/projects/<pid>/drawings/similar?drawing=   — where a drawing number would land
  GET  /api/v1/projects/<pid>/components                  — components (?drawing_id=, ?type=)
  GET  /api/v1/components/<id>                            — component detail with milestones
  GET  /api/v1/projects/<pid>/progress/drawings           — per-drawing rollup
  GET  /api/v1/projects/<pid>/progress/packages           — per-test-package rollup
  GET  /api/v1/projects/<pid>/operators                   — operator registry
  POST /api/v1/projects/<pid>/operators                   — register operator
  POST /api/v1/operators/<id>/verify                      — verify operator
  GET  /api/v1/templates                                  — template versions (?component_type=)
  POST /api/v1/templates                                  — publish a new template version
"""

import logging

from flask import Blueprint, jsonify, request

from pipetrack.models.project import Project
from pipetrack.services import operator_service, project_service, rollup_service, template_service
from pipetrack.utils.errors import E, api_error
from pipetrack.utils.helpers import actor_from_request, get_or_404, parse_bool, register_error_handlers

logger = logging.getLogger(__name__)

project_bp = Blueprint("project_bp", __name__, url_prefix="/api/v1")
register_error_handlers(project_bp)


# ═══════════════════════════════════════════════════════════════
# Projects
# ═══════════════════════════════════════════════════════════════
@project_bp.route("/projects", methods=["GET"])
def list_projects():
    return jsonify(project_service.list_projects()), 200


@project_bp.route("/projects", methods=["POST"])
def create_project():
    data = request.get_json(silent=True) or {}
    if not data.get("code") or not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "code and name are required")
    project = project_service.create_project(data["code"], data["name"], data.get("description", ""))
    return jsonify(project), 201


@project_bp.route("/projects/<int:project_id>", methods=["GET"])
def get_project(project_id):
    project, err = get_or_404(Project, project_id)
    if err:
        return err
    return jsonify(project.to_dict()), 200


# ═══════════════════════════════════════════════════════════════
# Drawings & components
# ═══════════════════════════════════════════════════════════════
@project_bp.route("/projects/<int:project_id>/drawings", methods=["GET"])
def list_drawings(project_id):
    include_retired = parse_bool(request.args.get("include_retired"))
    return jsonify(project_service.list_drawings(project_id, include_retired=include_retired)), 200


@project_bp.route("/projects/<int:project_id>/drawings/similar", methods=["GET"])
def similar_drawings(project_id):
    drawing = request.args.get("drawing", "")
    if not drawing.strip():
        return api_error(E.VALIDATION_REQUIRED, "drawing query parameter is required")
    return jsonify(project_service.similar_drawings(project_id, drawing)), 200


@project_bp.route("/projects/<int:project_id>/components", methods=["GET"])
def list_components(project_id):
    components = project_service.list_components(
        project_id,
        drawing_id=request.args.get("drawing_id", type=int),
        component_type=request.args.get("type"),
        include_retired=parse_bool(request.args.get("include_retired")),
    )
    return jsonify({"items": components, "total": len(components)}), 200


@project_bp.route("/components/<int:component_id>", methods=["GET"])
def get_component(component_id):
    return jsonify(project_service.get_component(component_id)), 200


# ═══════════════════════════════════════════════════════════════
# Rollups
# ═══════════════════════════════════════════════════════════════
@project_bp.route("/projects/<int:project_id>/progress/drawings", methods=["GET"])
def drawing_progress(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    return jsonify(rollup_service.drawing_progress(project_id)), 200


@project_bp.route("/projects/<int:project_id>/progress/packages", methods=["GET"])
def package_progress(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    return jsonify(rollup_service.package_progress(project_id)), 200


# ═══════════════════════════════════════════════════════════════
# Operators
# ═══════════════════════════════════════════════════════════════
@project_bp.route("/projects/<int:project_id>/operators", methods=["GET"])
def list_operators(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    return jsonify(operator_service.list_operators(project_id, status=request.args.get("status"))), 200


@project_bp.route("/projects/<int:project_id>/operators", methods=["POST"])
def register_operator(project_id):
    _, err = get_or_404(Project, project_id)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    if not data.get("name") or not data.get("stencil"):
        return api_error(E.VALIDATION_REQUIRED, "name and stencil are required")
    operator = operator_service.register_operator(
        project_id, data["name"], data["stencil"],
        verified=parse_bool(data.get("verified")),
        actor_id=actor_from_request(data),
    )
    return jsonify(operator), 201


@project_bp.route("/operators/<int:operator_id>/verify", methods=["POST"])
def verify_operator(operator_id):
    data = request.get_json(silent=True) or {}
    return jsonify(operator_service.verify_operator(operator_id, actor_from_request(data))), 200


# ═══════════════════════════════════════════════════════════════
# Templates
# ═══════════════════════════════════════════════════════════════
@project_bp.route("/templates", methods=["GET"])
def list_templates():
    return jsonify(template_service.list_templates(request.args.get("component_type"))), 200


@project_bp.route("/templates", methods=["POST"])
def create_template():
    data = request.get_json(silent=True) or {}
    if not data.get("component_type") or not isinstance(data.get("milestones"), list):
        return api_error(E.VALIDATION_REQUIRED, "component_type and milestones are required")
    template = template_service.create_template_version(
        data["component_type"],
        data.get("workflow_type", "discrete"),
        data["milestones"],
        actor_id=actor_from_request(data),
    )
    return jsonify(template), 201
