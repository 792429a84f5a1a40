"""
Takeoff Import Blueprint.

Endpoints:
  GET  /api/v1/projects/<project_id>/imports/template  — Download CSV template
  POST /api/v1/projects/<project_id>/imports/validate  — Validate without writing (dry run)
  POST /api/v1/projects/<project_id>/imports           — Validate and commit atomically

Accepted input, in order of precedence:
  - multipart upload under ``file`` (.csv or .xlsx)
  - JSON ``{"rows": [{...}, ...]}``
  - JSON ``{"csv_content": "..."}``
  - raw CSV request body

Flags (query string or JSON): overwrite_approved, approve_quantity_increases.
"""

import logging

from flask import Blueprint, Response, jsonify, request

from pipetrack.services.takeoff_import_service import (
    ImportOptions,
    import_takeoff_file,
    import_takeoff_records,
)
from pipetrack.services.takeoff_parser import generate_csv_template
from pipetrack.utils.errors import E, api_error
from pipetrack.utils.helpers import actor_from_request, parse_bool, register_error_handlers

logger = logging.getLogger(__name__)

import_bp = Blueprint("import_bp", __name__, url_prefix="/api/v1/projects/<int:project_id>/imports")
register_error_handlers(import_bp)


# ═══════════════════════════════════════════════════════════════
# Template Download
# ═══════════════════════════════════════════════════════════════
@import_bp.route("/template", methods=["GET"])
def download_template(project_id):
    """Download a CSV template for takeoff import."""
    return Response(
        generate_csv_template(),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=takeoff_template.csv"},
    )


# ═══════════════════════════════════════════════════════════════
# Validate (dry run)
# ═══════════════════════════════════════════════════════════════
@import_bp.route("/validate", methods=["POST"])
def validate_takeoff(project_id):
    """Validate a takeoff without writing anything."""
    return _run_import(project_id, dry_run=True)


# ═══════════════════════════════════════════════════════════════
# Import
# ═══════════════════════════════════════════════════════════════
@import_bp.route("", methods=["POST"])
def import_takeoff(project_id):
    """Validate and commit a takeoff.  Any row error aborts the whole batch (422)."""
    return _run_import(project_id, dry_run=False)


def _run_import(project_id, dry_run):
    data = request.get_json(silent=True) or {}
    options = ImportOptions(
        overwrite_approved=parse_bool(
            data.get("overwrite_approved", request.args.get("overwrite_approved")),
        ),
        approve_quantity_increases=parse_bool(
            data.get("approve_quantity_increases", request.args.get("approve_quantity_increases")),
        ),
        dry_run=dry_run,
        actor_id=actor_from_request(data),
    )

    if "rows" in data:
        result = import_takeoff_records(project_id, data["rows"], options)
    else:
        filename, content = _extract_file_content(data)
        if not content:
            return api_error(
                E.VALIDATION_REQUIRED,
                "Takeoff is required (file upload, JSON rows or raw CSV body)",
            )
        result = import_takeoff_file(project_id, filename, content, options)

    return jsonify(result), 200 if dry_run else 201


# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════
def _extract_file_content(data):
    """(filename, content) from multipart upload, JSON csv_content or raw body."""
    if request.files:
        file = request.files.get("file")
        if file:
            return file.filename, file.read()

    if data.get("csv_content"):
        return "takeoff.csv", data["csv_content"]

    if request.data and not request.is_json:
        return "takeoff.csv", request.data

    return None, None
