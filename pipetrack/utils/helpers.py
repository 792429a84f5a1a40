"""Shared blueprint helpers.

get_or_404:               tuple-return lookup (NOT abort)
parse_bool:               truthy query-string / JSON flags
actor_from_request:       acting user id from body, header or query
register_error_handlers:  one mapping of engine exceptions → HTTP for every blueprint
"""
import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from pipetrack.core.exceptions import (
    ConcurrencyConflict,
    ConflictError,
    ImportAbortedError,
    ImportFileError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceFailure,
    ValidationError,
)
from pipetrack.models import db
from pipetrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on", "y"}


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(Project, pid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found"}), 404)
    return obj, None


def parse_bool(value, default=False):
    """Interpret a query-string or JSON flag; None falls back to *default*."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def actor_from_request(data: dict | None = None) -> str | None:
    """Acting user id: JSON ``actor_id`` → ``X-Actor-Id`` header → ``?actor_id=``.

    Authentication lives outside this service; the caller passes the
    already-authenticated user id through.
    """
    data = data or {}
    actor = data.get("actor_id") or request.headers.get("X-Actor-Id") or request.args.get("actor_id")
    if actor is None:
        return None
    actor = str(actor).strip()
    return actor or None


# ── Error handlers ────────────────────────────────────────────────────────────


def register_error_handlers(bp):
    """Attach the engine exception → HTTP mapping to *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(InvalidTransitionError)
    def _handle_transition(error: InvalidTransitionError):
        return api_error(E.CONFLICT_STATE, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.BUSINESS_RULE, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @bp.errorhandler(ConcurrencyConflict)
    def _handle_concurrency(error: ConcurrencyConflict):
        resp, status = api_error(
            E.CONFLICT_CONCURRENT, str(error), details={"retry_after": error.retry_after},
        )
        resp.headers["Retry-After"] = str(max(1, int(round(error.retry_after))))
        return resp, status

    @bp.errorhandler(ImportFileError)
    def _handle_import_file(error: ImportFileError):
        return api_error(E.VALIDATION_INVALID, error.message, status=error.status_code)

    @bp.errorhandler(ImportAbortedError)
    def _handle_import_aborted(error: ImportAbortedError):
        return jsonify({
            "error": str(error),
            "code": E.IMPORT_ABORTED,
            **error.result,
        }), 422

    @bp.errorhandler(PersistenceFailure)
    def _handle_persistence(error: PersistenceFailure):
        logger.error("Persistence failure in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.PERSISTENCE, str(error))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
