"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once and get consistent HTTP status codes everywhere.

Row-level import problems are NOT raised one by one.  The import
validator collects them into a report and raises a single
``ImportAbortedError`` carrying that report, so a batch with many bad
rows still yields one complete answer.

Usage:
    from pipetrack.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Component", resource_id=42)
    raise ValidationError("Milestone 'Weld Made' is not part of this template")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "Component").
        resource_id: The PK that was looked up. Included in logs and the message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class TemplateValidationError(ValidationError):
    """A progress template violates its structural rules (weights, names, order)."""


class InvalidTransitionError(ValidationError):
    """A state change that the owning state machine does not allow.

    Used for milestone actions (completing an already complete milestone,
    rolling back one that is not complete) and review status changes out
    of a terminal state.  Maps to HTTP 409.
    """

    def __init__(self, entity: str, current: str, requested: str) -> None:
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot {requested} {entity} in state '{current}'",
            details={"current": current, "requested": requested},
        )


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class IdentityConflictError(ConflictError):
    """An exact-identity component key repeats without an overwrite approval."""

    def __init__(self, field: str, value: str, row: int | None = None, existing: bool = True) -> None:
        self.row = row
        self.existing = existing
        super().__init__("Component", field, value)

    def as_row_error(self, hint: str = "") -> dict:
        """Entry for an import report's ``errors`` list."""
        if self.existing:
            reason = f"{self.field} '{self.value}' already exists"
        else:
            reason = f"Duplicate {self.field} '{self.value}' in this batch"
        if hint:
            reason = f"{reason} ({hint})"
        return {"row": self.row, "field": self.field, "reason": reason}


class ConcurrencyConflict(Exception):
    """Another writer holds the lock, or the dataset moved under a validated batch.

    The caller may retry with backoff; nothing was written.  Maps to HTTP 409.
    """

    def __init__(self, message: str, retry_after: float = 1.0) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class PersistenceFailure(Exception):
    """The storage layer rejected or lost a write; the transaction was rolled back.

    The message is deliberately opaque; the underlying error is chained
    (``__cause__``) and logged server-side only.  Maps to HTTP 500.
    """

    def __init__(self, message: str = "Storage write failed; no changes were applied") -> None:
        super().__init__(message)


class ImportFileError(Exception):
    """The uploaded takeoff cannot be read at all (missing headers, empty, too large)."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ImportAbortedError(Exception):
    """A batch had at least one hard row error; nothing was written.

    ``result`` is the full import report (counts plus every row error).
    """

    def __init__(self, result: dict) -> None:
        self.result = result
        super().__init__(f"Import aborted with {len(result.get('errors', []))} row error(s)")
