"""
Engine-wide exception hierarchy.

Services raise these canonical types; blueprints register handlers against
them once and get consistent HTTP status codes everywhere.

Usage:
    from compliance_engine.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ComplianceRule", resource_id=42)
    raise ValidationError("grace_period_days must be >= 0", details={"grace_period_days": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-company lookups, so a
    caller cannot probe for records owned by another company.

    Args:
        resource: Human-readable model/entity name (e.g. "ComplianceRule").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        company_id: Optional. The scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        company_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.company_id = company_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if company_id is not None:
            msg += f" (company={company_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    The data was well-formed JSON but violated a rule invariant (negative
    grace period, edit of an activated rule, unknown exemption type...).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


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


class InvalidTransitionError(Exception):
    """Raised when an assignment status change is not allowed from its current state.

    Inside the lifecycle clock this is logged and skipped; on the HTTP
    surface it maps to 409.
    """

    def __init__(self, assignment_id: int, action: str, current: str, reason: str | None = None):
        msg = f"Cannot '{action}' assignment {assignment_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.assignment_id = assignment_id
        self.action = action
        self.current_status = current
        self.reason = reason


class DirectoryUnavailableError(Exception):
    """Raised when the directory/org service cannot produce a snapshot.

    Transient: the rule's evaluation pass is aborted without writes and
    retried wholesale on the next tick.
    """

    def __init__(self, company_id: str, reason: str) -> None:
        self.company_id = company_id
        self.reason = reason
        super().__init__(f"Directory unavailable for company={company_id}: {reason}")
