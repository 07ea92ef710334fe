"""JSON error envelope for the compliance API.

Every error response has the shape ``{"error": <message>, "code": <ERR_*>}``
plus an optional ``details`` object. Blueprints either build one directly::

    return api_error(E.NOT_FOUND, "Job 'x' not found")

or call ``register_error_handlers(bp)`` so that domain exceptions raised by
the services are rendered the same way.
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from compliance_engine.core.exceptions import (
    ConflictError,
    DirectoryUnavailableError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from compliance_engine.models import db

logger = logging.getLogger(__name__)


class E:
    """Error codes returned in the ``code`` field."""

    # malformed request (400)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    # rule / event rejected by the service layer (422)
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    NOT_FOUND = "ERR_NOT_FOUND"
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    # duplicate row, or assignment not in a state that allows the action (409)
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    # directory service down (503)
    UPSTREAM_UNAVAILABLE = "ERR_UPSTREAM_UNAVAILABLE"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


_STATUS_FOR_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.RATE_LIMITED: 429,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.UPSTREAM_UNAVAILABLE: 503,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Return ``(response, status)``; status defaults from the code, else 400."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_FOR_CODE.get(code, 400)


def register_error_handlers(bp) -> None:
    """Render the engine's exceptions as JSON errors for every route of ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _not_found(error: NotFoundError):
        # resource_id / company_id stay in the log, never in the response
        logger.debug("Not found: %s", error)
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @bp.errorhandler(ValidationError)
    def _validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _conflict(error: ConflictError):
        db.session.rollback()
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})

    @bp.errorhandler(InvalidTransitionError)
    def _transition(error: InvalidTransitionError):
        db.session.rollback()
        return api_error(
            E.CONFLICT_STATE, str(error),
            details={"current_status": error.current_status, "action": error.action},
        )

    @bp.errorhandler(DirectoryUnavailableError)
    def _directory(error: DirectoryUnavailableError):
        logger.warning("Directory unavailable during request: %s", error,
                       extra={"company_id": error.company_id})
        return api_error(E.UPSTREAM_UNAVAILABLE, "Directory service unavailable")

    @bp.errorhandler(SQLAlchemyError)
    def _database(error: SQLAlchemyError):
        db.session.rollback()
        logger.exception("Database error in endpoint=%s", request.endpoint)
        return api_error(E.DATABASE, "Database error")
