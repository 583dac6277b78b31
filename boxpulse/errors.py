"""
Retention engine error taxonomy.

Each class maps to one failure category the coach-facing layer has to
distinguish. Duplicate-active-alert races never escape the Alert Manager
and outcome windows that are not ready are deferrals, not errors.
"""


class RetentionError(Exception):
    """Base class for all domain errors."""

    code: str = "retention_error"
    status_code: int = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class InputIncompleteError(RetentionError):
    """Required signals are missing; scoring declines to run."""

    code = "input_incomplete"
    status_code = 422

    def __init__(self, missing: list[str], member_id: str | None = None):
        super().__init__(
            f"Missing required signals: {', '.join(missing)}",
            missing=missing,
            member_id=member_id,
        )
        self.missing = missing


class InvalidTransitionError(RetentionError):
    """The entity's current state does not permit the requested operation."""

    code = "invalid_transition"
    status_code = 409


class CrossEntityMismatchError(RetentionError):
    """Linked entities belong to different members or boxes."""

    code = "cross_entity_mismatch"
    status_code = 422


class NotFoundError(RetentionError):
    code = "not_found"
    status_code = 404
