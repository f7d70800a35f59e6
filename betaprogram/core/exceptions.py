"""
Engine-wide exception hierarchy.

Every service raises these types and nothing else for expected failures.
The beta blueprint registers one handler per base class and gets
consistent HTTP status codes and machine-readable reasons everywhere.

All validation and precondition checks run before any mutation, so a
raised exception always means nothing was applied.

Usage:
    from betaprogram.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Task", resource_id=42)
    raise ValidationError("title is required", details={"title": "blank"})
    raise AgreementRequiredError(tester_id="u-1", title_id=7)
"""


class NotFoundError(Exception):
    """Raised when a requested task, title or feedback item does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Title", "Task").
        resource_id: The key that was looked up.
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
    """Raised when input is malformed.

    Empty titles, severity on non-bug feedback, out-of-range rewards,
    unknown enum values.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the caller lacks the capability for an operation.

    Args:
        user_id: Caller identity.
        action: Capability that was checked (e.g. "task.create").
    """

    def __init__(self, user_id: str | None, action: str, message: str | None = None) -> None:
        self.user_id = user_id
        self.action = action
        super().__init__(message or f"User {user_id} is not allowed to perform '{action}'")


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique record.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class AlreadyEnrolledError(ConflictError):
    """Active enrollment already exists for (tester, title).

    Carries the existing enrollment so the HTTP layer can absorb the
    conflict into an idempotent success response.
    """

    def __init__(self, enrollment) -> None:
        self.enrollment = enrollment
        super().__init__(
            "Enrollment", "tester_id,title_id",
            f"{enrollment.tester_id},{enrollment.title_id}",
        )


# ── Preconditions ────────────────────────────────────────────────────────────


class PreconditionFailedError(Exception):
    """Raised when the engine state does not permit the operation.

    Args:
        reason: Machine-readable reason code (e.g. "AGREEMENT_REQUIRED").
        message: Human-readable explanation.
    """

    reason = "PRECONDITION_FAILED"

    def __init__(self, message: str, reason: str | None = None) -> None:
        if reason:
            self.reason = reason
        super().__init__(message)


class AgreementRequiredError(PreconditionFailedError):
    reason = "AGREEMENT_REQUIRED"

    def __init__(self, tester_id: str, title_id: int) -> None:
        self.tester_id = tester_id
        self.title_id = title_id
        super().__init__(
            f"Tester {tester_id} must accept the confidentiality agreement for title {title_id} before joining"
        )


class NotEnrolledError(PreconditionFailedError):
    reason = "NOT_ENROLLED"

    def __init__(self, tester_id: str, title_id: int) -> None:
        self.tester_id = tester_id
        self.title_id = title_id
        super().__init__(f"Tester {tester_id} has no active enrollment on title {title_id}")


class TitleNotInTestingError(PreconditionFailedError):
    reason = "TITLE_NOT_IN_TESTING"

    def __init__(self, title_id: int, release_state: str) -> None:
        self.title_id = title_id
        self.release_state = release_state
        super().__init__(f"Title {title_id} is not in testing (state={release_state})")


class AlreadyReleasedError(PreconditionFailedError):
    reason = "ALREADY_RELEASED"

    def __init__(self, title_id: int) -> None:
        self.title_id = title_id
        super().__init__(f"Title {title_id} is already released")
