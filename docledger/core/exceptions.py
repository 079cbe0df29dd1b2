"""
Ledger-wide exception hierarchy.

Services raise only these types. Blueprints register handlers against
them once and get consistent HTTP status codes everywhere:

    ValidationError   → 400  malformed identifiers / missing required fields
    PermissionDenied  → 403  actor lacks the role, or self-approval
    NotFoundError     → 404  entity or project membership does not exist
    StateError        → 409  operation illegal in the entity's current state
    ConflictError     → 409  concurrent writer won; retry from a fresh read

Usage:
    from docledger.core.exceptions import NotFoundError, StateError

    raise NotFoundError(resource="Artifact", resource_id=42)
    raise StateError("Artifact", 42, "submit", "approved")
"""


class LedgerError(Exception):
    """Base class for every error the service layer raises on purpose."""


class NotFoundError(LedgerError):
    """Raised when a requested resource does not exist within the given scope.

    Also used when the acting user is not a member of the project, so a
    404 does not confirm that the project exists.

    Args:
        resource: Human-readable model/entity name (e.g. "Artifact").
        resource_id: The PK that was looked up.
        project_id: Optional — the project scope that was enforced.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        project_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.project_id = project_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if project_id is not None:
            msg += f" (project={project_id})"
        super().__init__(msg)


class ValidationError(LedgerError):
    """Raised when an identifier or required field is missing or malformed.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PermissionDenied(LedgerError):
    """Raised when the actor lacks the role an operation requires."""

    def __init__(self, user_id: str, action: str, reason: str | None = None) -> None:
        self.user_id = user_id
        self.action = action
        self.reason = reason
        msg = f"User {user_id} is not allowed to {action}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class StateError(LedgerError):
    """Raised when an operation is illegal in the entity's current state.

    Args:
        resource: Model name ("Artifact", "ChangeRequest").
        resource_id: PK of the entity.
        action: The attempted operation.
        current: The state that blocked it (status, lane, …).
        reason: Optional explanation appended to the message.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None,
        action: str,
        current: str | None,
        reason: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.action = action
        self.current = current
        self.reason = reason
        msg = f"Cannot '{action}' {resource} {resource_id} (state={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConflictError(LedgerError):
    """Raised when a concurrent write or unique constraint wins the race.

    Args:
        resource: Model name.
        field: The unique field or pointer that was contended.
        value: The contended value.
        reason: Optional explanation.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        self.reason = reason
        msg = reason or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)
