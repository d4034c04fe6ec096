"""
Platform-wide exception hierarchy.

Services raise these; blueprints register handlers against them once
(``opexhub.blueprints.register_error_handlers``) and get consistent HTTP
status codes everywhere.

Usage:
    from opexhub.core.exceptions import NotFoundError, UnauthorizedError

    raise NotFoundError(resource="Initiative", resource_id=42)
    raise UnauthorizedError(actor_id=7, stage_number=2, required_role="SH")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Initiative").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)

    @property
    def details(self) -> dict:
        return {"resource": self.resource, "resource_id": self.resource_id}


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)

    @property
    def details(self) -> dict:
        return {"resource": self.resource, "field": self.field, "value": self.value}


# ── Workflow taxonomy ────────────────────────────────────────────────────────


class UnknownStageError(NotFoundError):
    """A stage number that is not in the stage catalog."""

    def __init__(self, stage_number) -> None:
        super().__init__(resource="Stage", resource_id=stage_number)
        self.stage_number = stage_number


class WorkflowError(Exception):
    """Base for workflow refusals that carry structured context."""

    def __init__(self, message: str, **context) -> None:
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    @property
    def details(self) -> dict:
        return dict(self.context)


class UnauthorizedError(WorkflowError):
    """The actor is not the identity assigned to the initiative's current stage.

    Surfaced to the caller (HTTP 403), never retried.
    """

    def __init__(
        self,
        actor_id,
        stage_number: int,
        required_role: str,
        reason: str | None = None,
        initiative_id: int | None = None,
    ) -> None:
        msg = f"User {actor_id} may not act on stage {stage_number} (requires role {required_role})"
        if reason:
            msg += f": {reason}"
        super().__init__(
            msg,
            actor_id=actor_id,
            stage_number=stage_number,
            required_role=required_role,
            initiative_id=initiative_id,
        )
        self.actor_id = actor_id
        self.stage_number = stage_number
        self.required_role = required_role


class ConcurrentModificationError(WorkflowError):
    """Another transition committed first. Safe to retry the whole transition."""

    retryable = True

    def __init__(self, initiative_id: int, expected_version=None, actual_version=None) -> None:
        msg = f"Initiative {initiative_id} was modified concurrently"
        if expected_version is not None and actual_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(
            msg,
            initiative_id=initiative_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.initiative_id = initiative_id


class SequencingError(WorkflowError):
    """An operation arrived out of the order the workflow requires (HTTP 409)."""


class InvalidTransitionError(SequencingError):
    """The initiative's status does not allow the requested action."""

    def __init__(self, initiative_id: int, action: str, status: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' initiative {initiative_id} (status={status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, initiative_id=initiative_id, action=action, status=status)
        self.action = action
        self.status = status


class StageGateError(SequencingError):
    """A stage cannot complete (or a sub-workflow is not yet reachable)."""

    def __init__(self, message: str, stage_number: int, initiative_id: int | None = None, **context) -> None:
        super().__init__(message, stage_number=stage_number, initiative_id=initiative_id, **context)
        self.stage_number = stage_number


class AlreadyFinalizedError(SequencingError):
    def __init__(self, entry_id: int) -> None:
        super().__init__(f"Monitoring entry {entry_id} is finalized", entry_id=entry_id)
        self.entry_id = entry_id


class NotFinalizedError(SequencingError):
    def __init__(self, entry_id: int) -> None:
        super().__init__(
            f"Monitoring entry {entry_id} must be finalized before finance approval",
            entry_id=entry_id,
        )
        self.entry_id = entry_id


class DuplicateAssignmentError(ConflictError):
    """A different identity already holds the (site, stage, scope) slot."""

    def __init__(self, site: str, stage_number: int, existing_user_id: int, requested_user_id: int) -> None:
        super().__init__(
            resource="RoleAssignment",
            field="site/stage_number",
            value=f"{site}/{stage_number}",
        )
        self.site = site
        self.stage_number = stage_number
        self.existing_user_id = existing_user_id
        self.requested_user_id = requested_user_id

    @property
    def details(self) -> dict:
        return {
            "site": self.site,
            "stage_number": self.stage_number,
            "existing_user_id": self.existing_user_id,
            "requested_user_id": self.requested_user_id,
        }


class DuplicateEntryError(ConflictError):
    """A monitoring entry for the same (initiative, month, kpi) exists."""

    def __init__(self, initiative_id: int, month: str, kpi: str) -> None:
        super().__init__(
            resource="MonitoringEntry",
            field="initiative_id/monitoring_month/kpi_description",
            value=f"{initiative_id}/{month}/{kpi}",
        )
        self.initiative_id = initiative_id
        self.month = month
        self.kpi = kpi


class InvalidApproverError(ValidationError):
    """Approver role is neither site lead nor initiative lead."""

    def __init__(self, approver_role, entry_id: int | None = None) -> None:
        super().__init__(
            f"Unknown approver role {approver_role!r}",
            details={"approver_role": approver_role, "entry_id": entry_id},
        )
        self.approver_role = approver_role
