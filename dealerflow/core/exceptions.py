"""
Platform-wide exception hierarchy.

Services and the workflow engine raise these types; blueprints register
handlers against them once and get consistent HTTP status codes everywhere.

Taxonomy:
  - validation errors  → GateNotSatisfied (422). Always recoverable by the
    caller completing the missing work.
  - state errors       → InvalidTransition, WorkflowComplete,
    WorkflowCancelled, DuplicateWorkflow, BlockerNotFound (409/410/404).
    Caller logic errors; never retried automatically.
  - infrastructure     → NotificationDeliveryError (retried, never surfaced),
    store failures (surfaced as 500).

Usage:
    from dealerflow.core.exceptions import GateNotSatisfied, WorkflowNotFound

    raise WorkflowNotFound(workflow_id)
    raise GateNotSatisfied("qualification", ["Budget range discussed"])
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Workflow", "Blocker").
        resource_id: The id that was looked up. Included in logs and message.
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
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown for API responses.
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


# ── Catalog lookups ──────────────────────────────────────────────────────────


class UnknownProcessType(NotFoundError):
    def __init__(self, process_type: str) -> None:
        self.process_type = process_type
        super().__init__("Process type", process_type)


class UnknownStage(NotFoundError):
    def __init__(self, process_type: str, stage_id: str) -> None:
        self.process_type = process_type
        self.stage_id = stage_id
        super().__init__(f"Stage of {process_type}", stage_id)


class CatalogDefinitionError(ValueError):
    """A process definition violates the stage-order invariants."""


# ── Workflow store ───────────────────────────────────────────────────────────


class WorkflowNotFound(NotFoundError):
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__("Workflow", workflow_id)


class BlockerNotFound(NotFoundError):
    """Blocker is absent or already resolved."""

    def __init__(self, workflow_id: str, blocker_id: str) -> None:
        self.workflow_id = workflow_id
        self.blocker_id = blocker_id
        super().__init__("Open blocker", blocker_id)


class DuplicateWorkflow(ConflictError):
    """An active workflow already exists for the record + process pair."""

    def __init__(self, record_id: str, process_type: str, existing_id: str | None = None) -> None:
        self.record_id = record_id
        self.process_type = process_type
        self.existing_id = existing_id
        super().__init__(f"Active {process_type} workflow", "record_id", record_id)


class ConcurrentUpdate(ConflictError):
    """The stored workflow changed underneath the current writer."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__("Workflow", "version", workflow_id)


class WorkflowStateError(Exception):
    """Base for caller logic errors against the stage state machine."""

    def __init__(self, workflow_id: str, message: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(message)


class InvalidTransition(WorkflowStateError):
    """Target stage is not the immediate next stage."""

    def __init__(self, workflow_id: str, current_stage: str, target_stage: str,
                 expected_stage: str | None = None) -> None:
        self.current_stage = current_stage
        self.target_stage = target_stage
        self.expected_stage = expected_stage
        msg = f"Invalid transition: {current_stage} → {target_stage}"
        if expected_stage:
            msg += f" (next stage is {expected_stage})"
        super().__init__(workflow_id, msg)


class WorkflowClosed(WorkflowStateError):
    """The workflow no longer accepts advances."""


class WorkflowComplete(WorkflowClosed):
    def __init__(self, workflow_id: str, stage_id: str) -> None:
        self.stage_id = stage_id
        super().__init__(workflow_id, f"Workflow {workflow_id} is complete (terminal stage {stage_id})")


class WorkflowCancelled(WorkflowClosed):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(workflow_id, f"Workflow {workflow_id} was cancelled")


class GateNotSatisfied(ValidationError):
    """The current stage's Definition of Done is not met.

    Args:
        stage_id: Stage whose gate was evaluated.
        failed_requirements: Every unmet requirement, by human-readable name,
            in definition order.
    """

    def __init__(self, stage_id: str, failed_requirements: list[str]) -> None:
        self.stage_id = stage_id
        self.failed_requirements = list(failed_requirements)
        super().__init__(
            f"Stage '{stage_id}' has {len(self.failed_requirements)} unmet requirement(s)",
            details={"stage": stage_id, "failed_requirements": self.failed_requirements},
        )


# ── Infrastructure ───────────────────────────────────────────────────────────


class NotificationDeliveryError(Exception):
    """A notification channel could not deliver an event."""

    def __init__(self, channel: str, message: str) -> None:
        self.channel = channel
        super().__init__(f"[{channel}] {message}")
