"""Stage-gate workflow engine - Error taxonomy.

Typed exceptions keyed by ``ErrorKind`` so callers (and whatever UI sits
on top of the engine) can tell a pending gate from a rejected one, a lost
write race from a structural template defect, and so on.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from .config import BlockReason


class ErrorKind(Enum):
    """Standardized error kinds raised or recorded by the engine."""

    INVALID_TEMPLATE = "INVALID_TEMPLATE"
    STAGE_BLOCKED = "STAGE_BLOCKED"
    NOT_AN_APPROVER = "NOT_AN_APPROVER"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    AUTOMATION_FAILED = "AUTOMATION_FAILED"
    INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_DATA = "INVALID_DATA"


# Whether the caller can do something (vote, wait, reload, retry) and try again.
RECOVERABLE_KINDS = frozenset(
    {
        ErrorKind.STAGE_BLOCKED,
        ErrorKind.NOT_AN_APPROVER,
        ErrorKind.VERSION_CONFLICT,
        ErrorKind.AUTOMATION_FAILED,
        ErrorKind.INVALID_TRANSITION,
        ErrorKind.INVALID_DATA,
    }
)

BLOCK_MESSAGES: Dict[BlockReason, str] = {
    BlockReason.APPROVAL_PENDING: "Stage is waiting for approval",
    BlockReason.APPROVAL_REJECTED: "Stage approval was rejected",
    BlockReason.MISSING_APPROVERS: "Stage has no approvers who can satisfy it",
}


class WorkflowError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.details = details or []

    @property
    def recoverable(self) -> bool:
        return self.kind in RECOVERABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "kind": self.kind.value,
            "details": list(self.details),
        }


class InvalidTemplateError(WorkflowError):
    """Raised when a template definition is structurally unusable."""

    def __init__(
        self,
        message: str = "Invalid workflow template",
        errors: Optional[List[str]] = None,
        template_id: Optional[str] = None,
    ):
        details = [{"template_id": template_id, "issue": e} for e in (errors or [])]
        super().__init__(message, ErrorKind.INVALID_TEMPLATE, details)
        self.errors = list(errors or [])
        self.template_id = template_id


class StageBlockedError(WorkflowError):
    """Raised when an advance is refused by an unsatisfied approval gate."""

    def __init__(
        self,
        stage_id: str,
        reason: BlockReason,
        pending_approvers: Optional[List[str]] = None,
        rejected_by: Optional[List[str]] = None,
    ):
        details = [
            {
                "stage_id": stage_id,
                "reason": reason.value,
                "pending_approvers": list(pending_approvers or []),
                "rejected_by": list(rejected_by or []),
            }
        ]
        super().__init__(
            f"{BLOCK_MESSAGES[reason]}: {stage_id}",
            ErrorKind.STAGE_BLOCKED,
            details,
        )
        self.stage_id = stage_id
        self.reason = reason
        self.pending_approvers = list(pending_approvers or [])
        self.rejected_by = list(rejected_by or [])


class NotAnApproverError(WorkflowError):
    """Raised when a vote comes from someone outside the stage's approver set."""

    def __init__(self, stage_id: str, approver_id: str):
        super().__init__(
            f"{approver_id} is not an approver for stage {stage_id}",
            ErrorKind.NOT_AN_APPROVER,
            [{"stage_id": stage_id, "approver_id": approver_id}],
        )
        self.stage_id = stage_id
        self.approver_id = approver_id


class VersionConflictError(WorkflowError):
    """Raised by a store when a write was based on a stale instance version."""

    def __init__(self, instance_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"Instance {instance_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            ErrorKind.VERSION_CONFLICT,
            [
                {
                    "instance_id": instance_id,
                    "expected_version": expected_version,
                    "actual_version": actual_version,
                }
            ],
        )
        self.instance_id = instance_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InstanceNotFoundError(WorkflowError):
    def __init__(self, instance_id: str):
        super().__init__(
            f"Unknown workflow instance: {instance_id}",
            ErrorKind.INSTANCE_NOT_FOUND,
            [{"instance_id": instance_id}],
        )
        self.instance_id = instance_id


class TemplateNotFoundError(WorkflowError):
    def __init__(self, template_id: str, version: Optional[int] = None):
        label = template_id if version is None else f"{template_id}@v{version}"
        super().__init__(
            f"Unknown workflow template: {label}",
            ErrorKind.TEMPLATE_NOT_FOUND,
            [{"template_id": template_id, "version": version}],
        )
        self.template_id = template_id
        self.version = version


class InvalidTransitionError(WorkflowError):
    """Raised when an operation is not allowed from the instance's status."""

    def __init__(self, instance_id: str, status: str, operation: str):
        super().__init__(
            f"Cannot {operation} instance {instance_id} in status {status}",
            ErrorKind.INVALID_TRANSITION,
            [{"instance_id": instance_id, "status": status, "operation": operation}],
        )
        self.instance_id = instance_id
        self.status = status
        self.operation = operation


class InvalidInstanceDataError(WorkflowError):
    """Raised when instance data holds a value that cannot be stored as JSON."""

    def __init__(self, path: str, value_type: str):
        super().__init__(
            f"Value at {path} is not JSON-serializable ({value_type})",
            ErrorKind.INVALID_DATA,
            [{"path": path, "type": value_type}],
        )
        self.path = path
        self.value_type = value_type
