"""Stage-gate workflow engine - Configuration and enumerations."""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from src.settings import Settings


class TemplateType(Enum):
    """Kind of request a template drives."""

    INTAKE = "intake"
    PROJECT = "project"
    OPERATIONAL_READINESS = "operational_readiness"
    CUSTOM = "custom"


class StageType(Enum):
    """Kind of stage within a template."""

    INTAKE_STAGE = "intake_stage"
    PHASE = "phase"
    APPROVAL_GATE = "approval_gate"
    READINESS_SECTION = "readiness_section"


class InstanceStatus(Enum):
    """Workflow instance status."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.CANCELLED, InstanceStatus.FAILED}
)


class VoteStatus(Enum):
    """Status carried by a single approval entry."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class GateState(Enum):
    """Aggregate approval state of a stage attempt."""

    SATISFIED = "satisfied"
    PENDING = "pending"
    REJECTED = "rejected"
    NO_APPROVERS = "no_approvers"


class BlockReason(Enum):
    """Why an advance was refused."""

    APPROVAL_PENDING = "approval_pending"
    APPROVAL_REJECTED = "approval_rejected"
    MISSING_APPROVERS = "missing_approvers"


class TriggerType(Enum):
    """Automation trigger / engine event kind."""

    STAGE_ENTER = "stage_enter"
    STAGE_COMPLETE = "stage_complete"
    FIELD_CHANGE = "field_change"
    APPROVAL_RECEIVED = "approval_received"
    TIME_ELAPSED = "time_elapsed"


class ActionType(Enum):
    """Automation action kind."""

    MOVE_TO_STAGE = "move_to_stage"
    SEND_NOTIFICATION = "send_notification"
    ASSIGN_USER = "assign_user"
    CREATE_PROJECT = "create_project"
    WEBHOOK = "webhook"


class TimeUnit(Enum):
    """Unit for time_elapsed durations."""

    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"

    @property
    def seconds(self) -> int:
        return _UNIT_SECONDS[self]


_UNIT_SECONDS = {
    TimeUnit.MINUTES: 60,
    TimeUnit.HOURS: 3600,
    TimeUnit.DAYS: 86400,
}


class ExitCondition(Enum):
    """Alternative ways an approval gate can be left without votes."""

    TIME_ELAPSED = "time_elapsed"
    MANUAL_OVERRIDE = "manual_override"


class AutomationStatus(Enum):
    """Outcome of a single automation attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    REQUESTED = "requested"


class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SourceType(Enum):
    """Where an instance came from."""

    INTAKE = "intake"
    MANUAL = "manual"
    API = "api"


@dataclass(frozen=True)
class TemplateSettings:
    """Per-template behaviour switches."""

    allow_parallel_execution: bool = False
    auto_progress_on_approval: bool = False
    require_all_approvals: bool = True
    notify_on_stage_change: bool = True


@dataclass
class EngineConfig:
    """Runtime knobs for the state machine and the default executor."""

    auto_progress_actor: str = "system:auto-progress"
    automation_actor: str = "system:automation"
    max_automation_chain_depth: int = 10
    webhook_timeout_seconds: float = 10.0
    webhook_max_retries: int = 3
    notification_max_retries: int = 2
    retry_backoff_seconds: float = 0.5

    @classmethod
    def from_settings(cls, settings: Optional["Settings"] = None) -> "EngineConfig":
        """Build an engine config from environment-backed settings."""
        if settings is None:
            from src.settings import get_settings

            settings = get_settings()
        return cls(
            auto_progress_actor=settings.auto_progress_actor,
            automation_actor=settings.automation_actor,
            max_automation_chain_depth=settings.max_automation_chain_depth,
            webhook_timeout_seconds=settings.webhook_timeout_seconds,
            webhook_max_retries=settings.webhook_max_retries,
            notification_max_retries=settings.notification_max_retries,
            retry_backoff_seconds=settings.retry_backoff_seconds,
        )
