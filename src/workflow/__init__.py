"""Stage-gate workflow engine: templates, instances, approvals and automations."""

from .config import (
    ActionType,
    AutomationStatus,
    BlockReason,
    EngineConfig,
    ExitCondition,
    GateState,
    InstanceStatus,
    Priority,
    SourceType,
    StageType,
    TemplateSettings,
    TemplateType,
    TimeUnit,
    TriggerType,
    VoteStatus,
)
from .errors import (
    ErrorKind,
    InstanceNotFoundError,
    InvalidInstanceDataError,
    InvalidTemplateError,
    InvalidTransitionError,
    NotAnApproverError,
    StageBlockedError,
    TemplateNotFoundError,
    VersionConflictError,
    WorkflowError,
)
from .models import (
    ApprovalEntry,
    ApprovalReceivedTrigger,
    AssignUserAction,
    Automation,
    AutomationResult,
    CreateProjectAction,
    FieldChangeTrigger,
    InstanceData,
    InstanceMetrics,
    MoveToStageAction,
    SendNotificationAction,
    Stage,
    StageCompleteTrigger,
    StageEnterTrigger,
    StageHistoryEntry,
    StageNotification,
    TimeElapsedTrigger,
    WebhookAction,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowTemplate,
)
from .graph import StageGraph
from .conditions import ConditionEvaluator, EvaluationContext, FieldChange
from .approvals import ApprovalLedger
from .executor import ActionExecutor, DefaultActionExecutor, ExecutionOutcome
from .automations import AutomationRunner
from .notifications import (
    LoggingNotificationSender,
    NotificationSender,
    RecordingNotificationSender,
)
from .store import InMemoryInstanceStore, InstanceLockRegistry, InstanceStore
from .templates import STAGE_LIBRARY, TemplateRegistry, library_stage, timed_escalation
from .schema import parse_template, template_to_dict
from .state_machine import WorkflowStateMachine

__all__ = [
    # Config
    "ActionType",
    "AutomationStatus",
    "BlockReason",
    "EngineConfig",
    "ExitCondition",
    "GateState",
    "InstanceStatus",
    "Priority",
    "SourceType",
    "StageType",
    "TemplateSettings",
    "TemplateType",
    "TimeUnit",
    "TriggerType",
    "VoteStatus",
    # Errors
    "ErrorKind",
    "InstanceNotFoundError",
    "InvalidInstanceDataError",
    "InvalidTemplateError",
    "InvalidTransitionError",
    "NotAnApproverError",
    "StageBlockedError",
    "TemplateNotFoundError",
    "VersionConflictError",
    "WorkflowError",
    # Models
    "ApprovalEntry",
    "ApprovalReceivedTrigger",
    "AssignUserAction",
    "Automation",
    "AutomationResult",
    "CreateProjectAction",
    "FieldChangeTrigger",
    "InstanceData",
    "InstanceMetrics",
    "MoveToStageAction",
    "SendNotificationAction",
    "Stage",
    "StageCompleteTrigger",
    "StageEnterTrigger",
    "StageHistoryEntry",
    "StageNotification",
    "TimeElapsedTrigger",
    "WebhookAction",
    "WorkflowEvent",
    "WorkflowInstance",
    "WorkflowTemplate",
    # Components
    "StageGraph",
    "ConditionEvaluator",
    "EvaluationContext",
    "FieldChange",
    "ApprovalLedger",
    "ActionExecutor",
    "DefaultActionExecutor",
    "ExecutionOutcome",
    "AutomationRunner",
    "LoggingNotificationSender",
    "NotificationSender",
    "RecordingNotificationSender",
    "InMemoryInstanceStore",
    "InstanceLockRegistry",
    "InstanceStore",
    # Templates
    "STAGE_LIBRARY",
    "TemplateRegistry",
    "library_stage",
    "timed_escalation",
    "parse_template",
    "template_to_dict",
    # Engine
    "WorkflowStateMachine",
]
