"""Stage-gate workflow engine - Data model.

Templates, stages and automations are frozen: they are built once when a
template is published and never mutated by the engine. Instances are the
only mutable entity and are owned by ``WorkflowStateMachine``.

Triggers and actions are closed tagged unions. Each variant carries only its
own payload and exposes its kind through a ``kind`` class attribute; the
module checks at import time that every ``TriggerType`` / ``ActionType`` has
exactly one variant.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from .config import (
    ActionType,
    AutomationStatus,
    ExitCondition,
    InstanceStatus,
    Priority,
    StageType,
    TemplateSettings,
    TemplateType,
    TimeUnit,
    TriggerType,
    VoteStatus,
)
from .errors import InvalidInstanceDataError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# Marks a field value that is absent (distinct from an explicit None).
MISSING = object()

_JSON_SCALARS = (str, int, float, bool, type(None))


def check_json_safe(value: Any, path: str) -> None:
    """Raise ``InvalidInstanceDataError`` unless ``value`` survives a JSON round trip.

    Only dicts with string keys, lists and JSON scalars are accepted, so an
    instance reads back the same from every store.
    """
    if isinstance(value, _JSON_SCALARS):
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            check_json_safe(item, f"{path}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidInstanceDataError(f"{path}.{key!r}", f"{type(key).__name__} key")
            check_json_safe(item, f"{path}.{key}")
        return
    raise InvalidInstanceDataError(path, type(value).__name__)


# ── Triggers ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StageEnterTrigger:
    kind: ClassVar[TriggerType] = TriggerType.STAGE_ENTER


@dataclass(frozen=True)
class StageCompleteTrigger:
    kind: ClassVar[TriggerType] = TriggerType.STAGE_COMPLETE


@dataclass(frozen=True)
class FieldChangeTrigger:
    """Fires when the named form/custom field changes value."""

    field: str
    kind: ClassVar[TriggerType] = TriggerType.FIELD_CHANGE


@dataclass(frozen=True)
class ApprovalReceivedTrigger:
    kind: ClassVar[TriggerType] = TriggerType.APPROVAL_RECEIVED


@dataclass(frozen=True)
class TimeElapsedTrigger:
    """Fires once the current stage has been open for ``duration`` ``unit``s."""

    duration: int
    unit: TimeUnit = TimeUnit.HOURS
    kind: ClassVar[TriggerType] = TriggerType.TIME_ELAPSED

    @property
    def threshold(self) -> timedelta:
        return timedelta(seconds=self.duration * self.unit.seconds)


Trigger = Union[
    StageEnterTrigger,
    StageCompleteTrigger,
    FieldChangeTrigger,
    ApprovalReceivedTrigger,
    TimeElapsedTrigger,
]

TRIGGER_CLASSES: Dict[TriggerType, type] = {
    cls.kind: cls
    for cls in (
        StageEnterTrigger,
        StageCompleteTrigger,
        FieldChangeTrigger,
        ApprovalReceivedTrigger,
        TimeElapsedTrigger,
    )
}


# ── Actions ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MoveToStageAction:
    """Request a stage change; ``None`` target means the next stage."""

    target_stage_id: Optional[str] = None
    kind: ClassVar[ActionType] = ActionType.MOVE_TO_STAGE


@dataclass(frozen=True)
class SendNotificationAction:
    recipients: Tuple[str, ...] = ()
    template: str = ""
    kind: ClassVar[ActionType] = ActionType.SEND_NOTIFICATION


@dataclass(frozen=True)
class AssignUserAction:
    user_id: str
    kind: ClassVar[ActionType] = ActionType.ASSIGN_USER


@dataclass(frozen=True)
class CreateProjectAction:
    project_template_id: Optional[str] = None
    name_field: str = "title"
    kind: ClassVar[ActionType] = ActionType.CREATE_PROJECT


@dataclass(frozen=True)
class WebhookAction:
    url: str
    headers: Tuple[Tuple[str, str], ...] = ()
    payload_template: Tuple[Tuple[str, Any], ...] = ()
    kind: ClassVar[ActionType] = ActionType.WEBHOOK

    @property
    def header_dict(self) -> Dict[str, str]:
        return dict(self.headers)

    @property
    def payload_dict(self) -> Dict[str, Any]:
        return dict(self.payload_template)


Action = Union[
    MoveToStageAction,
    SendNotificationAction,
    AssignUserAction,
    CreateProjectAction,
    WebhookAction,
]

ACTION_CLASSES: Dict[ActionType, type] = {
    cls.kind: cls
    for cls in (
        MoveToStageAction,
        SendNotificationAction,
        AssignUserAction,
        CreateProjectAction,
        WebhookAction,
    )
}


def _check_exhaustive() -> None:
    missing_triggers = set(TriggerType) - set(TRIGGER_CLASSES)
    missing_actions = set(ActionType) - set(ACTION_CLASSES)
    if missing_triggers or missing_actions:
        raise TypeError(
            f"Unmapped automation kinds: triggers={sorted(t.value for t in missing_triggers)} "
            f"actions={sorted(a.value for a in missing_actions)}"
        )


_check_exhaustive()


# ── Template ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Automation:
    """A trigger/action binding on a stage."""

    trigger: Trigger
    action: Action
    name: str = ""


@dataclass(frozen=True)
class StageNotification:
    """Notification sent to fixed recipients on a stage event."""

    event: str
    recipients: Tuple[str, ...] = ()
    template: str = ""


@dataclass(frozen=True)
class SkippedAutomation:
    """A malformed automation found while parsing a raw template."""

    stage_id: str
    index: int
    reason: str


@dataclass(frozen=True)
class Stage:
    """A node in the template's ordered stage list."""

    id: str
    name: str = ""
    type: StageType = StageType.PHASE
    required: bool = True
    description: str = ""
    automations: Tuple[Automation, ...] = ()
    approvers: FrozenSet[str] = frozenset()
    notifications: Tuple[StageNotification, ...] = ()
    exit_conditions: FrozenSet[ExitCondition] = frozenset()

    @property
    def is_approval_gate(self) -> bool:
        return self.type == StageType.APPROVAL_GATE

    def automations_for(self, trigger_type: TriggerType) -> List[Tuple[int, Automation]]:
        """Return ``(index, automation)`` pairs bound to ``trigger_type``, in order."""
        return [
            (i, a) for i, a in enumerate(self.automations) if a.trigger.kind == trigger_type
        ]


@dataclass(frozen=True)
class WorkflowTemplate:
    """Immutable, versioned workflow definition."""

    id: str = field(default_factory=_new_id)
    name: str = ""
    organization_id: str = ""
    description: str = ""
    type: TemplateType = TemplateType.CUSTOM
    version: int = 1
    stages: Tuple[Stage, ...] = ()
    settings: TemplateSettings = field(default_factory=TemplateSettings)
    skipped_automations: Tuple[SkippedAutomation, ...] = ()
    tags: Tuple[str, ...] = ()

    def stage_ids(self) -> List[str]:
        return [s.id for s in self.stages]

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def skipped_for(self, stage_id: str) -> List[SkippedAutomation]:
        return [s for s in self.skipped_automations if s.stage_id == stage_id]


# ── Instance ─────────────────────────────────────────────────────────


@dataclass
class StageHistoryEntry:
    """One visit to a stage. Write-once after ``exited_at`` is set."""

    stage_id: str
    entered_at: datetime
    actor: str
    attempt: int = 1
    exited_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    notes: str = ""

    @property
    def is_open(self) -> bool:
        return self.exited_at is None

    def close(self, at: datetime, notes: str = "") -> None:
        if self.exited_at is not None:
            raise ValueError(f"History entry for {self.stage_id} is already closed")
        self.exited_at = at
        self.duration_ms = max(0, int((at - self.entered_at).total_seconds() * 1000))
        if notes:
            self.notes = notes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "entered_at": _iso(self.entered_at),
            "exited_at": _iso(self.exited_at),
            "actor": self.actor,
            "attempt": self.attempt,
            "duration_ms": self.duration_ms,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "StageHistoryEntry":
        return cls(
            stage_id=raw["stage_id"],
            entered_at=_parse_dt(raw["entered_at"]),
            actor=raw.get("actor", ""),
            attempt=raw.get("attempt", 1),
            exited_at=_parse_dt(raw.get("exited_at")),
            duration_ms=raw.get("duration_ms"),
            notes=raw.get("notes", ""),
        )


@dataclass
class ApprovalEntry:
    """A single vote. Superseded entries stay in the list for audit."""

    stage_id: str
    approver_id: str
    status: VoteStatus
    timestamp: datetime = field(default_factory=utcnow)
    comments: str = ""
    attempt: int = 1
    superseded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "approver_id": self.approver_id,
            "status": self.status.value,
            "comments": self.comments,
            "timestamp": _iso(self.timestamp),
            "attempt": self.attempt,
            "superseded": self.superseded,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ApprovalEntry":
        return cls(
            stage_id=raw["stage_id"],
            approver_id=raw["approver_id"],
            status=VoteStatus(raw["status"]),
            timestamp=_parse_dt(raw["timestamp"]),
            comments=raw.get("comments", ""),
            attempt=raw.get("attempt", 1),
            superseded=raw.get("superseded", False),
        )


@dataclass
class AutomationResult:
    """Audit record for one automation attempt."""

    stage_id: str
    automation_index: int
    trigger: str
    action: str
    status: AutomationStatus
    detail: str = ""
    attempts: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    result_id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.status in (AutomationStatus.SUCCEEDED, AutomationStatus.REQUESTED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result_id": self.result_id,
            "stage_id": self.stage_id,
            "automation_index": self.automation_index,
            "trigger": self.trigger,
            "action": self.action,
            "status": self.status.value,
            "detail": self.detail,
            "attempts": self.attempts,
            "payload": copy.deepcopy(self.payload),
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "AutomationResult":
        return cls(
            stage_id=raw["stage_id"],
            automation_index=raw["automation_index"],
            trigger=raw["trigger"],
            action=raw["action"],
            status=AutomationStatus(raw["status"]),
            detail=raw.get("detail", ""),
            attempts=raw.get("attempts", 0),
            payload=dict(raw.get("payload") or {}),
            result_id=raw["result_id"],
            timestamp=_parse_dt(raw["timestamp"]),
        )


@dataclass
class InstanceData:
    """Opaque payload the condition evaluator reads."""

    form_data: Dict[str, Any] = field(default_factory=dict)
    custom_fields: Dict[str, Any] = field(default_factory=dict)

    def lookup(self, name: str) -> Tuple[bool, Any]:
        """Return ``(found, value)``; form data wins over custom fields."""
        if name in self.form_data:
            return True, self.form_data[name]
        if name in self.custom_fields:
            return True, self.custom_fields[name]
        return False, None


@dataclass
class WorkflowInstance:
    """A running execution of a template version."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    template_id: str = ""
    template_version: int = 1
    organization_id: str = ""
    title: str = ""
    description: str = ""
    status: InstanceStatus = InstanceStatus.ACTIVE
    current_stage: str = ""
    stage_history: List[StageHistoryEntry] = field(default_factory=list)
    approvals: List[ApprovalEntry] = field(default_factory=list)
    automation_log: List[AutomationResult] = field(default_factory=list)
    data: InstanceData = field(default_factory=InstanceData)
    priority: Priority = Priority.MEDIUM
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    created_by: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def open_entry(self) -> Optional[StageHistoryEntry]:
        """The history entry for the stage currently occupied, if any."""
        if self.stage_history and self.stage_history[-1].is_open:
            return self.stage_history[-1]
        return None

    def attempt_of(self, stage_id: str) -> int:
        """Number of times ``stage_id`` has been entered (0 if never)."""
        return sum(1 for e in self.stage_history if e.stage_id == stage_id)

    def copy(self) -> "WorkflowInstance":
        return copy.deepcopy(self)

    def summary(self) -> Dict[str, Any]:
        """Small dict used in notification and webhook payloads."""
        return {
            "id": self.id,
            "template_id": self.template_id,
            "title": self.title,
            "status": self.status.value,
            "current_stage": self.current_stage,
            "priority": self.priority.value,
            "assigned_to": self.assigned_to,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "template_version": self.template_version,
            "organization_id": self.organization_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "current_stage": self.current_stage,
            "stage_history": [e.to_dict() for e in self.stage_history],
            "approvals": [a.to_dict() for a in self.approvals],
            "automation_log": [r.to_dict() for r in self.automation_log],
            "data": {
                "form_data": copy.deepcopy(self.data.form_data),
                "custom_fields": copy.deepcopy(self.data.custom_fields),
            },
            "priority": self.priority.value,
            "assigned_to": self.assigned_to,
            "due_date": _iso(self.due_date),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "metadata": copy.deepcopy(self.metadata),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "WorkflowInstance":
        data = raw.get("data") or {}
        return cls(
            id=raw["id"],
            template_id=raw["template_id"],
            template_version=raw.get("template_version", 1),
            organization_id=raw.get("organization_id", ""),
            title=raw.get("title", ""),
            description=raw.get("description", ""),
            status=InstanceStatus(raw["status"]),
            current_stage=raw.get("current_stage", ""),
            stage_history=[StageHistoryEntry.from_dict(e) for e in raw.get("stage_history", [])],
            approvals=[ApprovalEntry.from_dict(a) for a in raw.get("approvals", [])],
            automation_log=[AutomationResult.from_dict(r) for r in raw.get("automation_log", [])],
            data=InstanceData(
                form_data=dict(data.get("form_data") or {}),
                custom_fields=dict(data.get("custom_fields") or {}),
            ),
            priority=Priority(raw.get("priority", Priority.MEDIUM.value)),
            assigned_to=raw.get("assigned_to"),
            due_date=_parse_dt(raw.get("due_date")),
            created_by=raw.get("created_by", ""),
            created_at=_parse_dt(raw.get("created_at")) or utcnow(),
            updated_at=_parse_dt(raw.get("updated_at")) or utcnow(),
            metadata=dict(raw.get("metadata") or {}),
        )


# ── Events & queries ─────────────────────────────────────────────────


@dataclass
class WorkflowEvent:
    """An external event submitted against an instance's current stage.

    ``stage_id`` defaults to the instance's current stage. For
    ``field_change`` events ``field``/``value`` carry the new value and
    ``target`` names the payload it lives in (``form_data`` or
    ``custom_fields``). ``previous`` is the value the caller saw before the
    change; when omitted, the value stored on the instance is used.
    """

    type: TriggerType
    stage_id: str = ""
    field: str = ""
    value: Any = None
    previous: Any = MISSING
    target: str = "form_data"
    occurred_at: Optional[datetime] = None
    actor: str = ""

    def __post_init__(self):
        self.type = TriggerType(self.type)


@dataclass
class StageMetric:
    duration_ms: int = 0
    attempts: int = 0


@dataclass
class InstanceMetrics:
    """Derived, read-only view of an instance."""

    instance_id: str
    status: str
    current_stage: str
    total_duration_ms: Optional[int]
    pending_approvals: int
    can_progress: bool
    blocked_reason: Optional[str] = None
    stage_metrics: Dict[str, StageMetric] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "status": self.status,
            "current_stage": self.current_stage,
            "total_duration_ms": self.total_duration_ms,
            "pending_approvals": self.pending_approvals,
            "can_progress": self.can_progress,
            "blocked_reason": self.blocked_reason,
            "stage_metrics": {
                k: {"duration_ms": v.duration_ms, "attempts": v.attempts}
                for k, v in self.stage_metrics.items()
            },
        }
