"""Stage-gate workflow engine - Template schema.

Parses the template builder's camelCase JSON into the engine's frozen
``WorkflowTemplate`` and back. Each automation comes in as loose
``trigger``/``action`` strings plus ``conditions`` and ``config`` dicts.
Automations that cannot be typed are not fatal: they are dropped and
listed in ``WorkflowTemplate.skipped_automations`` so the engine can
record them when the stage is entered. Structural problems (no stages,
unknown stage types, dangling targets) raise ``InvalidTemplateError``.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .config import (
    ActionType,
    ExitCondition,
    StageType,
    TemplateSettings,
    TemplateType,
    TimeUnit,
    TriggerType,
)
from .errors import InvalidTemplateError
from .graph import StageGraph
from .models import (
    AssignUserAction,
    Automation,
    CreateProjectAction,
    FieldChangeTrigger,
    MoveToStageAction,
    SendNotificationAction,
    SkippedAutomation,
    Stage,
    StageNotification,
    TRIGGER_CLASSES,
    TimeElapsedTrigger,
    WebhookAction,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)

# Names used by the builder UI that differ from the engine's.
_STAGE_TYPE_ALIASES = {
    "project_phase": StageType.PHASE,
    "orr_section": StageType.READINESS_SECTION,
}
_TEMPLATE_TYPE_ALIASES = {"orr": TemplateType.OPERATIONAL_READINESS}


# ─── Raw models ──────────────────────────────────────────────────────────


class AutomationPayload(BaseModel):
    """One automation as the builder stores it."""

    model_config = {"extra": "ignore"}

    trigger: str = ""
    action: str = ""
    name: str = ""
    conditions: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)


class NotificationPayload(BaseModel):
    model_config = {"extra": "ignore"}

    event: str
    recipients: List[str] = Field(default_factory=list)
    template: str = ""


class StagePayload(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str = Field(min_length=1)
    name: str = ""
    type: str = StageType.PHASE.value
    required: bool = True
    description: str = ""
    automations: List[AutomationPayload] = Field(default_factory=list)
    approvers: List[str] = Field(default_factory=list)
    notifications: List[NotificationPayload] = Field(default_factory=list)
    exit_conditions: List[str] = Field(default_factory=list, alias="exitConditions")


class SettingsPayload(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    allow_parallel_execution: bool = Field(default=False, alias="allowParallelExecution")
    auto_progress_on_approval: bool = Field(default=False, alias="autoProgressOnApproval")
    require_all_approvals: bool = Field(default=True, alias="requireAllApprovals")
    notify_on_stage_change: bool = Field(default=True, alias="notifyOnStageChange")


class ConfigurationPayload(BaseModel):
    model_config = {"extra": "ignore"}

    stages: List[StagePayload] = Field(default_factory=list)
    settings: SettingsPayload = Field(default_factory=SettingsPayload)


class TemplatePayload(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    id: Optional[str] = None
    name: str = ""
    organization_id: str = Field(default="", alias="organizationId")
    description: Optional[str] = ""
    type: str = TemplateType.CUSTOM.value
    version: int = Field(default=1, ge=1)
    configuration: ConfigurationPayload = Field(default_factory=ConfigurationPayload)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ─── Parsing ─────────────────────────────────────────────────────────────


def parse_template(raw: Mapping[str, Any]) -> WorkflowTemplate:
    """Build a validated, immutable template from builder JSON."""
    try:
        body = TemplatePayload.model_validate(dict(raw))
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise InvalidTemplateError("Template JSON is malformed", errors=errors, template_id=raw.get("id"))

    errors: List[str] = []
    skipped: List[SkippedAutomation] = []
    stages = [_build_stage(s, errors, skipped) for s in body.configuration.stages]

    template_type = _TEMPLATE_TYPE_ALIASES.get(body.type)
    if template_type is None:
        try:
            template_type = TemplateType(body.type)
        except ValueError:
            errors.append(f"unknown template type '{body.type}'")
            template_type = TemplateType.CUSTOM

    if errors:
        raise InvalidTemplateError("Template is invalid", errors=errors, template_id=body.id)

    kwargs: Dict[str, Any] = {}
    if body.id:
        kwargs["id"] = body.id
    template = WorkflowTemplate(
        name=body.name,
        organization_id=body.organization_id,
        description=body.description or "",
        type=template_type,
        version=body.version,
        stages=tuple(stages),
        settings=TemplateSettings(**body.configuration.settings.model_dump()),
        skipped_automations=tuple(skipped),
        tags=tuple(body.metadata.get("tags") or ()),
        **kwargs,
    )
    StageGraph.validate(template)

    for item in skipped:
        logger.warning(
            "Template %s: skipped automation %d on stage %s (%s)",
            template.id, item.index, item.stage_id, item.reason,
        )
    return template


def _build_stage(body: StagePayload, errors: List[str], skipped: List[SkippedAutomation]) -> Stage:
    stage_type = _STAGE_TYPE_ALIASES.get(body.type)
    if stage_type is None:
        try:
            stage_type = StageType(body.type)
        except ValueError:
            errors.append(f"stage {body.id}: unknown stage type '{body.type}'")
            stage_type = StageType.PHASE

    exits = set()
    for value in body.exit_conditions:
        try:
            exits.add(ExitCondition(value))
        except ValueError:
            errors.append(f"stage {body.id}: unknown exit condition '{value}'")

    automations = []
    for index, raw in enumerate(body.automations):
        try:
            automations.append(build_automation(raw))
        except ValueError as exc:
            skipped.append(SkippedAutomation(stage_id=body.id, index=index, reason=str(exc)))

    return Stage(
        id=body.id,
        name=body.name or body.id,
        type=stage_type,
        required=body.required,
        description=body.description,
        automations=tuple(automations),
        approvers=frozenset(body.approvers),
        notifications=tuple(
            StageNotification(n.event, tuple(n.recipients), n.template) for n in body.notifications
        ),
        exit_conditions=frozenset(exits),
    )


def _pick(mapping: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if mapping.get(key) not in (None, ""):
            return mapping[key]
    return default


def build_automation(body: AutomationPayload) -> Automation:
    """Type a raw automation. Raises ``ValueError`` describing what is wrong."""
    try:
        trigger_type = TriggerType(body.trigger)
    except ValueError:
        raise ValueError(f"unknown trigger '{body.trigger}'")
    try:
        action_type = ActionType(body.action)
    except ValueError:
        raise ValueError(f"unknown action '{body.action}'")

    cond = body.conditions
    if trigger_type == TriggerType.FIELD_CHANGE:
        field_name = _pick(cond, "field", "fieldId", "field_id")
        if not field_name:
            raise ValueError("field_change trigger needs a field")
        trigger = FieldChangeTrigger(field=str(field_name))
    elif trigger_type == TriggerType.TIME_ELAPSED:
        try:
            duration = int(_pick(cond, "duration", "value"))
            unit = TimeUnit(_pick(cond, "unit", default=TimeUnit.HOURS.value))
        except (TypeError, ValueError):
            raise ValueError("time_elapsed trigger needs a positive duration and a known unit")
        if duration <= 0:
            raise ValueError("time_elapsed trigger needs a positive duration and a known unit")
        trigger = TimeElapsedTrigger(duration=duration, unit=unit)
    else:
        trigger = TRIGGER_CLASSES[trigger_type]()

    cfg = body.config
    if action_type == ActionType.MOVE_TO_STAGE:
        action = MoveToStageAction(target_stage_id=_pick(cfg, "targetStageId", "target_stage_id", "stageId"))
    elif action_type == ActionType.SEND_NOTIFICATION:
        action = SendNotificationAction(
            recipients=tuple(cfg.get("recipients") or ()),
            template=str(cfg.get("template") or ""),
        )
    elif action_type == ActionType.ASSIGN_USER:
        user_id = _pick(cfg, "userId", "user_id", "assignTo")
        if not user_id:
            raise ValueError("assign_user action needs a user")
        action = AssignUserAction(user_id=str(user_id))
    elif action_type == ActionType.CREATE_PROJECT:
        action = CreateProjectAction(
            project_template_id=_pick(cfg, "projectTemplateId", "project_template_id"),
            name_field=_pick(cfg, "nameField", "name_field", default="title"),
        )
    else:
        url = _pick(cfg, "url", "endpoint")
        if not url:
            raise ValueError("webhook action needs a url")
        headers = cfg.get("headers") or {}
        payload = _pick(cfg, "payloadTemplate", "payload_template", default={})
        if not isinstance(headers, Mapping) or not isinstance(payload, Mapping):
            raise ValueError("webhook headers and payload template must be objects")
        action = WebhookAction(
            url=str(url),
            headers=tuple(sorted((str(k), str(v)) for k, v in headers.items())),
            payload_template=tuple(sorted(payload.items())),
        )

    return Automation(trigger=trigger, action=action, name=body.name)


# ─── Serialization ───────────────────────────────────────────────────────


def automation_to_dict(automation: Automation) -> Dict[str, Any]:
    trigger, action = automation.trigger, automation.action
    conditions: Dict[str, Any] = {}
    if isinstance(trigger, FieldChangeTrigger):
        conditions = {"field": trigger.field}
    elif isinstance(trigger, TimeElapsedTrigger):
        conditions = {"duration": trigger.duration, "unit": trigger.unit.value}

    if isinstance(action, MoveToStageAction):
        config = {"targetStageId": action.target_stage_id} if action.target_stage_id else {}
    elif isinstance(action, SendNotificationAction):
        config = {"recipients": list(action.recipients), "template": action.template}
    elif isinstance(action, AssignUserAction):
        config = {"userId": action.user_id}
    elif isinstance(action, CreateProjectAction):
        config = {"projectTemplateId": action.project_template_id, "nameField": action.name_field}
    else:
        config = {
            "url": action.url,
            "headers": action.header_dict,
            "payloadTemplate": action.payload_dict,
        }

    out = {
        "trigger": trigger.kind.value,
        "action": action.kind.value,
        "conditions": conditions,
        "config": config,
    }
    if automation.name:
        out["name"] = automation.name
    return out


def template_to_dict(template: WorkflowTemplate) -> Dict[str, Any]:
    """Builder JSON for ``template``. ``parse_template`` reads it back unchanged."""
    settings = template.settings
    return {
        "id": template.id,
        "name": template.name,
        "organizationId": template.organization_id,
        "description": template.description,
        "type": template.type.value,
        "version": template.version,
        "configuration": {
            "stages": [
                {
                    "id": s.id,
                    "name": s.name,
                    "type": s.type.value,
                    "required": s.required,
                    "description": s.description,
                    "automations": [automation_to_dict(a) for a in s.automations],
                    "approvers": sorted(s.approvers),
                    "notifications": [
                        {"event": n.event, "recipients": list(n.recipients), "template": n.template}
                        for n in s.notifications
                    ],
                    "exitConditions": sorted(e.value for e in s.exit_conditions),
                }
                for s in template.stages
            ],
            "settings": {
                "allowParallelExecution": settings.allow_parallel_execution,
                "autoProgressOnApproval": settings.auto_progress_on_approval,
                "requireAllApprovals": settings.require_all_approvals,
                "notifyOnStageChange": settings.notify_on_stage_change,
            },
        },
        "metadata": {"tags": list(template.tags)},
    }
