"""Stage-gate workflow engine - Templates.

``TemplateRegistry`` holds published, immutable template versions keyed by
``(template_id, version)``. Running instances pin the version they were
created from, so publishing a new version never changes them.

The stage library mirrors the builder's palette of preset stages; the
built-in templates are assembled from it.
"""

import dataclasses
import logging
import threading
import uuid
from typing import Dict, Iterable, List, Optional, Set

from .config import ExitCondition, StageType, TemplateSettings, TemplateType, TimeUnit
from .errors import TemplateNotFoundError
from .graph import StageGraph
from .models import (
    ApprovalReceivedTrigger,
    Automation,
    MoveToStageAction,
    SendNotificationAction,
    Stage,
    StageEnterTrigger,
    StageNotification,
    TimeElapsedTrigger,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)


class TemplateRegistry:
    """Thread-safe registry of published template versions.

    Besides the versions themselves it keeps a default template per
    organization, a usage counter bumped on every instantiation, and the
    archived template ids. Archiving is a soft delete: an archived template
    can no longer be instantiated, but its pinned versions still resolve for
    the instances already running on them.
    """

    def __init__(self, load_builtins: bool = False):
        self._lock = threading.RLock()
        self._versions: Dict[str, Dict[int, WorkflowTemplate]] = {}
        self._defaults: Dict[str, str] = {}
        self._usage: Dict[str, int] = {}
        self._archived: Set[str] = set()
        if load_builtins:
            self._register_builtins()

    def publish(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Validate and store ``template`` as the next version of its id.

        The first publish of an id keeps the template's own version; later
        ones get ``latest + 1``. Returns the stored template.
        """
        StageGraph.validate(template)
        with self._lock:
            versions = self._versions.setdefault(template.id, {})
            version = max(versions) + 1 if versions else template.version
            stored = dataclasses.replace(template, version=version)
            versions[version] = stored
        logger.info("Published template %s (%s) v%d", stored.id, stored.name, version)
        return stored

    def get(self, template_id: str, version: Optional[int] = None) -> WorkflowTemplate:
        """Return a pinned version, or the latest one when ``version`` is None."""
        with self._lock:
            versions = self._versions.get(template_id)
            if not versions:
                raise TemplateNotFoundError(template_id, version)
            if version is None:
                return versions[max(versions)]
            template = versions.get(version)
        if template is None:
            raise TemplateNotFoundError(template_id, version)
        return template

    def versions(self, template_id: str) -> List[int]:
        with self._lock:
            return sorted(self._versions.get(template_id, {}))

    def get_active(self, template_id: str, version: Optional[int] = None) -> WorkflowTemplate:
        """Like ``get``, but archived templates are reported as not found."""
        with self._lock:
            if template_id in self._archived:
                raise TemplateNotFoundError(template_id, version)
            return self.get(template_id, version)

    def list_templates(
        self, organization_id: Optional[str] = None, include_archived: bool = False
    ) -> List[WorkflowTemplate]:
        """Latest version of every template, optionally for one organization."""
        with self._lock:
            latest = [
                v[max(v)] for tid, v in self._versions.items()
                if v and (include_archived or tid not in self._archived)
            ]
        return [
            t for t in latest
            if organization_id is None or t.organization_id in ("", organization_id)
        ]

    # ── Defaults, usage & archiving ───────────────────────────────────

    def set_default(self, template_id: str, organization_id: Optional[str] = None) -> WorkflowTemplate:
        """Make ``template_id`` the default for an organization.

        The organization defaults to the template's own. Replaces any
        previous default of that organization.
        """
        with self._lock:
            template = self.get_active(template_id)
            org = template.organization_id if organization_id is None else organization_id
            previous = self._defaults.get(org)
            self._defaults[org] = template_id
        if previous and previous != template_id:
            logger.info("Default template for %s changed from %s to %s", org or "(shared)", previous, template_id)
        return template

    def get_default(self, organization_id: str) -> Optional[WorkflowTemplate]:
        """Latest version of the organization's default template, if any."""
        with self._lock:
            template_id = self._defaults.get(organization_id)
            if template_id is None:
                return None
            return self.get(template_id)

    def archive(self, template_id: str) -> None:
        """Soft-delete a template. Archiving twice is a no-op."""
        with self._lock:
            self.get(template_id)
            if template_id in self._archived:
                return
            self._archived.add(template_id)
            for org in [o for o, tid in self._defaults.items() if tid == template_id]:
                del self._defaults[org]
        logger.info("Archived template %s", template_id)

    def is_archived(self, template_id: str) -> bool:
        with self._lock:
            return template_id in self._archived

    def record_usage(self, template_id: str) -> int:
        """Bump the instantiation counter of a template and return it."""
        with self._lock:
            self._usage[template_id] = self._usage.get(template_id, 0) + 1
            return self._usage[template_id]

    def usage_count(self, template_id: str) -> int:
        with self._lock:
            return self._usage.get(template_id, 0)

    def clone(
        self,
        template_id: str,
        name: str,
        organization_id: Optional[str] = None,
        version: Optional[int] = None,
    ) -> WorkflowTemplate:
        """Publish a copy of a template under a new id, starting at version 1."""
        source = self.get(template_id, version)
        copy = dataclasses.replace(
            source,
            id=uuid.uuid4().hex[:16],
            name=name,
            organization_id=source.organization_id if organization_id is None else organization_id,
            version=1,
        )
        logger.info("Cloning template %s v%d as %s", source.id, source.version, copy.id)
        return self.publish(copy)

    def __contains__(self, template_id: str) -> bool:
        with self._lock:
            return template_id in self._versions

    # ── Built-in templates ────────────────────────────────────────────

    def _register_builtins(self) -> None:
        """Register the three built-in workflow templates."""
        self.publish(self._intake_process_template())
        self.publish(self._project_workflow_template())
        self.publish(self._operational_readiness_template())

    @staticmethod
    def _intake_process_template() -> WorkflowTemplate:
        return WorkflowTemplate(
            id="builtin-intake-process",
            name="Intake Process",
            description="Review, assess and approve incoming requests",
            type=TemplateType.INTAKE,
            stages=build_stages(["intake_initial_review", "intake_assessment", "intake_approval"]),
            settings=TemplateSettings(auto_progress_on_approval=True),
            tags=("intake",),
        )

    @staticmethod
    def _project_workflow_template() -> WorkflowTemplate:
        return WorkflowTemplate(
            id="builtin-project-workflow",
            name="Project Workflow",
            description="Plan, approve budget, execute and review a project",
            type=TemplateType.PROJECT,
            stages=build_stages(
                ["project_planning", "budget_approval", "project_execution", "project_review"]
            ),
            tags=("project",),
        )

    @staticmethod
    def _operational_readiness_template() -> WorkflowTemplate:
        return WorkflowTemplate(
            id="builtin-operational-readiness",
            name="Operational Readiness Review",
            description="Technical and operational readiness before production handoff",
            type=TemplateType.OPERATIONAL_READINESS,
            stages=build_stages(
                [
                    "orr_technical_readiness",
                    "orr_operational_readiness",
                    "security_approval",
                    "orr_production_handoff",
                ]
            ),
            settings=TemplateSettings(require_all_approvals=False),
            tags=("orr", "readiness"),
        )


# ── Stage library ─────────────────────────────────────────────────────

_MANUAL_EXIT = frozenset({ExitCondition.MANUAL_OVERRIDE})

STAGE_LIBRARY: Dict[str, Stage] = {
    s.id: s
    for s in (
        Stage(
            id="intake_initial_review",
            name="Initial Review",
            type=StageType.INTAKE_STAGE,
            description="First review of incoming requests",
            automations=(
                Automation(StageEnterTrigger(), SendNotificationAction(template="intake_received")),
            ),
        ),
        Stage(
            id="intake_assessment",
            name="Request Assessment",
            type=StageType.INTAKE_STAGE,
            description="Detailed assessment of request feasibility",
        ),
        Stage(
            id="intake_approval",
            name="Intake Approval",
            type=StageType.APPROVAL_GATE,
            description="Final approval to proceed with request",
            automations=(Automation(ApprovalReceivedTrigger(), MoveToStageAction()),),
            exit_conditions=_MANUAL_EXIT,
        ),
        Stage(
            id="project_planning",
            name="Project Planning",
            description="Define scope, timeline, and resources",
        ),
        Stage(
            id="project_execution",
            name="Execution",
            description="Active development and implementation",
        ),
        Stage(
            id="project_review",
            name="Review & Testing",
            description="Quality assurance and review",
        ),
        Stage(
            id="manager_approval",
            name="Manager Approval",
            type=StageType.APPROVAL_GATE,
            description="Requires manager approval to proceed",
            automations=(
                Automation(StageEnterTrigger(), SendNotificationAction(template="approval_required")),
            ),
            exit_conditions=_MANUAL_EXIT,
        ),
        Stage(
            id="budget_approval",
            name="Budget Approval",
            type=StageType.APPROVAL_GATE,
            description="Financial approval for project costs",
            exit_conditions=_MANUAL_EXIT,
        ),
        Stage(
            id="security_approval",
            name="Security Review",
            type=StageType.APPROVAL_GATE,
            required=False,
            description="Security team approval and review",
            exit_conditions=_MANUAL_EXIT,
        ),
        Stage(
            id="orr_technical_readiness",
            name="Technical Readiness",
            type=StageType.READINESS_SECTION,
            description="Technical systems and architecture review",
        ),
        Stage(
            id="orr_operational_readiness",
            name="Operational Readiness",
            type=StageType.READINESS_SECTION,
            description="Operations team readiness verification",
        ),
        Stage(
            id="orr_production_handoff",
            name="Production Handoff",
            type=StageType.READINESS_SECTION,
            description="Final handoff to production operations",
            notifications=(StageNotification(event="stage_complete", template="production_handoff"),),
        ),
    )
}


def library_stage(
    preset_id: str,
    stage_id: Optional[str] = None,
    approvers: Iterable[str] = (),
    **overrides,
) -> Stage:
    """Copy a library preset, optionally renaming it and setting approvers."""
    try:
        preset = STAGE_LIBRARY[preset_id]
    except KeyError:
        raise KeyError(f"Unknown stage preset: {preset_id}")
    approvers = frozenset(approvers)
    if approvers:
        overrides["approvers"] = approvers
    if stage_id:
        overrides["id"] = stage_id
    return dataclasses.replace(preset, **overrides)


def build_stages(preset_ids: Iterable[str]) -> tuple:
    return tuple(library_stage(p) for p in preset_ids)


def timed_escalation(duration: int, unit: TimeUnit = TimeUnit.HOURS, recipients: Iterable[str] = ()) -> Automation:
    """A ``time_elapsed`` reminder, usable with the ``time_elapsed`` exit condition."""
    return Automation(
        TimeElapsedTrigger(duration=duration, unit=unit),
        SendNotificationAction(recipients=tuple(recipients), template="stage_overdue"),
        name=f"escalate after {duration} {unit.value}",
    )

