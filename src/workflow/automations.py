"""Stage-gate workflow engine - Automation runner.

Firing is split in two steps so the state machine can keep side effects
out of its per-instance critical section:

* ``plan`` picks the automations bound to an event whose conditions match
  (pure, runs under the lock against the committed state);
* ``execute`` runs the planned actions through the ``ActionExecutor``
  (after the lock is released).

Execution is best-effort and independent: each automation gets its own
result entry and one failure never stops the others. ``move_to_stage``
is never executed here; it comes back as a ``requested`` result that the
state machine turns into a fresh, separately locked transition.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .conditions import ConditionEvaluator, EvaluationContext
from .config import ActionType, AutomationStatus, TriggerType
from .executor import ActionExecutor, ExecutionOutcome
from .models import (
    Automation,
    AutomationResult,
    Stage,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedAutomation:
    """An automation selected to run for one event."""

    stage_id: str
    index: int
    automation: Automation
    event_type: TriggerType


class AutomationRunner:
    """Matches automations to events and runs them through an executor."""

    def __init__(self, executor: ActionExecutor, evaluator: Optional[ConditionEvaluator] = None):
        self.executor = executor
        self.evaluator = evaluator or ConditionEvaluator()

    def plan(
        self, event_type: TriggerType, stage: Stage, context: EvaluationContext
    ) -> List[PlannedAutomation]:
        """Select matching automations in declaration order."""
        planned = []
        for index, automation in stage.automations_for(event_type):
            if self.evaluator.matches(automation.trigger, context):
                planned.append(PlannedAutomation(stage.id, index, automation, event_type))
            else:
                logger.debug(
                    "Automation %d on %s did not match %s", index, stage.id, event_type.value
                )
        return planned

    def execute(
        self, planned: List[PlannedAutomation], instance: WorkflowInstance
    ) -> List[AutomationResult]:
        """Run planned automations and record one result per attempt."""
        return [self._run_one(p, instance) for p in planned]

    def fire(
        self,
        event: WorkflowEvent,
        stage: Stage,
        instance: WorkflowInstance,
        context: EvaluationContext,
    ) -> List[AutomationResult]:
        """Plan and execute in one go (no locking concerns)."""
        return self.execute(self.plan(event.type, stage, context), instance)

    @staticmethod
    def skipped_results(template: WorkflowTemplate, stage_id: str) -> List[AutomationResult]:
        """Results recording malformed automations dropped from ``stage_id``."""
        return [
            AutomationResult(
                stage_id=s.stage_id,
                automation_index=s.index,
                trigger="",
                action="",
                status=AutomationStatus.SKIPPED,
                detail=s.reason,
            )
            for s in template.skipped_for(stage_id)
        ]

    def _run_one(self, planned: PlannedAutomation, instance: WorkflowInstance) -> AutomationResult:
        action = planned.automation.action
        result = AutomationResult(
            stage_id=planned.stage_id,
            automation_index=planned.index,
            trigger=planned.event_type.value,
            action=action.kind.value,
            status=AutomationStatus.REQUESTED,
        )

        if action.kind == ActionType.MOVE_TO_STAGE:
            result.detail = f"Move to {action.target_stage_id or 'next stage'} requested"
            result.payload = {"target_stage_id": action.target_stage_id}
            return result

        try:
            outcome = self.executor.execute(action, instance)
        except Exception as exc:
            logger.error(
                "Executor raised for automation %d on %s", planned.index, planned.stage_id,
                exc_info=True,
            )
            outcome = ExecutionOutcome(ok=False, detail=f"{type(exc).__name__}: {exc}")

        result.status = AutomationStatus.SUCCEEDED if outcome.ok else AutomationStatus.FAILED
        result.detail = outcome.detail
        result.attempts = outcome.attempts
        result.payload = dict(outcome.payload)
        if not outcome.ok:
            logger.warning(
                "Automation %d (%s) on stage %s failed for instance %s: %s",
                planned.index, action.kind.value, planned.stage_id, instance.id, outcome.detail,
            )
        return result
