"""Stage-gate workflow engine - Stage graph.

Stateless helpers over a template's ordered stage list: structural
validation at publish time and "what comes after X" at run time.
"""

from collections import Counter
from typing import List, Optional, Sequence, Tuple

from .config import ActionType, ExitCondition, TriggerType
from .errors import InvalidTemplateError
from .models import Stage, WorkflowTemplate


class StageGraph:
    """Validates and walks the ordered stages of a template."""

    @staticmethod
    def validation_errors(
        template: WorkflowTemplate, current_stage: Optional[str] = None
    ) -> List[str]:
        """Validate the template definition. Returns a list of error strings."""
        errors: List[str] = []

        if not template.stages:
            errors.append("No stages defined")
            return errors

        ids = [s.id for s in template.stages]
        for stage_id, count in Counter(ids).items():
            if not stage_id:
                errors.append("Stage with empty id")
            elif count > 1:
                errors.append(f"Duplicate stage id: {stage_id}")

        known = set(ids)
        for stage in template.stages:
            if stage.is_approval_gate and not stage.approvers and not stage.exit_conditions:
                errors.append(
                    f"Approval gate '{stage.id}' has no approvers and no alternative exit condition"
                )
            if ExitCondition.TIME_ELAPSED in stage.exit_conditions and not _has_time_trigger(stage):
                errors.append(
                    f"Stage '{stage.id}' exits on time_elapsed but has no time_elapsed automation"
                )
            for index, automation in enumerate(stage.automations):
                action = automation.action
                if action.kind == ActionType.MOVE_TO_STAGE and action.target_stage_id:
                    if action.target_stage_id not in known:
                        errors.append(
                            f"Automation {index} on stage '{stage.id}' targets unknown stage "
                            f"'{action.target_stage_id}'"
                        )

        if current_stage is not None and current_stage not in known:
            errors.append(f"Current stage '{current_stage}' is not part of the template")

        return errors

    @classmethod
    def validate(cls, template: WorkflowTemplate, current_stage: Optional[str] = None) -> None:
        """Raise ``InvalidTemplateError`` if the template cannot be run."""
        errors = cls.validation_errors(template, current_stage)
        if errors:
            raise InvalidTemplateError(
                f"Template '{template.name or template.id}' is invalid: {'; '.join(errors)}",
                errors=errors,
                template_id=template.id,
            )

    @staticmethod
    def index_of(stages: Sequence[Stage], stage_id: str) -> int:
        for i, stage in enumerate(stages):
            if stage.id == stage_id:
                return i
        raise InvalidTemplateError(
            f"Stage '{stage_id}' is not part of the template",
            errors=[f"Unknown stage: {stage_id}"],
        )

    @classmethod
    def next_stage(cls, stages: Sequence[Stage], current_stage_id: str) -> Tuple[str, bool]:
        """Return ``(next_stage_id, is_terminal)``.

        Past the last stage the result is ``("", True)``.
        """
        index = cls.index_of(stages, current_stage_id)
        if index + 1 >= len(stages):
            return "", True
        return stages[index + 1].id, False

    @staticmethod
    def first_stage(stages: Sequence[Stage]) -> Stage:
        if not stages:
            raise InvalidTemplateError("Template has no stages", errors=["No stages defined"])
        return stages[0]

    @classmethod
    def get_stage(cls, stages: Sequence[Stage], stage_id: str) -> Stage:
        return stages[cls.index_of(stages, stage_id)]


def _has_time_trigger(stage: Stage) -> bool:
    return any(a.trigger.kind == TriggerType.TIME_ELAPSED for a in stage.automations)
