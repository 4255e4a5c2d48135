"""Stage-gate workflow engine - Condition evaluator.

Decides whether an automation's trigger conditions hold for the current
instance data. Missing data never raises: it is logged and treated as
"no match" so a malformed payload cannot wedge an instance.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .config import GateState, TriggerType
from .models import MISSING, InstanceData, Trigger, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldChange:
    """Before/after values of a single field, supplied by the caller."""

    field: str
    before: Any = MISSING
    after: Any = MISSING

    @property
    def changed(self) -> bool:
        return self.before is MISSING or self.after is MISSING or self.before != self.after


@dataclass
class EvaluationContext:
    """Everything a trigger may look at when deciding to fire."""

    data: InstanceData
    now: Optional[datetime] = None
    stage_entered_at: Optional[datetime] = None
    change: Optional[FieldChange] = None
    gate_state: Optional[GateState] = None


class ConditionEvaluator:
    """Pure, stateless trigger matcher."""

    def __init__(self):
        self._matchers: Dict[TriggerType, Callable[[Trigger, EvaluationContext], bool]] = {
            TriggerType.STAGE_ENTER: self._always,
            TriggerType.STAGE_COMPLETE: self._always,
            TriggerType.FIELD_CHANGE: self._field_changed,
            TriggerType.APPROVAL_RECEIVED: self._approval_received,
            TriggerType.TIME_ELAPSED: self._time_elapsed,
        }

    def matches(self, trigger: Trigger, context: EvaluationContext) -> bool:
        """Return True when ``trigger``'s conditions are satisfied."""
        return self._matchers[trigger.kind](trigger, context)

    @staticmethod
    def _always(trigger: Trigger, context: EvaluationContext) -> bool:
        return True

    @staticmethod
    def _field_changed(trigger: Trigger, context: EvaluationContext) -> bool:
        change = context.change
        if change is None or change.field != trigger.field:
            return False
        found, _ = context.data.lookup(trigger.field)
        if not found or change.after is MISSING:
            logger.debug("Field %s missing from instance data, no match", trigger.field)
            return False
        return change.changed

    @staticmethod
    def _approval_received(trigger: Trigger, context: EvaluationContext) -> bool:
        return context.gate_state == GateState.SATISFIED

    @staticmethod
    def _time_elapsed(trigger: Trigger, context: EvaluationContext) -> bool:
        if context.stage_entered_at is None:
            logger.debug("No stage entry time available for time_elapsed check, no match")
            return False
        now = context.now or utcnow()
        return now - context.stage_entered_at >= trigger.threshold

