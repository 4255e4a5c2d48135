"""Stage-gate workflow engine - Instance state machine.

``WorkflowStateMachine`` is the only writer of instance state. Every
mutating operation follows the same shape:

1. take the per-instance lock, load the instance at version *v*;
2. validate and apply the transition, planning (not running) automations;
3. save with ``expected_version=v`` and release the lock;
4. send notifications and run planned automations outside the lock;
5. record automation results in a second locked commit;
6. turn ``move_to_stage`` requests into new, separately locked transitions.

Operations on different instances never share a lock.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from src.logging_config.context import OperationContext
from src.logging_config.performance import PerformanceTimer, log_performance

from .approvals import ApprovalLedger
from .automations import AutomationRunner, PlannedAutomation
from .conditions import ConditionEvaluator, EvaluationContext, FieldChange
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
    TriggerType,
    VoteStatus,
)
from .errors import (
    InvalidTransitionError,
    StageBlockedError,
    VersionConflictError,
    WorkflowError,
)
from .executor import ActionExecutor, DefaultActionExecutor
from .graph import StageGraph
from .models import (
    AutomationResult,
    InstanceData,
    InstanceMetrics,
    MISSING,
    Stage,
    StageHistoryEntry,
    StageMetric,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowTemplate,
    check_json_safe,
    utcnow,
)
from .notifications import NotificationSender, StageNotifier
from .store import InstanceLockRegistry, InstanceStore
from .templates import TemplateRegistry

logger = logging.getLogger(__name__)

_RESULT_COMMIT_RETRIES = 3


@dataclass
class _SideEffects:
    """Work deferred until after the locked commit."""

    planned: List[PlannedAutomation] = field(default_factory=list)
    recorded: List[AutomationResult] = field(default_factory=list)
    notifications: List[Tuple[Stage, str, List[str]]] = field(default_factory=list)


class WorkflowStateMachine:
    """Authoritative orchestrator for workflow instances."""

    def __init__(
        self,
        store: InstanceStore,
        templates: TemplateRegistry,
        executor: Optional[ActionExecutor] = None,
        notification_sender: Optional[NotificationSender] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.templates = templates
        self.config = config or EngineConfig()
        self.ledger = ApprovalLedger()
        self.evaluator = ConditionEvaluator()
        self.notifier = StageNotifier(notification_sender)
        self.runner = AutomationRunner(
            executor or DefaultActionExecutor(notification_sender=self.notifier.sender, config=self.config),
            self.evaluator,
        )
        self._locks = InstanceLockRegistry()
        self._clock = clock

    # ── Instantiation & queries ──────────────────────────────────────

    def create_instance(
        self,
        template_id: str,
        title: str,
        created_by: str,
        version: Optional[int] = None,
        form_data: Optional[Dict[str, Any]] = None,
        custom_fields: Optional[Dict[str, Any]] = None,
        priority: Union[Priority, str] = Priority.MEDIUM,
        assigned_to: Optional[str] = None,
        due_date: Optional[datetime] = None,
        description: str = "",
        source_type: Union[SourceType, str] = SourceType.MANUAL,
        source_id: Optional[str] = None,
        labels: Optional[List[str]] = None,
        fire_enter_event: bool = False,
    ) -> WorkflowInstance:
        """Instantiate a template version at its first stage.

        Entry automations of the first stage only run when
        ``fire_enter_event`` is set; otherwise the caller submits the
        ``stage_enter`` event when it is ready for side effects.
        """
        check_json_safe(dict(form_data or {}), "form_data")
        check_json_safe(dict(custom_fields or {}), "custom_fields")
        check_json_safe(list(labels or []), "labels")
        template = self.templates.get_active(template_id, version)
        StageGraph.validate(template)
        first = StageGraph.first_stage(template.stages)
        now = self._clock()

        instance = WorkflowInstance(
            template_id=template.id,
            template_version=template.version,
            organization_id=template.organization_id,
            title=title,
            description=description,
            status=InstanceStatus.ACTIVE,
            current_stage=first.id,
            stage_history=[StageHistoryEntry(stage_id=first.id, entered_at=now, actor=created_by)],
            automation_log=self.runner.skipped_results(template, first.id),
            data=InstanceData(form_data=dict(form_data or {}), custom_fields=dict(custom_fields or {})),
            priority=Priority(priority),
            assigned_to=assigned_to,
            due_date=due_date,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            metadata={
                "source_type": SourceType(source_type).value,
                "source_id": source_id,
                "labels": list(labels or []),
            },
        )
        with self._operation("create", instance.id, created_by):
            self.store.create(instance)
            self.templates.record_usage(template.id)
            logger.info(
                "Created instance %s from template %s v%d at stage %s",
                instance.id, template.id, template.version, first.id,
            )
            if fire_enter_event:
                self.submit_event(instance.id, WorkflowEvent(TriggerType.STAGE_ENTER, actor=created_by))
        return self.get(instance.id)

    def get(self, instance_id: str) -> WorkflowInstance:
        instance, _ = self.store.load(instance_id)
        return instance

    def list_instances(self, status: Optional[InstanceStatus] = None) -> List[str]:
        return self.store.list_ids(status)

    # ── Public transition operations ─────────────────────────────────

    @log_performance(threshold_ms=500)
    def advance(self, instance_id: str, actor_id: str, override: bool = False) -> WorkflowInstance:
        """Move the instance to the next stage, or complete it past the last one.

        ``override`` lets a gate with a ``manual_override`` exit condition be
        left without a satisfying vote.
        """
        with self._operation("advance", instance_id, actor_id):
            self._transition(instance_id, actor_id, override=override, operation="advance")
        return self.get(instance_id)

    def move_to(
        self, instance_id: str, target_stage_id: str, actor_id: str, override: bool = False
    ) -> WorkflowInstance:
        """Re-route to ``target_stage_id`` (or reopen the current stage).

        Every move starts a new attempt of the target stage, so a rejected
        gate can be reopened for a fresh vote. Moving forward still honours
        the current stage's gate.
        """
        with self._operation("move_to", instance_id, actor_id):
            self._transition(
                instance_id, actor_id, target=target_stage_id, override=override, operation="move_to"
            )
        return self.get(instance_id)

    @log_performance(threshold_ms=500)
    def vote(
        self,
        instance_id: str,
        stage_id: str,
        approver_id: str,
        status: Union[VoteStatus, str],
        comments: str = "",
    ) -> WorkflowInstance:
        """Record an approver's vote on the current stage.

        A rejection blocks advancement but never fails the instance.
        """
        status = VoteStatus(status)
        with self._operation("vote", instance_id, approver_id):
            with self._locks.hold(instance_id):
                instance, version, template = self._load(instance_id)
                self._require_open(instance, "vote")
                if stage_id != instance.current_stage:
                    raise InvalidTransitionError(
                        instance_id, instance.status.value, f"vote on non-current stage {stage_id}"
                    )
                stage = StageGraph.get_stage(template.stages, stage_id)
                attempt = instance.attempt_of(stage_id)
                require_all = template.settings.require_all_approvals
                now = self._clock()

                before = self.ledger.gate_state(stage, instance.approvals, require_all, attempt)
                self.ledger.record_vote(
                    instance.approvals, stage, approver_id, status, comments, attempt, now
                )
                after = self.ledger.gate_state(stage, instance.approvals, require_all, attempt)
                newly_satisfied = before != GateState.SATISFIED and after == GateState.SATISFIED

                effects = _SideEffects()
                if newly_satisfied:
                    context = self._context(instance, stage, now, gate_state=after)
                    effects.planned.extend(
                        self.runner.plan(TriggerType.APPROVAL_RECEIVED, stage, context)
                    )
                    remaining = [] if require_all else self.ledger.pending_approvers(
                        stage, instance.approvals, attempt
                    )
                    effects.notifications.append((stage, "approval_received", []))
                    if remaining:
                        instance.metadata.setdefault("approval_short_circuit", []).append(
                            {
                                "stage_id": stage_id,
                                "attempt": attempt,
                                "approved_by": approver_id,
                                "skipped": remaining,
                                "at": now.isoformat(),
                            }
                        )
                        effects.notifications.append((stage, "gate_resolved", remaining))
                    logger.info("Gate %s of instance %s satisfied", stage_id, instance_id)
                elif after == GateState.REJECTED and before != GateState.REJECTED:
                    logger.info("Gate %s of instance %s rejected by %s", stage_id, instance_id, approver_id)

                self._commit(instance, version)
                snapshot = instance.copy()

            self._after_commit(instance_id, template, snapshot, effects, depth=0)

            if newly_satisfied and template.settings.auto_progress_on_approval:
                try:
                    self._transition(
                        instance_id,
                        self.config.auto_progress_actor,
                        expected_stage=stage_id,
                        operation="auto-progress",
                    )
                except WorkflowError as exc:
                    logger.info("Auto-progress of %s did not run: %s", instance_id, exc.message)
        return self.get(instance_id)

    @log_performance(threshold_ms=500)
    def submit_event(self, instance_id: str, event: WorkflowEvent) -> List[AutomationResult]:
        """Fire automations bound to ``event`` on the instance's current stage.

        Does not change the stage itself; only a fired ``move_to_stage``
        automation can. Events for other stages, on-hold or terminal
        instances fire nothing.
        """
        with self._operation("submit_event", instance_id, event.actor):
            if event.type == TriggerType.FIELD_CHANGE:
                check_json_safe(event.value, f"{event.target}.{event.field}")
            with self._locks.hold(instance_id):
                instance, version, template = self._load(instance_id)
                stage_id = event.stage_id or instance.current_stage
                if instance.status != InstanceStatus.ACTIVE or stage_id != instance.current_stage:
                    logger.debug(
                        "Ignoring %s event for stage %s of instance %s (%s at %s)",
                        event.type.value, stage_id, instance_id,
                        instance.status.value, instance.current_stage,
                    )
                    return []

                stage = StageGraph.get_stage(template.stages, stage_id)
                now = event.occurred_at or self._clock()
                change = None
                if event.type == TriggerType.FIELD_CHANGE and event.field:
                    payload = (
                        instance.data.custom_fields
                        if event.target == "custom_fields"
                        else instance.data.form_data
                    )
                    before = event.previous
                    if before is MISSING:
                        before = payload.get(event.field, MISSING)
                    payload[event.field] = event.value
                    change = FieldChange(event.field, before, event.value)

                gate_state = self._gate_state(instance, template, stage)
                context = self._context(instance, stage, now, gate_state=gate_state, change=change)
                planned = self.runner.plan(event.type, stage, context)
                dirty = change is not None
                if event.type == TriggerType.TIME_ELAPSED and planned:
                    planned = self._first_time_elapsed(instance, planned)
                    dirty = dirty or bool(planned)
                effects = _SideEffects(planned=planned)

                if dirty:
                    self._commit(instance, version)
                snapshot = instance.copy()

            return self._after_commit(instance_id, template, snapshot, effects, depth=0)

    @log_performance(threshold_ms=500)
    def cancel(self, instance_id: str, actor_id: str, reason: str = "") -> WorkflowInstance:
        """Cancel from any non-terminal state. Cancelling twice is a no-op."""
        with self._operation("cancel", instance_id, actor_id):
            with self._locks.hold(instance_id):
                instance, version, _ = self._load(instance_id)
                if instance.status == InstanceStatus.CANCELLED:
                    return instance
                self._require_open(instance, "cancel")
                now = self._clock()
                self._close_open_entry(instance, now, f"cancelled: {reason}" if reason else "cancelled")
                instance.metadata["cancellation"] = {
                    "actor": actor_id,
                    "reason": reason,
                    "at": now.isoformat(),
                    "stage_id": instance.current_stage,
                }
                instance.status = InstanceStatus.CANCELLED
                instance.current_stage = ""
                self._commit(instance, version)
                logger.info("Cancelled instance %s: %s", instance_id, reason or "no reason given")
                return instance

    def fail(self, instance_id: str, actor_id: str, reason: str = "") -> WorkflowInstance:
        """Mark a non-terminal instance as failed. The current stage is kept for audit."""
        with self._operation("fail", instance_id, actor_id):
            with self._locks.hold(instance_id):
                instance, version, _ = self._load(instance_id)
                self._require_open(instance, "fail")
                now = self._clock()
                self._close_open_entry(instance, now, f"failed: {reason}" if reason else "failed")
                instance.metadata["failure"] = {"actor": actor_id, "reason": reason, "at": now.isoformat()}
                instance.status = InstanceStatus.FAILED
                self._commit(instance, version)
                logger.warning("Instance %s failed: %s", instance_id, reason or "no reason given")
                return instance

    def hold(self, instance_id: str, actor_id: str, reason: str = "") -> WorkflowInstance:
        """Suspend an active instance. The current stage entry stays open."""
        return self._set_hold(instance_id, actor_id, reason, hold=True)

    def resume(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        return self._set_hold(instance_id, actor_id, "", hold=False)

    def assign(self, instance_id: str, user_id: Optional[str], actor_id: str) -> WorkflowInstance:
        with self._operation("assign", instance_id, actor_id):
            with self._locks.hold(instance_id):
                instance, version, _ = self._load(instance_id)
                self._require_open(instance, "assign")
                self._apply_assignment(instance, user_id, actor_id)
                self._commit(instance, version)
                return instance

    def metrics(self, instance_id: str) -> InstanceMetrics:
        """Derived read-only metrics. Never writes."""
        instance, _, template = self._load(instance_id)

        closed = [e for e in instance.stage_history if e.exited_at is not None]
        total = sum(e.duration_ms or 0 for e in closed) if closed else None

        stage_metrics: Dict[str, StageMetric] = {}
        for entry in instance.stage_history:
            metric = stage_metrics.setdefault(entry.stage_id, StageMetric())
            metric.attempts += 1
            metric.duration_ms += entry.duration_ms or 0

        pending = 0
        blocked = None
        if not instance.is_terminal and instance.current_stage:
            start = StageGraph.index_of(template.stages, instance.current_stage)
            for stage in template.stages[start:]:
                # Gates without approvers exit by time or override, not by vote.
                if not (stage.required and stage.is_approval_gate and stage.approvers):
                    continue
                if stage.id != instance.current_stage:
                    pending += 1
                elif self._gate_state(instance, template, stage) != GateState.SATISFIED:
                    pending += 1
            current = StageGraph.get_stage(template.stages, instance.current_stage)
            blocker = self._blocking_error(instance, template, current, override=False)
            blocked = blocker.reason.value if blocker else None

        return InstanceMetrics(
            instance_id=instance.id,
            status=instance.status.value,
            current_stage=instance.current_stage,
            total_duration_ms=total,
            pending_approvals=pending,
            can_progress=instance.status == InstanceStatus.ACTIVE and blocked is None,
            blocked_reason=blocked,
            stage_metrics=stage_metrics,
        )

    def sweep_time_elapsed(self, now: Optional[datetime] = None) -> Dict[str, List[AutomationResult]]:
        """Submit a ``time_elapsed`` event to every active instance.

        Meant to be called periodically by an external scheduler.
        """
        now = now or self._clock()
        fired: Dict[str, List[AutomationResult]] = {}
        with PerformanceTimer("time_elapsed sweep"):
            for instance_id in self.store.list_ids(InstanceStatus.ACTIVE):
                try:
                    results = self.submit_event(
                        instance_id,
                        WorkflowEvent(TriggerType.TIME_ELAPSED, occurred_at=now, actor="system:scheduler"),
                    )
                except WorkflowError as exc:
                    logger.warning("time_elapsed sweep skipped %s: %s", instance_id, exc.message)
                    continue
                if results:
                    fired[instance_id] = results
        return fired

    # ── Transition core ──────────────────────────────────────────────

    def _transition(
        self,
        instance_id: str,
        actor_id: str,
        target: Optional[str] = None,
        expected_stage: Optional[str] = None,
        override: bool = False,
        depth: int = 0,
        operation: str = "advance",
    ) -> bool:
        """Advance (``target=None``) or re-route. Returns False for stale requests."""
        with self._locks.hold(instance_id):
            instance, version, template = self._load(instance_id)
            if expected_stage is not None and instance.current_stage != expected_stage:
                logger.info(
                    "Dropping %s for %s: expected stage %s, now at %s",
                    operation, instance_id, expected_stage, instance.current_stage or "(none)",
                )
                return False
            if instance.status != InstanceStatus.ACTIVE:
                raise InvalidTransitionError(instance_id, instance.status.value, operation)

            stages = template.stages
            stage = StageGraph.get_stage(stages, instance.current_stage)
            if target is None:
                self._check_gate(instance, template, stage, override)
                next_id, _ = StageGraph.next_stage(stages, stage.id)
                effects = self._move(instance, template, stage, next_id, actor_id)
            else:
                if StageGraph.index_of(stages, target) > StageGraph.index_of(stages, stage.id):
                    self._check_gate(instance, template, stage, override)
                effects = self._move(instance, template, stage, target, actor_id, notes=f"{operation} to {target}")

            self._commit(instance, version)
            snapshot = instance.copy()

        logger.info(
            "Instance %s %s -> %s by %s",
            instance_id, stage.id, snapshot.current_stage or snapshot.status.value, actor_id,
        )
        self._after_commit(instance_id, template, snapshot, effects, depth)
        return True

    def _move(
        self,
        instance: WorkflowInstance,
        template: WorkflowTemplate,
        from_stage: Stage,
        target_id: str,
        actor_id: str,
        notes: str = "",
    ) -> _SideEffects:
        """Close the current entry and open ``target_id`` (or complete when empty)."""
        now = self._clock()
        effects = _SideEffects()

        context = self._context(instance, from_stage, now)
        self._close_open_entry(instance, now, notes)
        effects.planned.extend(self.runner.plan(TriggerType.STAGE_COMPLETE, from_stage, context))
        effects.notifications.append((from_stage, "stage_complete", []))

        if not target_id:
            instance.status = InstanceStatus.COMPLETED
            instance.current_stage = ""
            instance.metadata["completed_at"] = now.isoformat()
            logger.info("Instance %s completed", instance.id)
            return effects

        target = StageGraph.get_stage(template.stages, target_id)
        attempt = instance.attempt_of(target.id) + 1
        if attempt > 1:
            retired = self.ledger.retire_votes(instance.approvals, target.id, attempt)
            if retired:
                logger.debug("Retired %d earlier vote(s) on %s of %s", retired, target.id, instance.id)
        instance.stage_history.append(
            StageHistoryEntry(stage_id=target.id, entered_at=now, actor=actor_id, attempt=attempt)
        )
        instance.current_stage = target.id
        context = self._context(instance, target, now)
        effects.planned.extend(self.runner.plan(TriggerType.STAGE_ENTER, target, context))
        effects.recorded.extend(self.runner.skipped_results(template, target.id))
        effects.notifications.append((target, "stage_enter", []))
        return effects

    def _after_commit(
        self,
        instance_id: str,
        template: WorkflowTemplate,
        snapshot: WorkflowInstance,
        effects: _SideEffects,
        depth: int,
    ) -> List[AutomationResult]:
        for stage, event, extra in effects.notifications:
            self.notifier.notify(template, stage, event, snapshot, extra)

        results = list(effects.recorded) + self.runner.execute(effects.planned, snapshot)
        if results:
            self._record_results(instance_id, results)

        for result in results:
            if result.status == AutomationStatus.REQUESTED and result.action == ActionType.MOVE_TO_STAGE.value:
                self._follow_move(instance_id, result, snapshot.current_stage, depth + 1)
        return results

    def _follow_move(
        self, instance_id: str, request: AutomationResult, expected_stage: str, depth: int
    ) -> None:
        """Run a ``move_to_stage`` request as its own locked transition.

        The move only applies while the instance still sits where the
        committing operation left it; otherwise it is dropped as stale.
        """
        if depth > self.config.max_automation_chain_depth:
            logger.error("Automation chain depth limit reached for instance %s", instance_id)
            self._record_results(instance_id, [self._failure_for(request, "Automation chain depth limit reached")])
            return
        try:
            self._transition(
                instance_id,
                self.config.automation_actor,
                target=request.payload.get("target_stage_id"),
                expected_stage=expected_stage,
                depth=depth,
                operation="automation move",
            )
        except WorkflowError as exc:
            logger.warning("Automated move for %s refused: %s", instance_id, exc.message)
            self._record_results(instance_id, [self._failure_for(request, exc.message)])

    def _record_results(self, instance_id: str, results: List[AutomationResult]) -> None:
        """Append automation results in their own commit.

        The triggering transition is already saved, so a lost write race here
        is logged and never reaches the caller.
        """
        for attempt in range(1, _RESULT_COMMIT_RETRIES + 1):
            with self._locks.hold(instance_id):
                instance, version = self.store.load(instance_id)
                instance.automation_log.extend(results)
                for result in results:
                    assignee = result.payload.get("assign_to")
                    if result.status == AutomationStatus.SUCCEEDED and assignee and not instance.is_terminal:
                        self._apply_assignment(instance, assignee, self.config.automation_actor)
                try:
                    self._commit(instance, version)
                    return
                except VersionConflictError as exc:
                    if attempt == _RESULT_COMMIT_RETRIES:
                        logger.error(
                            "Dropped %d automation result(s) for %s after %d conflicting commits",
                            len(results), instance_id, attempt,
                            extra={"extra_data": {"results": [r.to_dict() for r in results], **exc.to_dict()}},
                        )
                        return
                    logger.info("Retrying automation result commit for %s (attempt %d)", instance_id, attempt)

    # ── Gates ────────────────────────────────────────────────────────

    def _gate_state(self, instance: WorkflowInstance, template: WorkflowTemplate, stage: Stage) -> GateState:
        return self.ledger.gate_state(
            stage,
            instance.approvals,
            template.settings.require_all_approvals,
            instance.attempt_of(stage.id),
        )

    def _blocking_error(
        self,
        instance: WorkflowInstance,
        template: WorkflowTemplate,
        stage: Stage,
        override: bool,
    ) -> Optional[StageBlockedError]:
        if not (stage.required and stage.is_approval_gate):
            return None
        if override and ExitCondition.MANUAL_OVERRIDE in stage.exit_conditions:
            return None

        attempt = instance.attempt_of(stage.id)
        state = self._gate_state(instance, template, stage)
        if state == GateState.SATISFIED:
            return None
        if state == GateState.REJECTED:
            return StageBlockedError(
                stage.id,
                BlockReason.APPROVAL_REJECTED,
                rejected_by=self.ledger.rejected_by(stage, instance.approvals, attempt),
            )
        if ExitCondition.TIME_ELAPSED in stage.exit_conditions and self._time_exit_reached(instance, stage):
            return None
        if state == GateState.NO_APPROVERS:
            return StageBlockedError(stage.id, BlockReason.MISSING_APPROVERS)
        return StageBlockedError(
            stage.id,
            BlockReason.APPROVAL_PENDING,
            pending_approvers=self.ledger.pending_approvers(stage, instance.approvals, attempt),
        )

    def _check_gate(
        self, instance: WorkflowInstance, template: WorkflowTemplate, stage: Stage, override: bool
    ) -> None:
        error = self._blocking_error(instance, template, stage, override)
        if error is not None:
            raise error

    def _time_exit_reached(self, instance: WorkflowInstance, stage: Stage) -> bool:
        context = self._context(instance, stage, self._clock())
        return any(
            self.evaluator.matches(a.trigger, context)
            for _, a in stage.automations_for(TriggerType.TIME_ELAPSED)
        )

    # ── Helpers ──────────────────────────────────────────────────────

    def _load(self, instance_id: str) -> Tuple[WorkflowInstance, int, WorkflowTemplate]:
        instance, version = self.store.load(instance_id)
        template = self.templates.get(instance.template_id, instance.template_version)
        return instance, version, template

    def _commit(self, instance: WorkflowInstance, version: int) -> int:
        instance.updated_at = self._clock()
        return self.store.save(instance.id, instance, version)

    def _context(
        self,
        instance: WorkflowInstance,
        stage: Stage,
        now: datetime,
        gate_state: Optional[GateState] = None,
        change: Optional[FieldChange] = None,
    ) -> EvaluationContext:
        entry = instance.open_entry()
        entered_at = entry.entered_at if entry is not None and entry.stage_id == stage.id else None
        return EvaluationContext(
            data=instance.data,
            now=now,
            stage_entered_at=entered_at,
            change=change,
            gate_state=gate_state,
        )

    @staticmethod
    def _first_time_elapsed(
        instance: WorkflowInstance, planned: List[PlannedAutomation]
    ) -> List[PlannedAutomation]:
        """Drop time_elapsed automations already fired in this stage attempt."""
        fired = instance.metadata.setdefault("time_elapsed_fired", [])
        fresh = []
        for p in planned:
            key = f"{p.stage_id}:{instance.attempt_of(p.stage_id)}:{p.index}"
            if key not in fired:
                fired.append(key)
                fresh.append(p)
        return fresh

    @staticmethod
    def _close_open_entry(instance: WorkflowInstance, now: datetime, notes: str = "") -> None:
        entry = instance.open_entry()
        if entry is not None:
            entry.close(now, notes)

    @staticmethod
    def _require_open(instance: WorkflowInstance, operation: str) -> None:
        if instance.is_terminal:
            raise InvalidTransitionError(instance.id, instance.status.value, operation)

    def _apply_assignment(self, instance: WorkflowInstance, user_id: Optional[str], actor_id: str) -> None:
        instance.assigned_to = user_id
        instance.metadata.setdefault("assignments", []).append(
            {"assigned_to": user_id, "by": actor_id, "at": self._clock().isoformat()}
        )

    def _set_hold(self, instance_id: str, actor_id: str, reason: str, hold: bool) -> WorkflowInstance:
        operation = "hold" if hold else "resume"
        wanted, target = (
            (InstanceStatus.ACTIVE, InstanceStatus.ON_HOLD)
            if hold
            else (InstanceStatus.ON_HOLD, InstanceStatus.ACTIVE)
        )
        with self._operation(operation, instance_id, actor_id):
            with self._locks.hold(instance_id):
                instance, version, _ = self._load(instance_id)
                if instance.status == target:
                    return instance
                if instance.status != wanted:
                    raise InvalidTransitionError(instance_id, instance.status.value, operation)
                instance.status = target
                instance.metadata.setdefault("holds", []).append(
                    {"action": operation, "actor": actor_id, "reason": reason, "at": self._clock().isoformat()}
                )
                self._commit(instance, version)
                logger.info("Instance %s %s by %s", instance_id, "put on hold" if hold else "resumed", actor_id)
                return instance

    @staticmethod
    def _failure_for(request: AutomationResult, detail: str) -> AutomationResult:
        return AutomationResult(
            stage_id=request.stage_id,
            automation_index=request.automation_index,
            trigger=request.trigger,
            action=request.action,
            status=AutomationStatus.FAILED,
            detail=detail,
            attempts=1,
            payload=dict(request.payload),
        )

    @contextmanager
    def _operation(self, name: str, instance_id: str, actor_id: str = "") -> Iterator[None]:
        with OperationContext(instance_id=instance_id, actor_id=actor_id, operation=name):
            try:
                yield
            except WorkflowError as exc:
                level = logging.WARNING if exc.recoverable else logging.ERROR
                logger.log(
                    level,
                    "%s on %s failed: %s",
                    name, instance_id, exc.message,
                    extra={"extra_data": exc.to_dict()},
                )
                raise
