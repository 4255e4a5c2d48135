"""Tests for the workflow instance state machine."""

import pytest

from src.workflow.config import (
    ActionType,
    AutomationStatus,
    BlockReason,
    EngineConfig,
    ExitCondition,
    InstanceStatus,
    TimeUnit,
    TriggerType,
    VoteStatus,
)
from src.workflow.errors import (
    InstanceNotFoundError,
    InvalidTransitionError,
    NotAnApproverError,
    StageBlockedError,
    TemplateNotFoundError,
)
from src.workflow.executor import ExecutionOutcome
from src.workflow.models import (
    ApprovalReceivedTrigger,
    AssignUserAction,
    Automation,
    FieldChangeTrigger,
    MoveToStageAction,
    SendNotificationAction,
    Stage,
    StageCompleteTrigger,
    StageEnterTrigger,
    StageNotification,
    TimeElapsedTrigger,
    WebhookAction,
    WorkflowEvent,
)
from src.workflow.notifications import RecordingNotificationSender
from src.workflow.schema import parse_template
from src.workflow.state_machine import WorkflowStateMachine


def _open_entries(instance):
    return [e for e in instance.stage_history if e.exited_at is None]


# ── Scenarios ────────────────────────────────────────────────────────


class TestScenarios:
    @pytest.fixture(autouse=True)
    def _setup(self, engine, registry, make_template, gate):
        self.engine = engine
        registry.publish(make_template(Stage(id="intake"), gate("approval", "bob"), Stage(id="done")))

    def test_approval_gate_blocks_until_vote(self):
        inst = self.engine.create_instance("tmpl", "Laptop request", "alice")
        assert inst.current_stage == "intake"
        assert inst.status == InstanceStatus.ACTIVE

        inst = self.engine.advance(inst.id, "alice")
        assert inst.current_stage == "approval"

        with pytest.raises(StageBlockedError) as exc:
            self.engine.advance(inst.id, "alice")
        assert exc.value.reason == BlockReason.APPROVAL_PENDING
        assert exc.value.pending_approvers == ["bob"]

        self.engine.vote(inst.id, "approval", "bob", VoteStatus.APPROVED)
        inst = self.engine.advance(inst.id, "alice")
        assert inst.current_stage == "done"

        inst = self.engine.advance(inst.id, "alice")
        assert inst.status == InstanceStatus.COMPLETED
        assert inst.current_stage == ""
        assert _open_entries(inst) == []

    def test_outsider_cannot_vote(self):
        inst = self.engine.create_instance("tmpl", "Laptop request", "alice")
        self.engine.advance(inst.id, "alice")

        with pytest.raises(NotAnApproverError):
            self.engine.vote(inst.id, "approval", "carol", "approved")
        assert self.engine.get(inst.id).approvals == []

    def test_stage_enter_automation_moves_instance(self, registry, make_template):
        registry.publish(
            make_template(
                Stage(id="intake", automations=(Automation(StageEnterTrigger(), MoveToStageAction()),)),
                Stage(id="review"),
                template_id="auto",
            )
        )
        inst = self.engine.create_instance("auto", "Triage", "alice")
        assert inst.current_stage == "intake"

        results = self.engine.submit_event(inst.id, WorkflowEvent(TriggerType.STAGE_ENTER, stage_id="intake"))
        assert [r.status for r in results] == [AutomationStatus.REQUESTED]

        inst = self.engine.get(inst.id)
        assert inst.current_stage == "review"
        assert inst.stage_history[-1].actor == self.engine.config.automation_actor

    def test_event_type_accepts_plain_string(self, registry, make_template):
        registry.publish(
            make_template(
                Stage(id="intake", automations=(Automation(StageEnterTrigger(), MoveToStageAction()),)),
                Stage(id="review"),
                template_id="auto",
            )
        )
        inst = self.engine.create_instance("auto", "Triage", "alice")

        results = self.engine.submit_event(inst.id, WorkflowEvent(type="stage_enter", stage_id="intake"))
        assert [r.status for r in results] == [AutomationStatus.REQUESTED]
        assert self.engine.get(inst.id).current_stage == "review"

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValueError):
            WorkflowEvent(type="page_viewed")

    def test_unknown_template_and_instance(self):
        with pytest.raises(TemplateNotFoundError):
            self.engine.create_instance("missing", "x", "alice")
        with pytest.raises(InstanceNotFoundError):
            self.engine.advance("nope", "alice")


# ── Transitions & Gates ──────────────────────────────────────────────


class TestTransitions:
    @pytest.fixture(autouse=True)
    def _setup(self, engine, registry, make_template, gate, clock):
        self.engine = engine
        self.registry = registry
        self.make_template = make_template
        self.gate = gate
        self.clock = clock

    def test_advance_through_all_stages(self):
        self.registry.publish(self.make_template(*(Stage(id=f"s{i}") for i in range(4))))
        inst = self.engine.create_instance("tmpl", "Walk", "alice")
        for _ in range(4):
            assert len(_open_entries(inst)) == 1
            inst = self.engine.advance(inst.id, "alice")

        assert inst.status == InstanceStatus.COMPLETED
        assert inst.current_stage == ""
        assert [e.stage_id for e in inst.stage_history] == ["s0", "s1", "s2", "s3"]
        assert all(e.duration_ms is not None for e in inst.stage_history)

        with pytest.raises(InvalidTransitionError):
            self.engine.advance(inst.id, "alice")

    def test_rejection_blocks_but_does_not_fail(self):
        self.registry.publish(self.make_template(self.gate("g", "bob"), Stage(id="next")))
        inst = self.engine.create_instance("tmpl", "Spend", "alice")

        self.engine.vote(inst.id, "g", "bob", VoteStatus.REJECTED, comments="too expensive")
        with pytest.raises(StageBlockedError) as exc:
            self.engine.advance(inst.id, "alice")
        assert exc.value.reason == BlockReason.APPROVAL_REJECTED
        assert exc.value.rejected_by == ["bob"]
        assert self.engine.get(inst.id).status == InstanceStatus.ACTIVE

        self.engine.vote(inst.id, "g", "bob", VoteStatus.APPROVED)
        assert self.engine.advance(inst.id, "alice").current_stage == "next"

    def test_reopen_starts_fresh_ballot(self):
        self.registry.publish(self.make_template(self.gate("g", "bob"), Stage(id="next")))
        inst = self.engine.create_instance("tmpl", "Spend", "alice")
        self.engine.vote(inst.id, "g", "bob", VoteStatus.REJECTED)

        inst = self.engine.move_to(inst.id, "g", "alice")
        assert inst.stage_history[-1].attempt == 2
        assert len(_open_entries(inst)) == 1

        with pytest.raises(StageBlockedError) as exc:
            self.engine.advance(inst.id, "alice")
        assert exc.value.reason == BlockReason.APPROVAL_PENDING

    def test_reopen_keeps_one_active_vote_per_approver(self):
        self.registry.publish(
            self.make_template(Stage(id="intake"), self.gate("approval", "bob"), Stage(id="done"))
        )
        inst = self.engine.create_instance("tmpl", "Reopen", "alice")
        self.engine.advance(inst.id, "alice")
        self.engine.vote(inst.id, "approval", "bob", VoteStatus.REJECTED)

        inst = self.engine.move_to(inst.id, "approval", "alice")
        assert [a.superseded for a in inst.approvals] == [True]

        inst = self.engine.vote(inst.id, "approval", "bob", VoteStatus.APPROVED)
        active = [
            (a.stage_id, a.approver_id, a.status)
            for a in inst.approvals
            if not a.superseded
        ]
        assert active == [("approval", "bob", VoteStatus.APPROVED)]
        assert len(inst.approvals) == 2
        assert self.engine.advance(inst.id, "alice").current_stage == "done"

    def test_move_forward_respects_gate(self):
        self.registry.publish(self.make_template(self.gate("g", "bob"), Stage(id="a"), Stage(id="b")))
        inst = self.engine.create_instance("tmpl", "Jump", "alice")
        with pytest.raises(StageBlockedError):
            self.engine.move_to(inst.id, "b", "alice")

        self.engine.vote(inst.id, "g", "bob", VoteStatus.APPROVED)
        assert self.engine.move_to(inst.id, "b", "alice").current_stage == "b"
        assert self.engine.move_to(inst.id, "a", "alice").current_stage == "a"

    def test_manual_override_exit(self):
        self.registry.publish(
            self.make_template(
                self.gate("g", exit_conditions=frozenset({ExitCondition.MANUAL_OVERRIDE})),
                Stage(id="next"),
            )
        )
        inst = self.engine.create_instance("tmpl", "Override", "alice")
        with pytest.raises(StageBlockedError) as exc:
            self.engine.advance(inst.id, "alice")
        assert exc.value.reason == BlockReason.MISSING_APPROVERS

        assert self.engine.advance(inst.id, "admin", override=True).current_stage == "next"

    def test_override_ignored_without_manual_exit(self):
        self.registry.publish(self.make_template(self.gate("g", "bob"), Stage(id="next")))
        inst = self.engine.create_instance("tmpl", "Override", "alice")
        with pytest.raises(StageBlockedError):
            self.engine.advance(inst.id, "admin", override=True)

    def test_time_elapsed_exit(self):
        self.registry.publish(
            self.make_template(
                self.gate(
                    "g",
                    "bob",
                    automations=(
                        Automation(TimeElapsedTrigger(2, TimeUnit.HOURS), SendNotificationAction(("bob",))),
                    ),
                    exit_conditions=frozenset({ExitCondition.TIME_ELAPSED}),
                ),
                Stage(id="next"),
            )
        )
        inst = self.engine.create_instance("tmpl", "Timed", "alice")
        with pytest.raises(StageBlockedError):
            self.engine.advance(inst.id, "alice")

        self.clock.advance(hours=2)
        assert self.engine.advance(inst.id, "alice").current_stage == "next"

    def test_optional_gate_does_not_block(self):
        self.registry.publish(self.make_template(self.gate("g", "bob", required=False), Stage(id="next")))
        inst = self.engine.create_instance("tmpl", "Optional", "alice")
        assert self.engine.advance(inst.id, "alice").current_stage == "next"

    def test_vote_on_non_current_stage_refused(self):
        self.registry.publish(self.make_template(Stage(id="a"), self.gate("g", "bob")))
        inst = self.engine.create_instance("tmpl", "Early", "alice")
        with pytest.raises(InvalidTransitionError):
            self.engine.vote(inst.id, "g", "bob", VoteStatus.APPROVED)

    def test_instances_pin_template_version(self):
        self.registry.publish(self.make_template(Stage(id="a"), Stage(id="b")))
        inst = self.engine.create_instance("tmpl", "Pinned", "alice")
        self.registry.publish(self.make_template(Stage(id="x")))

        assert inst.template_version == 1
        assert self.engine.advance(inst.id, "alice").current_stage == "b"
        fresh = self.engine.create_instance("tmpl", "Latest", "alice")
        assert fresh.template_version == 2
        assert fresh.current_stage == "x"


# ── Approvals & Auto-progress ────────────────────────────────────────


class TestApprovals:
    @pytest.fixture(autouse=True)
    def _setup(self, engine, registry, make_template, gate, executor, sender):
        self.engine = engine
        self.registry = registry
        self.make_template = make_template
        self.gate = gate
        self.executor = executor
        self.sender = sender

    def test_repeated_vote_is_idempotent(self):
        notify = Automation(ApprovalReceivedTrigger(), SendNotificationAction(("alice",)))
        self.registry.publish(self.make_template(self.gate("g", "bob", automations=(notify,)), Stage(id="n")))
        inst = self.engine.create_instance("tmpl", "Twice", "alice")

        self.engine.vote(inst.id, "g", "bob", VoteStatus.APPROVED)
        inst = self.engine.vote(inst.id, "g", "bob", VoteStatus.APPROVED)

        active = [a for a in inst.approvals if not a.superseded]
        assert len(active) == 1
        assert len(self.executor.calls) == 1
        assert len(inst.automation_log) == 1

    def test_auto_progress_first_approval_wins(self):
        self.registry.publish(
            self.make_template(
                self.gate("g", "bob", "carol"),
                Stage(id="next"),
                auto_progress_on_approval=True,
                require_all_approvals=False,
            )
        )
        inst = self.engine.create_instance("tmpl", "Quick", "alice")
        inst = self.engine.vote(inst.id, "g", "bob", VoteStatus.APPROVED)

        assert inst.current_stage == "next"
        assert inst.stage_history[-1].actor == self.engine.config.auto_progress_actor
        resolved = [n for n in self.sender.sent if n.template == "gate_resolved"]
        assert [n.recipients for n in resolved] == [["carol"]]
        audit = inst.metadata["approval_short_circuit"]
        assert [(a["stage_id"], a["approved_by"], a["skipped"]) for a in audit] == [("g", "bob", ["carol"])]

    def test_auto_progress_waits_for_all(self):
        self.registry.publish(
            self.make_template(
                self.gate("g", "bob", "carol"), Stage(id="next"), auto_progress_on_approval=True
            )
        )
        inst = self.engine.create_instance("tmpl", "Slow", "alice")
        assert self.engine.vote(inst.id, "g", "bob", "approved").current_stage == "g"
        assert self.engine.vote(inst.id, "g", "carol", "approved").current_stage == "next"

    def test_auto_progress_and_move_automation_advance_once(self):
        move = Automation(ApprovalReceivedTrigger(), MoveToStageAction())
        self.registry.publish(
            self.make_template(
                self.gate("g", "bob", automations=(move,)),
                Stage(id="b"),
                Stage(id="c"),
                auto_progress_on_approval=True,
            )
        )
        inst = self.engine.create_instance("tmpl", "Once", "alice")
        inst = self.engine.vote(inst.id, "g", "bob", VoteStatus.APPROVED)
        assert inst.current_stage == "b"
        assert [e.stage_id for e in inst.stage_history] == ["g", "b"]

    def test_votes_on_hold_instance_allowed(self):
        self.registry.publish(self.make_template(self.gate("g", "bob"), Stage(id="n")))
        inst = self.engine.create_instance("tmpl", "Held", "alice")
        self.engine.hold(inst.id, "alice", reason="waiting on vendor")
        inst = self.engine.vote(inst.id, "g", "bob", VoteStatus.APPROVED)
        assert inst.status == InstanceStatus.ON_HOLD
        assert len(inst.approvals) == 1


# ── Automations ──────────────────────────────────────────────────────


class TestAutomations:
    @pytest.fixture(autouse=True)
    def _setup(self, engine, registry, make_template, gate, executor, store, sender, clock):
        self.engine = engine
        self.registry = registry
        self.make_template = make_template
        self.gate = gate
        self.executor = executor
        self.store = store
        self.sender = sender
        self.clock = clock

    def test_failed_action_does_not_abort_transition(self):
        hook = Automation(StageEnterTrigger(), WebhookAction("https://hooks.example.com/x"))
        notify = Automation(StageEnterTrigger(), SendNotificationAction(("ops",)))
        self.executor.outcomes[ActionType.WEBHOOK] = RuntimeError("boom")
        self.registry.publish(self.make_template(Stage(id="a"), Stage(id="b", automations=(hook, notify))))

        inst = self.engine.create_instance("tmpl", "Hooks", "alice")
        inst = self.engine.advance(inst.id, "alice")

        assert inst.current_stage == "b"
        statuses = [(r.action, r.status) for r in inst.automation_log]
        assert statuses == [
            ("webhook", AutomationStatus.FAILED),
            ("send_notification", AutomationStatus.SUCCEEDED),
        ]
        assert "boom" in inst.automation_log[0].detail

    def test_automations_see_committed_stage(self):
        notify = Automation(StageEnterTrigger(), SendNotificationAction(("ops",)))
        self.registry.publish(self.make_template(Stage(id="a"), Stage(id="b", automations=(notify,))))
        inst = self.engine.create_instance("tmpl", "Order", "alice")
        self.engine.advance(inst.id, "alice")
        assert self.executor.calls[0][2] == "b"

    def test_stage_complete_runs_on_exit(self):
        done = Automation(StageCompleteTrigger(), SendNotificationAction(("ops",), "closed"))
        self.registry.publish(self.make_template(Stage(id="a", automations=(done,)), Stage(id="b")))
        inst = self.engine.create_instance("tmpl", "Exit", "alice")
        inst = self.engine.advance(inst.id, "alice")
        assert [r.stage_id for r in inst.automation_log] == ["a"]
        assert inst.automation_log[0].trigger == "stage_complete"

    def test_field_change_assigns_user(self):
        assign = Automation(FieldChangeTrigger("budget"), AssignUserAction("cfo"))
        self.executor.outcomes[ActionType.ASSIGN_USER] = ExecutionOutcome(ok=True, payload={"assign_to": "cfo"})
        self.registry.publish(self.make_template(Stage(id="a", automations=(assign,))))
        inst = self.engine.create_instance("tmpl", "Budget", "alice")

        results = self.engine.submit_event(
            inst.id, WorkflowEvent(TriggerType.FIELD_CHANGE, field="budget", value=250_000)
        )
        assert [r.status for r in results] == [AutomationStatus.SUCCEEDED]

        inst = self.engine.get(inst.id)
        assert inst.data.form_data["budget"] == 250_000
        assert inst.assigned_to == "cfo"

    def test_field_change_same_value_does_not_fire(self):
        assign = Automation(FieldChangeTrigger("budget"), AssignUserAction("cfo"))
        self.registry.publish(self.make_template(Stage(id="a", automations=(assign,))))
        inst = self.engine.create_instance("tmpl", "Budget", "alice", form_data={"budget": 10})

        event = WorkflowEvent(TriggerType.FIELD_CHANGE, field="budget", value=10)
        assert self.engine.submit_event(inst.id, event) == []

    def test_field_change_uses_caller_previous_value(self):
        assign = Automation(FieldChangeTrigger("budget"), AssignUserAction("cfo"))
        self.registry.publish(self.make_template(Stage(id="a", automations=(assign,))))
        inst = self.engine.create_instance("tmpl", "Budget", "alice", form_data={"budget": 10})

        unchanged = WorkflowEvent(TriggerType.FIELD_CHANGE, field="budget", value=10, previous=10)
        assert self.engine.submit_event(inst.id, unchanged) == []

        edited = WorkflowEvent(TriggerType.FIELD_CHANGE, field="budget", value=10, previous=5)
        results = self.engine.submit_event(inst.id, edited)
        assert [r.action for r in results] == [ActionType.ASSIGN_USER.value]
        assert self.engine.get(inst.id).data.form_data["budget"] == 10

    def test_events_for_other_stages_ignored(self):
        move = Automation(StageEnterTrigger(), MoveToStageAction())
        self.registry.publish(self.make_template(Stage(id="a", automations=(move,)), Stage(id="b")))
        inst = self.engine.create_instance("tmpl", "Stale", "alice")
        self.engine.advance(inst.id, "alice")

        assert self.engine.submit_event(inst.id, WorkflowEvent(TriggerType.STAGE_ENTER, stage_id="a")) == []
        assert self.engine.get(inst.id).current_stage == "b"

    def test_automated_move_respects_gate(self):
        move = Automation(StageEnterTrigger(), MoveToStageAction())
        self.registry.publish(self.make_template(self.gate("g", "bob", automations=(move,)), Stage(id="b")))
        inst = self.engine.create_instance("tmpl", "Gate", "alice", fire_enter_event=True)

        assert inst.current_stage == "g"
        assert [r.status for r in inst.automation_log] == [
            AutomationStatus.REQUESTED,
            AutomationStatus.FAILED,
        ]

    def test_move_chain_is_bounded(self, store, registry, executor, sender, clock):
        engine = WorkflowStateMachine(
            store, registry, executor, sender, EngineConfig(max_automation_chain_depth=3), clock
        )
        self.registry.publish(
            self.make_template(
                Stage(id="a", automations=(Automation(StageEnterTrigger(), MoveToStageAction("b")),)),
                Stage(id="b", automations=(Automation(StageEnterTrigger(), MoveToStageAction("a")),)),
            )
        )
        inst = engine.create_instance("tmpl", "Loop", "alice", fire_enter_event=True)

        failed = [r for r in inst.automation_log if r.status == AutomationStatus.FAILED]
        assert len(failed) == 1
        assert "depth limit" in failed[0].detail
        assert inst.status == InstanceStatus.ACTIVE
        assert len(_open_entries(inst)) == 1

    def test_skipped_automation_recorded_on_entry(self):
        self.registry.publish(
            parse_template(
                {
                    "id": "raw",
                    "name": "Raw",
                    "configuration": {
                        "stages": [
                            {
                                "id": "a",
                                "automations": [
                                    {"trigger": "stage_enter", "action": "teleport"},
                                ],
                            }
                        ]
                    },
                }
            )
        )
        inst = self.engine.create_instance("raw", "Skip", "alice")
        assert [r.status for r in inst.automation_log] == [AutomationStatus.SKIPPED]
        assert "teleport" in inst.automation_log[0].detail

    def test_time_elapsed_sweep_fires_once_per_attempt(self):
        remind = Automation(TimeElapsedTrigger(1, TimeUnit.HOURS), SendNotificationAction(("bob",)))
        self.registry.publish(self.make_template(Stage(id="a", automations=(remind,)), Stage(id="b")))
        inst = self.engine.create_instance("tmpl", "Reminder", "alice")

        assert self.engine.sweep_time_elapsed() == {}
        self.clock.advance(minutes=61)
        fired = self.engine.sweep_time_elapsed()
        assert list(fired) == [inst.id]
        assert self.engine.sweep_time_elapsed() == {}
        assert len(self.executor.calls) == 1

    def test_stage_notifications(self):
        notice = StageNotification("stage_enter", ("ops@example.com",), "stage_started")
        self.registry.publish(self.make_template(Stage(id="a"), Stage(id="b", notifications=(notice,))))
        inst = self.engine.create_instance("tmpl", "Notify", "alice")
        self.engine.advance(inst.id, "alice")

        sent = [n for n in self.sender.sent if n.template == "stage_started"]
        assert len(sent) == 1
        assert sent[0].recipients == ["ops@example.com"]
        assert sent[0].context["stage_id"] == "b"

    def test_notifications_disabled(self):
        notice = StageNotification("stage_enter", ("ops@example.com",), "stage_started")
        self.registry.publish(
            self.make_template(
                Stage(id="a"), Stage(id="b", notifications=(notice,)), notify_on_stage_change=False
            )
        )
        inst = self.engine.create_instance("tmpl", "Quiet", "alice")
        self.engine.advance(inst.id, "alice")
        assert self.sender.sent == []

    def test_notification_failure_is_not_fatal(self, store, registry, executor, clock):
        flaky = RecordingNotificationSender(fail_times=10)
        engine = WorkflowStateMachine(store, registry, executor, flaky, clock=clock)
        notice = StageNotification("stage_enter", ("ops@example.com",), "stage_started")
        self.registry.publish(self.make_template(Stage(id="a"), Stage(id="b", notifications=(notice,))))

        inst = engine.create_instance("tmpl", "Flaky", "alice")
        assert engine.advance(inst.id, "alice").current_stage == "b"
        assert flaky.calls == 1


# ── Lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.fixture(autouse=True)
    def _setup(self, engine, registry, make_template, gate):
        self.engine = engine
        registry.publish(make_template(Stage(id="a"), gate("g", "bob"), Stage(id="c")))

    def test_cancel_is_idempotent(self):
        inst = self.engine.create_instance("tmpl", "Cancel", "alice")
        first = self.engine.cancel(inst.id, "alice", reason="duplicate")
        second = self.engine.cancel(inst.id, "alice", reason="again")

        assert first.status == second.status == InstanceStatus.CANCELLED
        assert second.stage_history == first.stage_history
        assert second.metadata["cancellation"]["reason"] == "duplicate"
        assert _open_entries(second) == []

        with pytest.raises(InvalidTransitionError):
            self.engine.advance(inst.id, "alice")

    def test_cancel_completed_refused(self, registry, make_template):
        registry.publish(make_template(Stage(id="only"), template_id="one"))
        inst = self.engine.create_instance("one", "Done", "alice")
        self.engine.advance(inst.id, "alice")
        with pytest.raises(InvalidTransitionError):
            self.engine.cancel(inst.id, "alice")

    def test_hold_and_resume(self):
        inst = self.engine.create_instance("tmpl", "Hold", "alice")
        inst = self.engine.hold(inst.id, "alice", reason="vendor")
        assert inst.status == InstanceStatus.ON_HOLD
        assert len(_open_entries(inst)) == 1

        with pytest.raises(InvalidTransitionError):
            self.engine.advance(inst.id, "alice")
        assert self.engine.submit_event(inst.id, WorkflowEvent(TriggerType.STAGE_ENTER)) == []

        inst = self.engine.resume(inst.id, "alice")
        assert inst.status == InstanceStatus.ACTIVE
        assert self.engine.advance(inst.id, "alice").current_stage == "g"

    def test_hold_and_resume_are_idempotent(self):
        inst = self.engine.create_instance("tmpl", "Active", "alice")
        inst = self.engine.resume(inst.id, "alice")
        assert inst.status == InstanceStatus.ACTIVE
        assert "holds" not in inst.metadata

        self.engine.hold(inst.id, "alice")
        inst = self.engine.hold(inst.id, "alice")
        assert inst.status == InstanceStatus.ON_HOLD
        assert len(inst.metadata["holds"]) == 1

    def test_resume_cancelled_refused(self):
        inst = self.engine.create_instance("tmpl", "Gone", "alice")
        self.engine.cancel(inst.id, "alice")
        with pytest.raises(InvalidTransitionError):
            self.engine.resume(inst.id, "alice")

    def test_create_counts_template_usage(self, registry):
        self.engine.create_instance("tmpl", "One", "alice")
        self.engine.create_instance("tmpl", "Two", "alice")
        assert registry.usage_count("tmpl") == 2

    def test_archived_template_keeps_running_instances(self, registry):
        inst = self.engine.create_instance("tmpl", "Before archive", "alice")
        registry.archive("tmpl")

        with pytest.raises(TemplateNotFoundError):
            self.engine.create_instance("tmpl", "After archive", "alice")
        assert self.engine.advance(inst.id, "alice").current_stage == "g"
        assert registry.usage_count("tmpl") == 1

    def test_fail_keeps_stage(self):
        inst = self.engine.create_instance("tmpl", "Broken", "alice")
        inst = self.engine.fail(inst.id, "ops", reason="vendor bankrupt")
        assert inst.status == InstanceStatus.FAILED
        assert inst.current_stage == "a"
        assert _open_entries(inst) == []

    def test_assign(self):
        inst = self.engine.create_instance("tmpl", "Assign", "alice")
        inst = self.engine.assign(inst.id, "dave", "alice")
        assert inst.assigned_to == "dave"
        assert inst.metadata["assignments"][-1]["by"] == "alice"

    def test_create_records_source(self):
        inst = self.engine.create_instance(
            "tmpl", "From intake", "alice", source_type="intake", source_id="sub-1", labels=["it"]
        )
        assert inst.metadata["source_type"] == "intake"
        assert inst.metadata["labels"] == ["it"]
        assert inst.organization_id == "org-1"


# ── Metrics ──────────────────────────────────────────────────────────


class TestMetrics:
    @pytest.fixture(autouse=True)
    def _setup(self, engine, registry, make_template, gate, clock):
        self.engine = engine
        self.clock = clock
        registry.publish(make_template(Stage(id="a"), gate("g", "bob"), gate("h", "carol"), Stage(id="d")))

    def test_fresh_instance(self):
        inst = self.engine.create_instance("tmpl", "Fresh", "alice")
        metrics = self.engine.metrics(inst.id)
        assert metrics.total_duration_ms is None
        assert metrics.can_progress is True
        assert metrics.pending_approvals == 2

    def test_durations_and_block(self):
        inst = self.engine.create_instance("tmpl", "Timed", "alice")
        self.clock.advance(minutes=5)
        self.engine.advance(inst.id, "alice")

        metrics = self.engine.metrics(inst.id)
        assert metrics.total_duration_ms == 300_000
        assert metrics.stage_metrics["a"].attempts == 1
        assert metrics.stage_metrics["a"].duration_ms == 300_000
        assert metrics.can_progress is False
        assert metrics.blocked_reason == "approval_pending"
        assert metrics.to_dict()["stage_metrics"]["a"] == {"duration_ms": 300_000, "attempts": 1}

    def test_metrics_do_not_write(self, store):
        inst = self.engine.create_instance("tmpl", "Read", "alice")
        _, before = store.load(inst.id)
        self.engine.metrics(inst.id)
        _, after = store.load(inst.id)
        assert before == after

    def test_override_only_gate_not_pending(self, registry, make_template, gate):
        registry.publish(
            make_template(
                Stage(id="a"),
                gate("sign-off", exit_conditions=frozenset({ExitCondition.MANUAL_OVERRIDE})),
                gate("g", "bob"),
                template_id="override",
            )
        )
        inst = self.engine.create_instance("override", "Override", "alice")
        assert self.engine.metrics(inst.id).pending_approvals == 1

        self.engine.advance(inst.id, "alice")
        metrics = self.engine.metrics(inst.id)
        assert metrics.pending_approvals == 1
        assert metrics.blocked_reason == "missing_approvers"
