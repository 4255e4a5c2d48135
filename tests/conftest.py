"""Pytest configuration and shared fixtures."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.workflow.config import EngineConfig, StageType, TemplateSettings  # noqa: E402
from src.workflow.models import Stage, WorkflowTemplate  # noqa: E402
from src.workflow.notifications import RecordingNotificationSender  # noqa: E402
from src.workflow.state_machine import WorkflowStateMachine  # noqa: E402
from src.workflow.store import InMemoryInstanceStore  # noqa: E402
from src.workflow.templates import TemplateRegistry  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingExecutor:
    """ActionExecutor double that records calls and returns canned outcomes."""

    def __init__(self, outcomes=None):
        from src.workflow.executor import ExecutionOutcome

        self._default = ExecutionOutcome(ok=True, detail="done")
        self.outcomes = dict(outcomes or {})
        self.calls = []

    def execute(self, action, instance):
        self.calls.append((action, instance.id, instance.current_stage))
        outcome = self.outcomes.get(action.kind, self._default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return RecordingNotificationSender()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def registry():
    return TemplateRegistry()


@pytest.fixture
def store():
    return InMemoryInstanceStore()


@pytest.fixture
def engine(store, registry, executor, sender, clock):
    return WorkflowStateMachine(
        store=store,
        templates=registry,
        executor=executor,
        notification_sender=sender,
        config=EngineConfig(retry_backoff_seconds=0),
        clock=clock,
    )


@pytest.fixture
def make_template():
    """Build a template from stages and settings overrides."""

    def _make(*stages: Stage, template_id: str = "tmpl", **settings) -> WorkflowTemplate:
        return WorkflowTemplate(
            id=template_id,
            name=template_id.title(),
            organization_id="org-1",
            stages=tuple(stages),
            settings=TemplateSettings(**settings),
        )

    return _make


@pytest.fixture
def gate():
    """Build an approval gate stage."""

    def _gate(stage_id: str, *approvers: str, **kwargs) -> Stage:
        return Stage(
            id=stage_id,
            name=stage_id.title(),
            type=StageType.APPROVAL_GATE,
            approvers=frozenset(approvers),
            **kwargs,
        )

    return _gate
