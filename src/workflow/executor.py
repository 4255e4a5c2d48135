"""Stage-gate workflow engine - Action executor.

``ActionExecutor`` is the side-effect contract the automation runner
consumes. ``DefaultActionExecutor`` is the stock implementation: it sends
notifications through a ``NotificationSender``, calls webhooks with httpx,
creates projects through an injected callable and accepts assignments for
the state machine to apply.

Executors must report failures through ``ExecutionOutcome`` rather than
raise. Retries for webhooks and notifications happen here, and the
outcome carries the number of attempts made.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

import httpx

from .config import ActionType, EngineConfig
from .models import (
    Action,
    AssignUserAction,
    CreateProjectAction,
    SendNotificationAction,
    WebhookAction,
    WorkflowInstance,
)
from .notifications import LoggingNotificationSender, NotificationSender

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionOutcome:
    """What an executor reports back for one action."""

    ok: bool
    detail: str = ""
    attempts: int = 1
    payload: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ActionExecutor(Protocol):
    """Performs an automation action's side effect.

    Must be safe to call concurrently for different instances and must
    return failures instead of raising.
    """

    def execute(self, action: Action, instance: WorkflowInstance) -> ExecutionOutcome:
        ...


ProjectCreator = Callable[[CreateProjectAction, WorkflowInstance], str]


class DefaultActionExecutor:
    """Dispatches each action kind to its handler."""

    def __init__(
        self,
        notification_sender: Optional[NotificationSender] = None,
        http_client: Optional[httpx.Client] = None,
        project_creator: Optional[ProjectCreator] = None,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or EngineConfig()
        self.notification_sender = notification_sender or LoggingNotificationSender()
        self.http_client = http_client or httpx.Client(timeout=self.config.webhook_timeout_seconds)
        self.project_creator = project_creator
        self._sleep = sleep
        self._handlers: Dict[ActionType, Callable[[Any, WorkflowInstance], ExecutionOutcome]] = {
            ActionType.SEND_NOTIFICATION: self._send_notification,
            ActionType.WEBHOOK: self._call_webhook,
            ActionType.ASSIGN_USER: self._assign_user,
            ActionType.CREATE_PROJECT: self._create_project,
            ActionType.MOVE_TO_STAGE: self._unsupported,
        }

    def execute(self, action: Action, instance: WorkflowInstance) -> ExecutionOutcome:
        handler = self._handlers[action.kind]
        try:
            return handler(action, instance)
        except Exception as exc:
            logger.error("Action %s raised for instance %s", action.kind.value, instance.id, exc_info=True)
            return ExecutionOutcome(ok=False, detail=f"{type(exc).__name__}: {exc}")

    def close(self) -> None:
        self.http_client.close()

    # ── Handlers ──────────────────────────────────────────────────────

    def _send_notification(self, action: SendNotificationAction, instance: WorkflowInstance) -> ExecutionOutcome:
        recipients = list(action.recipients)
        if not recipients and instance.assigned_to:
            recipients = [instance.assigned_to]
        if not recipients:
            return ExecutionOutcome(ok=False, detail="No recipients", attempts=0)

        context = {"instance": instance.summary(), "stage_id": instance.current_stage}
        max_attempts = 1 + max(0, self.config.notification_max_retries)
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            try:
                self.notification_sender.send(recipients, action.template, context)
                return ExecutionOutcome(
                    ok=True,
                    detail=f"Sent {action.template or 'notification'} to {len(recipients)} recipient(s)",
                    attempts=attempt,
                )
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Notification attempt %d/%d failed: %s", attempt, max_attempts, last_error)
                if attempt < max_attempts:
                    self._backoff(attempt)
        return ExecutionOutcome(ok=False, detail=last_error, attempts=max_attempts)

    def _call_webhook(self, action: WebhookAction, instance: WorkflowInstance) -> ExecutionOutcome:
        body = dict(action.payload_dict)
        body["instance"] = instance.summary()
        max_attempts = 1 + max(0, self.config.webhook_max_retries)
        detail = ""
        for attempt in range(1, max_attempts + 1):
            try:
                response = self.http_client.post(action.url, json=body, headers=action.header_dict)
            except httpx.HTTPError as exc:
                detail = f"{type(exc).__name__}: {exc}"
            else:
                if response.is_success:
                    return ExecutionOutcome(
                        ok=True,
                        detail=f"HTTP {response.status_code}",
                        attempts=attempt,
                    )
                detail = f"HTTP {response.status_code}"
                # Client errors will not improve on retry.
                if response.status_code < 500 and response.status_code != 429:
                    return ExecutionOutcome(ok=False, detail=detail, attempts=attempt)
            logger.warning("Webhook %s attempt %d/%d failed: %s", action.url, attempt, max_attempts, detail)
            if attempt < max_attempts:
                self._backoff(attempt)
        return ExecutionOutcome(ok=False, detail=detail, attempts=max_attempts)

    @staticmethod
    def _assign_user(action: AssignUserAction, instance: WorkflowInstance) -> ExecutionOutcome:
        return ExecutionOutcome(
            ok=True,
            detail=f"Assignment to {action.user_id} requested",
            payload={"assign_to": action.user_id},
        )

    def _create_project(self, action: CreateProjectAction, instance: WorkflowInstance) -> ExecutionOutcome:
        if self.project_creator is None:
            return ExecutionOutcome(ok=False, detail="No project creator configured", attempts=0)
        project_id = self.project_creator(action, instance)
        return ExecutionOutcome(
            ok=True,
            detail=f"Created project {project_id}",
            payload={"project_id": project_id},
        )

    @staticmethod
    def _unsupported(action: Action, instance: WorkflowInstance) -> ExecutionOutcome:
        return ExecutionOutcome(
            ok=False,
            detail=f"{action.kind.value} is handled by the state machine, not the executor",
            attempts=0,
        )

    def _backoff(self, attempt: int) -> None:
        self._sleep(self.config.retry_backoff_seconds * attempt)
