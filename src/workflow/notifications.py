"""Stage-gate workflow engine - Notifications.

``NotificationSender`` is the delivery contract the engine consumes. Its
failures are never fatal to a workflow: they are logged and the transition
that caused them stands.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from .models import Stage, WorkflowInstance, WorkflowTemplate, utcnow

logger = logging.getLogger(__name__)


@runtime_checkable
class NotificationSender(Protocol):
    """Delivers a rendered notification to a set of recipients."""

    def send(self, recipients: Sequence[str], template: str, context: Dict[str, Any]) -> None:
        """Send or raise. Retrying is the caller's job."""
        ...


@dataclass
class Notification:
    recipients: List[str]
    template: str
    context: Dict[str, Any] = field(default_factory=dict)
    sent_at: datetime = field(default_factory=utcnow)


class LoggingNotificationSender:
    """Sender that only logs. Used when no delivery channel is configured."""

    def send(self, recipients: Sequence[str], template: str, context: Dict[str, Any]) -> None:
        logger.info(
            "Notification %s -> %s",
            template or "(default)",
            ", ".join(recipients),
            extra={"extra_data": {"instance_id": context.get("instance", {}).get("id")}},
        )


class RecordingNotificationSender:
    """Thread-safe in-memory sender that keeps every message it is given.

    ``fail_times`` makes the next N sends raise, for exercising retry paths.
    """

    def __init__(self, fail_times: int = 0):
        self._lock = threading.Lock()
        self._sent: List[Notification] = []
        self._fail_remaining = fail_times
        self.calls = 0

    @property
    def sent(self) -> List[Notification]:
        with self._lock:
            return list(self._sent)

    def send(self, recipients: Sequence[str], template: str, context: Dict[str, Any]) -> None:
        with self._lock:
            self.calls += 1
            if self._fail_remaining > 0:
                self._fail_remaining -= 1
                raise ConnectionError("notification channel unavailable")
            self._sent.append(Notification(list(recipients), template, dict(context)))


class StageNotifier:
    """Sends a stage's configured notifications for an engine event."""

    def __init__(self, sender: Optional[NotificationSender] = None):
        self.sender = sender or LoggingNotificationSender()

    def notify(
        self,
        template: WorkflowTemplate,
        stage: Stage,
        event: str,
        instance: WorkflowInstance,
        extra_recipients: Sequence[str] = (),
    ) -> int:
        """Send every notification bound to ``event``. Returns the number delivered."""
        if not template.settings.notify_on_stage_change:
            return 0

        messages = [(list(n.recipients), n.template) for n in stage.notifications if n.event == event]
        if extra_recipients:
            messages.append((list(extra_recipients), event))

        delivered = 0
        for recipients, name in messages:
            if not recipients:
                continue
            context = {"event": event, "stage_id": stage.id, "instance": instance.summary()}
            try:
                self.sender.send(recipients, name, context)
                delivered += 1
            except Exception:
                logger.warning(
                    "Notification %s for stage %s of instance %s failed",
                    name, stage.id, instance.id,
                    exc_info=True,
                )
        return delivered
