"""Stage-gate workflow engine - Wiring from settings.

Builds a ready-to-use ``WorkflowStateMachine`` backed by the SQL store,
with engine knobs and built-in templates taken from ``STAGEGATE_``
environment settings.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from src.settings import Settings, get_settings

from .config import EngineConfig
from .executor import DefaultActionExecutor, ProjectCreator
from .notifications import NotificationSender
from .repository import SqlInstanceStore
from .state_machine import WorkflowStateMachine
from .templates import TemplateRegistry

logger = logging.getLogger(__name__)


def build_state_machine(
    settings: Optional[Settings] = None,
    notification_sender: Optional[NotificationSender] = None,
    project_creator: Optional[ProjectCreator] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> WorkflowStateMachine:
    """Assemble registry, store, executor and state machine."""
    settings = settings or get_settings()
    config = EngineConfig.from_settings(settings)
    registry = TemplateRegistry(load_builtins=settings.load_builtin_templates)
    executor = DefaultActionExecutor(
        notification_sender=notification_sender,
        project_creator=project_creator,
        config=config,
    )
    engine = WorkflowStateMachine(
        store=SqlInstanceStore(session_factory),
        templates=registry,
        executor=executor,
        notification_sender=executor.notification_sender,
        config=config,
    )
    logger.info(
        "Workflow engine ready with %d template(s), chain depth limit %d",
        len(registry.list_templates()), config.max_automation_chain_depth,
    )
    return engine
