"""Operation Context.

Binds the instance, actor and engine operation being run to every log
entry emitted inside it, using contextvars so concurrent threads never
see each other's context.
"""

import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional


_operation_id_var: ContextVar[str] = ContextVar("operation_id", default="")
_instance_id_var: ContextVar[str] = ContextVar("instance_id", default="")
_actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")
_operation_var: ContextVar[str] = ContextVar("operation", default="")
_extra_context_var: ContextVar[Optional[dict]] = ContextVar("extra_context", default=None)


def generate_operation_id() -> str:
    return uuid.uuid4().hex[:12]


def get_operation_id() -> str:
    return _operation_id_var.get()


def get_instance_id() -> str:
    return _instance_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Get all context variables as a dictionary for log binding."""
    ctx = {}
    for key, var in (
        ("operation_id", _operation_id_var),
        ("instance_id", _instance_id_var),
        ("actor_id", _actor_id_var),
        ("operation", _operation_var),
    ):
        value = var.get()
        if value:
            ctx[key] = value
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class OperationContext:
    """Context manager for operation-scoped logging context.

    Contexts nest: leaving an inner one restores the outer values, so an
    auto-progress triggered inside a vote logs under its own operation
    and the vote's context comes back afterwards.

    Example:
        with OperationContext(instance_id="abc", actor_id="alice", operation="vote"):
            logger.info("recording vote")  # includes instance_id, actor_id
    """

    instance_id: str = ""
    actor_id: str = ""
    operation: str = ""
    operation_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    _tokens: List[Token] = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.operation_id:
            self.operation_id = generate_operation_id()

    def __enter__(self) -> "OperationContext":
        self._tokens = [
            _operation_id_var.set(self.operation_id),
            _instance_id_var.set(self.instance_id),
            _actor_id_var.set(self.actor_id),
            _operation_var.set(self.operation),
            _extra_context_var.set({**(_extra_context_var.get() or {}), **self.extra}),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        variables = (
            _operation_id_var,
            _instance_id_var,
            _actor_id_var,
            _operation_var,
            _extra_context_var,
        )
        for var, token in zip(variables, self._tokens):
            var.reset(token)
        self._tokens = []

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since context was created."""
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the active context."""
        _extra_context_var.set({**(_extra_context_var.get() or {}), **kwargs})
        self.extra.update(kwargs)
