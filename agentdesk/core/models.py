"""Core data models shared across agents, registry and orchestration."""
from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum, auto
from types import MappingProxyType
from typing import Any, Dict, Generic, Mapping, Optional, TypeVar

from .errors import AgentDeskError, ConfigurationError, ErrorCode

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AgentState(Enum):
    """Lifecycle states of an agent."""

    CREATED = auto()
    INITIALIZING = auto()
    READY = auto()
    RUNNING = auto()
    CLEANING_UP = auto()
    TERMINATED = auto()


class AgentRole(str, Enum):
    MAIN = "main"
    SUB = "sub"


class ApprovalLevel(IntEnum):
    """Human authorization tier required before an action executes."""

    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    URGENT = 4

    @classmethod
    def parse(cls, value: Any) -> "ApprovalLevel":
        if isinstance(value, cls):
            return value
        try:
            if isinstance(value, int):
                return cls(value)
            return cls[str(value).strip().upper()]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Unknown approval level: {value!r}") from exc


class NotificationPriority(IntEnum):
    """Urgency used only for escalation dispatch."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    URGENT = 4

    @classmethod
    def parse(cls, value: Any) -> "NotificationPriority":
        if isinstance(value, cls):
            return value
        try:
            if isinstance(value, int):
                return cls(value)
            return cls[str(value).strip().upper()]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Unknown notification priority: {value!r}") from exc


class TaskStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class AgentConfig:
    """Static configuration declared by every agent."""

    agent_id: str
    name: str
    description: str = ""
    enabled: bool = True
    max_retries: int = 3
    retry_delay: float = 1.0
    timeout: float = 30.0
    approval_level: ApprovalLevel = ApprovalLevel.LOW
    schedule: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.agent_id:
            raise ConfigurationError("AgentConfig.agent_id must not be empty")
        if self.max_retries < 0:
            raise ConfigurationError(f"{self.agent_id}: max_retries must be >= 0")
        if self.retry_delay < 0:
            raise ConfigurationError(f"{self.agent_id}: retry_delay must be >= 0")
        if self.timeout <= 0:
            raise ConfigurationError(f"{self.agent_id}: timeout must be > 0")
        object.__setattr__(self, "approval_level", ApprovalLevel.parse(self.approval_level))


@dataclass(frozen=True, slots=True)
class AgentContext:
    """Input envelope for a single ``run``.

    ``data`` is deep-copied and exposed read-only, so the caller's structures
    are never shared with the agent.
    """

    data: Mapping[str, Any] = field(default_factory=dict)
    execution_id: str = field(default_factory=new_id)
    correlation_id: Optional[str] = None
    caller_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(copy.deepcopy(dict(self.data))))


@dataclass(frozen=True, slots=True)
class TaskPayload:
    """Unit of delegated work handed from a parent to a sub-agent."""

    task_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    task_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0
    parent_task_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    correlation_id: Optional[str] = None

    def redelivered(self) -> "TaskPayload":
        return replace(self, retry_count=self.retry_count + 1)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_context(self, caller_id: Optional[str] = None) -> AgentContext:
        return AgentContext(
            data=self.data,
            correlation_id=self.correlation_id or self.task_id,
            caller_id=caller_id,
        )


@dataclass(frozen=True, slots=True)
class AgentError:
    """Normalized failure detail carried by results."""

    code: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "AgentError":
        if isinstance(exc, AgentDeskError):
            return cls(code=exc.code, message=exc.message, retryable=exc.retryable, details=exc.details)
        # Plain network and timeout errors from collaborators are treated as transient.
        if isinstance(exc, (ConnectionError, TimeoutError)):
            return cls(code=ErrorCode.TRANSIENT, message=str(exc) or type(exc).__name__, retryable=True)
        return cls(code=ErrorCode.EXECUTION_ERROR, message=str(exc) or type(exc).__name__)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class AgentResult(Generic[T]):
    """Outcome of one ``Agent.run`` invocation."""

    success: bool
    data: Optional[T] = None
    error: Optional[AgentError] = None
    duration: float = 0.0

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable

    @classmethod
    def ok(cls, data: Optional[T] = None, duration: float = 0.0) -> "AgentResult[T]":
        return cls(success=True, data=data, duration=duration)

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        retryable: bool = False,
        duration: float = 0.0,
        details: Optional[Dict[str, Any]] = None,
    ) -> "AgentResult[T]":
        error = AgentError(code=code, message=message, retryable=retryable, details=details or {})
        return cls(success=False, error=error, duration=duration)


@dataclass(frozen=True)
class TaskResult(Generic[T]):
    """Outcome of one delivery of a ``TaskPayload``."""

    task_id: str
    status: TaskStatus
    data: Optional[T] = None
    error: Optional[AgentError] = None
    duration: float = 0.0
    completed_at: datetime = field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status is TaskStatus.SUCCEEDED

    @property
    def retryable(self) -> bool:
        return self.status is TaskStatus.FAILED and self.error is not None and self.error.retryable

    @classmethod
    def from_agent_result(cls, task_id: str, result: AgentResult[T]) -> "TaskResult[T]":
        return cls(
            task_id=task_id,
            status=TaskStatus.SUCCEEDED if result.success else TaskStatus.FAILED,
            data=result.data,
            error=result.error,
            duration=result.duration,
        )

    @classmethod
    def failed(cls, task_id: str, error: AgentError, duration: float = 0.0) -> "TaskResult[T]":
        return cls(task_id=task_id, status=TaskStatus.FAILED, error=error, duration=duration)


@dataclass(frozen=True, slots=True)
class ProgressReport:
    """Snapshot of a running sub-agent's progress."""

    percentage: float
    step: str
    message: str = ""


IDLE_PROGRESS = ProgressReport(percentage=0.0, step="idle", message="No task running")


class MessageKind:
    """Kinds of messages travelling over the bus."""

    MESSAGE = "message"
    TASK_COMPLETE = "task_complete"
    PROGRESS = "progress"
    ERROR = "error"
    NOTIFICATION = "notification"


@dataclass(slots=True)
class A2AMessage:
    """Canonical message exchanged between agents over the A2A bus."""

    sender_id: str
    recipient_id: Optional[str]
    payload: Dict[str, Any]
    correlation_id: Optional[str] = None
    kind: str = MessageKind.MESSAGE
