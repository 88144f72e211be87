"""Workflow definitions, validation and per-execution state."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from agentdesk.core.errors import ConfigurationError
from agentdesk.core.models import ApprovalLevel, TaskResult, new_id, utcnow

_MISSING = object()


def lookup(data: Any, path: str) -> Any:
    """Resolve a dotted path inside nested mappings; ``_MISSING`` if absent."""
    current = data
    for key in path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return _MISSING
        current = current[key]
    return current


_OPERATORS = {
    "eq": lambda actual, expected: actual == expected,
    "ne": lambda actual, expected: actual != expected,
    "gt": lambda actual, expected: actual > expected,
    "gte": lambda actual, expected: actual >= expected,
    "lt": lambda actual, expected: actual < expected,
    "lte": lambda actual, expected: actual <= expected,
    "in": lambda actual, expected: actual in expected,
    "contains": lambda actual, expected: isinstance(actual, str) and expected in actual,
}


class ConditionKind(str, Enum):
    STEP_SUCCEEDED = "step_succeeded"
    STEP_VALUE = "step_value"
    CONTEXT_HAS = "context_has"


@dataclass(frozen=True, slots=True)
class StepCondition:
    """Guard evaluated just before a step starts; a false guard skips it."""

    kind: ConditionKind
    step_id: Optional[str] = None
    path: Optional[str] = None
    operator: str = "eq"
    value: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", ConditionKind(self.kind))
        if self.operator not in _OPERATORS:
            raise ConfigurationError(f"Unknown condition operator: {self.operator}")
        if self.kind is not ConditionKind.CONTEXT_HAS and not self.step_id:
            raise ConfigurationError(f"{self.kind.value} condition needs a step_id")
        if self.kind is not ConditionKind.STEP_SUCCEEDED and not self.path:
            raise ConfigurationError(f"{self.kind.value} condition needs a path")

    def evaluate(self, context: Mapping[str, Any], results: Mapping[str, TaskResult[Any]]) -> bool:
        if self.kind is ConditionKind.CONTEXT_HAS:
            return lookup(context, self.path) not in (_MISSING, None)
        result = results.get(self.step_id)
        if result is None or not result.succeeded:
            return False
        if self.kind is ConditionKind.STEP_SUCCEEDED:
            return True
        actual = lookup(result.data, self.path)
        if actual is _MISSING:
            return False
        try:
            return bool(_OPERATORS[self.operator](actual, self.value))
        except TypeError:
            return False


@dataclass(frozen=True, slots=True)
class WorkflowStep:
    """One agent invocation inside a workflow.

    ``input_mapping`` copies context keys into the step input
    (``{input_key: context_path}``); ``output_mapping`` copies result fields
    into the shared context (``{context_key: result_path}``). Without an output
    mapping the whole result lands under the step id.
    """

    step_id: str
    action: str
    agent_id: Optional[str] = None
    tag: Optional[str] = None
    depends_on: Tuple[str, ...] = ()
    input_mapping: Dict[str, str] = field(default_factory=dict)
    output_mapping: Dict[str, str] = field(default_factory=dict)
    condition: Optional[StepCondition] = None
    max_retries: int = 3
    retry_delay: float = 0.0
    required: bool = True
    priority: int = 5

    def __post_init__(self) -> None:
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        if not self.step_id:
            raise ConfigurationError("Workflow step needs a step_id")
        if (self.agent_id is None) == (self.tag is None):
            raise ConfigurationError(f"Step {self.step_id} needs exactly one of agent_id or tag")
        if self.max_retries < 0 or self.retry_delay < 0:
            raise ConfigurationError(f"Step {self.step_id} has a negative retry policy")

    @property
    def target(self) -> str:
        return self.agent_id if self.agent_id is not None else f"tag:{self.tag}"

    def build_input(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        data = dict(context)
        for input_key, path in self.input_mapping.items():
            value = lookup(context, path)
            if value is not _MISSING:
                data[input_key] = value
        data["action"] = self.action
        data["step_id"] = self.step_id
        return data

    def apply_output(self, context: Dict[str, Any], output: Any) -> None:
        if not self.output_mapping:
            context[self.step_id] = output
            return
        for context_key, path in self.output_mapping.items():
            value = lookup(output, path)
            if value is not _MISSING:
                context[context_key] = value


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    """Named DAG of steps; ``validate`` computes a deterministic topological order."""

    workflow_id: str
    name: str
    steps: Tuple[WorkflowStep, ...]
    description: str = ""
    trigger_categories: Tuple[str, ...] = ()
    approval_level: ApprovalLevel = ApprovalLevel.LOW
    timeout: Optional[float] = None
    retry_budget: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "trigger_categories", tuple(self.trigger_categories))
        object.__setattr__(self, "approval_level", ApprovalLevel.parse(self.approval_level))

    def step(self, step_id: str) -> WorkflowStep:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)

    def validate(self) -> List[str]:
        """Return step ids in topological order or raise ``ConfigurationError``."""
        if not self.steps:
            raise ConfigurationError(f"Workflow {self.workflow_id} has no steps")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"Workflow {self.workflow_id} timeout must be > 0")
        if self.retry_budget is not None and self.retry_budget < 0:
            raise ConfigurationError(f"Workflow {self.workflow_id} retry_budget must be >= 0")
        declared: Dict[str, WorkflowStep] = {}
        for step in self.steps:
            if step.step_id in declared:
                raise ConfigurationError(f"Workflow {self.workflow_id}: duplicate step id {step.step_id}")
            declared[step.step_id] = step
        for step in self.steps:
            for dependency in step.depends_on:
                if dependency not in declared:
                    raise ConfigurationError(
                        f"Workflow {self.workflow_id}: step {step.step_id} depends on unknown step {dependency}"
                    )
            if step.condition is not None and step.condition.step_id is not None:
                if step.condition.step_id not in step.depends_on:
                    raise ConfigurationError(
                        f"Workflow {self.workflow_id}: condition of {step.step_id} "
                        f"reads {step.condition.step_id}, which it does not depend on"
                    )

        # Kahn's algorithm in declaration order.
        remaining = {step.step_id: set(step.depends_on) for step in self.steps}
        order: List[str] = []
        while remaining:
            ready = [step_id for step_id, deps in remaining.items() if not deps]
            if not ready:
                raise ConfigurationError(
                    f"Workflow {self.workflow_id} has a dependency cycle among {sorted(remaining)}"
                )
            for step_id in ready:
                order.append(step_id)
                del remaining[step_id]
            for deps in remaining.values():
                deps.difference_update(ready)
        return order


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


@dataclass(frozen=True, slots=True)
class WorkflowFailure:
    """Consolidated error of a failed execution."""

    failed_step: Optional[str]
    code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"failed_step": self.failed_step, "code": self.code, "message": self.message}


@dataclass(slots=True)
class WorkflowExecution:
    """Mutable state of one workflow run, owned by the orchestrator."""

    workflow_id: str
    context: Dict[str, Any] = field(default_factory=dict)
    execution_id: str = field(default_factory=new_id)
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step: Optional[str] = None
    step_results: Dict[str, TaskResult[Any]] = field(default_factory=dict)
    skipped_steps: List[str] = field(default_factory=list)
    retries_used: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[WorkflowFailure] = None
    cancel_requested: bool = False

    def start(self) -> None:
        self.status = ExecutionStatus.RUNNING
        self.started_at = utcnow()

    def finish(self, status: ExecutionStatus, error: Optional[WorkflowFailure] = None) -> None:
        self.status = status
        self.error = error
        self.current_step = None
        self.finished_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "current_step": self.current_step,
            "context": dict(self.context),
            "steps": {
                step_id: {
                    "status": result.status.value,
                    "error": result.error.to_dict() if result.error else None,
                    "duration": result.duration,
                }
                for step_id, result in self.step_results.items()
            },
            "skipped_steps": list(self.skipped_steps),
            "retries_used": self.retries_used,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error.to_dict() if self.error else None,
        }
