"""Workflow validation and orchestrated execution."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Tuple

import pytest

from agent_helpers import GatedBehavior, RecordingNotifier, ScriptedBehavior, started_agent
from agentdesk.agents.base import AgentBehavior
from agentdesk.core.errors import (
    ApprovalRequired,
    ConfigurationError,
    DuplicateIdError,
    ErrorCode,
    TransientFailure,
)
from agentdesk.core.models import AgentContext, AgentState, ApprovalLevel
from agentdesk.core.registry import AgentRegistry
from agentdesk.orchestration.orchestrator import WorkflowOrchestrator
from agentdesk.orchestration.workflow import (
    ConditionKind,
    ExecutionStatus,
    StepCondition,
    WorkflowDefinition,
    WorkflowStep,
)
from agentdesk.services.notifier import Escalator


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def registry() -> AgentRegistry:
    registry = AgentRegistry()
    await registry.open()
    return registry


class Overlap:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0


class ConcurrencyTracker(AgentBehavior):
    """Tracks how many runs overlap across every agent sharing one ``Overlap``."""

    def __init__(self, overlap: Overlap) -> None:
        self.overlap = overlap

    async def run(self, context: AgentContext) -> Any:
        self.overlap.active += 1
        self.overlap.peak = max(self.overlap.peak, self.overlap.active)
        await asyncio.sleep(0.02)
        self.overlap.active -= 1
        return {"step": context.data["step_id"]}


async def agents(registry: AgentRegistry, **behaviors: AgentBehavior) -> Dict[str, AgentBehavior]:
    for agent_id, behavior in behaviors.items():
        await started_agent(agent_id, behavior, registry=registry)
    return behaviors


def chain(*, retry_budget=None, timeout=None, **overrides: Any) -> WorkflowDefinition:
    steps = {
        "A": WorkflowStep("A", "first", agent_id="a"),
        "B": WorkflowStep("B", "second", agent_id="b", depends_on=("A",)),
        "C": WorkflowStep("C", "third", agent_id="c", depends_on=("B",)),
    }
    steps.update(overrides)
    return WorkflowDefinition(
        workflow_id="chain",
        name="A then B then C",
        steps=tuple(steps.values()),
        retry_budget=retry_budget,
        timeout=timeout,
    )


def orchestrator_with_notifier(
    registry: AgentRegistry, **kwargs: Any
) -> Tuple[WorkflowOrchestrator, RecordingNotifier]:
    notifier = RecordingNotifier()
    return WorkflowOrchestrator(registry, escalator=Escalator(notifier), **kwargs), notifier


@pytest.mark.anyio
async def test_cycle_is_rejected_before_anything_runs(registry: AgentRegistry) -> None:
    behaviors = await agents(registry, a=ScriptedBehavior(), b=ScriptedBehavior(), c=ScriptedBehavior())
    orchestrator = WorkflowOrchestrator(registry)
    cyclic = chain(A=WorkflowStep("A", "first", agent_id="a", depends_on=("C",)))

    with pytest.raises(ConfigurationError, match="cycle"):
        await orchestrator.load(cyclic)
    with pytest.raises(KeyError):
        await orchestrator.execute("chain")

    assert all(behavior.calls == 0 for behavior in behaviors.values())


@pytest.mark.parametrize(
    "steps, message",
    [
        ((), "no steps"),
        ((WorkflowStep("A", "x", agent_id="a"), WorkflowStep("A", "y", agent_id="a")), "duplicate"),
        ((WorkflowStep("A", "x", agent_id="a", depends_on=("Z",)),), "unknown step"),
        (
            (
                WorkflowStep("A", "x", agent_id="a"),
                WorkflowStep(
                    "B",
                    "y",
                    agent_id="a",
                    condition=StepCondition(ConditionKind.STEP_SUCCEEDED, step_id="A"),
                ),
            ),
            "does not depend",
        ),
    ],
)
def test_invalid_definitions_are_rejected(steps: Tuple[WorkflowStep, ...], message: str) -> None:
    definition = WorkflowDefinition(workflow_id="broken", name="Broken", steps=steps)

    with pytest.raises(ConfigurationError, match=message):
        definition.validate()


def test_step_needs_exactly_one_target() -> None:
    with pytest.raises(ConfigurationError):
        WorkflowStep("A", "x")
    with pytest.raises(ConfigurationError):
        WorkflowStep("A", "x", agent_id="a", tag="orders")


def test_topological_order_follows_declaration_order() -> None:
    definition = WorkflowDefinition(
        workflow_id="diamond",
        name="Diamond",
        steps=(
            WorkflowStep("join", "z", agent_id="a", depends_on=("left", "right")),
            WorkflowStep("right", "y", agent_id="a", depends_on=("root",)),
            WorkflowStep("left", "x", agent_id="a", depends_on=("root",)),
            WorkflowStep("root", "w", agent_id="a"),
        ),
    )

    assert definition.validate() == ["root", "right", "left", "join"]


@pytest.mark.anyio
async def test_transient_failures_are_retried_until_the_step_succeeds(registry: AgentRegistry) -> None:
    b = ScriptedBehavior(TransientFailure("busy"), TransientFailure("busy"), {"b": 2})
    await agents(registry, a=ScriptedBehavior({"a": 1}), b=b, c=ScriptedBehavior({"c": 3}))
    orchestrator = WorkflowOrchestrator(registry)
    await orchestrator.load(chain())

    execution = await orchestrator.execute("chain", {"order": "ORD-1"})

    assert execution.status is ExecutionStatus.SUCCEEDED
    assert execution.context == {"order": "ORD-1", "A": {"a": 1}, "B": {"b": 2}, "C": {"c": 3}}
    assert b.calls == 3
    assert execution.retries_used == 2
    assert execution.error is None
    assert execution.finished_at is not None


@pytest.mark.anyio
async def test_exhausted_step_fails_the_workflow_and_keeps_earlier_output(registry: AgentRegistry) -> None:
    b = ScriptedBehavior(TransientFailure("down"))
    c = ScriptedBehavior({"c": 3})
    await agents(registry, a=ScriptedBehavior({"a": 1}), b=b, c=c)
    orchestrator, notifier = orchestrator_with_notifier(registry)
    await orchestrator.load(chain())

    execution = await orchestrator.execute("chain")

    assert execution.status is ExecutionStatus.FAILED
    assert execution.error.failed_step == "B"
    assert execution.error.code == ErrorCode.TRANSIENT
    assert execution.context == {"A": {"a": 1}}
    assert b.calls == 4
    assert c.calls == 0
    assert "C" not in execution.step_results
    assert set(notifier.titles()) == {"Workflow failed: chain"}
    # One escalation fanned out to the HIGH channels.
    assert len(notifier.sent) == 2


@pytest.mark.anyio
async def test_retry_budget_caps_retries_across_steps(registry: AgentRegistry) -> None:
    b = ScriptedBehavior(TransientFailure("down"))
    await agents(registry, a=ScriptedBehavior(), b=b, c=ScriptedBehavior())
    orchestrator = WorkflowOrchestrator(registry)
    await orchestrator.load(chain(retry_budget=1))

    execution = await orchestrator.execute("chain")

    assert execution.status is ExecutionStatus.FAILED
    assert b.calls == 2
    assert execution.retries_used == 1


@pytest.mark.anyio
async def test_false_condition_skips_the_step(registry: AgentRegistry) -> None:
    b = ScriptedBehavior()
    c = ScriptedBehavior({"c": 3})
    await agents(registry, a=ScriptedBehavior({"status": "pending"}), b=b, c=c)
    orchestrator = WorkflowOrchestrator(registry)
    guarded = WorkflowStep(
        "B",
        "second",
        agent_id="b",
        depends_on=("A",),
        condition=StepCondition(ConditionKind.STEP_VALUE, step_id="A", path="status", value="paid"),
    )
    await orchestrator.load(chain(B=guarded))

    execution = await orchestrator.execute("chain")

    assert execution.status is ExecutionStatus.SUCCEEDED
    assert execution.skipped_steps == ["B"]
    assert b.calls == 0
    assert c.calls == 1


@pytest.mark.anyio
async def test_context_condition_reads_initial_context(registry: AgentRegistry) -> None:
    b = ScriptedBehavior()
    await agents(registry, a=ScriptedBehavior(), b=b, c=ScriptedBehavior())
    orchestrator = WorkflowOrchestrator(registry)
    guarded = WorkflowStep(
        "B",
        "second",
        agent_id="b",
        depends_on=("A",),
        condition=StepCondition(ConditionKind.CONTEXT_HAS, path="customer.email"),
    )
    await orchestrator.load(chain(B=guarded))

    skipped = await orchestrator.execute("chain", {"customer": {"name": "Kim"}})
    ran = await orchestrator.execute("chain", {"customer": {"email": "kim@example.com"}})

    assert skipped.skipped_steps == ["B"]
    assert ran.skipped_steps == []
    assert b.calls == 1


@pytest.mark.anyio
async def test_optional_step_failure_does_not_fail_the_workflow(registry: AgentRegistry) -> None:
    c = ScriptedBehavior({"c": 3})
    await agents(registry, a=ScriptedBehavior(), b=ScriptedBehavior(ValueError("flaky report")), c=c)
    orchestrator = WorkflowOrchestrator(registry)
    await orchestrator.load(
        chain(B=WorkflowStep("B", "second", agent_id="b", depends_on=("A",), required=False))
    )

    execution = await orchestrator.execute("chain")

    assert execution.status is ExecutionStatus.SUCCEEDED
    assert execution.step_results["B"].error.code == ErrorCode.EXECUTION_ERROR
    assert c.calls == 1


@pytest.mark.anyio
async def test_mappings_move_values_between_steps(registry: AgentRegistry) -> None:
    b = ScriptedBehavior({"status": "paid"})
    await agents(registry, a=ScriptedBehavior({"id": "ORD-9", "total": 12}), b=b, c=ScriptedBehavior())
    orchestrator = WorkflowOrchestrator(registry)
    await orchestrator.load(
        chain(
            A=WorkflowStep("A", "create", agent_id="a", output_mapping={"order_id": "id"}),
            B=WorkflowStep(
                "B",
                "confirm",
                agent_id="b",
                depends_on=("A",),
                input_mapping={"order": "order_id"},
                output_mapping={"order_status": "status"},
            ),
        )
    )

    execution = await orchestrator.execute("chain")

    sent = b.contexts[0].data
    assert sent["order"] == "ORD-9"
    assert sent["action"] == "confirm"
    assert sent["step_id"] == "B"
    assert execution.context["order_id"] == "ORD-9"
    assert execution.context["order_status"] == "paid"
    assert "total" not in execution.context


@pytest.mark.anyio
async def test_independent_steps_run_concurrently_within_the_bound(registry: AgentRegistry) -> None:
    overlap = Overlap()
    for agent_id in ("w-1", "w-2", "w-3"):
        await started_agent(agent_id, ConcurrencyTracker(overlap), registry=registry)
    orchestrator = WorkflowOrchestrator(registry, concurrency=2)
    await orchestrator.load(
        WorkflowDefinition(
            workflow_id="fan-out",
            name="Fan out",
            steps=tuple(WorkflowStep(f"s{i}", "work", agent_id=f"w-{i}") for i in (1, 2, 3)),
        )
    )

    execution = await orchestrator.execute("fan-out")

    assert execution.status is ExecutionStatus.SUCCEEDED
    assert overlap.peak == 2


@pytest.mark.anyio
async def test_cancel_takes_effect_at_the_next_step_boundary(registry: AgentRegistry) -> None:
    a = GatedBehavior()
    b = ScriptedBehavior()
    await agents(registry, a=a, b=b, c=ScriptedBehavior())
    orchestrator = WorkflowOrchestrator(registry)
    await orchestrator.load(chain())

    execution = orchestrator.start("chain")
    await a.started.wait()
    assert orchestrator.cancel(execution.execution_id) is True
    a.release.set()
    finished = await orchestrator.wait(execution.execution_id)

    assert finished.status is ExecutionStatus.CANCELLED
    assert finished.step_results["A"].succeeded
    assert b.calls == 0
    assert orchestrator.cancel(execution.execution_id) is False


@pytest.mark.anyio
async def test_workflow_timeout_fails_the_running_step(registry: AgentRegistry) -> None:
    a = GatedBehavior()
    await agents(registry, a=a, b=ScriptedBehavior(), c=ScriptedBehavior())
    orchestrator, notifier = orchestrator_with_notifier(registry)
    await orchestrator.load(chain(timeout=0.05))

    execution = await orchestrator.execute("chain")

    assert execution.status is ExecutionStatus.FAILED
    assert execution.error.code == ErrorCode.WORKFLOW_TIMEOUT
    assert execution.error.failed_step == "A"
    assert registry.find_by_id("a").state is AgentState.READY
    assert set(notifier.titles()) == {"Workflow failed: chain"}


@pytest.mark.anyio
async def test_missing_agent_fails_the_step(registry: AgentRegistry) -> None:
    await agents(registry, a=ScriptedBehavior(), b=ScriptedBehavior())
    orchestrator = WorkflowOrchestrator(registry)
    await orchestrator.load(chain())

    execution = await orchestrator.execute("chain")

    assert execution.status is ExecutionStatus.FAILED
    assert execution.error.failed_step == "C"
    assert execution.error.code == ErrorCode.AGENT_NOT_FOUND


@pytest.mark.anyio
async def test_tag_steps_use_the_least_loaded_agent(registry: AgentRegistry) -> None:
    first = ScriptedBehavior({"by": 1})
    second = ScriptedBehavior({"by": 2})
    await started_agent("orders-2", second, registry=registry, tags=["orders"])
    await started_agent("orders-1", first, registry=registry, tags=["orders"])
    orchestrator = WorkflowOrchestrator(registry)
    await orchestrator.load(
        WorkflowDefinition(
            workflow_id="lookup",
            name="Lookup",
            steps=(WorkflowStep("get", "get_order", tag="orders"),),
        )
    )

    execution = await orchestrator.execute("lookup")

    assert execution.context["get"] == {"by": 1}
    assert second.calls == 0


@pytest.mark.anyio
async def test_definitions_and_executions_are_tracked(registry: AgentRegistry) -> None:
    await agents(registry, a=ScriptedBehavior(), b=ScriptedBehavior(), c=ScriptedBehavior())
    orchestrator = WorkflowOrchestrator(registry, history_limit=2)
    order = await orchestrator.load(chain())

    assert order == ["A", "B", "C"]
    with pytest.raises(DuplicateIdError):
        await orchestrator.load(chain())
    await orchestrator.load(chain(), replace=True)

    runs = [await orchestrator.execute("chain") for _ in range(3)]

    with pytest.raises(KeyError):
        orchestrator.get_execution(runs[0].execution_id)
    assert orchestrator.get_execution(runs[2].execution_id).status is ExecutionStatus.SUCCEEDED
    assert orchestrator.running() == []

    await orchestrator.unload("chain")
    assert orchestrator.definitions() == []
    with pytest.raises(KeyError):
        orchestrator.get_definition("chain")


def single(workflow_id: str, agent_id: str) -> WorkflowDefinition:
    return WorkflowDefinition(
        workflow_id=workflow_id,
        name=workflow_id.title(),
        steps=(WorkflowStep("only", "work", agent_id=agent_id),),
    )


@pytest.mark.anyio
async def test_failing_step_escalates_once_for_the_workflow(registry: AgentRegistry) -> None:
    notifier = RecordingNotifier()
    escalator = Escalator(notifier)
    await started_agent("a", ScriptedBehavior(RuntimeError("disk full")), registry=registry, escalator=escalator)
    orchestrator = WorkflowOrchestrator(registry, escalator=escalator)
    await orchestrator.load(single("single", "a"))

    execution = await orchestrator.execute("single")

    assert execution.status is ExecutionStatus.FAILED
    assert execution.error.code == ErrorCode.EXECUTION_ERROR
    assert notifier.titles() == ["Workflow failed: single"] * 2


@pytest.mark.anyio
async def test_workflow_needing_more_than_the_grant_never_starts(registry: AgentRegistry) -> None:
    a = ScriptedBehavior()
    await agents(registry, a=a, b=ScriptedBehavior(), c=ScriptedBehavior())
    orchestrator = WorkflowOrchestrator(registry)
    await orchestrator.load(
        WorkflowDefinition(
            workflow_id="chain",
            name="Gated chain",
            steps=chain().steps,
            approval_level=ApprovalLevel.HIGH,
        )
    )

    with pytest.raises(ApprovalRequired):
        await orchestrator.execute("chain")
    with pytest.raises(ApprovalRequired):
        orchestrator.start("chain", granted_level=ApprovalLevel.MEDIUM)

    assert a.calls == 0
    assert orchestrator.running() == []
    execution = await orchestrator.execute("chain", granted_level=ApprovalLevel.HIGH)
    assert execution.status is ExecutionStatus.SUCCEEDED


@pytest.mark.anyio
async def test_step_agent_needing_more_than_the_grant_fails_the_step(registry: AgentRegistry) -> None:
    b = ScriptedBehavior()
    c = ScriptedBehavior()
    await started_agent("a", ScriptedBehavior(), registry=registry)
    await started_agent("b", b, registry=registry, config={"approval_level": ApprovalLevel.URGENT})
    await started_agent("c", c, registry=registry)
    orchestrator = WorkflowOrchestrator(registry)
    await orchestrator.load(chain())

    refused = await orchestrator.execute("chain", granted_level=ApprovalLevel.HIGH)

    assert refused.status is ExecutionStatus.FAILED
    assert refused.error.failed_step == "B"
    assert refused.error.code == ErrorCode.APPROVAL_REQUIRED
    assert b.calls == 0
    assert c.calls == 0

    allowed = await orchestrator.execute("chain", granted_level=ApprovalLevel.URGENT)
    assert allowed.status is ExecutionStatus.SUCCEEDED


@pytest.mark.anyio
async def test_history_drops_finished_runs_behind_a_long_one(registry: AgentRegistry) -> None:
    slow = GatedBehavior()
    await started_agent("slow", slow, registry=registry)
    await started_agent("a", ScriptedBehavior(), registry=registry)
    orchestrator = WorkflowOrchestrator(registry, history_limit=2)
    await orchestrator.load(single("long", "slow"))
    await orchestrator.load(single("quick", "a"))

    long_run = orchestrator.start("long")
    await slow.started.wait()
    quick = [await orchestrator.execute("quick") for _ in range(3)]

    for evicted in quick[:2]:
        with pytest.raises(KeyError):
            orchestrator.get_execution(evicted.execution_id)
    assert orchestrator.get_execution(quick[2].execution_id).status is ExecutionStatus.SUCCEEDED
    assert orchestrator.get_execution(long_run.execution_id).status is ExecutionStatus.RUNNING

    slow.release.set()
    finished = await orchestrator.wait(long_run.execution_id)
    assert finished.status is ExecutionStatus.SUCCEEDED
