"""Agent state machine, result normalization and escalation."""
from __future__ import annotations

import asyncio

import pytest

from agent_helpers import GatedBehavior, RecordingNotifier, ScriptedBehavior, make_config, started_agent
from agentdesk.agents.base import Agent
from agentdesk.core.errors import (
    ConfigurationError,
    DuplicateIdError,
    ErrorCode,
    IllegalStateError,
    TransientFailure,
    ValidationFailure,
)
from agentdesk.core.models import AgentContext, AgentResult, AgentState, ApprovalLevel
from agentdesk.core.registry import AgentRegistry
from agentdesk.services.notifier import Escalator


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def registry() -> AgentRegistry:
    registry = AgentRegistry()
    await registry.open()
    return registry


class SlowBehavior(ScriptedBehavior):
    async def run(self, context: AgentContext) -> dict:
        await asyncio.sleep(1.0)
        return {"late": True}


@pytest.mark.anyio
async def test_initialize_registers_and_becomes_ready(registry: AgentRegistry) -> None:
    behavior = ScriptedBehavior()
    agent = await started_agent("worker-1", behavior, registry=registry)

    assert agent.state is AgentState.READY
    assert registry.find_by_id("worker-1") is agent
    assert behavior.initialize_calls == 1


@pytest.mark.anyio
async def test_initialize_twice_is_illegal() -> None:
    agent = await started_agent("worker-1", ScriptedBehavior())

    with pytest.raises(IllegalStateError):
        await agent.initialize()


@pytest.mark.anyio
async def test_failed_initialize_cleans_up_exactly_once(registry: AgentRegistry) -> None:
    behavior = ScriptedBehavior(fail_initialize=RuntimeError("database unreachable"))
    agent = Agent(make_config("worker-1"), behavior, registry=registry)

    with pytest.raises(ConfigurationError):
        await agent.initialize()
    await agent.cleanup()

    assert agent.state is AgentState.TERMINATED
    assert behavior.cleanup_calls == 1
    assert "worker-1" not in registry


@pytest.mark.anyio
async def test_initialize_keeps_framework_errors() -> None:
    behavior = ScriptedBehavior(fail_initialize=ValidationFailure("bad settings"))
    agent = Agent(make_config("worker-1"), behavior)

    with pytest.raises(ValidationFailure):
        await agent.initialize()
    assert agent.state is AgentState.TERMINATED


@pytest.mark.anyio
async def test_duplicate_id_fails_initialize(registry: AgentRegistry) -> None:
    first = await started_agent("worker-1", ScriptedBehavior(), registry=registry)
    second = ScriptedBehavior()
    agent = Agent(make_config("worker-1"), second, registry=registry)

    with pytest.raises(DuplicateIdError):
        await agent.initialize()

    assert registry.find_by_id("worker-1") is first
    assert agent.state is AgentState.TERMINATED
    assert second.cleanup_calls == 1


@pytest.mark.anyio
async def test_run_before_initialize_is_rejected() -> None:
    behavior = ScriptedBehavior()
    agent = Agent(make_config("worker-1"), behavior)

    result = await agent.run(AgentContext())

    assert not result.success
    assert result.error.code == ErrorCode.ILLEGAL_STATE
    assert behavior.calls == 0
    assert agent.state is AgentState.CREATED


@pytest.mark.anyio
async def test_run_after_cleanup_is_rejected() -> None:
    agent = await started_agent("worker-1", ScriptedBehavior())
    await agent.cleanup()

    result = await agent.run(AgentContext())

    assert result.error.code == ErrorCode.ILLEGAL_STATE


@pytest.mark.anyio
async def test_run_wraps_plain_data_and_returns_to_ready() -> None:
    agent = await started_agent("worker-1", ScriptedBehavior({"answer": 42}))

    result = await agent.run(AgentContext(data={"q": "life"}))

    assert result.success
    assert result.data == {"answer": 42}
    assert result.duration >= 0
    assert agent.state is AgentState.READY


@pytest.mark.anyio
async def test_run_passes_through_agent_results() -> None:
    outcome = AgentResult.fail(ErrorCode.VALIDATION, "nope")
    agent = await started_agent("worker-1", ScriptedBehavior(outcome))

    result = await agent.run(AgentContext())

    assert result.error.code == ErrorCode.VALIDATION
    assert agent.last_error is result.error


@pytest.mark.anyio
async def test_exceptions_become_failed_results() -> None:
    agent = await started_agent(
        "worker-1",
        ScriptedBehavior(ValueError("boom"), TransientFailure("storage hiccup"), ConnectionError("reset")),
    )

    crashed = await agent.run(AgentContext())
    transient = await agent.run(AgentContext())
    network = await agent.run(AgentContext())

    assert crashed.error.code == ErrorCode.EXECUTION_ERROR
    assert not crashed.retryable
    assert transient.error.code == ErrorCode.TRANSIENT
    assert transient.retryable
    assert network.error.code == ErrorCode.TRANSIENT
    assert network.retryable
    assert agent.state is AgentState.READY


@pytest.mark.anyio
async def test_timeout_is_retryable() -> None:
    agent = await started_agent("worker-1", SlowBehavior(), config={"timeout": 0.05})

    result = await agent.run(AgentContext())

    assert result.error.code == ErrorCode.TIMEOUT
    assert result.retryable
    assert agent.state is AgentState.READY


@pytest.mark.anyio
async def test_disabled_agent_refuses_work() -> None:
    behavior = ScriptedBehavior()
    agent = await started_agent("worker-1", behavior)
    agent.disable()

    result = await agent.run(AgentContext())
    agent.enable()
    again = await agent.run(AgentContext())

    assert result.error.code == ErrorCode.AGENT_DISABLED
    assert again.success
    assert behavior.calls == 1


@pytest.mark.anyio
async def test_illegal_state_during_run_tears_the_agent_down(registry: AgentRegistry) -> None:
    behavior = ScriptedBehavior(IllegalStateError("lost my connection pool"))
    agent = await started_agent("worker-1", behavior, registry=registry)

    result = await agent.run(AgentContext())
    await agent.cleanup()

    assert result.error.code == ErrorCode.ILLEGAL_STATE
    assert agent.state is AgentState.TERMINATED
    assert behavior.cleanup_calls == 1
    assert registry.find_by_id("worker-1") is None


@pytest.mark.anyio
async def test_cleanup_runs_once_after_a_failed_run() -> None:
    behavior = ScriptedBehavior(ValueError("boom"))
    agent = await started_agent("worker-1", behavior)

    await agent.run(AgentContext())
    await agent.cleanup()
    await agent.cleanup()

    assert behavior.cleanup_calls == 1
    assert agent.state is AgentState.TERMINATED


@pytest.mark.anyio
async def test_context_data_is_isolated_from_the_caller() -> None:
    behavior = ScriptedBehavior()
    agent = await started_agent("worker-1", behavior)
    items = {"skus": ["SKU-123"]}

    context = AgentContext(data=items)
    items["skus"].append("SKU-456")
    await agent.run(context)

    assert behavior.contexts[0].data["skus"] == ["SKU-123"]
    with pytest.raises(TypeError):
        context.data["skus"] = []  # type: ignore[index]


@pytest.mark.anyio
async def test_update_config_keeps_identity() -> None:
    agent = await started_agent("worker-1", ScriptedBehavior())

    updated = agent.update_config(timeout=5.0, approval_level=ApprovalLevel.HIGH)

    assert updated.timeout == 5.0
    assert agent.config.approval_level is ApprovalLevel.HIGH
    with pytest.raises(ConfigurationError):
        agent.update_config(agent_id="worker-2")


@pytest.mark.anyio
async def test_submit_queues_behind_the_running_task() -> None:
    behavior = GatedBehavior()
    agent = await started_agent("worker-1", behavior)

    first = asyncio.create_task(agent.submit(AgentContext(data={"n": 1})))
    await behavior.started.wait()
    second = asyncio.create_task(agent.submit(AgentContext(data={"n": 2})))
    await asyncio.sleep(0)

    assert agent.state is AgentState.RUNNING
    assert agent.in_flight == 2

    behavior.release.set()
    results = await asyncio.gather(first, second)

    assert [result.data for result in results] == [{"done": 1}, {"done": 2}]
    assert agent.in_flight == 0


@pytest.mark.anyio
async def test_terminal_failures_escalate_by_severity() -> None:
    notifier = RecordingNotifier()
    agent = await started_agent(
        "worker-1",
        ScriptedBehavior(ValueError("boom"), ValidationFailure("missing sku"), TransientFailure("later")),
        escalator=Escalator(notifier),
    )

    await agent.run(AgentContext())
    escalated = len(notifier.sent)
    await agent.run(AgentContext())
    await agent.run(AgentContext())

    # EXECUTION_ERROR is HIGH: slack and email.
    assert escalated == 2
    assert notifier.titles() == ["Agent failure: worker-1", "Agent failure: worker-1"]
