"""Agent lifecycle core shared by every main agent and sub-agent."""
from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from agentdesk.core.errors import (
    AgentDeskError,
    ConfigurationError,
    ErrorCode,
    IllegalStateError,
)
from agentdesk.core.message_bus import A2AMessageBus
from agentdesk.core.models import (
    AgentConfig,
    AgentContext,
    AgentError,
    AgentResult,
    AgentRole,
    AgentState,
    NotificationPriority,
    ProgressReport,
    TaskResult,
)
from agentdesk.core.registry import AgentRegistry
from agentdesk.services.notifier import Escalator, priority_for_error

if TYPE_CHECKING:
    from agentdesk.agents.delegation import ParentMailbox, SubAgentDelegate

logger = logging.getLogger(__name__)


class AgentBehavior(abc.ABC):
    """Domain logic plugged into an ``Agent``.

    Only ``run`` is mandatory. ``run`` may return plain data (wrapped into a
    successful result), an ``AgentResult``, or raise; the agent normalizes all
    three. The ``on_*`` hooks are invoked when this agent acts as a parent and
    one of its sub-agents reports back.
    """

    agent: Optional["Agent"] = None

    def bind(self, agent: "Agent") -> None:
        self.agent = agent

    async def initialize(self) -> None:
        """Prepare resources before the first run."""
        return None

    @abc.abstractmethod
    async def run(self, context: AgentContext) -> Any:
        """Perform one logical unit of work."""

    async def cleanup(self) -> None:
        """Release resources."""
        return None

    def progress(self) -> Optional[ProgressReport]:
        """Current progress while running, if the behavior tracks any."""
        return None

    async def on_task_complete(self, child_id: str, result: TaskResult) -> None:
        return None

    async def on_progress(self, child_id: str, report: ProgressReport) -> None:
        return None

    async def on_error(self, child_id: str, error: AgentError) -> None:
        return None

    async def on_notification(
        self, child_id: str, title: str, message: str, priority: NotificationPriority
    ) -> None:
        return None


class Agent:
    """Lifecycle wrapper enforcing the agent state machine.

    ``CREATED → INITIALIZING → READY ⇄ RUNNING → CLEANING_UP → TERMINATED``.
    A failed initialize goes straight to cleanup. ``cleanup`` runs its body
    exactly once.
    """

    def __init__(
        self,
        config: AgentConfig,
        behavior: AgentBehavior,
        *,
        registry: Optional[AgentRegistry] = None,
        bus: Optional[A2AMessageBus] = None,
        escalator: Optional[Escalator] = None,
        tags: Iterable[str] = (),
        role: AgentRole = AgentRole.MAIN,
        parent_id: Optional[str] = None,
        escalation_threshold: NotificationPriority = NotificationPriority.HIGH,
    ) -> None:
        self._config = config
        self.behavior = behavior
        self.tags = tuple(tags)
        self.role = role
        self.parent_id = parent_id
        self.delegate: Optional[SubAgentDelegate] = None
        self._registry = registry
        self._bus = bus
        self._escalator = escalator
        self._escalation_threshold = escalation_threshold
        self._state = AgentState.CREATED
        self._cleaned_up = False
        self._registered = False
        self._children: Dict[str, Agent] = {}
        self._mailbox: Optional[ParentMailbox] = None
        self._turn = asyncio.Lock()
        self._queued = 0
        self._running = 0
        self.current_context: Optional[AgentContext] = None
        self.last_error: Optional[AgentError] = None
        behavior.bind(self)

    @property
    def agent_id(self) -> str:
        return self._config.agent_id

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def in_flight(self) -> int:
        """Tasks running or waiting for their turn on this agent."""
        return self._queued + self._running

    @property
    def children(self) -> List["Agent"]:
        return [child for child in self._children.values() if child.state is not AgentState.TERMINATED]

    @property
    def registry(self) -> Optional[AgentRegistry]:
        return self._registry

    def _set_state(self, state: AgentState) -> None:
        previous = self._state
        self._state = state
        logger.debug("Agent %s: %s -> %s", self.agent_id, previous.name, state.name)

    def update_config(self, **changes: Any) -> AgentConfig:
        if "agent_id" in changes and changes["agent_id"] != self.agent_id:
            raise ConfigurationError("agent_id cannot be changed after construction")
        self._config = replace(self._config, **changes)
        logger.info("Agent %s configuration updated: %s", self.agent_id, sorted(changes))
        return self._config

    def enable(self) -> None:
        self.update_config(enabled=True)

    def disable(self) -> None:
        self.update_config(enabled=False)

    async def initialize(self) -> None:
        """Prepare the agent; on success it is READY and registered."""
        if self._state is not AgentState.CREATED:
            raise IllegalStateError(f"Agent {self.agent_id} cannot initialize from {self._state.name}")
        self._set_state(AgentState.INITIALIZING)
        try:
            await asyncio.wait_for(self.behavior.initialize(), timeout=self._config.timeout)
            if self._registry is not None:
                await self._registry.register(
                    self, role=self.role, parent_id=self.parent_id, tags=self.tags
                )
                self._registered = True
            if self._bus is not None:
                from agentdesk.agents.delegation import ParentMailbox

                self._mailbox = ParentMailbox(self, self._bus)
                await self._mailbox.start()
        except Exception as exc:  # noqa: BLE001
            logger.error("Agent %s failed to initialize: %s", self.agent_id, exc)
            await self.cleanup()
            if isinstance(exc, AgentDeskError):
                raise
            raise ConfigurationError(
                f"Agent {self.agent_id} failed to initialize: {exc}"
            ) from exc
        self._set_state(AgentState.READY)
        logger.info("Agent %s (%s) ready", self.agent_id, self.name)

    async def run(self, context: AgentContext, *, escalate: bool = True) -> AgentResult[Any]:
        """Run one unit of work. Never raises for agent-side failures.

        With ``escalate`` a non-retryable failure is reported to the escalator;
        callers that escalate on their own (workflows) turn it off.
        """
        started = time.monotonic()
        if self._state is not AgentState.READY:
            logger.warning("Agent %s rejected run in state %s", self.agent_id, self._state.name)
            return AgentResult.fail(
                ErrorCode.ILLEGAL_STATE,
                f"Agent {self.agent_id} is {self._state.name}, not READY",
            )
        if not self._config.enabled:
            return AgentResult.fail(ErrorCode.AGENT_DISABLED, f"Agent {self.agent_id} is disabled")

        self._set_state(AgentState.RUNNING)
        self._running = 1
        self.current_context = context
        teardown = False
        try:
            outcome = await asyncio.wait_for(self.behavior.run(context), timeout=self._config.timeout)
            if isinstance(outcome, AgentResult):
                result = replace(outcome, duration=time.monotonic() - started)
            else:
                result = AgentResult.ok(outcome, duration=time.monotonic() - started)
        except asyncio.TimeoutError:
            result = AgentResult.fail(
                ErrorCode.TIMEOUT,
                f"Agent {self.agent_id} timed out after {self._config.timeout}s",
                retryable=True,
                duration=time.monotonic() - started,
            )
        except IllegalStateError as exc:
            logger.error("Agent %s violated its lifecycle contract: %s", self.agent_id, exc)
            result = AgentResult(
                success=False,
                error=AgentError.from_exception(exc),
                duration=time.monotonic() - started,
            )
            teardown = True
        except Exception as exc:  # noqa: BLE001
            result = AgentResult(
                success=False,
                error=AgentError.from_exception(exc),
                duration=time.monotonic() - started,
            )
        finally:
            self.current_context = None
            self._running = 0
            if self._state is AgentState.RUNNING:
                self._set_state(AgentState.READY)

        if self._registry is not None:
            self._registry.record_execution(self.agent_id, result.success)
        if result.success:
            logger.debug("Agent %s completed in %.3fs", self.agent_id, result.duration)
        else:
            self.last_error = result.error
            logger.warning(
                "Agent %s failed: %s (%s, retryable=%s)",
                self.agent_id,
                result.error.message,
                result.error.code,
                result.error.retryable,
            )
            if escalate and not result.error.retryable:
                await self.escalate_failure(result.error, {"execution_id": context.execution_id})
        if teardown:
            await self.cleanup()
        return result

    async def submit(self, context: AgentContext, *, escalate: bool = True) -> AgentResult[Any]:
        """Queue behind any running task, then run."""
        self._queued += 1
        queued = True
        try:
            async with self._turn:
                self._queued -= 1
                queued = False
                return await self.run(context, escalate=escalate)
        finally:
            if queued:
                self._queued -= 1

    async def cleanup(self) -> None:
        """Release everything the agent holds. Only the first call does work."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self._set_state(AgentState.CLEANING_UP)
        try:
            for child in list(self._children.values()):
                await child.cleanup()
            if self._registered:
                await self._registry.unregister(self.agent_id)
            if self._mailbox is not None:
                await self._mailbox.stop()
            await self.behavior.cleanup()
        except Exception:  # noqa: BLE001
            logger.exception("Cleanup of agent %s failed", self.agent_id)
        finally:
            self._children.clear()
            self._set_state(AgentState.TERMINATED)
            logger.info("Agent %s terminated", self.agent_id)

    async def escalate_failure(
        self, error: AgentError, context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Notify the escalator when a terminal failure is severe enough."""
        if self._escalator is None:
            return False
        priority = priority_for_error(error, self._config.approval_level)
        if priority < self._escalation_threshold:
            return False
        await self._escalator.notify_agent_error(self.agent_id, error, priority, context)
        return True

    async def spawn_sub_agent(
        self,
        config: AgentConfig,
        behavior: AgentBehavior,
        *,
        tags: Iterable[str] = (),
        progress_interval: float = 0.0,
    ) -> "Agent":
        """Create, wire and initialize a sub-agent owned by this agent."""
        from agentdesk.agents.delegation import ParentRef, SubAgentDelegate

        if self._state not in (AgentState.READY, AgentState.RUNNING):
            raise IllegalStateError(f"Agent {self.agent_id} cannot spawn sub-agents while {self._state.name}")
        child = Agent(
            config,
            behavior,
            registry=self._registry,
            bus=self._bus,
            escalator=self._escalator,
            tags=tags,
            role=AgentRole.SUB,
            parent_id=self.agent_id,
            escalation_threshold=self._escalation_threshold,
        )
        child.delegate = SubAgentDelegate(
            child,
            ParentRef(agent_id=self.agent_id, name=self.name),
            bus=self._bus,
            progress_interval=progress_interval,
        )
        self._children[child.agent_id] = child
        try:
            await child.initialize()
        except Exception:
            self._children.pop(child.agent_id, None)
            raise
        return child

    async def pump_child_events(self) -> None:
        """Wait until queued sub-agent events reached this agent's hooks."""
        if self._mailbox is not None:
            await self._mailbox.drain()

    def __repr__(self) -> str:
        return f"Agent(id={self.agent_id!r}, state={self._state.name})"
