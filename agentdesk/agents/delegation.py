"""Delegation of typed tasks to sub-agents and the parent-side mailbox."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Protocol, Set

from agentdesk.core.errors import ErrorCode
from agentdesk.core.message_bus import A2AMessageBus
from agentdesk.core.models import (
    IDLE_PROGRESS,
    A2AMessage,
    AgentError,
    AgentState,
    MessageKind,
    NotificationPriority,
    ProgressReport,
    TaskPayload,
    TaskResult,
    TaskStatus,
)

if TYPE_CHECKING:
    from agentdesk.agents.base import Agent

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ParentRef:
    """Identity of the agent that delegates work to a sub-agent."""

    agent_id: str
    name: str


class TaskDelegate(Protocol):
    agent: Agent

    async def execute_task(self, payload: TaskPayload, *, escalate: bool = True) -> TaskResult[Any]:
        ...


class SubAgentDelegate:
    """Delegate capability composed onto an agent.

    Turns a ``TaskPayload`` into a run of the wrapped agent and reports the
    outcome to the parent over the message bus. ``execute_task`` never raises
    for task failures. Overlapping calls are tracked per task id; the agent
    serves them in arrival order.
    """

    def __init__(
        self,
        agent: Agent,
        parent: ParentRef,
        bus: Optional[A2AMessageBus] = None,
        *,
        progress_interval: float = 0.0,
        auto_report: bool = True,
    ) -> None:
        self.agent = agent
        self.parent = parent
        self._bus = bus
        self._progress_interval = progress_interval
        self._auto_report = auto_report
        self._runners: Dict[str, asyncio.Task[Any]] = {}
        self._outstanding: Dict[str, TaskPayload] = {}
        self._cancelled: Set[str] = set()

    @property
    def busy(self) -> bool:
        return bool(self._runners)

    @property
    def current_task(self) -> Optional[TaskPayload]:
        """The oldest outstanding task, which is the one the agent is serving."""
        return next(iter(self._outstanding.values()), None)

    @property
    def outstanding(self) -> List[TaskPayload]:
        return list(self._outstanding.values())

    async def execute_task(self, payload: TaskPayload, *, escalate: bool = True) -> TaskResult[Any]:
        started = time.monotonic()
        if payload.is_expired():
            result: TaskResult[Any] = TaskResult.failed(
                payload.task_id,
                AgentError(
                    code=ErrorCode.VALIDATION,
                    message=f"Task {payload.task_id} expired at {payload.expires_at.isoformat()}",
                ),
            )
            self._report_outcome(payload, result)
            return result

        task_id = payload.task_id
        context = payload.to_context(caller_id=self.parent.agent_id)
        logger.debug(
            "Sub-agent %s executing %s task %s (attempt %d)",
            self.agent.agent_id,
            payload.task_type,
            task_id,
            payload.retry_count + 1,
        )
        runner = asyncio.create_task(self.agent.submit(context, escalate=escalate))
        self._runners[task_id] = runner
        self._outstanding[task_id] = payload
        reporter = self._start_reporter()
        try:
            agent_result = await runner
        except asyncio.CancelledError:
            if task_id not in self._cancelled:
                raise
            result = TaskResult(
                task_id=task_id,
                status=TaskStatus.CANCELLED,
                error=AgentError(code=ErrorCode.CANCELLED, message=f"Task {task_id} was cancelled"),
                duration=time.monotonic() - started,
            )
        except Exception as exc:  # noqa: BLE001
            result = TaskResult.failed(task_id, AgentError.from_exception(exc), duration=time.monotonic() - started)
        else:
            result = TaskResult.from_agent_result(task_id, agent_result)
        finally:
            if reporter is not None:
                reporter.cancel()
            self._runners.pop(task_id, None)
            self._outstanding.pop(task_id, None)
            self._cancelled.discard(task_id)

        self._report_outcome(payload, result)
        return result

    def cancel_task(self, task_id: str) -> bool:
        """Cancel one outstanding task; its result becomes ``cancelled``."""
        runner = self._runners.get(task_id)
        if runner is None or runner.done():
            return False
        self._cancelled.add(task_id)
        runner.cancel()
        logger.info("Sub-agent %s: cancelling task %s", self.agent.agent_id, task_id)
        return True

    def cancel_current_task(self) -> bool:
        current = self.current_task
        return current is not None and self.cancel_task(current.task_id)

    def current_progress(self) -> ProgressReport:
        if self.agent.state is AgentState.RUNNING:
            report = self.agent.behavior.progress()
            if report is not None:
                return report
        return IDLE_PROGRESS

    def report_progress(self, report: Optional[ProgressReport] = None) -> bool:
        return self._post(MessageKind.PROGRESS, {"report": report or self.current_progress()})

    def notify_parent(
        self,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
    ) -> bool:
        """Post a notification to the parent without waiting for it."""
        return self._post(
            MessageKind.NOTIFICATION,
            {"title": title, "message": message, "priority": priority},
        )

    def _report_outcome(self, payload: TaskPayload, result: TaskResult[Any]) -> None:
        if not self._auto_report:
            return
        if result.status is TaskStatus.FAILED and result.error is not None:
            self._post(MessageKind.ERROR, {"error": result.error}, payload.task_id)
        self._post(MessageKind.TASK_COMPLETE, {"result": result}, payload.task_id)

    def _post(self, kind: str, payload: dict, correlation_id: Optional[str] = None) -> bool:
        if self._bus is None:
            return False
        message = A2AMessage(
            sender_id=self.agent.agent_id,
            recipient_id=self.parent.agent_id,
            payload=payload,
            correlation_id=correlation_id,
            kind=kind,
        )
        return self._bus.post(message)

    def _start_reporter(self) -> Optional[asyncio.Task[None]]:
        if self._progress_interval <= 0 or self._bus is None:
            return None
        return asyncio.create_task(self._report_periodically())

    async def _report_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._progress_interval)
            self.report_progress()


def as_delegate(agent: Agent, caller: ParentRef) -> TaskDelegate:
    """Return the agent's own delegate, or a non-reporting one for main agents."""
    if agent.delegate is not None:
        return agent.delegate
    return SubAgentDelegate(agent, caller, auto_report=False)


async def deliver_with_retry(
    delegate: TaskDelegate,
    payload: TaskPayload,
    *,
    max_retries: int,
    retry_delay: float,
    should_retry: Optional[Callable[[TaskResult[Any]], bool]] = None,
    escalate: bool = True,
) -> TaskResult[Any]:
    """Deliver a payload, redelivering retryable failures.

    Each redelivery carries ``retry_count + 1`` and waits ``retry_delay``
    seconds. Once ``retry_count`` reaches ``max_retries`` (or ``should_retry``
    refuses) the failure is terminal and no longer retryable.
    With ``escalate`` off, neither the agent nor this loop notifies the
    escalator and the caller owns escalation.
    """
    attempt = payload
    while True:
        result = await delegate.execute_task(attempt, escalate=escalate)
        if result.succeeded or not result.retryable:
            return result
        if attempt.retry_count >= max_retries or (should_retry is not None and not should_retry(result)):
            break
        logger.warning(
            "Task %s on %s failed with %s, retrying (%d/%d) in %.2fs",
            attempt.task_id,
            delegate.agent.agent_id,
            result.error.code,
            attempt.retry_count + 1,
            max_retries,
            retry_delay,
        )
        await asyncio.sleep(retry_delay)
        attempt = attempt.redelivered()

    error = replace(
        result.error,
        retryable=False,
        details={**result.error.details, "attempts": attempt.retry_count + 1, "exhausted": True},
    )
    logger.error(
        "Task %s on %s gave up after %d attempts: %s",
        attempt.task_id,
        delegate.agent.agent_id,
        attempt.retry_count + 1,
        error.message,
    )
    if escalate:
        await delegate.agent.escalate_failure(error, {"task_id": attempt.task_id, "task_type": attempt.task_type})
    return replace(result, error=error)


class ParentMailbox:
    """Drains a parent's mailbox and invokes its behaviour's hooks.

    Messages are dispatched one at a time in arrival order. Hook failures are
    logged and never reach the sub-agent that sent the message.
    """

    def __init__(self, agent: Agent, bus: A2AMessageBus) -> None:
        self._agent = agent
        self._bus = bus
        self._queue: Optional[asyncio.Queue[A2AMessage]] = None
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        if self._runner is not None:
            return
        self._queue = await self._bus.register(self._agent.agent_id)
        self._stop_event.clear()
        self._runner = asyncio.create_task(self._run_safe())

    async def stop(self) -> None:
        if self._runner is None:
            return
        self._stop_event.set()
        if self._runner is not asyncio.current_task():
            await self._runner
        self._runner = None
        await self._bus.unregister(self._agent.agent_id)

    async def drain(self) -> None:
        """Wait until every message queued so far has been dispatched."""
        if self._queue is None or self._runner is None or self._runner.done():
            return
        await self._queue.join()

    async def _run_safe(self) -> None:
        assert self._queue is not None
        while not self._stop_event.is_set():
            try:
                message = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            await self._dispatch(message)
        while not self._queue.empty():
            await self._dispatch(self._queue.get_nowait())

    async def _dispatch(self, message: A2AMessage) -> None:
        behavior = self._agent.behavior
        child_id = message.sender_id
        payload = message.payload
        try:
            if message.kind == MessageKind.TASK_COMPLETE:
                await behavior.on_task_complete(child_id, payload["result"])
            elif message.kind == MessageKind.PROGRESS:
                await behavior.on_progress(child_id, payload["report"])
            elif message.kind == MessageKind.ERROR:
                await behavior.on_error(child_id, payload["error"])
            elif message.kind == MessageKind.NOTIFICATION:
                await behavior.on_notification(
                    child_id, payload["title"], payload["message"], payload["priority"]
                )
            else:
                logger.debug("Agent %s ignoring %s message from %s", self._agent.agent_id, message.kind, child_id)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Agent %s failed handling %s from %s", self._agent.agent_id, message.kind, child_id
            )
        finally:
            self._queue.task_done()
