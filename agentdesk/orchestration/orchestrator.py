"""Workflow orchestrator executing step DAGs against registered agents."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional, Set

from agentdesk.agents.base import Agent
from agentdesk.agents.delegation import ParentRef, as_delegate, deliver_with_retry
from agentdesk.core.errors import ApprovalRequired, ConfigurationError, DuplicateIdError, ErrorCode
from agentdesk.core.models import AgentError, ApprovalLevel, TaskPayload, TaskResult
from agentdesk.core.registry import AgentRegistry, least_loaded
from agentdesk.orchestration.workflow import (
    ExecutionStatus,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowFailure,
    WorkflowStep,
)
from agentdesk.services.notifier import Escalator, priority_for_error

logger = logging.getLogger(__name__)

ORCHESTRATOR_REF = ParentRef(agent_id="workflow-orchestrator", name="Workflow orchestrator")


class WorkflowOrchestrator:
    """Run loaded workflow definitions step by step.

    Steps start as soon as their dependencies are done, bounded by
    ``concurrency``. A required step's terminal failure stops new steps,
    lets in-flight ones finish and marks the execution FAILED with the
    context kept as it was. Finished executions stay queryable until
    ``history_limit`` newer ones pushed them out.

    Every execution runs under the caller's granted approval level. A
    workflow needing more is refused up front; a step whose agent needs more
    fails with ``APPROVAL_REQUIRED``.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        *,
        escalator: Optional[Escalator] = None,
        concurrency: int = 4,
        history_limit: int = 100,
    ) -> None:
        if concurrency < 1:
            raise ConfigurationError("Workflow concurrency must be at least 1")
        self._registry = registry
        self._escalator = escalator
        self._concurrency = concurrency
        self._history_limit = history_limit
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._orders: Dict[str, List[str]] = {}
        self._executions: "OrderedDict[str, WorkflowExecution]" = OrderedDict()
        self._tasks: Dict[str, asyncio.Task[WorkflowExecution]] = {}
        self._lock = asyncio.Lock()

    async def load(self, definition: WorkflowDefinition, *, replace: bool = False) -> List[str]:
        """Validate and store a definition; returns its step order."""
        order = definition.validate()
        async with self._lock:
            if definition.workflow_id in self._definitions and not replace:
                raise DuplicateIdError(f"Workflow already loaded: {definition.workflow_id}")
            self._definitions[definition.workflow_id] = definition
            self._orders[definition.workflow_id] = order
        logger.info("Loaded workflow %s (%s)", definition.workflow_id, " -> ".join(order))
        return order

    async def unload(self, workflow_id: str) -> None:
        async with self._lock:
            if workflow_id not in self._definitions:
                raise KeyError(f"Unknown workflow '{workflow_id}'")
            del self._definitions[workflow_id]
            del self._orders[workflow_id]
        logger.info("Unloaded workflow %s", workflow_id)

    def definitions(self) -> List[WorkflowDefinition]:
        return list(self._definitions.values())

    def get_definition(self, workflow_id: str) -> WorkflowDefinition:
        if workflow_id not in self._definitions:
            raise KeyError(f"Unknown workflow '{workflow_id}'")
        return self._definitions[workflow_id]

    def find_by_trigger(self, category: str) -> Optional[WorkflowDefinition]:
        """First loaded workflow bound to an intent category."""
        for definition in self._definitions.values():
            if category in definition.trigger_categories:
                return definition
        return None

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        if execution_id not in self._executions:
            raise KeyError(f"Unknown execution '{execution_id}'")
        return self._executions[execution_id]

    def running(self) -> List[WorkflowExecution]:
        return [
            execution
            for execution in self._executions.values()
            if execution.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
        ]

    async def execute(
        self,
        workflow_id: str,
        initial_context: Optional[Mapping[str, Any]] = None,
        *,
        granted_level: ApprovalLevel = ApprovalLevel.LOW,
    ) -> WorkflowExecution:
        """Run a workflow to completion and return its execution."""
        execution = self.start(workflow_id, initial_context, granted_level=granted_level)
        return await asyncio.shield(self._tasks[execution.execution_id])

    def start(
        self,
        workflow_id: str,
        initial_context: Optional[Mapping[str, Any]] = None,
        *,
        granted_level: ApprovalLevel = ApprovalLevel.LOW,
    ) -> WorkflowExecution:
        """Schedule a workflow in the background and return its pending execution.

        Raises ``ApprovalRequired`` when the workflow needs more authority than
        ``granted_level``.
        """
        definition = self.get_definition(workflow_id)
        granted_level = ApprovalLevel.parse(granted_level)
        if definition.approval_level > granted_level:
            raise ApprovalRequired(
                f"Workflow {workflow_id} needs {definition.approval_level.name} approval, "
                f"caller holds {granted_level.name}",
                {"workflow_id": workflow_id, "required": definition.approval_level.name.lower()},
            )
        execution = WorkflowExecution(workflow_id=workflow_id, context=dict(initial_context or {}))
        self._remember(execution)
        order = list(self._orders[workflow_id])
        self._tasks[execution.execution_id] = asyncio.create_task(
            self._run(definition, order, execution, granted_level)
        )
        return execution

    async def wait(self, execution_id: str) -> WorkflowExecution:
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_execution(execution_id)

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation; takes effect at the next step boundary."""
        execution = self.get_execution(execution_id)
        if execution.status.terminal:
            return False
        execution.cancel_requested = True
        logger.info("Cancellation requested for execution %s", execution_id)
        return True

    async def shutdown(self) -> None:
        """Cancel running executions and wait for their in-flight steps."""
        for execution in self.running():
            execution.cancel_requested = True
        tasks = list(self._tasks.values())
        await asyncio.gather(*tasks, return_exceptions=True)

    def _remember(self, execution: WorkflowExecution) -> None:
        """Record an execution, dropping the oldest finished ones over the limit."""
        self._executions[execution.execution_id] = execution
        excess = len(self._executions) - self._history_limit
        if excess <= 0:
            return
        finished = [execution_id for execution_id, known in self._executions.items() if known.status.terminal]
        for execution_id in finished[:excess]:
            del self._executions[execution_id]

    async def _run(
        self,
        definition: WorkflowDefinition,
        order: List[str],
        execution: WorkflowExecution,
        granted_level: ApprovalLevel,
    ) -> WorkflowExecution:
        try:
            await self._drive(definition, order, execution, granted_level)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Execution %s crashed", execution.execution_id)
            execution.finish(
                ExecutionStatus.FAILED,
                WorkflowFailure(failed_step=execution.current_step, code=ErrorCode.EXECUTION_ERROR, message=str(exc)),
            )
        finally:
            self._tasks.pop(execution.execution_id, None)
        if execution.status is ExecutionStatus.FAILED and execution.error is not None:
            await self._escalate(definition, execution.error)
        return execution

    async def _drive(
        self,
        definition: WorkflowDefinition,
        order: List[str],
        execution: WorkflowExecution,
        granted_level: ApprovalLevel,
    ) -> None:
        steps = {step.step_id: step for step in definition.steps}
        semaphore = asyncio.Semaphore(self._concurrency)
        deadline = time.monotonic() + definition.timeout if definition.timeout else None

        pending: List[str] = list(order)
        done: Set[str] = set()
        inflight: Dict[asyncio.Task[Optional[TaskResult[Any]]], str] = {}
        failure: Optional[WorkflowFailure] = None

        execution.start()
        logger.info("Execution %s of %s started", execution.execution_id, definition.workflow_id)

        while pending or inflight:
            if failure is None and not execution.cancel_requested:
                for step_id in list(pending):
                    if all(dependency in done for dependency in steps[step_id].depends_on):
                        pending.remove(step_id)
                        task = asyncio.create_task(
                            self._run_step(execution, steps[step_id], semaphore, definition, granted_level)
                        )
                        inflight[task] = step_id
            if not inflight:
                break

            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            finished, _ = await asyncio.wait(
                list(inflight), timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if not finished:
                timed_out = sorted(inflight.values(), key=order.index)
                for task in inflight:
                    task.cancel()
                await asyncio.gather(*inflight, return_exceptions=True)
                inflight.clear()
                failure = WorkflowFailure(
                    failed_step=timed_out[0],
                    code=ErrorCode.WORKFLOW_TIMEOUT,
                    message=f"Workflow {definition.workflow_id} exceeded {definition.timeout}s",
                )
                break

            for task in sorted(finished, key=lambda t: order.index(inflight[t])):
                step_id = inflight.pop(task)
                step = steps[step_id]
                result = task.result()
                if result is None:
                    execution.skipped_steps.append(step_id)
                    done.add(step_id)
                    logger.info("Execution %s skipped step %s", execution.execution_id, step_id)
                    continue
                execution.step_results[step_id] = result
                if result.succeeded:
                    step.apply_output(execution.context, result.data)
                    done.add(step_id)
                    continue
                error = result.error
                if not step.required:
                    logger.warning(
                        "Execution %s: optional step %s failed (%s), continuing",
                        execution.execution_id,
                        step_id,
                        error.code if error else result.status.value,
                    )
                    done.add(step_id)
                elif failure is None:
                    failure = WorkflowFailure(
                        failed_step=step_id,
                        code=error.code if error else ErrorCode.EXECUTION_ERROR,
                        message=error.message if error else f"Step {step_id} ended as {result.status.value}",
                    )

        if failure is not None:
            logger.error(
                "Execution %s failed at %s: %s (%s)",
                execution.execution_id,
                failure.failed_step,
                failure.message,
                failure.code,
            )
            execution.finish(ExecutionStatus.FAILED, failure)
        elif pending:
            logger.info("Execution %s cancelled before %s", execution.execution_id, ", ".join(pending))
            execution.finish(ExecutionStatus.CANCELLED)
        else:
            logger.info("Execution %s succeeded", execution.execution_id)
            execution.finish(ExecutionStatus.SUCCEEDED)

    async def _run_step(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        semaphore: asyncio.Semaphore,
        definition: WorkflowDefinition,
        granted_level: ApprovalLevel,
    ) -> Optional[TaskResult[Any]]:
        """Run one step; ``None`` means its condition skipped it."""
        if step.condition is not None and not step.condition.evaluate(execution.context, execution.step_results):
            return None
        async with semaphore:
            agent = self._resolve(step)
            payload = TaskPayload(
                task_type=step.action,
                data=step.build_input(execution.context),
                priority=step.priority,
                correlation_id=execution.execution_id,
            )
            if agent is None:
                return TaskResult.failed(
                    payload.task_id,
                    AgentError(code=ErrorCode.AGENT_NOT_FOUND, message=f"No live agent for {step.target}"),
                )
            if agent.config.approval_level > granted_level:
                logger.warning(
                    "Execution %s: step %s needs %s approval on %s, caller holds %s",
                    execution.execution_id,
                    step.step_id,
                    agent.config.approval_level.name,
                    agent.agent_id,
                    granted_level.name,
                )
                return TaskResult.failed(
                    payload.task_id,
                    AgentError(
                        code=ErrorCode.APPROVAL_REQUIRED,
                        message=f"{agent.agent_id} needs {agent.config.approval_level.name} approval",
                        details={"agent_id": agent.agent_id},
                    ),
                )
            execution.current_step = step.step_id
            logger.debug("Execution %s: step %s -> %s", execution.execution_id, step.step_id, agent.agent_id)

            def within_budget(_: TaskResult[Any]) -> bool:
                if definition.retry_budget is not None and execution.retries_used >= definition.retry_budget:
                    logger.warning("Execution %s exhausted its retry budget", execution.execution_id)
                    return False
                execution.retries_used += 1
                return True

            return await deliver_with_retry(
                as_delegate(agent, ORCHESTRATOR_REF),
                payload,
                max_retries=step.max_retries,
                retry_delay=step.retry_delay,
                should_retry=within_budget,
                escalate=False,
            )

    def _resolve(self, step: WorkflowStep) -> Optional[Agent]:
        if step.agent_id is not None:
            agent = self._registry.find_by_id(step.agent_id)
        else:
            agent = least_loaded(self._registry.find_by_tag(step.tag))
        if agent is None or not agent.config.enabled:
            return None
        return agent

    async def _escalate(self, definition: WorkflowDefinition, failure: WorkflowFailure) -> None:
        if self._escalator is None:
            return
        priority = priority_for_error(
            AgentError(code=failure.code, message=failure.message), definition.approval_level
        )
        await self._escalator.escalate(
            priority,
            f"Workflow failed: {definition.workflow_id}",
            f"step={failure.failed_step}\ncode={failure.code}\nmessage={failure.message}",
        )
