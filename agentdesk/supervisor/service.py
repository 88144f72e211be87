"""Supervisor pipeline: classify, route, then invoke an agent or a workflow."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from agentdesk.agents.delegation import ParentRef, as_delegate, deliver_with_retry
from agentdesk.core.errors import ApprovalRequired, ErrorCode, ValidationFailure
from agentdesk.core.models import (
    AgentError,
    ApprovalLevel,
    TaskPayload,
    TaskResult,
    new_id,
    utcnow,
)
from agentdesk.core.registry import AgentRegistry
from agentdesk.orchestration.orchestrator import WorkflowOrchestrator
from agentdesk.orchestration.workflow import ExecutionStatus, WorkflowExecution
from agentdesk.services.notifier import Escalator
from agentdesk.supervisor.classifier import Intent, IntentClassifier
from agentdesk.supervisor.router import AgentRouter, RouteRequest, RouteStatus, RoutingDecision

logger = logging.getLogger(__name__)

SUPERVISOR_REF = ParentRef(agent_id="supervisor", name="Supervisor")


class ResponseStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING_APPROVAL = "pending_approval"
    REJECTED = "rejected"
    CLARIFICATION_NEEDED = "clarification_needed"
    UNROUTABLE = "unroutable"


def task_to_dict(result: TaskResult[Any]) -> Dict[str, Any]:
    return {
        "task_id": result.task_id,
        "status": result.status.value,
        "data": result.data,
        "error": result.error.to_dict() if result.error else None,
        "duration": result.duration,
    }


@dataclass(slots=True)
class SupervisorResponse:
    request_id: str
    status: ResponseStatus
    intent: Intent
    message: str
    decision: Optional[RoutingDecision] = None
    result: Optional[TaskResult[Any]] = None
    execution: Optional[WorkflowExecution] = None
    approval_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "message": self.message,
            "intent": self.intent.to_dict(),
            "decision": self.decision.to_dict() if self.decision else None,
            "result": task_to_dict(self.result) if self.result else None,
            "execution": self.execution.to_dict() if self.execution else None,
            "approval_id": self.approval_id,
        }


@dataclass(slots=True)
class ApprovalRequest:
    """A routed request parked until a human with enough authority decides."""

    request_id: str
    raw_input: str
    intent: Intent
    decision: RoutingDecision
    requester_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    approval_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "request_id": self.request_id,
            "input": self.raw_input,
            "category": self.intent.category,
            "required_approval_level": self.decision.required_approval_level.name.lower(),
            "target_agent_id": self.decision.target_agent_id,
            "workflow_id": self.decision.workflow_id,
            "requester_id": self.requester_id,
            "created_at": self.created_at.isoformat(),
        }


class Supervisor:
    """Entry point for free-form requests.

    Requests whose target needs more authority than the caller holds are
    parked in an approval queue; ``approve`` re-routes them with the
    approver's grant and runs them, ``reject`` drops them.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        router: AgentRouter,
        registry: AgentRegistry,
        orchestrator: WorkflowOrchestrator,
        *,
        escalator: Optional[Escalator] = None,
        default_grant: ApprovalLevel = ApprovalLevel.LOW,
    ) -> None:
        self._classifier = classifier
        self._router = router
        self._registry = registry
        self._orchestrator = orchestrator
        self._escalator = escalator
        self.default_grant = default_grant
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._lock = asyncio.Lock()

    def pending_approvals(self) -> List[ApprovalRequest]:
        return sorted(self._approvals.values(), key=lambda request: request.created_at)

    async def handle(
        self,
        raw_input: str,
        granted_level: Optional[ApprovalLevel] = None,
        *,
        requester_id: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> SupervisorResponse:
        if not raw_input or not raw_input.strip():
            raise ValidationFailure("Request text must not be empty")
        grant = ApprovalLevel.parse(granted_level) if granted_level is not None else self.default_grant
        request_id = new_id()
        intent = self._classifier.classify(raw_input)

        # Structured data sent along with the text can fill in missing parameters.
        missing = [name for name in intent.required_params if name not in (data or {})]
        if not intent.is_unknown and missing:
            return SupervisorResponse(
                request_id=request_id,
                status=ResponseStatus.CLARIFICATION_NEEDED,
                intent=intent,
                message=f"Please provide: {', '.join(missing)}",
            )

        decision = self._router.route(RouteRequest(intent=intent, granted_level=grant, requester_id=requester_id))
        if decision.status is RouteStatus.UNROUTABLE:
            return SupervisorResponse(
                request_id=request_id,
                status=ResponseStatus.UNROUTABLE,
                intent=intent,
                decision=decision,
                message=decision.rationale,
            )
        if decision.status is RouteStatus.PENDING_APPROVAL:
            return await self._park(request_id, raw_input, intent, decision, requester_id, data)
        return await self._dispatch(request_id, raw_input, intent, decision, data, grant)

    async def approve(
        self,
        approval_id: str,
        granted_level: ApprovalLevel = ApprovalLevel.URGENT,
        *,
        approver_id: Optional[str] = None,
    ) -> SupervisorResponse:
        """Run a parked request with the approver's grant."""
        granted_level = ApprovalLevel.parse(granted_level)
        async with self._lock:
            request = self._take(approval_id)
            if granted_level < request.decision.required_approval_level:
                self._approvals[approval_id] = request
                raise ApprovalRequired(
                    f"Approval {approval_id} needs {request.decision.required_approval_level.name}, "
                    f"approver holds {granted_level.name}",
                    {"approval_id": approval_id},
                )
        logger.info("Approval %s granted by %s at %s", approval_id, approver_id, granted_level.name)
        decision = self._router.route(
            RouteRequest(intent=request.intent, granted_level=granted_level, requester_id=request.requester_id)
        )
        if decision.status is RouteStatus.UNROUTABLE:
            return SupervisorResponse(
                request_id=request.request_id,
                status=ResponseStatus.UNROUTABLE,
                intent=request.intent,
                decision=decision,
                message=decision.rationale,
            )
        if decision.status is RouteStatus.PENDING_APPROVAL:
            return await self._park(
                request.request_id, request.raw_input, request.intent, decision, request.requester_id, request.data
            )
        return await self._dispatch(
            request.request_id, request.raw_input, request.intent, decision, request.data, granted_level
        )

    async def reject(self, approval_id: str, reason: str = "") -> SupervisorResponse:
        async with self._lock:
            request = self._take(approval_id)
        logger.info("Approval %s rejected: %s", approval_id, reason or "no reason given")
        return SupervisorResponse(
            request_id=request.request_id,
            status=ResponseStatus.REJECTED,
            intent=request.intent,
            decision=request.decision,
            approval_id=approval_id,
            message=f"Request rejected{': ' + reason if reason else ''}",
        )

    def _take(self, approval_id: str) -> ApprovalRequest:
        if approval_id not in self._approvals:
            raise KeyError(f"Unknown approval '{approval_id}'")
        return self._approvals.pop(approval_id)

    async def _park(
        self,
        request_id: str,
        raw_input: str,
        intent: Intent,
        decision: RoutingDecision,
        requester_id: Optional[str],
        data: Optional[Mapping[str, Any]],
    ) -> SupervisorResponse:
        request = ApprovalRequest(
            request_id=request_id,
            raw_input=raw_input,
            intent=intent,
            decision=decision,
            requester_id=requester_id,
            data=dict(data or {}),
        )
        async with self._lock:
            self._approvals[request.approval_id] = request
        logger.info(
            "Request %s awaits %s approval (%s)",
            request_id,
            decision.required_approval_level.name,
            request.approval_id,
        )
        if self._escalator is not None:
            await self._escalator.notify_approval_request(
                request.approval_id,
                intent.category,
                f"{raw_input}\nrequires {decision.required_approval_level.name} approval",
            )
        return SupervisorResponse(
            request_id=request_id,
            status=ResponseStatus.PENDING_APPROVAL,
            intent=intent,
            decision=decision,
            approval_id=request.approval_id,
            message=f"Awaiting {decision.required_approval_level.name} approval",
        )

    async def _dispatch(
        self,
        request_id: str,
        raw_input: str,
        intent: Intent,
        decision: RoutingDecision,
        data: Optional[Mapping[str, Any]],
        granted_level: ApprovalLevel,
    ) -> SupervisorResponse:
        inputs = {
            **intent.params,
            **dict(data or {}),
            "intent": intent.category,
            "input": raw_input,
            "urgency": intent.urgency.name.lower(),
        }
        if decision.workflow_id is not None:
            execution = await self._orchestrator.execute(
                decision.workflow_id, inputs, granted_level=granted_level
            )
            succeeded = execution.status is ExecutionStatus.SUCCEEDED
            return SupervisorResponse(
                request_id=request_id,
                status=ResponseStatus.COMPLETED if succeeded else ResponseStatus.FAILED,
                intent=intent,
                decision=decision,
                execution=execution,
                message=f"Workflow {decision.workflow_id} {execution.status.value}",
            )

        payload = TaskPayload(
            task_type=intent.category,
            data=inputs,
            priority=int(intent.urgency),
            correlation_id=request_id,
        )
        agent = self._registry.find_by_id(decision.target_agent_id)
        if agent is None:
            result: TaskResult[Any] = TaskResult.failed(
                payload.task_id,
                AgentError(code=ErrorCode.AGENT_NOT_FOUND, message=f"Agent {decision.target_agent_id} is gone"),
            )
        else:
            result = await deliver_with_retry(
                as_delegate(agent, SUPERVISOR_REF),
                payload,
                max_retries=agent.config.max_retries,
                retry_delay=agent.config.retry_delay,
            )
        return SupervisorResponse(
            request_id=request_id,
            status=ResponseStatus.COMPLETED if result.succeeded else ResponseStatus.FAILED,
            intent=intent,
            decision=decision,
            result=result,
            message=(
                f"Handled by {decision.target_agent_id}"
                if result.succeeded
                else f"{decision.target_agent_id} failed: {result.error.message if result.error else result.status.value}"
            ),
        )
