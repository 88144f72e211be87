"""Workflow and approval routes."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from agentdesk.api.chat import ChatResponse
from agentdesk.api.routes import get_runtime, not_found
from agentdesk.core.errors import AgentDeskError, ApprovalRequired
from agentdesk.core.models import ApprovalLevel
from agentdesk.runtime import Runtime

router = APIRouter(prefix="/workflows", tags=["workflows"])
approvals_router = APIRouter(prefix="/approvals", tags=["approvals"])


class StepResponse(BaseModel):
    step_id: str
    action: str
    target: str
    depends_on: List[str]
    required: bool
    max_retries: int


class WorkflowResponse(BaseModel):
    workflow_id: str
    name: str
    description: str
    trigger_categories: List[str]
    approval_level: str
    timeout: Optional[float]
    retry_budget: Optional[int]
    steps: List[StepResponse]


class ExecutionRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)
    granted_level: Optional[str] = Field(
        default=None, description="Caller authority; defaults to the configured grant"
    )
    wait: bool = Field(default=True, description="Block until the execution finished")


class ExecutionResponse(BaseModel):
    execution_id: str
    workflow_id: str
    status: str
    current_step: Optional[str]
    context: Dict[str, Any]
    steps: Dict[str, Any]
    skipped_steps: List[str]
    retries_used: int
    started_at: Optional[str]
    finished_at: Optional[str]
    error: Optional[Dict[str, Any]]


class ApprovalResponse(BaseModel):
    approval_id: str
    request_id: str
    input: str
    category: str
    required_approval_level: str
    target_agent_id: Optional[str]
    workflow_id: Optional[str]
    requester_id: Optional[str]
    created_at: str


class ApprovalDecisionRequest(BaseModel):
    granted_level: str = Field(default="urgent")
    approver_id: Optional[str] = None
    reason: str = ""


@router.get("", response_model=List[WorkflowResponse])
async def list_workflows(runtime: Runtime = Depends(get_runtime)) -> List[WorkflowResponse]:
    return [
        WorkflowResponse(
            workflow_id=definition.workflow_id,
            name=definition.name,
            description=definition.description,
            trigger_categories=list(definition.trigger_categories),
            approval_level=definition.approval_level.name.lower(),
            timeout=definition.timeout,
            retry_budget=definition.retry_budget,
            steps=[
                StepResponse(
                    step_id=step.step_id,
                    action=step.action,
                    target=step.target,
                    depends_on=list(step.depends_on),
                    required=step.required,
                    max_retries=step.max_retries,
                )
                for step in definition.steps
            ],
        )
        for definition in runtime.orchestrator.definitions()
    ]


@router.post(
    "/{workflow_id}/executions",
    response_model=ExecutionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_execution(
    workflow_id: str,
    request: ExecutionRequest,
    runtime: Runtime = Depends(get_runtime),
) -> ExecutionResponse:
    try:
        granted_level = (
            ApprovalLevel.parse(request.granted_level)
            if request.granted_level is not None
            else runtime.config.default_grant
        )
        if request.wait:
            execution = await runtime.orchestrator.execute(
                workflow_id, request.context, granted_level=granted_level
            )
        else:
            execution = runtime.orchestrator.start(workflow_id, request.context, granted_level=granted_level)
    except KeyError as exc:
        raise not_found(exc) from exc
    except ApprovalRequired as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.to_dict()) from exc
    except AgentDeskError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict()) from exc
    return ExecutionResponse(**execution.to_dict())


@router.get("/executions/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)) -> ExecutionResponse:
    try:
        execution = runtime.orchestrator.get_execution(execution_id)
    except KeyError as exc:
        raise not_found(exc) from exc
    return ExecutionResponse(**execution.to_dict())


@router.delete("/executions/{execution_id}", status_code=status.HTTP_202_ACCEPTED)
async def cancel_execution(execution_id: str, runtime: Runtime = Depends(get_runtime)) -> Dict[str, bool]:
    try:
        accepted = runtime.orchestrator.cancel(execution_id)
    except KeyError as exc:
        raise not_found(exc) from exc
    return {"cancel_requested": accepted}


@approvals_router.get("", response_model=List[ApprovalResponse])
async def list_approvals(runtime: Runtime = Depends(get_runtime)) -> List[ApprovalResponse]:
    return [ApprovalResponse(**request.to_dict()) for request in runtime.supervisor.pending_approvals()]


@approvals_router.post("/{approval_id}/approve", response_model=ChatResponse)
async def approve(
    approval_id: str,
    request: ApprovalDecisionRequest,
    runtime: Runtime = Depends(get_runtime),
) -> ChatResponse:
    try:
        response = await runtime.supervisor.approve(
            approval_id,
            ApprovalLevel.parse(request.granted_level),
            approver_id=request.approver_id,
        )
    except KeyError as exc:
        raise not_found(exc) from exc
    except ApprovalRequired as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.to_dict()) from exc
    except AgentDeskError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict()) from exc
    return ChatResponse(**response.to_dict())


@approvals_router.post("/{approval_id}/reject", response_model=ChatResponse)
async def reject(
    approval_id: str,
    request: ApprovalDecisionRequest,
    runtime: Runtime = Depends(get_runtime),
) -> ChatResponse:
    try:
        response = await runtime.supervisor.reject(approval_id, request.reason)
    except KeyError as exc:
        raise not_found(exc) from exc
    return ChatResponse(**response.to_dict())
