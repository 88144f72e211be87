"""Chat endpoint feeding free-form requests to the supervisor."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from agentdesk.api.routes import get_runtime
from agentdesk.core.errors import AgentDeskError
from agentdesk.core.models import ApprovalLevel
from agentdesk.runtime import Runtime

router = APIRouter(prefix="/chat", tags=["chat"])


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="Free-form request")
    granted_level: Optional[str] = Field(
        default=None, description="Approval level held by the requester (none/low/medium/high/urgent)"
    )
    requester_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class ChatResponse(BaseModel):
    request_id: str
    status: str
    message: str
    intent: Dict[str, Any]
    decision: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    execution: Optional[Dict[str, Any]] = None
    approval_id: Optional[str] = None


@router.post("", response_model=ChatResponse)
async def chat(request: ChatRequest, runtime: Runtime = Depends(get_runtime)) -> ChatResponse:
    """Classify, route and run one request."""
    try:
        granted = ApprovalLevel.parse(request.granted_level) if request.granted_level else None
        response = await runtime.supervisor.handle(
            request.message,
            granted,
            requester_id=request.requester_id,
            data=request.data,
        )
    except AgentDeskError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict()) from exc
    return ChatResponse(**response.to_dict())
