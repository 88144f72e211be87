"""HTTP API exposing the agent registry."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from agentdesk.core.registry import RegistryEntry
from agentdesk.runtime import Runtime

router = APIRouter(prefix="/agents", tags=["agents"])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def not_found(exc: KeyError) -> HTTPException:
    detail = exc.args[0] if exc.args else str(exc)
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class AgentResponse(BaseModel):
    agent_id: str
    name: str
    role: str
    state: str
    parent_id: Optional[str]
    tags: List[str]
    enabled: bool
    approval_level: str
    in_flight: int
    execution_count: int
    success_count: int
    failure_count: int
    registered_at: datetime
    last_error: Optional[str]

    @classmethod
    def from_entry(cls, entry: RegistryEntry) -> "AgentResponse":
        agent = entry.agent
        return cls(
            agent_id=agent.agent_id,
            name=agent.name,
            role=entry.role.value,
            state=agent.state.name,
            parent_id=entry.parent_id,
            tags=sorted(entry.tags),
            enabled=agent.config.enabled,
            approval_level=agent.config.approval_level.name.lower(),
            in_flight=agent.in_flight,
            execution_count=entry.execution_count,
            success_count=entry.success_count,
            failure_count=entry.failure_count,
            registered_at=entry.registered_at,
            last_error=agent.last_error.message if agent.last_error else None,
        )


class TerminateResponse(BaseModel):
    removed: List[str]


@router.get("", response_model=List[AgentResponse])
async def list_agents(runtime: Runtime = Depends(get_runtime)) -> List[AgentResponse]:
    return [AgentResponse.from_entry(entry) for entry in runtime.list_agents()]


@router.get("/{agent_id}", response_model=AgentResponse)
async def get_agent(agent_id: str, runtime: Runtime = Depends(get_runtime)) -> AgentResponse:
    entry = runtime.registry.get_entry(agent_id)
    if entry is None or not entry.live:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown agent")
    return AgentResponse.from_entry(entry)


@router.delete("/{agent_id}", response_model=TerminateResponse)
async def delete_agent(agent_id: str, runtime: Runtime = Depends(get_runtime)) -> TerminateResponse:
    try:
        removed = await runtime.terminate_agent(agent_id)
    except KeyError as exc:
        raise not_found(exc) from exc
    return TerminateResponse(removed=removed)
