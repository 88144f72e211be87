"""Resolve classified intents to an agent or a workflow."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from agentdesk.agents.base import Agent
from agentdesk.core.models import ApprovalLevel
from agentdesk.core.registry import AgentRegistry, least_loaded
from agentdesk.orchestration.orchestrator import WorkflowOrchestrator
from agentdesk.supervisor.classifier import DEFAULT_CONFIDENCE_FLOOR, Intent

logger = logging.getLogger(__name__)


class RouteStatus(str, Enum):
    ROUTED = "routed"
    PENDING_APPROVAL = "pending_approval"
    UNROUTABLE = "unroutable"


class Resolution(str, Enum):
    WORKFLOW = "workflow"
    TAG = "tag"
    DEFAULT = "default"
    CATCH_ALL = "catch_all"


@dataclass(frozen=True, slots=True)
class RouteRequest:
    intent: Intent
    granted_level: ApprovalLevel = ApprovalLevel.LOW
    requester_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    """Where a request goes and whether it may run right away."""

    status: RouteStatus
    rationale: str
    required_approval_level: ApprovalLevel = ApprovalLevel.NONE
    target_agent_id: Optional[str] = None
    workflow_id: Optional[str] = None
    resolution: Optional[Resolution] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def executable(self) -> bool:
        return self.status is RouteStatus.ROUTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "rationale": self.rationale,
            "required_approval_level": self.required_approval_level.name.lower(),
            "target_agent_id": self.target_agent_id,
            "workflow_id": self.workflow_id,
            "resolution": self.resolution.value if self.resolution else None,
        }


class AgentRouter:
    """Routing order: low confidence goes to the catch-all; otherwise a
    workflow bound to the category, agents tagged with it, the registry
    default for it, and finally the catch-all.

    Approval is a hard gate: a target requiring more than the requester's
    grant yields ``PENDING_APPROVAL`` and the required level is reported
    unchanged.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        *,
        catch_all_agent_id: str,
        orchestrator: Optional[WorkflowOrchestrator] = None,
        confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR,
    ) -> None:
        self._registry = registry
        self._orchestrator = orchestrator
        self.catch_all_agent_id = catch_all_agent_id
        self.confidence_floor = confidence_floor

    def route(self, request: RouteRequest) -> RoutingDecision:
        intent = request.intent
        if intent.is_unknown or intent.confidence < self.confidence_floor:
            decision = self._to_catch_all(
                request, f"confidence {intent.confidence:.2f} below floor {self.confidence_floor:.2f}"
            )
        else:
            decision = self._resolve(request)
        logger.info(
            "Routed %s -> %s (%s, %s)",
            intent.category,
            decision.workflow_id or decision.target_agent_id,
            decision.status.value,
            decision.rationale,
        )
        return decision

    def _resolve(self, request: RouteRequest) -> RoutingDecision:
        category = request.intent.category
        if self._orchestrator is not None:
            definition = self._orchestrator.find_by_trigger(category)
            if definition is not None:
                return self._gate(
                    request,
                    definition.approval_level,
                    Resolution.WORKFLOW,
                    f"workflow {definition.workflow_id} handles {category}",
                    workflow_id=definition.workflow_id,
                )

        candidates = [agent for agent in self._registry.find_by_tag(category) if agent.config.enabled]
        agent = least_loaded(candidates)
        if agent is not None:
            rationale = f"tagged {category}"
            if len(candidates) > 1:
                rationale += f", least loaded of {len(candidates)}"
            return self._to_agent(request, agent, Resolution.TAG, rationale)

        agent = self._registry.default_for(category)
        if agent is not None and agent.config.enabled:
            return self._to_agent(request, agent, Resolution.DEFAULT, f"default handler for {category}")

        return self._to_catch_all(request, f"no agent handles {category}")

    def _to_catch_all(self, request: RouteRequest, reason: str) -> RoutingDecision:
        agent = self._registry.find_by_id(self.catch_all_agent_id)
        if agent is None:
            return RoutingDecision(
                status=RouteStatus.UNROUTABLE,
                rationale=f"{reason}; catch-all {self.catch_all_agent_id} unavailable",
                resolution=Resolution.CATCH_ALL,
            )
        return self._to_agent(request, agent, Resolution.CATCH_ALL, reason)

    def _to_agent(
        self, request: RouteRequest, agent: Agent, resolution: Resolution, rationale: str
    ) -> RoutingDecision:
        return self._gate(
            request,
            agent.config.approval_level,
            resolution,
            rationale,
            target_agent_id=agent.agent_id,
        )

    @staticmethod
    def _gate(
        request: RouteRequest,
        required: ApprovalLevel,
        resolution: Resolution,
        rationale: str,
        **target: Any,
    ) -> RoutingDecision:
        if required > request.granted_level:
            return RoutingDecision(
                status=RouteStatus.PENDING_APPROVAL,
                rationale=f"{rationale}; requires {required.name} approval, granted {request.granted_level.name}",
                required_approval_level=required,
                resolution=resolution,
                **target,
            )
        return RoutingDecision(
            status=RouteStatus.ROUTED,
            rationale=rationale,
            required_approval_level=required,
            resolution=resolution,
            **target,
        )
