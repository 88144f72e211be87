"""Application runtime composition."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from agentdesk.agents.base import Agent, AgentBehavior
from agentdesk.agents.domain import (
    EscalationDeskBehavior,
    InventoryBehavior,
    LowStockScanBehavior,
    OrderBehavior,
)
from agentdesk.config import Config
from agentdesk.core.message_bus import A2AMessageBus
from agentdesk.core.models import AgentConfig, AgentRole, ApprovalLevel
from agentdesk.core.registry import AgentRegistry, RegistryEntry
from agentdesk.orchestration.orchestrator import WorkflowOrchestrator
from agentdesk.orchestration.workflow import (
    ConditionKind,
    StepCondition,
    WorkflowDefinition,
    WorkflowStep,
)
from agentdesk.services.notifier import Escalator, LoggingNotifier, Notifier, WebhookNotifier
from agentdesk.services.scheduler import IntervalScheduler
from agentdesk.services.storage import InMemoryStore, Storage
from agentdesk.supervisor.classifier import IntentClassifier
from agentdesk.supervisor.router import AgentRouter
from agentdesk.supervisor.service import Supervisor

logger = logging.getLogger(__name__)

SAMPLE_DATA = {
    "inventory": [
        {"id": "inv-1", "sku": "SKU-123", "stock": 42, "safety_stock": 10, "location": "A-01"},
        {"id": "inv-2", "sku": "SKU-456", "stock": 3, "safety_stock": 5, "location": "A-02"},
        {"id": "inv-3", "sku": "SKU-789", "stock": 0, "safety_stock": 5, "location": "B-07"},
    ],
    "orders": [
        {"id": "ORD-1001", "sku": "SKU-123", "quantity": 2, "status": "paid", "customer": "c-100"},
        {"id": "ORD-1002", "sku": "SKU-456", "quantity": 1, "status": "shipped", "customer": "c-101"},
    ],
}

WORKFLOWS = (
    WorkflowDefinition(
        workflow_id="order_fulfillment",
        name="Order fulfillment",
        description="Create an order, reserve its stock and confirm it.",
        steps=(
            WorkflowStep("create", "create_order", tag="orders", output_mapping={"order_id": "id"}),
            WorkflowStep(
                "reserve",
                "reserve_stock",
                tag="inventory",
                depends_on=("create",),
                output_mapping={"remaining_stock": "remaining"},
            ),
            WorkflowStep(
                "confirm",
                "confirm_order",
                tag="orders",
                depends_on=("reserve",),
                output_mapping={"order_status": "status"},
            ),
        ),
        timeout=60.0,
        retry_budget=6,
    ),
    WorkflowDefinition(
        workflow_id="order_refund",
        name="Order refund",
        description="Look an order up and refund it when its status allows.",
        steps=(
            WorkflowStep("lookup", "get_order", tag="orders", output_mapping={"order_status": "status"}),
            WorkflowStep(
                "refund",
                "refund_order",
                tag="orders",
                depends_on=("lookup",),
                condition=StepCondition(
                    ConditionKind.STEP_VALUE,
                    step_id="lookup",
                    path="status",
                    operator="in",
                    value=("paid", "shipped", "delivered", "cancelled"),
                ),
                output_mapping={"order_status": "status"},
            ),
        ),
        trigger_categories=("order_refund",),
        approval_level=ApprovalLevel.HIGH,
        timeout=60.0,
    ),
)


class Runtime:
    """Owns every long-lived component of the process.

    ``start`` opens the registry, brings the reference agents up and loads the
    workflows; ``stop`` tears everything down in reverse.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        notifier: Optional[Notifier] = None,
        storage: Optional[Storage] = None,
    ) -> None:
        self.config = config or Config.from_env()
        if notifier is None:
            notifier = WebhookNotifier(self.config.webhook_url) if self.config.webhook_url else LoggingNotifier()
        self.bus = A2AMessageBus()
        self.registry = AgentRegistry()
        self.escalator = Escalator(notifier)
        self.storage = storage if storage is not None else InMemoryStore(SAMPLE_DATA)
        self.classifier = IntentClassifier(confidence_floor=self.config.confidence_floor)
        self.orchestrator = WorkflowOrchestrator(
            self.registry,
            escalator=self.escalator,
            concurrency=self.config.workflow_concurrency,
        )
        self.router = AgentRouter(
            self.registry,
            catch_all_agent_id=self.config.catch_all_agent_id,
            orchestrator=self.orchestrator,
            confidence_floor=self.config.confidence_floor,
        )
        self.supervisor = Supervisor(
            self.classifier,
            self.router,
            self.registry,
            self.orchestrator,
            escalator=self.escalator,
            default_grant=self.config.default_grant,
        )
        self.scheduler = IntervalScheduler()
        self.agents: Dict[str, Agent] = {}
        self.started = False

    def build_agent(self, config: AgentConfig, behavior: AgentBehavior, tags: List[str]) -> Agent:
        return Agent(
            config,
            behavior,
            registry=self.registry,
            bus=self.bus,
            escalator=self.escalator,
            tags=tags,
            escalation_threshold=self.config.escalation_threshold,
        )

    async def add_agent(self, config: AgentConfig, behavior: AgentBehavior, tags: List[str]) -> Agent:
        agent = self.build_agent(config, behavior, tags)
        await agent.initialize()
        self.agents[agent.agent_id] = agent
        return agent

    async def start(self) -> None:
        if self.started:
            return
        await self.registry.open()
        desk = await self.add_agent(
            AgentConfig(
                agent_id=self.config.catch_all_agent_id,
                name="Escalation desk",
                description="Hands unroutable requests to a human operator",
                approval_level=ApprovalLevel.NONE,
                max_retries=0,
            ),
            EscalationDeskBehavior(self.escalator),
            ["cs_complaint", "escalation"],
        )
        inventory = await self.add_agent(
            AgentConfig(agent_id="inventory-1", name="Inventory", retry_delay=0.2, timeout=10.0),
            InventoryBehavior(self.storage, scanner_id="inventory-1-low-stock"),
            ["inventory_query", "inventory_update", "inventory"],
        )
        await self.add_agent(
            AgentConfig(agent_id="orders-1", name="Orders", retry_delay=0.2, timeout=10.0),
            OrderBehavior(self.storage),
            ["order_query", "order_cancel", "orders"],
        )
        scanner = await inventory.spawn_sub_agent(
            AgentConfig(
                agent_id="inventory-1-low-stock",
                name="Low-stock scanner",
                schedule="every 300s",
                timeout=10.0,
            ),
            LowStockScanBehavior(self.storage),
            tags=["inventory_scan"],
        )
        self.registry.designate_default("cs_inquiry", desk.agent_id)
        self.registry.designate_default("system_status", desk.agent_id)
        for definition in WORKFLOWS:
            await self.orchestrator.load(definition)
        self.scheduler.add(scanner)
        self.started = True
        logger.info("Runtime started (%s) with %d agents", self.config.environment, len(self.registry))

    async def stop(self) -> None:
        if not self.started:
            return
        await self.scheduler.stop()
        await self.orchestrator.shutdown()
        for agent in reversed(list(self.agents.values())):
            await agent.cleanup()
        self.agents.clear()
        await self.registry.close()
        self.started = False
        logger.info("Runtime stopped")

    def list_agents(self) -> List[RegistryEntry]:
        return [entry for entry in self.registry.entries() if entry.live]

    async def terminate_agent(self, agent_id: str) -> List[str]:
        """Clean an agent up; its sub-agents go with it."""
        entry = self.registry.get_entry(agent_id)
        if entry is None:
            raise KeyError(f"Unknown agent '{agent_id}'")
        removed = [child.agent_id for child in self.registry.find(parent_id=agent_id)]
        await entry.agent.cleanup()
        if entry.role is AgentRole.MAIN:
            self.agents.pop(agent_id, None)
        return [*removed, agent_id]
