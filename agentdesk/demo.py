"""CLI demonstration of the supervisor pipeline and a workflow run."""
from __future__ import annotations

import asyncio
from typing import NoReturn

from agentdesk.config import Config, configure_logging
from agentdesk.core.models import AgentContext
from agentdesk.runtime import Runtime

REQUESTS = (
    "check inventory for SKU-123",
    "please refund order ORD-1001",
    "cancel order ORD-1002",
    "hello, is anyone there?",
)


async def main() -> None:
    config = Config.from_env()
    configure_logging(config)
    runtime = Runtime(config)
    await runtime.start()
    try:
        for text in REQUESTS:
            response = await runtime.supervisor.handle(text)
            print(f"> {text}")
            print(f"  {response.intent.category} ({response.intent.confidence:.2f}) -> {response.status.value}")
            print(f"  {response.message}")
            if response.result is not None and response.result.data is not None:
                print(f"  data: {response.result.data}")
            if response.approval_id is not None:
                approved = await runtime.supervisor.approve(response.approval_id, approver_id="demo-manager")
                print(f"  approved -> {approved.status.value}: {approved.message}")

        execution = await runtime.orchestrator.execute(
            "order_fulfillment", {"sku": "SKU-123", "quantity": 5, "customer": "c-200"}
        )
        print(f"order_fulfillment {execution.status.value}: {execution.context}")

        inventory = runtime.agents["inventory-1"]
        scan = await inventory.submit(AgentContext(data={"action": "scan_low_stock"}))
        await inventory.pump_child_events()
        print(f"low-stock scan: {scan.data}")
        for alert in inventory.behavior.alerts:
            print(f"  alert from {alert['from']}: {alert['title']} ({alert['message']})")
    finally:
        await runtime.stop()


def run() -> NoReturn:
    asyncio.run(main())


if __name__ == "__main__":
    run()
