"""Reference domain agents for an online shop back office."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from agentdesk.agents.base import AgentBehavior
from agentdesk.agents.delegation import deliver_with_retry
from agentdesk.core.errors import TransientFailure, ValidationFailure
from agentdesk.core.models import (
    AgentContext,
    AgentError,
    NotificationPriority,
    ProgressReport,
    TaskPayload,
)
from agentdesk.services.notifier import Escalator
from agentdesk.services.storage import Record, Storage

logger = logging.getLogger(__name__)

INVENTORY = "inventory"
ORDERS = "orders"


def _require(data: Mapping[str, Any], *names: str) -> List[Any]:
    missing = [name for name in names if data.get(name) in (None, "")]
    if missing:
        raise ValidationFailure(f"Missing required input: {', '.join(missing)}", {"missing": missing})
    return [data[name] for name in names]


def _unwrap(result: Any, what: str) -> Any:
    if result.error is not None:
        raise TransientFailure(f"Storage failed while {what}: {result.error}")
    return result.data


class ActionBehavior(AgentBehavior):
    """Dispatches ``run`` to ``action_<name>`` methods.

    The action comes from ``data["action"]`` or, for routed requests, from
    the intent category through ``intent_actions``.
    """

    intent_actions: Dict[str, str] = {}

    async def run(self, context: AgentContext) -> Any:
        data = context.data
        action = data.get("action") or self.intent_actions.get(data.get("intent", ""))
        handler = getattr(self, f"action_{action}", None) if action else None
        if handler is None:
            raise ValidationFailure(f"Unsupported action: {action!r}")
        return await handler(data)


class InventoryBehavior(ActionBehavior):
    intent_actions = {"inventory_query": "check_stock", "inventory_update": "adjust_stock"}

    def __init__(self, storage: Storage, *, scanner_id: Optional[str] = None) -> None:
        self._storage = storage
        self.scanner_id = scanner_id
        self.alerts: List[Dict[str, Any]] = []

    async def _find(self, sku: str) -> Record:
        records = _unwrap(await self._storage.find_many(INVENTORY, {"sku": sku}, limit=1), f"looking up {sku}")
        if not records:
            raise ValidationFailure(f"Unknown SKU: {sku}", {"sku": sku})
        return records[0]

    async def action_check_stock(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        (sku,) = _require(data, "sku")
        record = await self._find(sku)
        return {"sku": sku, "stock": record["stock"], "location": record.get("location")}

    async def action_adjust_stock(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        sku, quantity = _require(data, "sku", "quantity")
        record = await self._find(sku)
        stock = record["stock"] + int(quantity)
        if stock < 0:
            raise ValidationFailure(f"Adjustment would make {sku} negative", {"stock": record["stock"]})
        _unwrap(await self._storage.update(INVENTORY, record["id"], {"stock": stock}), f"adjusting {sku}")
        return {"sku": sku, "stock": stock}

    async def action_reserve_stock(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        sku, quantity = _require(data, "sku", "quantity")
        record = await self._find(sku)
        if record["stock"] < int(quantity):
            raise ValidationFailure(
                f"Insufficient stock for {sku}: {record['stock']} < {quantity}",
                {"sku": sku, "stock": record["stock"]},
            )
        remaining = record["stock"] - int(quantity)
        _unwrap(await self._storage.update(INVENTORY, record["id"], {"stock": remaining}), f"reserving {sku}")
        return {"sku": sku, "reserved": int(quantity), "remaining": remaining}

    async def action_scan_low_stock(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Delegate the scan to the low-stock sub-agent."""
        scanner = next((child for child in self.agent.children if child.agent_id == self.scanner_id), None)
        if scanner is None or scanner.delegate is None:
            raise ValidationFailure("No low-stock scanner attached")
        result = await deliver_with_retry(
            scanner.delegate,
            TaskPayload(task_type="scan_low_stock", data=dict(data)),
            max_retries=scanner.config.max_retries,
            retry_delay=scanner.config.retry_delay,
        )
        if not result.succeeded:
            raise ValidationFailure(f"Low-stock scan failed: {result.error.message if result.error else result.status.value}")
        return result.data

    async def on_notification(
        self, child_id: str, title: str, message: str, priority: NotificationPriority
    ) -> None:
        self.alerts.append({"from": child_id, "title": title, "message": message, "priority": priority.name})
        logger.info("Inventory alert from %s: %s", child_id, title)

    async def on_error(self, child_id: str, error: AgentError) -> None:
        logger.warning("Sub-agent %s reported %s: %s", child_id, error.code, error.message)


class LowStockScanBehavior(AgentBehavior):
    """Sub-agent flagging SKUs at or below their safety stock."""

    def __init__(self, storage: Storage, *, default_threshold: int = 10) -> None:
        self._storage = storage
        self._default_threshold = default_threshold
        self._scanned = 0
        self._total = 0

    def progress(self) -> Optional[ProgressReport]:
        if not self._total:
            return None
        return ProgressReport(
            percentage=round(100.0 * self._scanned / self._total, 1),
            step="scan",
            message=f"{self._scanned}/{self._total} SKUs checked",
        )

    async def run(self, context: AgentContext) -> Dict[str, Any]:
        records = _unwrap(await self._storage.find_many(INVENTORY), "listing inventory")
        self._total, self._scanned = len(records), 0
        low = []
        for record in records:
            threshold = record.get("safety_stock", self._default_threshold)
            if record["stock"] <= threshold:
                low.append(record["sku"])
                self.agent.delegate.notify_parent(
                    f"Low stock: {record['sku']}",
                    f"{record['stock']} left (safety stock {threshold})",
                    NotificationPriority.HIGH if record["stock"] == 0 else NotificationPriority.MEDIUM,
                )
            self._scanned += 1
        return {"low_stock": low, "checked": len(records)}


class OrderBehavior(ActionBehavior):
    intent_actions = {
        "order_query": "get_order",
        "order_cancel": "cancel_order",
        "order_refund": "refund_order",
    }

    _CANCELLABLE = {"pending", "paid"}
    _REFUNDABLE = {"paid", "shipped", "delivered", "cancelled"}

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def _load(self, order_id: str) -> Record:
        result = await self._storage.find_by_id(ORDERS, order_id)
        if result.error is not None:
            raise ValidationFailure(f"Unknown order: {order_id}", {"order_id": order_id})
        return result.data

    async def action_get_order(self, data: Mapping[str, Any]) -> Record:
        (order_id,) = _require(data, "order_id")
        return await self._load(order_id)

    async def action_create_order(self, data: Mapping[str, Any]) -> Record:
        sku, quantity = _require(data, "sku", "quantity")
        if int(quantity) <= 0:
            raise ValidationFailure("Order quantity must be positive")
        record = {"sku": sku, "quantity": int(quantity), "status": "pending", "customer": data.get("customer")}
        if data.get("order_id"):
            record["id"] = data["order_id"]
        return _unwrap(await self._storage.create(ORDERS, record), "creating order")

    async def action_confirm_order(self, data: Mapping[str, Any]) -> Record:
        (order_id,) = _require(data, "order_id")
        await self._load(order_id)
        return _unwrap(await self._storage.update(ORDERS, order_id, {"status": "paid"}), f"confirming {order_id}")

    async def action_cancel_order(self, data: Mapping[str, Any]) -> Record:
        (order_id,) = _require(data, "order_id")
        order = await self._load(order_id)
        if order["status"] not in self._CANCELLABLE:
            raise ValidationFailure(f"Order {order_id} is {order['status']} and cannot be cancelled")
        return _unwrap(
            await self._storage.update(ORDERS, order_id, {"status": "cancelled"}), f"cancelling {order_id}"
        )

    async def action_refund_order(self, data: Mapping[str, Any]) -> Record:
        (order_id,) = _require(data, "order_id")
        order = await self._load(order_id)
        if order["status"] not in self._REFUNDABLE:
            raise ValidationFailure(f"Order {order_id} is {order['status']} and cannot be refunded")
        return _unwrap(
            await self._storage.update(ORDERS, order_id, {"status": "refunded", "refund_amount": data.get("amount")}),
            f"refunding {order_id}",
        )


class EscalationDeskBehavior(AgentBehavior):
    """Catch-all that hands requests nobody else takes to a human operator."""

    def __init__(self, escalator: Optional[Escalator] = None) -> None:
        self._escalator = escalator
        self.handled: List[str] = []

    async def run(self, context: AgentContext) -> Dict[str, Any]:
        raw_input = context.data.get("input", "")
        self.handled.append(raw_input)
        delivered = 0
        if self._escalator is not None:
            delivered = await self._escalator.escalate(
                NotificationPriority.parse(context.data.get("urgency", "medium")),
                "Request needs a human",
                f"category={context.data.get('intent', 'unknown')}\ninput={raw_input}",
            )
        return {
            "handled_by": self.agent.agent_id if self.agent else None,
            "message": "Your request was forwarded to an operator.",
            "notified": delivered,
        }
